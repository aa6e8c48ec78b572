"""
SiteForge Pipeline - Core Package
=================================

Configuration, persistence, schemas and the orchestration core.
"""

from sitegen.core.config import settings
from sitegen.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
