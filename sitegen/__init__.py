"""
SiteForge Pipeline
==================

Multi-agent website generation pipeline.
"""

__version__ = "0.1.0"
