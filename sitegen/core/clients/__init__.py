"""
SiteForge Pipeline - External Clients
=====================================

Completion provider and provisioning providers (Sanity, Resend, Vercel, Pexels).
"""

from sitegen.core.clients.llm import Completion, CompletionClient
from sitegen.core.clients.providers import Providers

__all__ = ["Completion", "CompletionClient", "Providers"]
