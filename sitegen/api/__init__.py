"""
SiteForge Pipeline - API
========================

HTTP surface: agent task endpoints and pipeline control.
"""
