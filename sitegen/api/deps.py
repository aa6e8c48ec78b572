"""
SiteForge Pipeline - API Dependencies
=====================================

Shared dependencies for FastAPI endpoints.
"""

import secrets
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from sitegen.core.database import get_db
from sitegen.core.pipeline.services import PipelineServices, build_services


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)


# ==========================================================================
# Pipeline Services
# ==========================================================================

_services: Optional[PipelineServices] = None


def get_services() -> PipelineServices:
    """Application-wide orchestration services, built on first use."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.aclose()
        _services = None


Services = Annotated[PipelineServices, Depends(get_services)]


# ==========================================================================
# Service Authentication
# ==========================================================================

async def verify_service_key(
    services: Services,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Check the bearer service key on every agent and pipeline endpoint.

    Open when no SERVICE_KEY is configured.

    Raises:
        HTTPException: 401 if the key is missing or wrong
    """
    expected = services.settings.SERVICE_KEY
    if not expected:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service key",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
ServiceAuth = Depends(verify_service_key)
