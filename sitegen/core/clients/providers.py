"""
Provisioning Providers
======================

httpx clients for the third-party services behind phase 5 and 6 and the
image agent:
- Sanity (headless CMS project provisioning)
- Resend (transactional e-mail domain setup)
- Vercel (deployment host)
- Pexels (stock image search)

Each client reports ``enabled`` from its credentials; agents treat a
disabled optional provider as a skip rather than a failure.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from sitegen.core.config import Settings, settings
from sitegen.core.exceptions import TransientUpstreamError, UpstreamError

logger = logging.getLogger(__name__)


class ProviderClient:
    """Shared request handling for provider clients."""

    name = "provider"
    base_url = ""

    def __init__(self, token: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.enabled:
            raise UpstreamError(f"{self.name} is not configured", code=f"{self.name.upper()}_NOT_CONFIGURED")
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                headers=self._auth_headers(),
                **kwargs,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientUpstreamError(f"{self.name} request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientUpstreamError(
                f"{self.name} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise UpstreamError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json() if response.content else {}

    async def aclose(self) -> None:
        await self._client.aclose()


# ==========================================================================
# Sanity
# ==========================================================================

class SanityClient(ProviderClient):
    name = "sanity"
    base_url = "https://api.sanity.io/v2021-06-07"

    def __init__(self, token: Optional[str] = None, organization_id: Optional[str] = None, **kwargs: Any):
        super().__init__(token if token is not None else settings.SANITY_MANAGEMENT_TOKEN, **kwargs)
        self.organization_id = organization_id or settings.SANITY_ORGANIZATION_ID

    async def create_project(self, display_name: str, dataset: str = "production") -> dict[str, Any]:
        body: dict[str, Any] = {"displayName": display_name}
        if self.organization_id:
            body["organizationId"] = self.organization_id
        project = await self._request("POST", "/projects", json=body)
        project_id = project["id"]
        await self._request("PUT", f"/projects/{project_id}/datasets/{dataset}", json={"aclMode": "public"})
        logger.info(f"Created Sanity project {project_id} for {display_name}")
        return {
            "projectId": project_id,
            "dataset": dataset,
            "studioUrl": f"https://{project_id}.sanity.studio",
        }


# ==========================================================================
# Resend
# ==========================================================================

class ResendClient(ProviderClient):
    name = "resend"
    base_url = "https://api.resend.com"

    def __init__(self, token: Optional[str] = None, **kwargs: Any):
        super().__init__(token if token is not None else settings.RESEND_API_KEY, **kwargs)

    async def create_domain(self, domain: str) -> dict[str, Any]:
        created = await self._request("POST", "/domains", json={"name": domain})
        logger.info(f"Registered Resend domain {domain} ({created.get('status')})")
        return {
            "domainId": created.get("id"),
            "domain": domain,
            "status": created.get("status", "pending"),
            "records": created.get("records", []),
        }


# ==========================================================================
# Vercel
# ==========================================================================

class VercelClient(ProviderClient):
    name = "vercel"
    base_url = "https://api.vercel.com"

    def __init__(self, token: Optional[str] = None, team_id: Optional[str] = None, **kwargs: Any):
        super().__init__(token if token is not None else settings.VERCEL_TOKEN, **kwargs)
        self.team_id = team_id or settings.VERCEL_TEAM_ID

    async def create_deployment(self, name: str, files: dict[str, str]) -> dict[str, Any]:
        params = {"teamId": self.team_id} if self.team_id else None
        deployment = await self._request(
            "POST",
            "/v13/deployments",
            params=params,
            json={
                "name": name,
                "files": [{"file": path, "data": content} for path, content in files.items()],
                "projectSettings": {"framework": "nextjs"},
                "target": "production",
            },
        )
        url = deployment.get("url")
        return {
            "deploymentId": deployment.get("id"),
            "url": f"https://{url}" if url and not url.startswith("http") else url,
            "status": (deployment.get("readyState") or "queued").lower(),
        }


# ==========================================================================
# Pexels
# ==========================================================================

class PexelsClient(ProviderClient):
    name = "pexels"
    base_url = "https://api.pexels.com/v1"

    def __init__(self, token: Optional[str] = None, **kwargs: Any):
        super().__init__(token if token is not None else settings.PEXELS_API_KEY, **kwargs)

    def _auth_headers(self) -> dict[str, str]:
        # Pexels takes the bare key
        return {"Authorization": self.token or ""}

    async def search(self, query: str, per_page: int = 3) -> list[dict[str, Any]]:
        result = await self._request("GET", "/search", params={"query": query, "per_page": per_page})
        return [
            {
                "url": photo["src"].get("large2x") or photo["src"].get("original"),
                "alt": photo.get("alt") or query,
                "photographer": photo.get("photographer"),
                "query": query,
            }
            for photo in result.get("photos", [])
        ]


@dataclass
class Providers:
    sanity: SanityClient
    resend: ResendClient
    vercel: VercelClient
    pexels: PexelsClient

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "Providers":
        config = config or settings
        return cls(
            sanity=SanityClient(config.SANITY_MANAGEMENT_TOKEN, config.SANITY_ORGANIZATION_ID),
            resend=ResendClient(config.RESEND_API_KEY),
            vercel=VercelClient(config.VERCEL_TOKEN, config.VERCEL_TEAM_ID),
            pexels=PexelsClient(config.PEXELS_API_KEY),
        )

    async def aclose(self) -> None:
        for client in (self.sanity, self.resend, self.vercel, self.pexels):
            await client.aclose()
