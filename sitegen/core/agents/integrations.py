"""
Phase 5 integrations.

Runs strictly in chain order: cms → email → analytics. An integration the
project did not purchase, or one whose provider is not configured, completes
as a skip; either way the next step of the chain is dispatched.
"""

import re

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.exceptions import IntegrationNotConfigured, SkipAgent
from sitegen.core.pipeline import phases
from sitegen.core.schemas import ControlDirective


class IntegrationAgent(AgentTask):
    phase = 5

    @property
    def step(self) -> phases.IntegrationStep:
        return phases.INTEGRATION_STEPS[self.name]

    async def execute(self) -> AgentResult:
        if not self.step.required(self.envelope.project):
            raise SkipAgent(self.step.reason)
        return await self.provision()

    async def provision(self) -> AgentResult:
        raise NotImplementedError

    async def _next(self) -> ControlDirective:
        triggered = await self.controller.advance_after_integration(self.envelope)
        if triggered is None:
            return ControlDirective(abort=True, abort_reason="Pipeline left phase_5")
        return ControlDirective(next_phase=phases.phase_of(triggered), next_agents=[triggered])

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        return await self._next()

    async def after_skip(self, reason: str) -> ControlDirective:
        return await self._next()


class CmsAgent(IntegrationAgent):
    name = phases.CMS

    async def provision(self) -> AgentResult:
        sanity = self.services.providers.sanity
        if not sanity.enabled:
            raise IntegrationNotConfigured("Sanity management token not configured")
        project = await sanity.create_project(self.envelope.project.name)
        await self.guard.ensure_active(self.pipeline_run_id, "cms:provisioned")
        env = (
            f"NEXT_PUBLIC_SANITY_PROJECT_ID={project['projectId']}\n"
            f"NEXT_PUBLIC_SANITY_DATASET={project['dataset']}\n"
        )
        await self.ledger.upsert_files(
            self.envelope.project.id,
            {".env.production": env},
            pipeline_run_id=self.pipeline_run_id,
            agent_name=self.name,
        )
        return AgentResult(output=project)


class EmailAgent(IntegrationAgent):
    name = phases.EMAIL

    async def provision(self) -> AgentResult:
        resend = self.services.providers.resend
        if not resend.enabled:
            raise IntegrationNotConfigured("Resend API key not configured")
        domain = self.envelope.project.email_domain
        if not domain:
            raise IntegrationNotConfigured("No email domain on the project")
        result = await resend.create_domain(domain)
        return AgentResult(output=result)


class AnalyticsAgent(IntegrationAgent):
    """Adds a tracking module; no provider account is needed."""

    name = phases.ANALYTICS

    async def provision(self) -> AgentResult:
        site_id = re.sub(r"[^a-z0-9]+", "-", self.envelope.project.name.lower()).strip("-") or "site"
        module = (
            f"export const ANALYTICS_SITE_ID = {site_id!r}\n\n"
            "export function trackEvent(name: string, props: Record<string, unknown> = {}) {\n"
            "  if (typeof window === 'undefined') return\n"
            "  const w = window as unknown as { plausible?: (n: string, o: object) => void }\n"
            "  w.plausible?.(name, { props })\n"
            "}\n"
        )
        await self.ledger.upsert_files(
            self.envelope.project.id,
            {"lib/analytics.ts": module},
            pipeline_run_id=self.pipeline_run_id,
            agent_name=self.name,
        )
        return AgentResult(output={"siteId": site_id, "files": ["lib/analytics.ts"]})


INTEGRATION_AGENTS = (CmsAgent, EmailAgent, AnalyticsAgent)
