"""
Phase 6 deployment.

Collects every generated file and deploys it. Deployment happens at most
once per pipeline: a second deployer invocation finds the earlier completed
run or loses the one-time claim, and records itself as a skip.
"""

import re

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.exceptions import PipelineError, SkipAgent
from sitegen.core.pipeline import phases
from sitegen.core.schemas import ControlDirective


class DeployerAgent(AgentTask):
    name = phases.DEPLOYER
    phase = 6

    async def execute(self) -> AgentResult:
        if await self.ledger.has_completed_run(self.pipeline_run_id, self.name, exclude_id=self.agent_run_id):
            raise SkipAgent("Already deployed")
        if not await self.ledger.claim_advance(self.pipeline_run_id, phases.DEPLOY_TRIGGERED, claimed_by=self.name):
            raise SkipAgent("Deployment already claimed")

        files = await self.ledger.list_files(self.envelope.project.id)
        if not files:
            raise PipelineError("No generated files to deploy", code="NO_FILES")

        name = re.sub(r"[^a-z0-9-]+", "-", self.envelope.project.name.lower()).strip("-") or "site"
        vercel = self.services.providers.vercel
        if vercel.enabled:
            await self.guard.ensure_active(self.pipeline_run_id, "deployer:upload")
            deployment = await vercel.create_deployment(name, files)
        else:
            self.log.warning("deploy_simulated", reason="Vercel token not configured")
            deployment = {"deploymentId": None, "url": f"https://{name}.vercel.app", "status": "pending"}

        return AgentResult(output={**deployment, "filesGenerated": len(files)})

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        completed = await self.controller.complete_pipeline(
            self.envelope,
            preview_url=result.output.get("url"),
            files_generated=result.output.get("filesGenerated", 0),
        )
        if not completed:
            return ControlDirective(abort=True, abort_reason="Pipeline left phase_6")
        return ControlDirective(is_complete=True)
