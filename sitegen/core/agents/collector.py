"""
Phase 1 collector.

Waits on the phase-1 barrier and is the only task that moves a pipeline
from phase_1 to phase_2.
"""

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.exceptions import MandatoryAgentFailed
from sitegen.core.pipeline import phases
from sitegen.core.schemas import ControlDirective


class CollectorAgent(AgentTask):
    name = phases.COLLECTOR
    phase = 1

    async def execute(self) -> AgentResult:
        spec = phases.PHASE_CONFIG[1]
        result = await self.services.barrier.wait_for_phase(
            self.pipeline_run_id,
            spec.agents,
            spec.mandatory,
            phase=1,
        )
        if result.failed:
            self.log.warning("phase_1_agents_dropped", failed=result.failed, pending=result.pending)
        return AgentResult(output=result.to_dict())

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        advanced = await self.controller.advance_to_content(self.envelope)
        if not advanced:
            return ControlDirective(abort=True, abort_reason="Pipeline left phase_1")
        return ControlDirective(next_phase=2, next_agents=[phases.CONTENT_PACK])

    async def on_failure(self, code: str, message: str, error: Exception) -> None:
        agent = error.agent_name if isinstance(error, MandatoryAgentFailed) else self.name
        await self.controller.fail_pipeline(self.pipeline_run_id, code, message, agent)
