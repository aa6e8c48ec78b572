"""
Phase Transition Controller.

Encodes the fixed phase topology. Every advancing operation follows the same
order: check the cancellation guard, write the status transition, and only
if the ledger accepted it dispatch the next agent. A pipeline that was
stopped or already reached a terminal status therefore never dispatches.
"""

import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog

from sitegen.core.config import settings
from sitegen.core.exceptions import InvalidTransition
from sitegen.core.models import PipelineRun, PipelineStatus
from sitegen.core.pipeline import phases
from sitegen.core.pipeline.cancellation import CancellationGuard
from sitegen.core.pipeline.dispatcher import Dispatcher
from sitegen.core.pipeline.ledger import RunLedger, elapsed_ms
from sitegen.core.schemas import Envelope, EnvelopeMeta, ProjectData

logger = structlog.get_logger()


def compute_input_hash(project: ProjectData) -> str:
    """Stable hash of the project payload, used as the regeneration cache key."""
    payload = json.dumps(project.to_wire(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def new_correlation_id() -> str:
    return f"pipe-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass
class StartResult:
    run: PipelineRun
    cached: bool = False
    agents: list[str] = field(default_factory=list)


class PhaseController:
    """
    Drives a pipeline through its six phases.

    pending → phase_1 → phase_2 → phase_3 → phase_4 → [phase_5]* → phase_6 → completed

    The quality gate owns the phase_3 exits; the fan-out coordinator decides
    when phase_4 is done.
    """

    def __init__(
        self,
        ledger: RunLedger,
        dispatcher: Dispatcher,
        guard: CancellationGuard,
        *,
        max_retries: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.guard = guard
        self.max_retries = max_retries if max_retries is not None else settings.MAX_RETRIES
        self.max_attempts = max_attempts if max_attempts is not None else settings.MAX_ATTEMPTS

    # ==========================================================================
    # Entry
    # ==========================================================================

    async def start_pipeline(self, project: ProjectData, force_regenerate: bool = False) -> StartResult:
        """
        Create a run and dispatch all phase-1 agents plus the collector.

        Returns the most recent completed run instead when the same input was
        already generated, unless ``force_regenerate`` is set.
        """
        input_hash = compute_input_hash(project)
        if not force_regenerate:
            cached = await self.ledger.find_cached_run(project.id, input_hash)
            if cached is not None:
                logger.info(
                    "pipeline_cache_hit",
                    project_id=project.id,
                    pipeline_run_id=str(cached.id),
                )
                return StartResult(run=cached, cached=True)

        correlation_id = new_correlation_id()
        run = await self.ledger.create_pipeline_run(
            project,
            correlation_id=correlation_id,
            input_hash=input_hash,
            max_retries=self.max_retries,
        )
        if not await self.ledger.transition(run.id, PipelineStatus.PHASE_1):
            raise InvalidTransition(f"Pipeline {run.id} could not enter phase_1")

        root = Envelope(
            meta=EnvelopeMeta(
                pipeline_run_id=run.id,
                project_id=project.id,
                correlation_id=correlation_id,
                agent_name=phases.COLLECTOR,
                phase=1,
                max_attempts=self.max_attempts,
            ),
            project=project,
        )
        dispatched = []
        for sequence, agent in enumerate(phases.PHASE_1_AGENTS, start=1):
            await self.dispatcher.dispatch(agent, root.for_agent(agent, 1, sequence))
            dispatched.append(agent)
        await self.dispatcher.dispatch(
            phases.COLLECTOR,
            root.for_agent(phases.COLLECTOR, 1, phases.COLLECTOR_SEQUENCE),
        )
        dispatched.append(phases.COLLECTOR)

        logger.info(
            "pipeline_started",
            pipeline_run_id=str(run.id),
            project_id=project.id,
            correlation_id=correlation_id,
            agents=dispatched,
        )
        return StartResult(run=await self.ledger.get_pipeline_run(run.id), agents=dispatched)

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def advance(
        self,
        envelope: Envelope,
        target: PipelineStatus,
        agent_name: str,
        phase: int,
        sequence: int = 0,
        *,
        from_statuses: tuple[PipelineStatus, ...],
        fields: Optional[dict[str, Any]] = None,
        **envelope_kwargs: Any,
    ) -> bool:
        """
        Transition from one of ``from_statuses`` to ``target`` and dispatch ``agent_name``.

        Returns:
            False when the ledger rejected the transition; nothing is dispatched
        """
        await self.guard.ensure_active(envelope.pipeline_run_id, f"advance:{agent_name}")
        applied = await self.ledger.transition(
            envelope.pipeline_run_id, target, from_statuses=from_statuses, **(fields or {})
        )
        if not applied:
            return False
        await self.dispatcher.dispatch(
            agent_name,
            envelope.for_agent(agent_name, phase, sequence, **envelope_kwargs),
        )
        return True

    async def dispatch_within(
        self,
        envelopes: list[Envelope],
        expected_status: PipelineStatus,
    ) -> int:
        """
        Dispatch siblings inside the current phase.

        Dispatches nothing unless the pipeline still sits in ``expected_status``.
        """
        if not envelopes:
            return 0
        pipeline_run_id = envelopes[0].pipeline_run_id
        await self.guard.ensure_active(pipeline_run_id, "dispatch_within")
        current = await self.ledger.get_status(pipeline_run_id)
        if current != expected_status:
            logger.warning(
                "dispatch_skipped_wrong_status",
                pipeline_run_id=str(pipeline_run_id),
                status=current.value if current else None,
                expected=expected_status.value,
            )
            return 0
        for envelope in envelopes:
            await self.dispatcher.dispatch(envelope.agent_name, envelope)
        return len(envelopes)

    async def advance_to_content(self, envelope: Envelope) -> bool:
        """phase_1 → phase_2, released by the collector only."""
        return await self.advance(
            envelope, PipelineStatus.PHASE_2, phases.CONTENT_PACK, 2, from_statuses=(PipelineStatus.PHASE_1,)
        )

    async def advance_to_review(self, envelope: Envelope) -> bool:
        """phase_2 → phase_3, unconditional after content assembly."""
        return await self.advance(
            envelope,
            PipelineStatus.PHASE_3,
            phases.EDITOR,
            3,
            from_statuses=(PipelineStatus.PHASE_2,),
            attempt=envelope.meta.attempt,
        )

    async def advance_to_codegen(self, envelope: Envelope, score: float) -> bool:
        return await self.advance(
            envelope,
            PipelineStatus.PHASE_4,
            phases.CODE_RENDERER,
            4,
            from_statuses=(PipelineStatus.PHASE_3,),
            fields={"quality_score": score},
        )

    async def advance_after_codegen(self, envelope: Envelope) -> Optional[str]:
        """
        Leave phase_4 for the first required integration, or for deployment.

        The caller must hold the one-time codegen advance.

        Returns:
            The dispatched agent name, or None when the transition was rejected
        """
        step = phases.next_integration(envelope.project)
        if step is not None:
            applied = await self.advance(
                envelope, PipelineStatus.PHASE_5, step.agent, 5, step.sequence, from_statuses=(PipelineStatus.PHASE_4,)
            )
            return step.agent if applied else None
        applied = await self.advance(
            envelope, PipelineStatus.PHASE_6, phases.DEPLOYER, 6, from_statuses=(PipelineStatus.PHASE_4,)
        )
        return phases.DEPLOYER if applied else None

    async def advance_after_integration(self, envelope: Envelope) -> Optional[str]:
        """Move along the cms → email → analytics → deploy chain."""
        step = phases.next_integration(envelope.project, after=envelope.agent_name)
        if step is not None:
            applied = await self.advance(
                envelope, PipelineStatus.PHASE_5, step.agent, 5, step.sequence, from_statuses=(PipelineStatus.PHASE_5,)
            )
            return step.agent if applied else None
        applied = await self.advance(
            envelope, PipelineStatus.PHASE_6, phases.DEPLOYER, 6, from_statuses=(PipelineStatus.PHASE_5,)
        )
        return phases.DEPLOYER if applied else None

    async def complete_pipeline(
        self,
        envelope: Envelope,
        *,
        preview_url: Optional[str] = None,
        files_generated: int = 0,
    ) -> bool:
        pipeline_run_id = envelope.pipeline_run_id
        await self.guard.ensure_active(pipeline_run_id, "complete")
        usage = await self.ledger.aggregate_usage(pipeline_run_id)
        run = await self.ledger.get_pipeline_run(pipeline_run_id)
        applied = await self.ledger.transition(
            pipeline_run_id,
            PipelineStatus.COMPLETED,
            total_tokens=usage.tokens,
            total_cost_usd=usage.cost_usd,
            duration_ms=elapsed_ms(run.started_at) if run else None,
            preview_url=preview_url,
            files_generated=files_generated,
        )
        if applied:
            logger.info(
                "pipeline_completed",
                pipeline_run_id=str(pipeline_run_id),
                total_tokens=usage.tokens,
                total_cost_usd=float(usage.cost_usd),
                preview_url=preview_url,
            )
        return applied

    async def fail_pipeline(
        self,
        pipeline_run_id: UUID,
        code: str,
        message: str,
        agent_name: Optional[str] = None,
    ) -> bool:
        applied = await self.ledger.transition(
            pipeline_run_id,
            PipelineStatus.FAILED,
            error_code=code,
            error_message=message,
            error_agent=agent_name,
        )
        if applied:
            logger.error(
                "pipeline_failed",
                pipeline_run_id=str(pipeline_run_id),
                error_code=code,
                error_message=message,
                error_agent=agent_name,
            )
        return applied
