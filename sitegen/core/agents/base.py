"""
Agent task base.

Every agent invocation runs the same lifecycle:

1. record a running agent run at the envelope's phase/sequence/attempt
2. check the cancellation guard
3. execute the agent body (completion calls, provisioning calls)
4. check the cancellation guard again
5. record the terminal status and usage
6. hand control to the controller, quality gate or fan-out coordinator
7. answer with an AgentResponse

A failure never propagates into another task: it is written to the ledger
and the agent's failure policy decides what happens to the pipeline.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional
from uuid import UUID

import structlog

from sitegen.core.clients.llm import Completion
from sitegen.core.exceptions import PipelineCancelled, PipelineError, SkipAgent
from sitegen.core.models import AgentRunStatus
from sitegen.core.pipeline.services import PipelineServices
from sitegen.core.schemas import (
    AgentError,
    AgentResponse,
    ControlDirective,
    Envelope,
    QualityReport,
    UsageMetrics,
)

logger = structlog.get_logger()


@dataclass
class AgentResult:
    output: dict[str, Any]
    quality_score: Optional[float] = None
    issues: list[dict[str, Any]] = field(default_factory=list)
    validation_passed: Optional[bool] = None
    validation_errors: Optional[list] = None


@dataclass
class UsageMeter:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: Optional[str] = None

    def add(self, completion: Completion) -> None:
        self.input_tokens += completion.input_tokens
        self.output_tokens += completion.output_tokens
        self.cost_usd += completion.cost_usd
        self.model = completion.model

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class AgentTask:
    """
    One stateless agent invocation.

    Subclasses set ``name`` and ``phase`` and implement ``execute``.
    ``after_complete`` decides what the pipeline does next.
    """

    name: ClassVar[str]
    phase: ClassVar[int]
    # Answer "processing" immediately and continue after the response
    background: ClassVar[bool] = False
    # Whether a failure of this agent fails the pipeline
    fails_pipeline: ClassVar[bool] = True
    model_role: ClassVar[str] = "default"

    def __init__(self, services: PipelineServices, envelope: Envelope):
        self.services = services
        self.envelope = envelope
        self.ledger = services.ledger
        self.guard = services.guard
        self.controller = services.controller
        self.usage = UsageMeter()
        self.agent_run_id: Optional[UUID] = None
        self._started: Optional[float] = None
        self.log = logger.bind(
            pipeline_run_id=str(envelope.meta.pipeline_run_id),
            agent_name=self.name,
            correlation_id=envelope.meta.correlation_id,
            attempt=envelope.meta.attempt,
        )

    @property
    def pipeline_run_id(self) -> UUID:
        return self.envelope.meta.pipeline_run_id

    @property
    def error_code(self) -> str:
        return f"{self.name.upper().replace('-', '_')}_ERROR"

    @property
    def model(self) -> str:
        if self.model_role == "fast":
            return self.services.settings.LLM_FAST_MODEL
        return self.services.settings.LLM_DEFAULT_MODEL

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def input_snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {"meta": self.envelope.meta.to_wire()}
        if self.envelope.feedback is not None:
            snapshot["feedback"] = self.envelope.feedback.to_wire()
        return snapshot

    async def start(self) -> UUID:
        self._started = time.monotonic()
        self.agent_run_id = await self.ledger.create_agent_run(self.envelope, self.input_snapshot())
        self.log = self.log.bind(agent_run_id=str(self.agent_run_id))
        self.log.info("agent_started", phase=self.envelope.meta.phase, sequence=self.envelope.meta.sequence)
        return self.agent_run_id

    async def handle(self) -> AgentResponse:
        await self.start()
        return await self.run()

    async def run(self) -> AgentResponse:
        if self.agent_run_id is None:
            await self.start()

        try:
            await self.guard.ensure_active(self.pipeline_run_id, f"{self.name}:before")
            result = await self.execute()
            await self.guard.ensure_active(self.pipeline_run_id, f"{self.name}:after")
        except PipelineCancelled:
            return await self._record_cancelled()
        except SkipAgent as skip:
            return await self._record_skip(skip)
        except Exception as e:
            return await self._record_failure(e)

        finished = await self._finish(
            AgentRunStatus.COMPLETED,
            output=result.output,
            quality_score=result.quality_score,
            validation_passed=result.validation_passed,
            validation_errors=result.validation_errors,
        )
        if not finished:
            return self._cancelled_response()
        await self.ledger.add_usage(self.pipeline_run_id, self.usage.tokens, self.usage.cost_usd)
        self.log.info("agent_completed", tokens=self.usage.tokens, cost_usd=self.usage.cost_usd)

        control = await self._continue(self.after_complete, result)
        return AgentResponse(
            success=True,
            agent_name=self.name,
            task_run_id=self.agent_run_id,
            output=result.output,
            quality=QualityReport(
                score=result.quality_score,
                passed=result.validation_passed if result.validation_passed is not None else True,
                issues=result.issues,
                critical_count=sum(1 for issue in result.issues if issue.get("severity") == "critical"),
            ),
            control=control,
            metrics=self._metrics(),
        )

    async def _continue(self, step, *args: Any) -> ControlDirective:
        try:
            return await step(*args)
        except PipelineCancelled:
            return ControlDirective(abort=True, abort_reason="Pipeline cancelled")
        except Exception as e:
            # Our own run is already terminal; without this the pipeline would stall
            self.log.exception("agent_advance_failed", error=str(e))
            await self.controller.fail_pipeline(
                self.pipeline_run_id,
                "ADVANCE_FAILED",
                f"{self.name} could not advance the pipeline: {e}",
                self.name,
            )
            return ControlDirective(abort=True, abort_reason=str(e))

    async def _finish(self, status: AgentRunStatus, **fields: Any) -> bool:
        return await self.ledger.finish_agent_run(
            self.agent_run_id,
            status,
            input_tokens=self.usage.input_tokens,
            output_tokens=self.usage.output_tokens,
            cost_usd=self.usage.cost_usd,
            model=self.usage.model,
            **fields,
        )

    async def _record_cancelled(self) -> AgentResponse:
        await self._finish(AgentRunStatus.CANCELLED, error_code=PipelineCancelled.code)
        return self._cancelled_response()

    def _cancelled_response(self) -> AgentResponse:
        self.log.info("agent_cancelled")
        return AgentResponse(
            success=False,
            agent_name=self.name,
            task_run_id=self.agent_run_id,
            control=ControlDirective(abort=True, abort_reason="Pipeline cancelled"),
            metrics=self._metrics(),
            error=AgentError(code=PipelineCancelled.code, message="Pipeline was cancelled"),
        )

    async def _record_skip(self, skip: SkipAgent) -> AgentResponse:
        output = {"skipped": True, "reason": skip.reason}
        if not await self._finish(AgentRunStatus.COMPLETED, output=output):
            return self._cancelled_response()
        self.log.info("agent_skipped", reason=skip.reason)
        control = await self._continue(self.after_skip, skip.reason)
        return AgentResponse(
            success=True,
            agent_name=self.name,
            task_run_id=self.agent_run_id,
            output=output,
            control=control,
            metrics=self._metrics(),
        )

    async def _record_failure(self, error: Exception) -> AgentResponse:
        code = error.code if isinstance(error, PipelineError) else self.error_code
        message = str(error) or type(error).__name__
        self.log.error("agent_failed", error_code=code, error=message, exc_info=error)

        if not await self._finish(AgentRunStatus.FAILED, error_code=code, error_message=message):
            return self._cancelled_response()
        await self.ledger.add_usage(self.pipeline_run_id, self.usage.tokens, self.usage.cost_usd)

        control = ControlDirective(abort=self.fails_pipeline, abort_reason=message if self.fails_pipeline else None)
        try:
            await self.on_failure(code, message, error)
        except Exception as e:
            self.log.exception("agent_failure_policy_failed", error=str(e))
        return AgentResponse(
            success=False,
            agent_name=self.name,
            task_run_id=self.agent_run_id,
            control=control,
            metrics=self._metrics(),
            error=AgentError(code=code, message=message, recoverable=not self.fails_pipeline),
        )

    def _metrics(self) -> UsageMetrics:
        return UsageMetrics(
            duration_ms=int((time.monotonic() - self._started) * 1000) if self._started is not None else 0,
            input_tokens=self.usage.input_tokens,
            output_tokens=self.usage.output_tokens,
            model=self.usage.model,
            cost_usd=round(self.usage.cost_usd, 6),
        )

    # ==========================================================================
    # Hooks
    # ==========================================================================

    async def execute(self) -> AgentResult:
        raise NotImplementedError

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        return ControlDirective()

    async def after_skip(self, reason: str) -> ControlDirective:
        return ControlDirective()

    async def on_failure(self, code: str, message: str, error: Exception) -> None:
        if self.fails_pipeline:
            await self.controller.fail_pipeline(self.pipeline_run_id, code, message, self.name)

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        purpose: Optional[str] = None,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        """Completion call bracketed by cancellation checks."""
        await self.guard.ensure_active(self.pipeline_run_id, f"{self.name}:before_completion")
        completion = await self.services.llm.complete(
            system_prompt,
            user_prompt,
            purpose=purpose or self.name,
            model=self.model,
            max_tokens=max_tokens,
        )
        self.usage.add(completion)
        await self.guard.ensure_active(self.pipeline_run_id, f"{self.name}:after_completion")
        return completion.json()

    def project_brief(self) -> str:
        """Project payload as the JSON block every prompt starts from."""
        project = self.envelope.project
        return json.dumps(
            project.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"pages"})
            | {"pages": [{"name": p.name, "slug": p.slug, "sections": p.sections} for p in project.pages]},
            indent=2,
        )
