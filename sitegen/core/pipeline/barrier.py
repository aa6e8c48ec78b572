"""
Barrier / Collector.

Polls the ledger until a set of sibling agents reaches a terminal state.
Two shapes share the algorithm:

- fixed set (phase 1): releases when every mandatory agent completed and
  every agent is terminal; on budget exhaustion proceeds if the mandatory
  agents completed
- fan-out (phase 4): releases when the completed count reaches the expected
  sibling count; every sibling is mandatory

Poll interval and budget are configuration constants. When the ledger has
an in-process completion signal, the wait between polls ends early on
every terminal write.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional
from uuid import UUID

import structlog

from sitegen.core.config import settings
from sitegen.core.exceptions import BarrierTimeout, MandatoryAgentFailed
from sitegen.core.models import AgentRunStatus
from sitegen.core.pipeline.cancellation import CancellationGuard
from sitegen.core.pipeline.ledger import RunLedger

logger = structlog.get_logger()

FAILED_STATUSES = frozenset({AgentRunStatus.FAILED, AgentRunStatus.CANCELLED})


@dataclass
class BarrierResult:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    timed_out: bool = False
    waited_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "completedAgents": self.completed,
            "failedAgents": self.failed,
            "pendingAgents": self.pending,
            "timedOut": self.timed_out,
            "waitedMs": self.waited_ms,
        }


@dataclass
class FanOutProgress:
    completed: int
    failed: int
    expected: int

    @property
    def released(self) -> bool:
        return self.completed >= self.expected


class Barrier:
    def __init__(
        self,
        ledger: RunLedger,
        guard: CancellationGuard,
        *,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
        fan_out_max_wait: Optional[float] = None,
    ):
        self.ledger = ledger
        self.guard = guard
        self.poll_interval = poll_interval if poll_interval is not None else settings.BARRIER_POLL_INTERVAL_SECONDS
        self.max_wait = max_wait if max_wait is not None else settings.BARRIER_MAX_WAIT_SECONDS
        self.fan_out_max_wait = (
            fan_out_max_wait if fan_out_max_wait is not None else settings.FANOUT_MAX_WAIT_SECONDS
        )

    async def _pause(self, pipeline_run_id: UUID) -> None:
        if self.ledger.signal is not None:
            await self.ledger.signal.wait(pipeline_run_id, self.poll_interval)
        else:
            await asyncio.sleep(self.poll_interval)

    async def wait_for_phase(
        self,
        pipeline_run_id: UUID,
        agents: Iterable[str],
        mandatory: Iterable[str],
        phase: Optional[int] = None,
    ) -> BarrierResult:
        """
        Wait for a fixed sibling set.

        Raises:
            MandatoryAgentFailed: a mandatory agent failed
            BarrierTimeout: budget exhausted before the mandatory agents completed
            PipelineCancelled: the pipeline was stopped while waiting
        """
        agents = list(agents)
        mandatory = list(mandatory)
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.max_wait
        polls = 0

        while True:
            await self.guard.ensure_active(pipeline_run_id, "barrier")
            statuses = await self.ledger.agent_statuses(pipeline_run_id, agents, phase)
            polls += 1

            result = BarrierResult(
                completed=[a for a in agents if statuses.get(a) == AgentRunStatus.COMPLETED],
                failed=[a for a in agents if statuses.get(a) in FAILED_STATUSES],
            )
            result.pending = [a for a in agents if a not in result.completed and a not in result.failed]
            result.waited_ms = int((loop.time() - started) * 1000)

            for agent in mandatory:
                if agent in result.failed:
                    logger.error(
                        "barrier_mandatory_failed",
                        pipeline_run_id=str(pipeline_run_id),
                        agent_name=agent,
                    )
                    raise MandatoryAgentFailed(agent)

            mandatory_done = all(a in result.completed for a in mandatory)
            if mandatory_done and not result.pending:
                logger.info(
                    "barrier_released",
                    pipeline_run_id=str(pipeline_run_id),
                    completed=len(result.completed),
                    failed=len(result.failed),
                    polls=polls,
                )
                return result

            if loop.time() >= deadline:
                if mandatory_done:
                    result.timed_out = True
                    logger.warning(
                        "barrier_timeout_proceeding",
                        pipeline_run_id=str(pipeline_run_id),
                        pending=result.pending,
                    )
                    return result
                raise BarrierTimeout(
                    f"Mandatory agents {', '.join(a for a in mandatory if a not in result.completed)} "
                    f"did not complete within {self.max_wait:.0f}s",
                    pending=result.pending,
                )

            await self._pause(pipeline_run_id)

    async def fan_out_progress(
        self,
        pipeline_run_id: UUID,
        agents: Iterable[str],
        expected: int,
    ) -> FanOutProgress:
        """One-shot read of a fan-out group's completion count."""
        counts = await self.ledger.fan_out_counts(pipeline_run_id, agents)
        return FanOutProgress(completed=counts.completed, failed=counts.failed, expected=expected)

    async def wait_for_fan_out(
        self,
        pipeline_run_id: UUID,
        agents: Iterable[str],
        expected: int,
    ) -> FanOutProgress:
        """
        Wait until ``expected`` distinct fan-out members completed.

        Raises:
            MandatoryAgentFailed: any member failed
            BarrierTimeout: budget exhausted
            PipelineCancelled: the pipeline was stopped while waiting
        """
        agents = list(agents)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.fan_out_max_wait

        while True:
            await self.guard.ensure_active(pipeline_run_id, "fan_out_barrier")
            progress = await self.fan_out_progress(pipeline_run_id, agents, expected)

            if progress.failed:
                raise MandatoryAgentFailed(
                    "/".join(agents),
                    f"{progress.failed} of {expected} {'/'.join(agents)} tasks failed",
                )
            if progress.released:
                return progress
            if loop.time() >= deadline:
                raise BarrierTimeout(
                    f"Only {progress.completed} of {expected} {'/'.join(agents)} tasks completed "
                    f"within {self.fan_out_max_wait:.0f}s"
                )

            await self._pause(pipeline_run_id)
