"""
Run Ledger.

Single source of truth for every coordination decision. Each operation
opens its own short session so that racing task invocations see each
other's committed writes.

Guarantees enforced in the statements themselves:
- status transitions only from an allowed source status
- agent runs reach a terminal status once, and only from running
- the retry counter never exceeds the pipeline's max_retries
- a one-time advance key is claimed by exactly one caller
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitegen.core.database import AsyncSessionLocal
from sitegen.core.models import (
    AgentRun,
    AgentRunStatus,
    GeneratedFile,
    PipelineAdvance,
    PipelineRun,
    PipelineStatus,
)
from sitegen.core.pipeline.phases import (
    STOPPABLE_STATUSES,
    TERMINAL_STATUSES,
    allowed_sources,
    phase_for_status,
)
from sitegen.core.pipeline.signals import CompletionSignal
from sitegen.core.schemas import Envelope, ProjectData

logger = structlog.get_logger()

STOP_PIPELINE_MESSAGE = "Manually stopped by admin"
STOP_AGENT_MESSAGE = "Pipeline stopped by admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(started_at: Optional[datetime], until: Optional[datetime] = None) -> Optional[int]:
    if started_at is None:
        return None
    # SQLite hands back naive datetimes
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return int(((until or utcnow()) - started_at).total_seconds() * 1000)


def to_decimal(value: float | Decimal | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(round(value, 6)))


@dataclass
class UsageTotals:
    tokens: int = 0
    cost_usd: Decimal = Decimal("0")
    duration_ms: int = 0


@dataclass
class FanOutCounts:
    completed: int = 0
    failed: int = 0
    running: int = 0


class RunLedger:
    """
    Persistent record of pipeline runs and agent runs.

    Args:
        session_factory: async session factory bound to the ledger database
        signal: optional in-process notifier woken on every terminal write
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        signal: Optional[CompletionSignal] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.signal = signal

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ==========================================================================
    # Pipeline Runs
    # ==========================================================================

    async def create_pipeline_run(
        self,
        project: ProjectData,
        *,
        correlation_id: str,
        input_hash: Optional[str] = None,
        max_retries: int = 3,
    ) -> PipelineRun:
        run = PipelineRun(
            project_id=project.id,
            correlation_id=correlation_id,
            status=PipelineStatus.PENDING,
            max_retries=max_retries,
            total_retries=0,
            total_tokens=0,
            total_cost_usd=Decimal("0"),
            files_generated=0,
            input_snapshot=project.to_wire(),
            input_hash=input_hash,
            run_metadata={},
            started_at=utcnow(),
        )
        async with self.session() as session:
            session.add(run)
            await session.flush()
            await session.refresh(run)

        logger.info(
            "pipeline_run_created",
            pipeline_run_id=str(run.id),
            project_id=project.id,
            correlation_id=correlation_id,
        )
        return run

    async def get_pipeline_run(self, pipeline_run_id: UUID) -> Optional[PipelineRun]:
        async with self.session() as session:
            return await session.get(PipelineRun, pipeline_run_id)

    async def get_status(self, pipeline_run_id: UUID) -> Optional[PipelineStatus]:
        async with self.session() as session:
            return await session.scalar(
                select(PipelineRun.status).where(PipelineRun.id == pipeline_run_id)
            )

    async def find_cached_run(self, project_id: str, input_hash: str) -> Optional[PipelineRun]:
        """Most recent completed run generated from identical input."""
        async with self.session() as session:
            return await session.scalar(
                select(PipelineRun)
                .where(
                    PipelineRun.project_id == project_id,
                    PipelineRun.input_hash == input_hash,
                    PipelineRun.status == PipelineStatus.COMPLETED,
                )
                .order_by(PipelineRun.completed_at.desc())
                .limit(1)
            )

    async def transition(
        self,
        pipeline_run_id: UUID,
        target: PipelineStatus,
        *,
        from_statuses: Optional[Iterable[PipelineStatus]] = None,
        **fields: Any,
    ) -> bool:
        """
        Move a pipeline to ``target`` if its current status allows it.

        The allowed source statuses are part of the UPDATE's WHERE clause, so
        a transition racing a stop or a terminal write simply matches no row.
        Without ``from_statuses`` only forward moves apply; a rollback must
        name its source explicitly.

        Returns:
            True when the row was updated
        """
        values: dict[str, Any] = {"status": target, **fields}
        phase = phase_for_status(target)
        if phase is not None:
            values["current_phase"] = phase
        if target in TERMINAL_STATUSES:
            values.setdefault("completed_at", utcnow())

        if from_statuses is None:
            sources = allowed_sources(target)
        else:
            permitted = allowed_sources(target, include_rollback=True)
            sources = [source for source in from_statuses if source in permitted]

        stmt = (
            update(PipelineRun)
            .where(
                PipelineRun.id == pipeline_run_id,
                PipelineRun.status.in_(sources),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            applied = result.rowcount == 1

        if applied:
            logger.info(
                "pipeline_transition",
                pipeline_run_id=str(pipeline_run_id),
                status=target.value,
            )
            if self.signal is not None:
                self.signal.notify(pipeline_run_id)
        else:
            logger.warning(
                "pipeline_transition_rejected",
                pipeline_run_id=str(pipeline_run_id),
                status=target.value,
            )
        return applied

    async def increment_retries(self, pipeline_run_id: UUID) -> Optional[int]:
        """
        Atomically bump total_retries while it is below max_retries.

        Returns:
            The new retry count, or None when retries are exhausted or the
            pipeline is no longer in the quality gate
        """
        stmt = (
            update(PipelineRun)
            .where(
                PipelineRun.id == pipeline_run_id,
                PipelineRun.status == PipelineStatus.PHASE_3,
                PipelineRun.total_retries < PipelineRun.max_retries,
            )
            .values(total_retries=PipelineRun.total_retries + 1)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            return await session.scalar(
                select(PipelineRun.total_retries).where(PipelineRun.id == pipeline_run_id)
            )

    async def add_usage(self, pipeline_run_id: UUID, tokens: int, cost_usd: float | Decimal) -> None:
        if not tokens and not cost_usd:
            return
        stmt = (
            update(PipelineRun)
            .where(PipelineRun.id == pipeline_run_id)
            .values(
                total_tokens=PipelineRun.total_tokens + tokens,
                total_cost_usd=PipelineRun.total_cost_usd + to_decimal(cost_usd),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            await session.execute(stmt)

    async def aggregate_usage(self, pipeline_run_id: UUID) -> UsageTotals:
        async with self.session() as session:
            row = (
                await session.execute(
                    select(
                        func.coalesce(func.sum(AgentRun.input_tokens + AgentRun.output_tokens), 0),
                        func.coalesce(func.sum(AgentRun.cost_usd), 0),
                        func.coalesce(func.sum(AgentRun.duration_ms), 0),
                    ).where(AgentRun.pipeline_run_id == pipeline_run_id)
                )
            ).one()
        return UsageTotals(tokens=int(row[0]), cost_usd=to_decimal(row[1]), duration_ms=int(row[2]))

    async def update_pipeline(self, pipeline_run_id: UUID, **fields: Any) -> None:
        """Write informational fields that carry no coordination meaning."""
        stmt = (
            update(PipelineRun)
            .where(PipelineRun.id == pipeline_run_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            await session.execute(stmt)

    # ==========================================================================
    # One-time Advance
    # ==========================================================================

    async def is_flag_set(self, pipeline_run_id: UUID, key: str) -> bool:
        async with self.session() as session:
            metadata = await session.scalar(
                select(PipelineRun.run_metadata).where(PipelineRun.id == pipeline_run_id)
            )
        return bool((metadata or {}).get(key))

    async def claim_advance(self, pipeline_run_id: UUID, key: str, claimed_by: Optional[str] = None) -> bool:
        """
        Claim the one-time advance ``key`` for a pipeline.

        The metadata flag is a fast path; the unique row in
        pipeline_advances decides.

        Returns:
            True for exactly one caller per (pipeline, key)
        """
        if await self.is_flag_set(pipeline_run_id, key):
            return False

        try:
            async with self.session() as session:
                session.add(
                    PipelineAdvance(
                        pipeline_run_id=pipeline_run_id,
                        barrier_key=key,
                        claimed_by=claimed_by,
                    )
                )
                await session.flush()
        except IntegrityError:
            logger.info(
                "advance_already_claimed",
                pipeline_run_id=str(pipeline_run_id),
                key=key,
                claimed_by=claimed_by,
            )
            return False

        async with self.session() as session:
            run = await session.get(PipelineRun, pipeline_run_id)
            if run is not None:
                run.run_metadata = {**(run.run_metadata or {}), key: True}

        logger.info(
            "advance_claimed",
            pipeline_run_id=str(pipeline_run_id),
            key=key,
            claimed_by=claimed_by,
        )
        return True

    # ==========================================================================
    # Agent Runs
    # ==========================================================================

    async def create_agent_run(
        self,
        envelope: Envelope,
        input_data: Optional[dict[str, Any]] = None,
    ) -> UUID:
        """Record a running agent invocation at the envelope's position."""
        meta = envelope.meta
        agent_run = AgentRun(
            pipeline_run_id=meta.pipeline_run_id,
            project_id=meta.project_id,
            agent_name=meta.agent_name,
            phase=meta.phase,
            sequence=meta.sequence,
            attempt=meta.attempt,
            status=AgentRunStatus.RUNNING,
            started_at=utcnow(),
            input_tokens=0,
            output_tokens=0,
            cost_usd=Decimal("0"),
            input_data=input_data,
        )
        async with self.session() as session:
            session.add(agent_run)
            await session.flush()
            agent_run_id = agent_run.id

        await self.update_pipeline(meta.pipeline_run_id, current_agent=meta.agent_name)
        return agent_run_id

    async def finish_agent_run(
        self,
        agent_run_id: UUID,
        status: AgentRunStatus,
        *,
        output: Optional[dict[str, Any]] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: float | Decimal = 0,
        model: Optional[str] = None,
        quality_score: Optional[float] = None,
        validation_passed: Optional[bool] = None,
        validation_errors: Optional[list] = None,
    ) -> bool:
        """
        Move a running agent run to its terminal status.

        Returns:
            False when the row was no longer running (the stop operation
            cancelled it first)
        """
        now = utcnow()
        async with self.session() as session:
            row = (
                await session.execute(
                    select(AgentRun.pipeline_run_id, AgentRun.started_at).where(AgentRun.id == agent_run_id)
                )
            ).one_or_none()
            if row is None:
                return False
            pipeline_run_id, started_at = row

            result = await session.execute(
                update(AgentRun)
                .where(AgentRun.id == agent_run_id, AgentRun.status == AgentRunStatus.RUNNING)
                .values(
                    status=status,
                    completed_at=now,
                    duration_ms=elapsed_ms(started_at, now),
                    output_data=output,
                    error_code=error_code,
                    error_message=error_message,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost_usd=to_decimal(cost_usd),
                    model_used=model,
                    quality_score=to_decimal(quality_score) if quality_score is not None else None,
                    validation_passed=validation_passed,
                    validation_errors=validation_errors,
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if applied and self.signal is not None:
            self.signal.notify(pipeline_run_id)
        return applied

    async def get_agent_run(self, agent_run_id: UUID) -> Optional[AgentRun]:
        async with self.session() as session:
            return await session.get(AgentRun, agent_run_id)

    async def load_agent_output(self, pipeline_run_id: UUID, agent_name: str) -> Optional[dict[str, Any]]:
        """Output of the most recent completed run of ``agent_name``."""
        async with self.session() as session:
            return await session.scalar(
                select(AgentRun.output_data)
                .where(
                    AgentRun.pipeline_run_id == pipeline_run_id,
                    AgentRun.agent_name == agent_name,
                    AgentRun.status == AgentRunStatus.COMPLETED,
                )
                .order_by(AgentRun.completed_at.desc(), AgentRun.attempt.desc())
                .limit(1)
            )

    async def load_agent_outputs(
        self,
        pipeline_run_id: UUID,
        agent_names: Iterable[str],
    ) -> dict[str, dict[str, Any]]:
        outputs = {}
        for agent_name in agent_names:
            output = await self.load_agent_output(pipeline_run_id, agent_name)
            if output is not None:
                outputs[agent_name] = output
        return outputs

    async def load_completed_outputs(self, pipeline_run_id: UUID, agent_name: str) -> list[dict[str, Any]]:
        """Outputs of every completed fan-out member, ordered by sequence."""
        async with self.session() as session:
            result = await session.scalars(
                select(AgentRun.output_data)
                .where(
                    AgentRun.pipeline_run_id == pipeline_run_id,
                    AgentRun.agent_name == agent_name,
                    AgentRun.status == AgentRunStatus.COMPLETED,
                )
                .order_by(AgentRun.sequence, AgentRun.completed_at)
            )
            return [output for output in result.all() if output is not None]

    async def agent_statuses(
        self,
        pipeline_run_id: UUID,
        agent_names: Iterable[str],
        phase: Optional[int] = None,
    ) -> dict[str, AgentRunStatus]:
        """
        Status of each agent in the phase; agents with no run are absent.

        A completed run wins over any other run of the same agent, so a
        duplicate dispatch that fails afterwards does not undo the result.
        Otherwise the latest run decides.
        """
        stmt = (
            select(AgentRun.agent_name, AgentRun.status)
            .where(
                AgentRun.pipeline_run_id == pipeline_run_id,
                AgentRun.agent_name.in_(list(agent_names)),
            )
            .order_by(AgentRun.started_at)
        )
        if phase is not None:
            stmt = stmt.where(AgentRun.phase == phase)
        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
        statuses: dict[str, AgentRunStatus] = {}
        for agent_name, status in rows:
            if statuses.get(agent_name) != AgentRunStatus.COMPLETED:
                statuses[agent_name] = status
        return statuses

    async def fan_out_counts(self, pipeline_run_id: UUID, agent_names: Iterable[str]) -> FanOutCounts:
        """
        Count fan-out members by status.

        Completed members are counted by distinct (agent, sequence) so a
        duplicated dispatch of the same member does not inflate the count.
        """
        names = list(agent_names)
        async with self.session() as session:
            rows = (
                await session.execute(
                    select(AgentRun.agent_name, AgentRun.sequence, AgentRun.status).where(
                        AgentRun.pipeline_run_id == pipeline_run_id,
                        AgentRun.agent_name.in_(names),
                    )
                )
            ).all()

        completed = {(name, seq) for name, seq, status in rows if status == AgentRunStatus.COMPLETED}
        failed = {(name, seq) for name, seq, status in rows if status == AgentRunStatus.FAILED} - completed
        running = {(name, seq) for name, seq, status in rows if status == AgentRunStatus.RUNNING} - completed
        return FanOutCounts(completed=len(completed), failed=len(failed), running=len(running))

    async def count_agent_runs(
        self,
        pipeline_run_id: UUID,
        agent_names: Iterable[str],
        status: AgentRunStatus = AgentRunStatus.COMPLETED,
    ) -> int:
        async with self.session() as session:
            return await session.scalar(
                select(func.count(AgentRun.id)).where(
                    AgentRun.pipeline_run_id == pipeline_run_id,
                    AgentRun.agent_name.in_(list(agent_names)),
                    AgentRun.status == status,
                )
            ) or 0

    async def has_completed_run(
        self,
        pipeline_run_id: UUID,
        agent_name: str,
        exclude_id: Optional[UUID] = None,
    ) -> bool:
        stmt = select(func.count(AgentRun.id)).where(
            AgentRun.pipeline_run_id == pipeline_run_id,
            AgentRun.agent_name == agent_name,
            AgentRun.status == AgentRunStatus.COMPLETED,
        )
        if exclude_id is not None:
            stmt = stmt.where(AgentRun.id != exclude_id)
        async with self.session() as session:
            return bool(await session.scalar(stmt))

    # ==========================================================================
    # Stop
    # ==========================================================================

    async def stop_active(self, project_id: Optional[str] = None) -> tuple[int, int]:
        """
        Cancel every active pipeline run and in-flight agent run in scope.

        Returns:
            (stopped pipeline count, stopped agent run count)
        """
        now = utcnow()
        pipeline_stmt = (
            update(PipelineRun)
            .where(PipelineRun.status.in_(list(STOPPABLE_STATUSES)))
            .values(
                status=PipelineStatus.CANCELLED,
                completed_at=now,
                error_message=STOP_PIPELINE_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )
        agent_stmt = (
            update(AgentRun)
            .where(AgentRun.status.in_([AgentRunStatus.PENDING, AgentRunStatus.RUNNING]))
            .values(
                status=AgentRunStatus.CANCELLED,
                completed_at=now,
                error_message=STOP_AGENT_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )
        if project_id is not None:
            pipeline_stmt = pipeline_stmt.where(PipelineRun.project_id == project_id)
            agent_stmt = agent_stmt.where(AgentRun.project_id == project_id)

        async with self.session() as session:
            stopped_pipelines = (await session.execute(pipeline_stmt)).rowcount
            stopped_agents = (await session.execute(agent_stmt)).rowcount

        if self.signal is not None:
            self.signal.notify_all()
        return stopped_pipelines, stopped_agents

    # ==========================================================================
    # Generated Files
    # ==========================================================================

    async def upsert_files(
        self,
        project_id: str,
        files: dict[str, str],
        *,
        pipeline_run_id: Optional[UUID] = None,
        agent_name: Optional[str] = None,
    ) -> int:
        """Insert or replace generated files keyed by (project, path)."""
        if not files:
            return 0
        async with self.session() as session:
            existing = {
                generated.file_path: generated
                for generated in (
                    await session.scalars(
                        select(GeneratedFile).where(
                            GeneratedFile.project_id == project_id,
                            GeneratedFile.file_path.in_(list(files)),
                        )
                    )
                ).all()
            }
            for file_path, content in files.items():
                generated = existing.get(file_path)
                if generated is None:
                    session.add(
                        GeneratedFile(
                            project_id=project_id,
                            pipeline_run_id=pipeline_run_id,
                            file_path=file_path,
                            content=content,
                            agent_name=agent_name,
                        )
                    )
                else:
                    generated.content = content
                    generated.pipeline_run_id = pipeline_run_id
                    generated.agent_name = agent_name
        return len(files)

    async def list_files(self, project_id: str) -> dict[str, str]:
        async with self.session() as session:
            rows = (
                await session.execute(
                    select(GeneratedFile.file_path, GeneratedFile.content)
                    .where(GeneratedFile.project_id == project_id)
                    .order_by(GeneratedFile.file_path)
                )
            ).all()
        return {file_path: content for file_path, content in rows}
