"""
SiteForge Pipeline - Database Models
=====================================

SQLAlchemy models for the run ledger.

The ledger is the only coordination primitive between task invocations:
every phase decision is taken by reading these rows, never from memory.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sitegen.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class PipelineStatus(str, enum.Enum):
    """Pipeline run status. phase_N markers track the active phase."""
    PENDING = "pending"
    PHASE_1 = "phase_1"
    PHASE_2 = "phase_2"
    PHASE_3 = "phase_3"
    PHASE_4 = "phase_4"
    PHASE_5 = "phase_5"
    PHASE_6 = "phase_6"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_HUMAN = "needs_human"  # Quality gate escalation
    CANCELLED = "cancelled"      # Written only by the stop operation


class AgentRunStatus(str, enum.Enum):
    """Status of a single agent invocation."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Run Ledger
# ==========================================================================

class PipelineRun(Base, TimestampMixin):
    """
    One website generation attempt.

    Created once per attempt, never deleted; a regeneration supersedes it
    with a new row.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    correlation_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Pipeline state
    status: Mapped[PipelineStatus] = mapped_column(
        Enum(PipelineStatus, name="pipelinestatus", values_callable=_enum_values),
        default=PipelineStatus.PENDING,
        nullable=False,
        index=True,
    )
    current_phase: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    current_agent: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    # Usage
    total_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    total_cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        default=Decimal("0"),
        nullable=False,
    )

    # Quality gate
    total_retries: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        default=3,
        nullable=False,
    )
    quality_score: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(4, 2),
        nullable=True,
    )  # 0-10

    # Results
    files_generated: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    preview_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    error_code: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    error_agent: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    # Input cache key
    input_snapshot: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    input_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    # Coordination flags, mirrored from pipeline_advances
    run_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )

    # Relationships
    agent_runs: Mapped[list["AgentRun"]] = relationship(
        back_populates="pipeline_run",
        cascade="all, delete-orphan",
        order_by="AgentRun.created_at",
    )

    def __repr__(self) -> str:
        return f"<PipelineRun {self.id} project={self.project_id} status={self.status.value}>"


class AgentRun(Base):
    """
    One agent invocation.

    Created as running at the start of every invocation (skips included),
    moved to a terminal status exactly once by its owner.
    """

    __tablename__ = "agent_runs"
    __table_args__ = (
        Index("ix_agent_runs_pipeline_agent", "pipeline_run_id", "agent_name", "status"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    pipeline_run_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Position
    agent_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    phase: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # Display tie-break only
    attempt: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    status: Mapped[AgentRunStatus] = mapped_column(
        Enum(AgentRunStatus, name="agentrunstatus", values_callable=_enum_values),
        default=AgentRunStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    # Usage
    model_used: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    input_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    output_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        default=Decimal("0"),
        nullable=False,
    )

    # Validation
    quality_score: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(4, 2),
        nullable=True,
    )
    validation_passed: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
    )
    validation_errors: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
    )

    # Errors
    error_code: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Payloads (opaque to the orchestration core)
    input_data: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    output_data: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    pipeline_run: Mapped["PipelineRun"] = relationship(
        back_populates="agent_runs",
    )

    def __repr__(self) -> str:
        return f"<AgentRun {self.agent_name} phase={self.phase} seq={self.sequence} status={self.status.value}>"


class PipelineAdvance(Base):
    """
    One-time advance token.

    The unique constraint makes "only one sibling triggers the next phase"
    a property of the store: a second insert for the same key fails.
    """

    __tablename__ = "pipeline_advances"
    __table_args__ = (
        UniqueConstraint("pipeline_run_id", "barrier_key", name="uq_pipeline_advance"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    pipeline_run_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    barrier_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    claimed_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PipelineAdvance {self.barrier_key} by={self.claimed_by}>"


class GeneratedFile(Base, TimestampMixin):
    """Source file produced by code generation, keyed by project and path."""

    __tablename__ = "generated_files"
    __table_args__ = (
        UniqueConstraint("project_id", "file_path", name="uq_generated_file_path"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    pipeline_run_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("pipeline_runs.id", ondelete="SET NULL"),
        nullable=True,
    )
    file_path: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    agent_name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<GeneratedFile {self.file_path}>"
