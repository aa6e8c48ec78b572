"""
SiteForge Pipeline - Pydantic Schemas
======================================

Wire schemas: the task envelope, the project payload, the agent response
and the admin API bodies. Task traffic is camelCase on the wire.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class CamelSchema(BaseSchema):
    """Schema serialized with camelCase keys."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Project Payload
# ==========================================================================

PackageType = Literal["basic", "professional", "enterprise"]


class Location(CamelSchema):
    city: Optional[str] = None
    country: Optional[str] = None


class Contact(CamelSchema):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class PageSpec(CamelSchema):
    """A page to generate and the section types it is built from."""

    id: str
    name: str
    slug: str
    sections: list[str] = Field(default_factory=list)


class ProjectData(CamelSchema):
    """Full client project payload carried by every envelope."""

    id: str
    name: str
    brief: str = ""
    target_audience: Optional[str] = None
    website_style: Optional[str] = None
    package_type: PackageType = "basic"
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    brand_voice: Optional[str] = None
    industry: Optional[str] = None
    company_size: Optional[str] = None
    location: Optional[Location] = None
    contact: Optional[Contact] = None
    pages: list[PageSpec] = Field(default_factory=list)
    addons: list[str] = Field(default_factory=list)
    competitors: list[str] = Field(default_factory=list)
    usps: list[str] = Field(default_factory=list)
    email_domain: Optional[str] = None

    def has_addon(self, *names: str) -> bool:
        return any(name in self.addons for name in names)

    @property
    def section_count(self) -> int:
        return sum(len(page.sections) for page in self.pages)


# ==========================================================================
# Envelope
# ==========================================================================

class QualityIssue(CamelSchema):
    """Structured review finding handed back to content assembly."""

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    severity: Literal["critical", "major", "minor"] = "minor"
    category: Optional[str] = None
    message: str
    location: Optional[str] = None


class QualityFeedback(CamelSchema):
    """Review result folded into a content retry."""

    attempt: int
    score: float
    threshold: float
    issues: list[QualityIssue] = Field(default_factory=list)
    previous_output: Optional[dict[str, Any]] = None


class EnvelopeMeta(CamelSchema):
    pipeline_run_id: UUID
    project_id: str
    correlation_id: str
    agent_name: str
    phase: int
    sequence: int = 0
    attempt: int = 1
    max_attempts: int = 3
    timestamp: datetime = Field(default_factory=utcnow)
    # Fan-out members only
    item: Optional[dict[str, Any]] = None
    expected_sibling_count: Optional[int] = None


class Envelope(CamelSchema):
    """
    Message passed into every task invocation.

    The TaskRun an agent creates copies ``phase``, ``sequence`` and
    ``attempt`` from ``meta`` verbatim.
    """

    meta: EnvelopeMeta
    project: ProjectData
    feedback: Optional[QualityFeedback] = None

    @property
    def pipeline_run_id(self) -> UUID:
        return self.meta.pipeline_run_id

    @property
    def agent_name(self) -> str:
        return self.meta.agent_name

    def for_agent(
        self,
        agent_name: str,
        phase: int,
        sequence: int = 0,
        *,
        attempt: int = 1,
        item: Optional[dict[str, Any]] = None,
        expected_sibling_count: Optional[int] = None,
        feedback: Optional[QualityFeedback] = None,
    ) -> "Envelope":
        """Derive the envelope of the next task in the same pipeline."""
        meta = EnvelopeMeta(
            pipeline_run_id=self.meta.pipeline_run_id,
            project_id=self.meta.project_id,
            correlation_id=self.meta.correlation_id,
            agent_name=agent_name,
            phase=phase,
            sequence=sequence,
            attempt=attempt,
            max_attempts=self.meta.max_attempts,
            item=item,
            expected_sibling_count=expected_sibling_count,
        )
        return Envelope(meta=meta, project=self.project, feedback=feedback)

    def idempotency_key(self) -> str:
        key = f"{self.meta.pipeline_run_id}:{self.meta.phase}:{self.meta.agent_name}:{self.meta.attempt}"
        if self.meta.item is not None:
            key = f"{key}:{self.meta.sequence}"
        return key


# ==========================================================================
# Agent Response
# ==========================================================================

class QualityReport(CamelSchema):
    score: Optional[float] = None
    passed: bool = True
    issues: list[dict[str, Any]] = Field(default_factory=list)
    critical_count: int = 0


class ControlDirective(CamelSchema):
    next_phase: Optional[int] = None
    next_agents: list[str] = Field(default_factory=list)
    should_retry: bool = False
    retry_agent: Optional[str] = None
    retry_reason: Optional[str] = None
    is_complete: bool = False
    abort: bool = False
    abort_reason: Optional[str] = None


class UsageMetrics(CamelSchema):
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None
    cost_usd: float = 0.0


class AgentError(CamelSchema):
    code: str
    message: str
    recoverable: bool = False


class AgentResponse(CamelSchema):
    """Reply of a task invocation endpoint."""

    success: bool
    agent_name: str
    task_run_id: Optional[UUID] = None
    status: Optional[str] = None  # "processing" for background tasks
    output: Optional[dict[str, Any]] = None
    quality: Optional[QualityReport] = None
    control: Optional[ControlDirective] = None
    metrics: Optional[UsageMetrics] = None
    error: Optional[AgentError] = None


# ==========================================================================
# Pipeline Admin API
# ==========================================================================

class StartPipelineRequest(CamelSchema):
    project: ProjectData
    force_regenerate: bool = False


class StartPipelineResponse(CamelSchema):
    success: bool
    pipeline_run_id: UUID
    correlation_id: str
    status: str
    cached: bool = False
    agents: list[str] = Field(default_factory=list)


class StopPipelineRequest(CamelSchema):
    project_id: Optional[str] = None


class StopPipelineResponse(CamelSchema):
    success: bool
    message: str
    stopped_pipelines: int
    stopped_agents: int


class PipelineRunResponse(BaseSchema):
    """Pipeline run as shown to dashboards."""

    id: UUID
    project_id: str
    correlation_id: str
    status: str
    current_phase: Optional[int]
    current_agent: Optional[str]
    total_tokens: int
    total_cost_usd: float
    total_retries: int
    max_retries: int
    quality_score: Optional[float]
    files_generated: int
    preview_url: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]
    error_agent: Optional[str]
    metadata: Optional[dict] = None
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    created_at: datetime


class AgentRunResponse(BaseSchema):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True, protected_namespaces=())

    id: UUID
    agent_name: str
    phase: int
    sequence: int
    attempt: int
    status: str
    quality_score: Optional[float]
    input_tokens: int
    output_tokens: int
    cost_usd: float
    model_used: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]
    output_data: Optional[dict]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_ms: Optional[int]


# ==========================================================================
# Common Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
