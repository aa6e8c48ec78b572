"""
SiteForge Pipeline - Errors
===========================

Orchestration error taxonomy. Each error carries a stable ``code`` that is
written to the ``error_code`` columns of the ledger.

Quality failure is absent: the quality gate handles a low score
as a routing decision, not as an exception.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for orchestration errors."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class PipelineCancelled(PipelineError):
    """The owning pipeline was stopped. Not a failure."""

    code = "PIPELINE_CANCELLED"

    def __init__(self, pipeline_run_id, message: str = "Pipeline was cancelled"):
        super().__init__(message)
        self.pipeline_run_id = pipeline_run_id


class MandatoryAgentFailed(PipelineError):
    """A barrier member whose completion is required has failed."""

    code = "MANDATORY_AGENT_FAILED"

    def __init__(self, agent_name: str, message: Optional[str] = None):
        super().__init__(message or f"Mandatory agent {agent_name} failed")
        self.agent_name = agent_name


class BarrierTimeout(PipelineError):
    """A barrier exhausted its wall-clock budget without releasing."""

    code = "BARRIER_TIMEOUT"

    def __init__(self, message: str, pending: Optional[list[str]] = None):
        super().__init__(message)
        self.pending = pending or []


class MissingUpstreamOutput(PipelineError):
    """A required output from an earlier agent is not in the ledger."""

    code = "MISSING_UPSTREAM_OUTPUT"

    def __init__(self, agent_name: str):
        super().__init__(f"No completed output from {agent_name}")
        self.agent_name = agent_name


class SkipAgent(PipelineError):
    """The agent has nothing to do for this project; record a skip."""

    code = "SKIPPED"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class IntegrationNotConfigured(SkipAgent):
    """Credentials or settings for an optional integration are missing."""

    code = "INTEGRATION_NOT_CONFIGURED"


class UpstreamError(PipelineError):
    """An outbound API call failed."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Timeout, rate limit or 5xx that survived the bounded retry."""

    code = "TRANSIENT_UPSTREAM_ERROR"


class UpstreamResponseError(UpstreamError):
    """The upstream answered, but the answer is unusable."""

    code = "UPSTREAM_RESPONSE_ERROR"


class InvalidTransition(PipelineError):
    """A status transition was rejected by the ledger."""

    code = "INVALID_TRANSITION"
