"""
Cancellation Guard.

Cooperative cancellation: tasks re-read the pipeline status around every
externally visible side effect. The stop operation is the only writer of
the cancelled status.
"""

from typing import Optional
from uuid import UUID

import structlog

from sitegen.core.exceptions import PipelineCancelled
from sitegen.core.models import PipelineStatus
from sitegen.core.pipeline.ledger import RunLedger

logger = structlog.get_logger()


class CancellationGuard:
    def __init__(self, ledger: RunLedger):
        self.ledger = ledger

    async def is_cancelled(self, pipeline_run_id: UUID) -> bool:
        return await self.ledger.get_status(pipeline_run_id) == PipelineStatus.CANCELLED

    async def ensure_active(self, pipeline_run_id: UUID, checkpoint: str = "") -> None:
        """Raise PipelineCancelled when the pipeline has been stopped."""
        if await self.is_cancelled(pipeline_run_id):
            logger.info(
                "pipeline_cancelled_observed",
                pipeline_run_id=str(pipeline_run_id),
                checkpoint=checkpoint,
            )
            raise PipelineCancelled(pipeline_run_id)

    async def stop(self, project_id: Optional[str] = None) -> tuple[int, int]:
        """
        Cancel every active pipeline and agent run, for one project or all.

        Returns:
            (stopped pipelines, stopped agent runs)
        """
        stopped_pipelines, stopped_agents = await self.ledger.stop_active(project_id)
        logger.warning(
            "pipelines_stopped",
            project_id=project_id,
            stopped_pipelines=stopped_pipelines,
            stopped_agents=stopped_agents,
        )
        return stopped_pipelines, stopped_agents
