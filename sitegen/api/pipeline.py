"""
SiteForge Pipeline - Pipeline API
=================================

Start and stop pipeline runs, and read the run ledger.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select

from sitegen.api.deps import DbSession, ServiceAuth, Services
from sitegen.core.exceptions import InvalidTransition
from sitegen.core.models import AgentRun, PipelineRun, PipelineStatus
from sitegen.core.schemas import (
    AgentRunResponse,
    PipelineRunResponse,
    StartPipelineRequest,
    StartPipelineResponse,
    StopPipelineRequest,
    StopPipelineResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


# ==========================================================================
# Helper Functions
# ==========================================================================

def _run_to_response(run: PipelineRun) -> PipelineRunResponse:
    """Convert a PipelineRun row to its response model."""
    return PipelineRunResponse(
        id=run.id,
        project_id=run.project_id,
        correlation_id=run.correlation_id,
        status=run.status.value,
        current_phase=run.current_phase,
        current_agent=run.current_agent,
        total_tokens=run.total_tokens or 0,
        total_cost_usd=float(run.total_cost_usd or 0),
        total_retries=run.total_retries or 0,
        max_retries=run.max_retries,
        quality_score=float(run.quality_score) if run.quality_score is not None else None,
        files_generated=run.files_generated or 0,
        preview_url=run.preview_url,
        error_code=run.error_code,
        error_message=run.error_message,
        error_agent=run.error_agent,
        metadata=run.run_metadata,
        started_at=run.started_at,
        completed_at=run.completed_at,
        duration_ms=run.duration_ms,
        created_at=run.created_at,
    )


def _agent_run_to_response(agent_run: AgentRun) -> AgentRunResponse:
    return AgentRunResponse(
        id=agent_run.id,
        agent_name=agent_run.agent_name,
        phase=agent_run.phase,
        sequence=agent_run.sequence,
        attempt=agent_run.attempt,
        status=agent_run.status.value,
        quality_score=float(agent_run.quality_score) if agent_run.quality_score is not None else None,
        input_tokens=agent_run.input_tokens or 0,
        output_tokens=agent_run.output_tokens or 0,
        cost_usd=float(agent_run.cost_usd or 0),
        model_used=agent_run.model_used,
        error_code=agent_run.error_code,
        error_message=agent_run.error_message,
        output_data=agent_run.output_data,
        started_at=agent_run.started_at,
        completed_at=agent_run.completed_at,
        duration_ms=agent_run.duration_ms,
    )


async def get_run_or_404(pipeline_run_id: UUID, db) -> PipelineRun:
    """Get pipeline run by ID or raise 404."""
    run = await db.get(PipelineRun, pipeline_run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Pipeline run not found",
        )
    return run


# ==========================================================================
# Control
# ==========================================================================

@router.post(
    "/start",
    response_model=StartPipelineResponse,
    dependencies=[ServiceAuth],
    summary="Start a pipeline run",
    responses={
        200: {"description": "Run started, or the cached completed run"},
        409: {"description": "Run could not enter phase_1"},
    },
)
async def start_pipeline(request: StartPipelineRequest, services: Services) -> StartPipelineResponse:
    """
    Create a pipeline run and dispatch phase 1.

    When the same project payload was already generated, the completed run
    is returned with ``cached: true`` unless ``forceRegenerate`` is set.
    """
    try:
        result = await services.controller.start_pipeline(request.project, request.force_regenerate)
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return StartPipelineResponse(
        success=True,
        pipeline_run_id=result.run.id,
        correlation_id=result.run.correlation_id,
        status=result.run.status.value,
        cached=result.cached,
        agents=result.agents,
    )


@router.post(
    "/stop",
    response_model=StopPipelineResponse,
    dependencies=[ServiceAuth],
    summary="Stop active pipeline runs",
)
async def stop_pipeline(
    services: Services,
    request: Optional[StopPipelineRequest] = None,
) -> StopPipelineResponse:
    """
    Cancel every active run and in-flight agent run.

    Scoped to one project when ``projectId`` is given.
    """
    project_id = request.project_id if request else None
    stopped_pipelines, stopped_agents = await services.guard.stop(project_id)
    return StopPipelineResponse(
        success=True,
        message=f"Stopped {stopped_pipelines} pipelines and {stopped_agents} agent runs",
        stopped_pipelines=stopped_pipelines,
        stopped_agents=stopped_agents,
    )


# ==========================================================================
# Runs
# ==========================================================================

@router.get(
    "/runs",
    response_model=list[PipelineRunResponse],
    summary="List pipeline runs",
    dependencies=[ServiceAuth],
)
async def list_runs(
    db: DbSession,
    status_filter: Optional[PipelineStatus] = Query(None, alias="status", description="Filter by status"),
    project_id: Optional[str] = Query(None, description="Filter by project"),
    limit: int = Query(50, ge=1, le=200, description="Maximum runs returned"),
) -> list[PipelineRunResponse]:
    """Most recent runs first."""
    query = select(PipelineRun)
    if status_filter:
        query = query.where(PipelineRun.status == status_filter)
    if project_id:
        query = query.where(PipelineRun.project_id == project_id)
    query = query.order_by(PipelineRun.created_at.desc()).limit(limit)

    result = await db.execute(query)
    return [_run_to_response(run) for run in result.scalars().all()]


@router.get(
    "/runs/{pipeline_run_id}",
    response_model=PipelineRunResponse,
    summary="Get pipeline run",
    dependencies=[ServiceAuth],
    responses={404: {"description": "Pipeline run not found"}},
)
async def get_run(pipeline_run_id: UUID, db: DbSession) -> PipelineRunResponse:
    run = await get_run_or_404(pipeline_run_id, db)
    return _run_to_response(run)


@router.get(
    "/runs/{pipeline_run_id}/agents",
    response_model=list[AgentRunResponse],
    summary="List agent runs of a pipeline run",
    dependencies=[ServiceAuth],
    responses={404: {"description": "Pipeline run not found"}},
)
async def list_agent_runs(pipeline_run_id: UUID, db: DbSession) -> list[AgentRunResponse]:
    """Agent runs in execution order."""
    await get_run_or_404(pipeline_run_id, db)
    result = await db.execute(
        select(AgentRun)
        .where(AgentRun.pipeline_run_id == pipeline_run_id)
        .order_by(AgentRun.phase, AgentRun.sequence, AgentRun.attempt, AgentRun.started_at)
    )
    return [_agent_run_to_response(agent_run) for agent_run in result.scalars().all()]
