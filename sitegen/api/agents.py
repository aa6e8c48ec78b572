"""
SiteForge Pipeline - Agent Task API
===================================

One endpoint per agent name. The dispatcher posts an envelope here; the
agent records its run, executes and hands the pipeline on.

Background agents (section-generator, page-builder) answer "processing" as
soon as their run is recorded and continue after the response.
"""

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, status
from fastapi.responses import JSONResponse

from sitegen.api.deps import ServiceAuth, Services
from sitegen.core.agents.registry import AGENTS, create_task
from sitegen.core.exceptions import PipelineCancelled
from sitegen.core.schemas import Envelope

logger = structlog.get_logger()

router = APIRouter(prefix="/agents", tags=["Agents"], dependencies=[ServiceAuth])


@router.post(
    "/{agent_name}",
    summary="Run an agent task",
    responses={
        200: {"description": "Agent response, or processing acknowledgment for background agents"},
        400: {"description": "Envelope addressed to another agent"},
        404: {"description": "Unknown agent"},
        500: {"description": "Agent failed"},
    },
)
async def run_agent(
    agent_name: str,
    envelope: Envelope,
    services: Services,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """
    Execute one agent invocation for the envelope's pipeline run.
    """
    if agent_name not in AGENTS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown agent: {agent_name}",
        )
    if envelope.agent_name != agent_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Envelope is addressed to {envelope.agent_name}, not {agent_name}",
        )

    task = create_task(agent_name, services, envelope)

    if task.background:
        task_run_id = await task.start()
        background_tasks.add_task(task.run)
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "success": True,
                "status": "processing",
                "taskRunId": str(task_run_id),
                "agentName": agent_name,
            },
        )

    response = await task.handle()
    failed = not response.success and (response.error is None or response.error.code != PipelineCancelled.code)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR if failed else status.HTTP_200_OK,
        content=response.to_wire(),
    )
