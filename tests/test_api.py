"""
SiteForge Pipeline - API Tests
==============================

Health, pipeline control, run ledger reads and the agent task endpoint.
"""

from uuid import UUID

import pytest

from sitegen.core.exceptions import UpstreamError
from sitegen.core.models import AgentRunStatus, PipelineStatus
from sitegen.core.pipeline import phases

API = "/api/v1"


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"

    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["api"] == API


# ==========================================================================
# Pipeline Control
# ==========================================================================

class TestPipelineControl:
    async def test_start_returns_camel_case(self, client, services, project):
        response = await client.post(f"{API}/pipeline/start", json={"project": project.to_wire()})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "phase_1"
        assert data["cached"] is False
        assert data["correlationId"].startswith("pipe-")
        assert data["agents"][-1] == phases.COLLECTOR

        await services.dispatcher.drain()
        assert len(services.dispatcher.sent) == 6

    async def test_start_validates_project(self, client):
        response = await client.post(f"{API}/pipeline/start", json={"project": {"name": "No id"}})

        assert response.status_code == 422

    async def test_force_regenerate_flag(self, client, services, project):
        first = (await client.post(f"{API}/pipeline/start", json={"project": project.to_wire()})).json()
        run_id = first["pipelineRunId"]
        for status in ("phase_2", "phase_3", "phase_4", "phase_6", "completed"):
            assert await services.ledger.transition(UUID(run_id), PipelineStatus(status))

        cached = (await client.post(f"{API}/pipeline/start", json={"project": project.to_wire()})).json()
        forced = (
            await client.post(
                f"{API}/pipeline/start",
                json={"project": project.to_wire(), "forceRegenerate": True},
            )
        ).json()

        assert cached["cached"] is True
        assert cached["pipelineRunId"] == run_id
        assert forced["cached"] is False
        assert forced["pipelineRunId"] != run_id

    async def test_stop_all(self, client, running_pipeline):
        await running_pipeline(PipelineStatus.PHASE_1)
        await running_pipeline(PipelineStatus.PHASE_3)

        response = await client.post(f"{API}/pipeline/stop")

        assert response.status_code == 200
        data = response.json()
        assert data["stoppedPipelines"] == 2
        assert data["message"] == "Stopped 2 pipelines and 0 agent runs"

    async def test_stop_one_project(self, client, services, project, running_pipeline):
        other = project.model_copy(update={"id": "proj-florist"})
        mine = await running_pipeline(PipelineStatus.PHASE_2)
        theirs = await running_pipeline(PipelineStatus.PHASE_2, for_project=other)

        response = await client.post(f"{API}/pipeline/stop", json={"projectId": "proj-florist"})

        assert response.json()["stoppedPipelines"] == 1
        assert await services.ledger.get_status(mine) == PipelineStatus.PHASE_2
        assert await services.ledger.get_status(theirs) == PipelineStatus.CANCELLED


# ==========================================================================
# Run Ledger
# ==========================================================================

class TestRuns:
    async def test_list_and_filter(self, client, running_pipeline):
        await running_pipeline(PipelineStatus.PHASE_1)
        await running_pipeline(PipelineStatus.PHASE_4)

        all_runs = (await client.get(f"{API}/pipeline/runs")).json()
        phase_4 = (await client.get(f"{API}/pipeline/runs", params={"status": "phase_4"})).json()

        assert len(all_runs) == 2
        assert [run["status"] for run in phase_4] == ["phase_4"]
        assert phase_4[0]["current_phase"] == 4

    async def test_limit_is_bounded(self, client):
        response = await client.get(f"{API}/pipeline/runs", params={"limit": 500})

        assert response.status_code == 422

    async def test_get_run(self, client, running_pipeline):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_2)

        response = await client.get(f"{API}/pipeline/runs/{pipeline_run_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(pipeline_run_id)
        assert data["project_id"] == "proj-bakery"
        assert data["max_retries"] == 3

    async def test_get_unknown_run(self, client):
        response = await client.get(f"{API}/pipeline/runs/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404

    async def test_agent_runs_in_execution_order(self, client, services, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_2)
        for agent, phase, sequence in [
            (phases.CONTENT_PACK, 2, 0),
            (phases.LEGAL, 1, 3),
            (phases.STRATEGIST, 1, 1),
        ]:
            agent_run_id = await services.ledger.create_agent_run(
                envelope_for(pipeline_run_id, agent, phase, sequence=sequence)
            )
            await services.ledger.finish_agent_run(
                agent_run_id, AgentRunStatus.COMPLETED, output={}, model="gpt-4o-mini", cost_usd=0.01
            )

        response = await client.get(f"{API}/pipeline/runs/{pipeline_run_id}/agents")

        assert response.status_code == 200
        data = response.json()
        assert [run["agent_name"] for run in data] == ["strategist", "legal", "content-pack"]
        assert data[0]["model_used"] == "gpt-4o-mini"
        assert data[0]["status"] == "completed"


# ==========================================================================
# Agent Task Endpoint
# ==========================================================================

class TestAgentEndpoint:
    async def test_runs_agent(self, client, llm, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        envelope = envelope_for(pipeline_run_id, phases.SEO, 1, sequence=2)

        response = await client.post(f"{API}/agents/seo", json=envelope.to_wire())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["agentName"] == "seo"
        assert data["output"]["primaryKeywords"] == ["sourdough berlin"]
        assert data["metrics"]["inputTokens"] == 100
        assert llm.count("seo") == 1

    async def test_failed_agent_returns_500(self, client, services, llm, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        llm.responses["strategist"] = UpstreamError("model overloaded", status_code=400)

        response = await client.post(
            f"{API}/agents/strategist",
            json=envelope_for(pipeline_run_id, phases.STRATEGIST, 1).to_wire(),
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "UPSTREAM_ERROR"
        # Research agents leave the verdict to the collector
        assert await services.ledger.get_status(pipeline_run_id) == PipelineStatus.PHASE_1

    async def test_cancelled_agent_returns_200(self, client, services, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        await services.guard.stop()

        response = await client.post(f"{API}/agents/seo", json=envelope_for(pipeline_run_id, phases.SEO, 1).to_wire())

        assert response.status_code == 200
        assert response.json()["error"]["code"] == "PIPELINE_CANCELLED"

    async def test_background_agent_answers_processing(self, client, services, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_4)
        content_run = await services.ledger.create_agent_run(envelope_for(pipeline_run_id, phases.CONTENT_PACK, 2))
        await services.ledger.finish_agent_run(
            content_run, AgentRunStatus.COMPLETED, output={"pages": [{"slug": "about", "sections": []}]}
        )
        envelope = envelope_for(pipeline_run_id, phases.PAGE_BUILDER, 4).for_agent(
            phases.PAGE_BUILDER, 4, 101,
            item={
                "stage": "pages",
                "siblings": [phases.PAGE_BUILDER],
                "source": "content",
                "pageId": "page-about",
                "pageName": "About",
                "pageSlug": "about",
            },
            expected_sibling_count=2,
        )

        response = await client.post(f"{API}/agents/page-builder", json=envelope.to_wire())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processing"
        agent_run = await services.ledger.get_agent_run(UUID(data["taskRunId"]))
        assert agent_run.status == AgentRunStatus.COMPLETED
        assert agent_run.sequence == 101
        files = await services.ledger.list_files("proj-bakery")
        assert "app/about/page.tsx" in files

    async def test_unknown_agent(self, client, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)

        response = await client.post(
            f"{API}/agents/translator",
            json=envelope_for(pipeline_run_id, "translator", 1).to_wire(),
        )

        assert response.status_code == 404

    async def test_envelope_for_other_agent(self, client, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)

        response = await client.post(f"{API}/agents/seo", json=envelope_for(pipeline_run_id, phases.LEGAL, 1).to_wire())

        assert response.status_code == 400


# ==========================================================================
# Service Key
# ==========================================================================

class TestServiceKey:
    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}])
    async def test_rejects_missing_or_wrong_key(self, keyed_client, headers):
        response = await keyed_client.post(f"{API}/pipeline/stop", headers=headers)

        assert response.status_code == 401

    async def test_accepts_key(self, keyed_client):
        response = await keyed_client.post(
            f"{API}/pipeline/stop",
            headers={"Authorization": "Bearer svc-secret"},
        )

        assert response.status_code == 200

    @pytest.mark.parametrize("path", [
        "/pipeline/runs",
        "/pipeline/runs/00000000-0000-0000-0000-000000000000",
        "/pipeline/runs/00000000-0000-0000-0000-000000000000/agents",
    ])
    async def test_reads_require_key(self, keyed_client, path):
        response = await keyed_client.get(f"{API}{path}")

        assert response.status_code == 401

    async def test_reads_accept_key(self, keyed_client):
        response = await keyed_client.get(
            f"{API}/pipeline/runs",
            headers={"Authorization": "Bearer svc-secret"},
        )

        assert response.status_code == 200
        assert response.json() == []
