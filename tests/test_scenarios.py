"""
SiteForge Pipeline - End-to-end Scenarios
=========================================

Whole pipeline runs with every dispatched agent executed in-process.
Completions come from FakeCompletionClient; providers are unconfigured, so
deployment is simulated and CMS/e-mail integrations are skipped.
"""

import asyncio

from sqlalchemy import select

from sitegen.core.agents.registry import create_task
from sitegen.core.exceptions import UpstreamError
from sitegen.core.models import AgentRun, AgentRunStatus, PipelineStatus
from sitegen.core.pipeline import phases
from sitegen.core.pipeline.quality_gate import QUALITY_THRESHOLD_NOT_MET


async def run_to_rest(services, project, **kwargs):
    """Start a pipeline and wait until no dispatch is in flight."""
    started = await services.controller.start_pipeline(project, **kwargs)
    await services.dispatcher.drain()
    return await services.ledger.get_pipeline_run(started.run.id)


async def agent_runs(session_factory, pipeline_run_id, agent_name=None) -> list[AgentRun]:
    async with session_factory() as session:
        query = select(AgentRun).where(AgentRun.pipeline_run_id == pipeline_run_id)
        if agent_name:
            query = query.where(AgentRun.agent_name == agent_name)
        result = await session.scalars(query.order_by(AgentRun.phase, AgentRun.sequence, AgentRun.attempt))
        return list(result.all())


def reviews(*scores: float) -> list[dict]:
    return [
        {
            "score": score,
            "approved": score >= 7,
            "summary": "Review",
            "issues": [] if score >= 7 else [{"severity": "major", "location": "home.hero", "message": "Too generic"}],
        }
        for score in scores
    ]


# ==========================================================================
# Happy Paths
# ==========================================================================

class TestCompletedRuns:
    async def test_chunked_run_completes(self, loopback, session_factory, project, llm):
        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.COMPLETED
        assert run.preview_url == "https://crumb-co.vercel.app"
        assert run.total_retries == 0
        assert float(run.quality_score) == 8.5
        assert run.error_code is None

        files = await loopback.ledger.list_files(project.id)
        assert run.files_generated == len(files)
        assert "app/page.tsx" in files
        assert "app/about/page.tsx" in files
        assert "components/sections/home/HomeHero0.tsx" in files
        assert "components/sections/about/AboutStory0.tsx" in files
        assert "import HomeFeatures1 from '@/components/sections/home/HomeFeatures1'" in files["app/page.tsx"]

        assert llm.count("section-generator") == 3
        assert llm.count("page-builder") == 0
        sections = await agent_runs(session_factory, run.id, phases.SECTION_GENERATOR)
        assert [r.sequence for r in sections] == [1, 2, 3]
        builders = await agent_runs(session_factory, run.id, phases.PAGE_BUILDER)
        assert [r.sequence for r in builders] == [100, 101]
        deployers = await agent_runs(session_factory, run.id, phases.DEPLOYER)
        assert len(deployers) == 1

    async def test_usage_is_aggregated(self, loopback, project, llm):
        run = await run_to_rest(loopback, project)

        # five research calls, content, review, shared components, three sections
        assert len(llm.calls) == 11
        assert run.total_tokens == 11 * 150
        assert float(run.total_cost_usd) > 0
        assert run.duration_ms is not None

    async def test_paged_run_completes(self, paged_loopback, session_factory, project, llm):
        run = await run_to_rest(paged_loopback, project)

        assert run.status == PipelineStatus.COMPLETED
        assert llm.count("section-generator") == 0
        assert llm.count("page-builder") == 2
        files = await paged_loopback.ledger.list_files(project.id)
        assert {"app/page.tsx", "app/about/page.tsx", "components/Header.tsx"} <= set(files)

    async def test_watchdog_does_not_double_advance(self, watched_loopback, session_factory, project):
        run = await run_to_rest(watched_loopback, project)

        assert run.status == PipelineStatus.COMPLETED
        [watchdog] = await agent_runs(session_factory, run.id, phases.CODE_COLLECTOR)
        assert watchdog.status == AgentRunStatus.COMPLETED
        assert watchdog.sequence == 999
        assert len(await agent_runs(session_factory, run.id, phases.DEPLOYER)) == 1

    async def test_repeat_start_returns_cached_run(self, loopback, project, llm):
        first = await run_to_rest(loopback, project)
        calls = len(llm.calls)

        started = await loopback.controller.start_pipeline(project)

        assert started.cached
        assert started.run.id == first.id
        assert len(llm.calls) == calls


# ==========================================================================
# Quality Gate
# ==========================================================================

class TestQualityLoop:
    async def test_retry_then_approve(self, loopback, session_factory, project, llm):
        llm.responses["editor"] = reviews(5.5, 8.0)

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.COMPLETED
        assert run.total_retries == 1
        assert float(run.quality_score) == 8.0
        content_runs = await agent_runs(session_factory, run.id, phases.CONTENT_PACK)
        assert [r.attempt for r in content_runs] == [1, 2]
        editor_runs = await agent_runs(session_factory, run.id, phases.EDITOR)
        assert [r.attempt for r in editor_runs] == [1, 2]

        revision_prompt = llm.prompts("content-pack")[1]
        assert "REVISION (attempt 2)" in revision_prompt
        assert "Too generic" in revision_prompt
        assert "PREVIOUS VERSION" in revision_prompt

    async def test_exhausted_retries_need_human(self, loopback, session_factory, project, llm):
        llm.responses["editor"] = reviews(4.0)

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.NEEDS_HUMAN
        assert run.total_retries == 3
        assert run.error_code == QUALITY_THRESHOLD_NOT_MET
        assert run.error_agent == phases.EDITOR
        assert llm.count("content-pack") == 4
        assert llm.count("editor") == 4
        assert await agent_runs(session_factory, run.id, phases.CODE_RENDERER) == []
        content_runs = await agent_runs(session_factory, run.id, phases.CONTENT_PACK)
        assert max(r.attempt for r in content_runs) == 4


# ==========================================================================
# Failures
# ==========================================================================

class TestFailures:
    async def test_strategist_failure_fails_pipeline(self, loopback, project, llm):
        llm.responses["strategist"] = UpstreamError("model refused", status_code=400)

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.FAILED
        assert run.error_agent == phases.STRATEGIST
        assert run.error_code == "MANDATORY_AGENT_FAILED"
        assert llm.count("content-pack") == 0

    async def test_optional_research_failure_is_tolerated(self, loopback, session_factory, project, llm):
        llm.responses["seo"] = UpstreamError("model refused", status_code=400)

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.COMPLETED
        [collector] = await agent_runs(session_factory, run.id, phases.COLLECTOR)
        assert collector.output_data["failedAgents"] == ["seo"]
        [content] = await agent_runs(session_factory, run.id, phases.CONTENT_PACK)
        assert content.output_data["researchAgents"] == ["image", "legal", "strategist", "visual"]

    async def test_content_failure_fails_pipeline(self, loopback, project, llm):
        llm.responses["content-pack"] = UpstreamError("context too long", status_code=400)

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.FAILED
        assert run.error_agent == phases.CONTENT_PACK
        assert llm.count("editor") == 0

    async def test_non_finite_score_fails_review(self, loopback, session_factory, project, llm):
        llm.responses["editor"] = {"score": "NaN", "approved": True, "summary": "Review", "issues": []}

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.FAILED
        assert run.error_agent == phases.EDITOR
        assert run.quality_score is None
        assert await agent_runs(session_factory, run.id, phases.CODE_RENDERER) == []

    async def test_fan_out_member_failure_fails_pipeline(self, loopback, project, llm):
        llm.responses["section-generator"] = {"files": {}}

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.FAILED
        assert run.error_code == "FANOUT_MEMBER_FAILED"
        assert run.error_agent == phases.SECTION_GENERATOR
        assert await loopback.ledger.list_files(project.id)
        assert run.preview_url is None

    async def test_stop_during_research(self, loopback, session_factory, project, llm):
        async def stop_while_generating(prompt, index):
            await loopback.guard.stop(project.id)
            return {"images": []}

        llm.responses["image"] = stop_while_generating

        run = await run_to_rest(loopback, project)

        assert run.status == PipelineStatus.CANCELLED
        assert llm.count("content-pack") == 0
        statuses = {r.status for r in await agent_runs(session_factory, run.id)}
        assert AgentRunStatus.RUNNING not in statuses


# ==========================================================================
# Integrations
# ==========================================================================

class TestIntegrations:
    async def test_unconfigured_integrations_are_skipped(self, loopback, session_factory, project):
        shop = project.model_copy(
            update={"id": "proj-deli", "package_type": "enterprise", "addons": ["cms_base", "booking_form"]}
        )

        run = await run_to_rest(loopback, shop)

        assert run.status == PipelineStatus.COMPLETED
        runs = await agent_runs(session_factory, run.id)
        integration_runs = [r for r in runs if r.phase == 5]
        assert [r.agent_name for r in integration_runs] == [phases.CMS, phases.EMAIL, phases.ANALYTICS]
        assert integration_runs[0].output_data == {"skipped": True, "reason": "Sanity management token not configured"}
        assert integration_runs[1].output_data["skipped"] is True
        assert integration_runs[2].output_data["files"] == ["lib/analytics.ts"]

        files = await loopback.ledger.list_files("proj-deli")
        assert "lib/analytics.ts" in files

    async def test_basic_package_skips_phase_five(self, loopback, session_factory, project):
        run = await run_to_rest(loopback, project)

        runs = await agent_runs(session_factory, run.id)
        assert not [r for r in runs if r.phase == 5]


# ==========================================================================
# Deployment
# ==========================================================================

class TestDeployment:
    """Deployment happens once per pipeline, however often the deployer runs."""

    async def test_duplicate_trigger_is_skipped(self, services, session_factory, project, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_6)
        await services.ledger.upsert_files(project.id, {"app/page.tsx": "export default function Page() {}"})

        first = await create_task(phases.DEPLOYER, services, envelope_for(pipeline_run_id, phases.DEPLOYER, 6)).handle()
        second = await create_task(phases.DEPLOYER, services, envelope_for(pipeline_run_id, phases.DEPLOYER, 6)).handle()

        assert first.success and second.success
        assert first.control.is_complete
        assert first.output["url"] == "https://crumb-co.vercel.app"
        assert second.output == {"skipped": True, "reason": "Already deployed"}

        run = await services.ledger.get_pipeline_run(pipeline_run_id)
        assert run.status == PipelineStatus.COMPLETED
        assert run.preview_url == "https://crumb-co.vercel.app"
        assert run.files_generated == 1

        deployers = await agent_runs(session_factory, pipeline_run_id, phases.DEPLOYER)
        assert [r.status for r in deployers] == [AgentRunStatus.COMPLETED, AgentRunStatus.COMPLETED]

    async def test_concurrent_triggers_deploy_once(self, services, session_factory, project, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_6)
        await services.ledger.upsert_files(project.id, {"app/page.tsx": "export default function Page() {}"})

        responses = await asyncio.gather(
            *(
                create_task(phases.DEPLOYER, services, envelope_for(pipeline_run_id, phases.DEPLOYER, 6)).handle()
                for _ in range(2)
            )
        )

        assert all(response.success for response in responses)
        deployed = [r for r in responses if not r.output.get("skipped")]
        skipped = [r for r in responses if r.output.get("skipped")]
        assert len(deployed) == 1
        assert len(skipped) == 1
        assert await services.ledger.get_status(pipeline_run_id) == PipelineStatus.COMPLETED
