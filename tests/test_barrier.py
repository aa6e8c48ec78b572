"""
SiteForge Pipeline - Barrier Tests
==================================

Phase-1 join semantics and fan-out completion counting.
"""

import asyncio

import pytest

from sitegen.core.exceptions import BarrierTimeout, MandatoryAgentFailed, PipelineCancelled
from sitegen.core.models import AgentRunStatus, PipelineStatus
from sitegen.core.pipeline import phases
from sitegen.core.pipeline.barrier import Barrier


async def record(services, envelope, status=AgentRunStatus.COMPLETED, output=None):
    agent_run_id = await services.ledger.create_agent_run(envelope)
    if status != AgentRunStatus.RUNNING:
        await services.ledger.finish_agent_run(agent_run_id, status, output=output or {})
    return agent_run_id


@pytest.fixture
def short_barrier(services) -> Barrier:
    return Barrier(services.ledger, services.guard, poll_interval=0.05, max_wait=0.3, fan_out_max_wait=0.3)


class TestPhaseBarrier:
    """Fixed sibling set with a mandatory subset."""

    async def test_releases_when_all_terminal(self, services, short_barrier, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        for sequence, agent in enumerate(phases.PHASE_1_AGENTS, start=1):
            await record(services, envelope_for(pipeline_run_id, agent, 1, sequence=sequence))

        result = await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)

        assert sorted(result.completed) == sorted(phases.PHASE_1_AGENTS)
        assert result.failed == []
        assert result.pending == []
        assert not result.timed_out

    async def test_mandatory_failure_raises(self, services, short_barrier, running_pipeline, envelope_for):
        """A failed strategist fails the barrier immediately."""
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        await record(services, envelope_for(pipeline_run_id, phases.STRATEGIST, 1), AgentRunStatus.FAILED)

        with pytest.raises(MandatoryAgentFailed) as exc_info:
            await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)

        assert exc_info.value.agent_name == "strategist"

    async def test_late_duplicate_failure_keeps_completion(
        self, services, short_barrier, running_pipeline, envelope_for
    ):
        """A duplicate strategist that fails after one completed does not fail the barrier."""
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        for sequence, agent in enumerate(phases.PHASE_1_AGENTS, start=1):
            await record(services, envelope_for(pipeline_run_id, agent, 1, sequence=sequence))
        await record(services, envelope_for(pipeline_run_id, phases.STRATEGIST, 1, sequence=1), AgentRunStatus.FAILED)

        statuses = await services.ledger.agent_statuses(pipeline_run_id, [phases.STRATEGIST], 1)
        result = await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)

        assert statuses == {phases.STRATEGIST: AgentRunStatus.COMPLETED}
        assert sorted(result.completed) == sorted(phases.PHASE_1_AGENTS)
        assert result.failed == []

    async def test_optional_failure_is_reported(self, services, short_barrier, running_pipeline, envelope_for):
        """A failed non-mandatory agent is listed and the barrier still releases."""
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        for agent in phases.PHASE_1_AGENTS:
            status = AgentRunStatus.FAILED if agent == phases.SEO else AgentRunStatus.COMPLETED
            await record(services, envelope_for(pipeline_run_id, agent, 1), status)

        result = await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)

        assert result.failed == ["seo"]
        assert result.to_dict()["failedAgents"] == ["seo"]
        assert "seo" not in result.completed

    async def test_timeout_proceeds_with_mandatory_done(self, services, short_barrier, running_pipeline, envelope_for):
        """Budget exhaustion is tolerated once the strategist completed."""
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        await record(services, envelope_for(pipeline_run_id, phases.STRATEGIST, 1))
        await record(services, envelope_for(pipeline_run_id, phases.IMAGE, 1), AgentRunStatus.RUNNING)

        result = await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)

        assert result.timed_out
        assert result.completed == ["strategist"]
        assert "image" in result.pending

    async def test_timeout_without_mandatory_raises(self, services, short_barrier, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        await record(services, envelope_for(pipeline_run_id, phases.SEO, 1))

        with pytest.raises(BarrierTimeout):
            await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)

    async def test_cancelled_while_waiting(self, services, short_barrier, running_pipeline):
        """A stop ends the wait with PipelineCancelled."""
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)

        async def stop_soon():
            await asyncio.sleep(0.1)
            await services.guard.stop()

        stopper = asyncio.create_task(stop_soon())
        with pytest.raises(PipelineCancelled):
            await short_barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1)
        await stopper

    async def test_completion_signal_wakes_barrier(self, services, running_pipeline, envelope_for):
        """With a long poll interval the barrier still releases on completion."""
        barrier = Barrier(services.ledger, services.guard, poll_interval=30, max_wait=60)
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_1)
        for agent in phases.PHASE_1_AGENTS[1:]:
            await record(services, envelope_for(pipeline_run_id, agent, 1))

        async def complete_strategist():
            await asyncio.sleep(0.1)
            await record(services, envelope_for(pipeline_run_id, phases.STRATEGIST, 1))

        completer = asyncio.create_task(complete_strategist())
        result = await asyncio.wait_for(
            barrier.wait_for_phase(pipeline_run_id, phases.PHASE_1_AGENTS, [phases.STRATEGIST], 1),
            timeout=5,
        )
        await completer

        assert len(result.completed) == 5


class TestFanOutBarrier:
    """Every fan-out member is mandatory."""

    async def test_progress_counts(self, services, short_barrier, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_4)
        await record(services, envelope_for(pipeline_run_id, phases.PAGE_BUILDER, 4, sequence=100))

        progress = await short_barrier.fan_out_progress(pipeline_run_id, [phases.PAGE_BUILDER], 2)

        assert progress.completed == 1
        assert not progress.released

    async def test_wait_releases_at_expected(self, services, short_barrier, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_4)
        await record(services, envelope_for(pipeline_run_id, phases.SHARED_COMPONENTS, 4))
        await record(services, envelope_for(pipeline_run_id, phases.PAGE_BUILDER, 4, sequence=100))

        progress = await short_barrier.wait_for_fan_out(
            pipeline_run_id, [phases.SHARED_COMPONENTS, phases.PAGE_BUILDER], 2
        )

        assert progress.released

    async def test_failed_member_raises(self, services, short_barrier, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_4)
        await record(services, envelope_for(pipeline_run_id, phases.PAGE_BUILDER, 4, sequence=100))
        await record(
            services, envelope_for(pipeline_run_id, phases.PAGE_BUILDER, 4, sequence=101), AgentRunStatus.FAILED
        )

        with pytest.raises(MandatoryAgentFailed):
            await short_barrier.wait_for_fan_out(pipeline_run_id, [phases.PAGE_BUILDER], 2)

    async def test_wait_times_out(self, services, short_barrier, running_pipeline, envelope_for):
        pipeline_run_id = await running_pipeline(PipelineStatus.PHASE_4)
        await record(services, envelope_for(pipeline_run_id, phases.PAGE_BUILDER, 4, sequence=100))

        with pytest.raises(BarrierTimeout):
            await short_barrier.wait_for_fan_out(pipeline_run_id, [phases.PAGE_BUILDER], 2)
