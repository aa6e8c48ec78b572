"""
Fan-out Self-Coordination.

Phase 4 spreads code generation over a dynamic number of sibling tasks.
There is no coordinator process: each member, when it completes, re-counts
its completed siblings and, if the group is full, tries to claim the
group's one-time advance. The claim is a unique row in the ledger, so at
most one member per group moves the pipeline on.

Every member envelope carries its group in ``meta.item``:

    {"stage": "sections" | "pages", "siblings": [...agent names], ...}

chunked mode:  shared-components + section-generator × sections
               → (sections_complete) page-builder × pages
               → (integrations_triggered) phase 5 or 6
paged mode:    shared-components + page-builder × pages
               → (integrations_triggered) phase 5 or 6
"""

from typing import Any, Optional

import structlog

from sitegen.core.config import settings
from sitegen.core.models import PipelineStatus
from sitegen.core.pipeline import phases
from sitegen.core.pipeline.barrier import Barrier
from sitegen.core.pipeline.controller import PhaseController
from sitegen.core.pipeline.ledger import RunLedger
from sitegen.core.schemas import Envelope

logger = structlog.get_logger()

SECTIONS_STAGE = "sections"
PAGES_STAGE = "pages"
WATCHDOG_SEQUENCE = 999


def _page_item(page, index: int) -> dict[str, Any]:
    return {"pageId": page.id, "pageName": page.name, "pageSlug": page.slug, "pageIndex": index}


class FanOutCoordinator:
    def __init__(
        self,
        ledger: RunLedger,
        controller: PhaseController,
        barrier: Barrier,
        *,
        mode: Optional[str] = None,
        watchdog_enabled: Optional[bool] = None,
    ):
        self.ledger = ledger
        self.controller = controller
        self.barrier = barrier
        self.mode = mode or settings.CODEGEN_MODE
        self.watchdog_enabled = (
            watchdog_enabled if watchdog_enabled is not None else settings.FANOUT_WATCHDOG_ENABLED
        )

    # ==========================================================================
    # Planning
    # ==========================================================================

    def plan_members(self, envelope: Envelope) -> list[Envelope]:
        """Envelopes of the first fan-out stage for this project."""
        project = envelope.project
        members: list[Envelope] = []

        if self.mode == "chunked" and project.section_count:
            siblings = [phases.SHARED_COMPONENTS, phases.SECTION_GENERATOR]
            expected = project.section_count + 1
            members.append(
                envelope.for_agent(
                    phases.SHARED_COMPONENTS, 4, 0,
                    item={"stage": SECTIONS_STAGE, "siblings": siblings},
                    expected_sibling_count=expected,
                )
            )
            sequence = phases.SECTION_SEQUENCE_START
            for page_index, page in enumerate(project.pages):
                for section_index, section_type in enumerate(page.sections):
                    item = {
                        "stage": SECTIONS_STAGE,
                        "siblings": siblings,
                        **_page_item(page, page_index),
                        "sectionType": section_type,
                        "sectionIndex": section_index,
                    }
                    members.append(
                        envelope.for_agent(
                            phases.SECTION_GENERATOR, 4, sequence,
                            item=item,
                            expected_sibling_count=expected,
                        )
                    )
                    sequence += 1
            return members

        siblings = [phases.SHARED_COMPONENTS, phases.PAGE_BUILDER]
        expected = len(project.pages) + 1
        members.append(
            envelope.for_agent(
                phases.SHARED_COMPONENTS, 4, 0,
                item={"stage": PAGES_STAGE, "siblings": siblings},
                expected_sibling_count=expected,
            )
        )
        members.extend(self._page_builders(envelope, siblings, expected, source="content"))
        return members

    def _page_builders(
        self,
        envelope: Envelope,
        siblings: list[str],
        expected: int,
        source: str,
    ) -> list[Envelope]:
        # source: "sections" composes generated section components, "content" writes the page whole
        return [
            envelope.for_agent(
                phases.PAGE_BUILDER, 4, phases.PAGE_SEQUENCE_START + index,
                item={"stage": PAGES_STAGE, "siblings": siblings, "source": source, **_page_item(page, index)},
                expected_sibling_count=expected,
            )
            for index, page in enumerate(envelope.project.pages)
        ]

    def watchdog_envelope(self, envelope: Envelope) -> Envelope:
        """The code-collector watches the final stage, which is always page-builders."""
        project = envelope.project
        if self.mode == "chunked" and project.section_count:
            siblings, expected = [phases.PAGE_BUILDER], len(project.pages)
        else:
            siblings, expected = [phases.SHARED_COMPONENTS, phases.PAGE_BUILDER], len(project.pages) + 1
        return envelope.for_agent(
            phases.CODE_COLLECTOR, 4, WATCHDOG_SEQUENCE,
            item={"stage": PAGES_STAGE, "siblings": siblings},
            expected_sibling_count=expected,
        )

    async def launch(self, envelope: Envelope) -> list[str]:
        """
        Dispatch the first stage (and the watchdog when enabled).

        Called by code-renderer after it wrote the project scaffold.
        """
        members = self.plan_members(envelope)
        if self.watchdog_enabled:
            members.append(self.watchdog_envelope(envelope))
        await self.controller.dispatch_within(members, PipelineStatus.PHASE_4)
        logger.info(
            "fan_out_launched",
            pipeline_run_id=str(envelope.pipeline_run_id),
            mode=self.mode,
            members=len(members),
        )
        return [member.agent_name for member in members]

    # ==========================================================================
    # Completion
    # ==========================================================================

    async def member_completed(self, envelope: Envelope) -> Optional[str]:
        """
        Self-check run by every fan-out member after its own completion.

        Returns:
            What this member triggered ("page-builder", an integration agent,
            "deployer"), or None when it was not the member that advanced
        """
        item = envelope.meta.item or {}
        siblings = item.get("siblings") or [envelope.agent_name]
        expected = envelope.meta.expected_sibling_count or 1

        progress = await self.barrier.fan_out_progress(envelope.pipeline_run_id, siblings, expected)
        if not progress.released:
            logger.debug(
                "fan_out_waiting",
                pipeline_run_id=str(envelope.pipeline_run_id),
                agent_name=envelope.agent_name,
                completed=progress.completed,
                expected=expected,
            )
            return None

        if item.get("stage") == SECTIONS_STAGE:
            return await self.release_pages(envelope)
        return await self.advance_past_codegen(envelope)

    async def release_pages(self, envelope: Envelope) -> Optional[str]:
        if not await self.ledger.claim_advance(
            envelope.pipeline_run_id, phases.SECTIONS_COMPLETE, claimed_by=envelope.agent_name
        ):
            return None
        builders = self._page_builders(
            envelope, [phases.PAGE_BUILDER], len(envelope.project.pages), source="sections"
        )
        dispatched = await self.controller.dispatch_within(builders, PipelineStatus.PHASE_4)
        return phases.PAGE_BUILDER if dispatched else None

    async def advance_past_codegen(self, envelope: Envelope) -> Optional[str]:
        if not await self.ledger.claim_advance(
            envelope.pipeline_run_id, phases.INTEGRATIONS_TRIGGERED, claimed_by=envelope.agent_name
        ):
            return None
        return await self.controller.advance_after_codegen(envelope)
