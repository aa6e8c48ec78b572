"""
Phase 2 content assembly.

Merges the research outputs into the final copy for every page section. On
a quality retry the envelope carries the reviewer's issues and the rejected
content, and the prompt asks for targeted corrections.
"""

import json

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.exceptions import MissingUpstreamOutput
from sitegen.core.pipeline import phases
from sitegen.core.schemas import ControlDirective

SYSTEM_PROMPT = (
    "You are a conversion copywriter. You write the final website copy from a "
    "strategy, SEO brief, legal notes and design direction. Copy must match the "
    "brand voice and the target audience, never use placeholder text and never "
    "invent facts about the business."
)


class ContentPackAgent(AgentTask):
    name = phases.CONTENT_PACK
    phase = 2

    async def execute(self) -> AgentResult:
        research = await self.ledger.load_agent_outputs(self.pipeline_run_id, phases.PHASE_1_AGENTS)
        if phases.STRATEGIST not in research:
            raise MissingUpstreamOutput(phases.STRATEGIST)

        content = await self.complete_json(SYSTEM_PROMPT, self.build_prompt(research), max_tokens=8192)
        content.setdefault("pages", [])
        return AgentResult(
            output={**content, "attempt": self.envelope.meta.attempt, "researchAgents": sorted(research)},
        )

    def build_prompt(self, research: dict) -> str:
        parts = [
            f"PROJECT:\n{self.project_brief()}",
            f"RESEARCH:\n{json.dumps(research, indent=2)}",
            (
                "TASK:\nWrite the copy for every page and section listed in the project. Return "
                "{\"pages\": [{\"slug\": str, \"title\": str, \"sections\": [{\"type\": str, "
                "\"heading\": str, \"body\": str, \"items\": [object], \"cta\": str | null}]}], "
                "\"global\": {\"tagline\": str, \"footerText\": str}}."
            ),
        ]

        feedback = self.envelope.feedback
        if feedback is not None:
            issues = "\n".join(
                f"- [{issue.severity}] {issue.location or issue.category or 'general'}: {issue.message}"
                for issue in feedback.issues
            )
            parts.append(
                f"REVISION (attempt {feedback.attempt}):\nThe previous version scored "
                f"{feedback.score:.1f}/10, the bar is {feedback.threshold:.1f}. Fix every issue below "
                f"and keep what already works.\n{issues or '- no itemised issues'}"
            )
            if feedback.previous_output:
                parts.append(f"PREVIOUS VERSION:\n{json.dumps(feedback.previous_output, indent=2)}")

        return "\n\n".join(parts)

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        if not await self.controller.advance_to_review(self.envelope):
            return ControlDirective(abort=True, abort_reason="Pipeline left phase_2")
        return ControlDirective(next_phase=3, next_agents=[phases.EDITOR])
