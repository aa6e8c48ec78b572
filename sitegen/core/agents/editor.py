"""
Phase 3 review.

Scores the latest content pack. The reviewer's own ``approved`` verdict is
stored for reference only; the quality gate decides from the score.
"""

import json
import math
from typing import Any, Optional

from sitegen.core.agents.base import AgentResult, AgentTask
from sitegen.core.exceptions import MissingUpstreamOutput, UpstreamResponseError
from sitegen.core.pipeline import phases
from sitegen.core.schemas import ControlDirective, QualityIssue

SYSTEM_PROMPT = (
    "You are an exacting website editor. You score copy from 0 to 10 against the "
    "brief: clarity, persuasiveness, brand voice, correctness, completeness of every "
    "requested section and absence of placeholder text. You list concrete issues."
)


def parse_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError) as e:
        raise UpstreamResponseError(f"Review score is not a number: {value!r}") from e
    if not math.isfinite(score):
        raise UpstreamResponseError(f"Review score is not finite: {value!r}")
    return max(0.0, min(10.0, score))


def parse_issues(raw: Any) -> list[QualityIssue]:
    issues = []
    for entry in raw or []:
        if isinstance(entry, str):
            issues.append(QualityIssue(message=entry))
        elif isinstance(entry, dict) and entry.get("message"):
            severity = entry.get("severity")
            if severity not in ("critical", "major", "minor"):
                severity = "minor"
            issues.append(QualityIssue.model_validate({**entry, "severity": severity}))
    return issues


class EditorAgent(AgentTask):
    name = phases.EDITOR
    phase = 3
    reviewed_content: Optional[dict[str, Any]] = None

    async def execute(self) -> AgentResult:
        content = await self.ledger.load_agent_output(self.pipeline_run_id, phases.CONTENT_PACK)
        if content is None:
            raise MissingUpstreamOutput(phases.CONTENT_PACK)
        self.reviewed_content = content

        prompt = (
            f"PROJECT:\n{self.project_brief()}\n\n"
            f"CONTENT:\n{json.dumps(content, indent=2)}\n\n"
            "Return {\"score\": number, \"approved\": bool, \"summary\": str, \"issues\": "
            "[{\"severity\": \"critical\" | \"major\" | \"minor\", \"category\": str, "
            "\"location\": str, \"message\": str}]}."
        )
        review = await self.complete_json(SYSTEM_PROMPT, prompt)

        score = parse_score(review.get("score"))
        issues = parse_issues(review.get("issues"))
        approved = self.services.gate.is_approved(score)
        return AgentResult(
            output={
                "score": score,
                "approved": approved,
                "reviewerApproved": review.get("approved"),
                "summary": review.get("summary"),
                "issues": [issue.to_wire() for issue in issues],
                "contentAttempt": content.get("attempt", self.envelope.meta.attempt),
            },
            quality_score=score,
            issues=[issue.to_wire() for issue in issues],
            validation_passed=approved,
            validation_errors=[issue.message for issue in issues if issue.severity == "critical"] or None,
        )

    async def after_complete(self, result: AgentResult) -> ControlDirective:
        decision = await self.services.gate.evaluate(
            self.envelope,
            result.quality_score,
            parse_issues(result.issues),
            self.reviewed_content,
        )
        if decision.action == "advance":
            return ControlDirective(next_phase=4, next_agents=[phases.CODE_RENDERER])
        if decision.action == "retry":
            return ControlDirective(
                next_phase=2,
                next_agents=[phases.CONTENT_PACK],
                should_retry=True,
                retry_agent=phases.CONTENT_PACK,
                retry_reason=f"Score {decision.score:.1f} below {decision.threshold:.1f}",
            )
        if decision.action == "escalate":
            return ControlDirective(abort=True, abort_reason="Quality threshold not met, needs human review")
        return ControlDirective(abort=True, abort_reason="Pipeline left phase_3")
