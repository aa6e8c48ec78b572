"""
Quality Gate - Bounded retry around content assembly.

Handles: review score → advance | retry content | escalate to human
"""

import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

from sitegen.core.config import settings
from sitegen.core.models import PipelineStatus
from sitegen.core.pipeline import phases
from sitegen.core.pipeline.controller import PhaseController
from sitegen.core.pipeline.ledger import RunLedger
from sitegen.core.schemas import Envelope, QualityFeedback, QualityIssue

logger = logging.getLogger(__name__)

QUALITY_THRESHOLD_NOT_MET = "QUALITY_THRESHOLD_NOT_MET"


@dataclass
class QualityDecision:
    action: Literal["advance", "retry", "escalate", "rejected"]
    approved: bool
    score: float
    threshold: float
    total_retries: int
    next_attempt: Optional[int] = None


class QualityGate:
    """
    Review gate between content assembly and code generation.

    Decision rule:
    1. approved = score >= threshold (the reviewer's own verdict is ignored)
    2. approved → phase_4, code-renderer
    3. rejected, retries left → total_retries + 1, phase_2, content-pack with
       the review issues and the rejected output folded into its envelope
    4. rejected, retries exhausted → needs_human

    The retry counter is bumped in a single conditional UPDATE, so
    total_retries can never exceed the pipeline's max_retries.
    """

    def __init__(
        self,
        ledger: RunLedger,
        controller: PhaseController,
        threshold: Optional[float] = None,
    ):
        self.ledger = ledger
        self.controller = controller
        self.threshold = threshold if threshold is not None else settings.QUALITY_THRESHOLD

    def is_approved(self, score: float) -> bool:
        return score >= self.threshold

    async def evaluate(
        self,
        envelope: Envelope,
        score: float,
        issues: list[QualityIssue],
        reviewed_output: Optional[dict[str, Any]] = None,
    ) -> QualityDecision:
        """
        Route the pipeline after a review.

        Args:
            envelope: The reviewer's envelope
            score: Review score, 0-10
            issues: Structured findings for the next content attempt
            reviewed_output: The content that was reviewed

        Returns:
            The decision taken; ``rejected`` when the ledger refused the move
        """
        pipeline_run_id = envelope.pipeline_run_id
        await self.controller.guard.ensure_active(pipeline_run_id, "quality_gate")

        if self.is_approved(score):
            applied = await self.controller.advance_to_codegen(envelope, score)
            logger.info(f"Pipeline {pipeline_run_id} passed quality gate with {score:.1f}/{self.threshold:.1f}")
            run = await self.ledger.get_pipeline_run(pipeline_run_id)
            return QualityDecision(
                action="advance" if applied else "rejected",
                approved=True,
                score=score,
                threshold=self.threshold,
                total_retries=run.total_retries if run else 0,
            )

        total_retries = await self.ledger.increment_retries(pipeline_run_id)
        if total_retries is not None:
            # total_retries already counts this retry
            attempt = total_retries + 1
            feedback = QualityFeedback(
                attempt=attempt,
                score=score,
                threshold=self.threshold,
                issues=issues,
                previous_output=reviewed_output,
            )
            applied = await self.controller.advance(
                envelope,
                PipelineStatus.PHASE_2,
                phases.CONTENT_PACK,
                2,
                from_statuses=(PipelineStatus.PHASE_3,),
                fields={"quality_score": score},
                attempt=attempt,
                feedback=feedback,
            )
            logger.warning(
                f"Pipeline {pipeline_run_id} scored {score:.1f} < {self.threshold:.1f}, "
                f"retrying content (attempt {attempt}, retry {total_retries})"
            )
            return QualityDecision(
                action="retry" if applied else "rejected",
                approved=False,
                score=score,
                threshold=self.threshold,
                total_retries=total_retries,
                next_attempt=attempt,
            )

        return await self.escalate(envelope, score)

    async def escalate(self, envelope: Envelope, score: float) -> QualityDecision:
        """Hand the pipeline to a human once content retries are exhausted."""
        pipeline_run_id = envelope.pipeline_run_id
        run = await self.ledger.get_pipeline_run(pipeline_run_id)
        total_retries = run.total_retries if run else 0

        applied = await self.ledger.transition(
            pipeline_run_id,
            PipelineStatus.NEEDS_HUMAN,
            quality_score=score,
            error_code=QUALITY_THRESHOLD_NOT_MET,
            error_agent=phases.EDITOR,
            error_message=(
                f"Quality score {score:.1f} below threshold {self.threshold:.1f} "
                f"after {total_retries} retries"
            ),
        )
        if applied:
            logger.warning(f"Pipeline {pipeline_run_id} escalated to human review after {total_retries} retries")

        return QualityDecision(
            action="escalate" if applied else "rejected",
            approved=False,
            score=score,
            threshold=self.threshold,
            total_retries=total_retries,
        )
