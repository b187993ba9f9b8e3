"""
Annotation review workflow.

The admin UI approves, rejects or corrects AI annotation items. Each action
commits its own primary write and then hands the event to the
reinforcement engine as a detached task, so the reviewer only ever sees the
outcome of the primary write.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from aves.exceptions import AnnotationNotFoundError
from aves.learning.models import BoundingBox, FeedbackEvent, FeedbackMetadata, FeedbackType
from aves.learning.reinforcement_engine import ReinforcementLearningEngine
from aves.learning.rejection import (
    RejectionCategory,
    extract_rejection_category,
    format_rejection_notes,
)


@dataclass
class ReviewOutcome:
    """Result of a primary review write."""

    annotation_id: str
    action: str  # "approve", "reject", "edit"
    approved_annotation_id: str | None = None
    rejection_category: RejectionCategory | None = None


class AnnotationReviewService:
    """Apply reviewer decisions to AI annotation items."""

    def __init__(self, session: AsyncSession, engine: ReinforcementLearningEngine):
        """
        Args:
            session: Session for the primary review writes
            engine: Feedback engine; should own a separate session, since
                learning runs concurrently with later review actions
        """
        self.session = session
        self.engine = engine
        self._pending: set[asyncio.Task[None]] = set()

    async def approve(
        self,
        annotation_id: str,
        reviewer_id: str,
        notes: str | None = None,
    ) -> ReviewOutcome:
        """Promote a pending AI annotation into the annotations table."""
        try:
            item = await self._fetch_pending_item(annotation_id)
            approved_id = await self._insert_annotation(item, item.get("bounding_box"))
            await self._set_status(annotation_id, "approved", approved_id)
            await self._record_review(item, reviewer_id, "approve", notes)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"AI annotation {annotation_id} approved as {approved_id} by {reviewer_id}")
        self._schedule(
            FeedbackEvent(
                type=FeedbackType.APPROVE,
                annotation_id=annotation_id,
                original_data=item,
                user_id=reviewer_id,
                metadata=self._metadata(item),
            )
        )
        return ReviewOutcome(annotation_id, "approve", approved_annotation_id=approved_id)

    async def reject(
        self,
        annotation_id: str,
        reviewer_id: str,
        category: RejectionCategory | str | None = None,
        notes: str | None = None,
    ) -> ReviewOutcome:
        """Reject a pending AI annotation with a categorized note."""
        message = format_rejection_notes(category, notes) or "No reason provided"
        rejection_category = extract_rejection_category(message)
        try:
            item = await self._fetch_pending_item(annotation_id)
            await self._set_status(annotation_id, "rejected")
            await self._record_review(item, reviewer_id, "reject", message)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "AI annotation {} rejected by {}: {}",
            annotation_id,
            reviewer_id,
            rejection_category.value,
        )
        self._schedule(
            FeedbackEvent(
                type=FeedbackType.REJECT,
                annotation_id=annotation_id,
                original_data=item,
                rejection_reason=message,
                user_id=reviewer_id,
                metadata=self._metadata(item),
            )
        )
        return ReviewOutcome(annotation_id, "reject", rejection_category=rejection_category)

    async def correct(
        self,
        annotation_id: str,
        reviewer_id: str,
        bounding_box: BoundingBox | Mapping[str, Any],
        notes: str | None = None,
    ) -> ReviewOutcome:
        """Approve a pending AI annotation with a reviewer-corrected box."""
        box = BoundingBox.from_raw(bounding_box)
        if box is None:
            raise ValueError("A corrected bounding box is required")
        corrected_box = box.model_dump()

        try:
            item = await self._fetch_pending_item(annotation_id)
            approved_id = await self._insert_annotation(item, corrected_box)
            await self.session.execute(
                text(
                    """
                    UPDATE ai_annotation_items
                    SET status = 'edited', bounding_box = :bounding_box,
                        approved_annotation_id = :approved_id, updated_at = NOW()
                    WHERE id = :annotation_id
                    """
                ),
                {
                    "bounding_box": box.model_dump_json(),
                    "approved_id": approved_id,
                    "annotation_id": annotation_id,
                },
            )
            await self._record_review(item, reviewer_id, "edit", notes)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"AI annotation {annotation_id} corrected as {approved_id} by {reviewer_id}")
        self._schedule(
            FeedbackEvent(
                type=FeedbackType.POSITION_FIX,
                annotation_id=annotation_id,
                original_data=item,
                corrected_data={"bounding_box": corrected_box},
                user_id=reviewer_id,
                metadata=self._metadata(item),
            )
        )
        return ReviewOutcome(annotation_id, "edit", approved_annotation_id=approved_id)

    async def drain(self) -> None:
        """Wait for all scheduled learning tasks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @property
    def pending_learning_tasks(self) -> int:
        return len(self._pending)

    # ========================================
    # Primary writes
    # ========================================

    async def _fetch_pending_item(self, annotation_id: str) -> dict[str, Any]:
        result = await self.session.execute(
            text(
                """
                SELECT ai.job_id, ai.image_id, ai.spanish_term, ai.english_term,
                       ai.bounding_box, ai.annotation_type, ai.difficulty_level,
                       ai.pronunciation, ai.confidence,
                       s.english_name AS species_name
                FROM ai_annotation_items ai
                LEFT JOIN images i ON ai.image_id = i.id
                LEFT JOIN species s ON i.species_id = s.id
                WHERE ai.id = :annotation_id AND ai.status = 'pending'
                """
            ),
            {"annotation_id": annotation_id},
        )
        row = result.first()
        if not row:
            raise AnnotationNotFoundError(annotation_id)
        return dict(row._mapping)

    async def _insert_annotation(self, item: Mapping[str, Any], bounding_box: Any) -> str:
        result = await self.session.execute(
            text(
                """
                INSERT INTO annotations (
                    image_id, bounding_box, annotation_type,
                    spanish_term, english_term, pronunciation, difficulty_level
                ) VALUES (
                    :image_id, :bounding_box, :annotation_type,
                    :spanish_term, :english_term, :pronunciation, :difficulty_level
                )
                RETURNING id
                """
            ),
            {
                "image_id": item.get("image_id"),
                "bounding_box": json.dumps(bounding_box) if isinstance(bounding_box, dict) else bounding_box,
                "annotation_type": item.get("annotation_type"),
                "spanish_term": item.get("spanish_term"),
                "english_term": item.get("english_term"),
                "pronunciation": item.get("pronunciation"),
                "difficulty_level": item.get("difficulty_level"),
            },
        )
        return str(result.scalar_one())

    async def _set_status(
        self,
        annotation_id: str,
        status: str,
        approved_id: str | None = None,
    ) -> None:
        await self.session.execute(
            text(
                """
                UPDATE ai_annotation_items
                SET status = :status,
                    approved_annotation_id = COALESCE(:approved_id, approved_annotation_id),
                    updated_at = NOW()
                WHERE id = :annotation_id
                """
            ),
            {"status": status, "approved_id": approved_id, "annotation_id": annotation_id},
        )

    async def _record_review(
        self,
        item: Mapping[str, Any],
        reviewer_id: str,
        action: str,
        notes: str | None,
    ) -> None:
        await self.session.execute(
            text(
                """
                INSERT INTO ai_annotation_reviews (job_id, reviewer_id, action, affected_items, notes)
                VALUES (:job_id, :reviewer_id, :action, 1, :notes)
                """
            ),
            {
                "job_id": item.get("job_id"),
                "reviewer_id": reviewer_id,
                "action": action,
                "notes": notes,
            },
        )

    # ========================================
    # Learning side effects
    # ========================================

    @staticmethod
    def _metadata(item: Mapping[str, Any]) -> FeedbackMetadata:
        image_id = item.get("image_id")
        return FeedbackMetadata(
            species=item.get("species_name"),
            image_id=str(image_id) if image_id is not None else None,
            feature=item.get("spanish_term"),
        )

    def _schedule(self, event: FeedbackEvent) -> None:
        task = asyncio.create_task(self._capture(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _capture(self, event: FeedbackEvent) -> None:
        try:
            stored = await self.engine.capture_feedback(event)
        except Exception:
            logger.exception("Learning side effect failed for annotation {}", event.annotation_id)
            return
        if not stored:
            logger.warning(
                "Feedback for annotation {} was not persisted; review outcome unaffected",
                event.annotation_id,
            )
