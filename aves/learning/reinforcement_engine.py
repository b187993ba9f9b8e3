"""
Reinforcement Learning Engine.

Durable audit trail of reviewer feedback (approvals, rejections, position
fixes) plus an online-updated positioning model of the average correction
between AI-proposed and human-corrected boxes.

Feedback capture is best-effort: storage failures are rolled back and
logged, never raised, so the review workflow is not blocked.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Mapping

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from aves.exceptions import FeedbackError
from aves.learning.models import (
    BoundingBox,
    BoxDelta,
    FeedbackEvent,
    FeedbackType,
    PositioningAdjustment,
)
from aves.learning.pattern_learner import PatternLearner
from aves.learning.rejection import RejectionCategory, extract_rejection_category

METRIC_TIME_WINDOW = "1day"
ANALYTICS_LIMIT = 20
POSITIONING_FULL_CONFIDENCE_SAMPLES = 10.0

_WINDOW_PATTERN = re.compile(
    r"^\s*\d+\s*(minute|hour|day|week|month|year)s?\s*$",
    re.IGNORECASE,
)


def compute_box_delta(original: BoundingBox, corrected: BoundingBox) -> BoxDelta:
    """Per-field correction vector, ``corrected - original``."""
    return BoxDelta.between(original, corrected)


def positioning_confidence(sample_count: int) -> float:
    """Confidence of a positioning-model row after ``sample_count`` corrections."""
    return min(1.0, sample_count / POSITIONING_FULL_CONFIDENCE_SAMPLES)


def validate_window(window: str) -> str:
    """Accept simple Postgres interval literals such as ``30 days``."""
    if not _WINDOW_PATTERN.match(window):
        raise ValueError(f"Unsupported time window: {window!r}")
    return window.strip()


def _resolve_feature(event: FeedbackEvent) -> str:
    if event.metadata and event.metadata.feature:
        return event.metadata.feature
    data = event.original_data
    for field in ("spanish_term", "spanishTerm", "annotation_type", "type"):
        if data.get(field):
            return str(data[field])
    return "unknown"


def _extract_box(data: Mapping[str, Any] | None) -> BoundingBox | None:
    if not data:
        return None
    return BoundingBox.from_raw(data.get("bounding_box") or data.get("boundingBox"))


_BOX_KEYS = ("bounding_box", "boundingBox")


def _corrected_annotation(event: FeedbackEvent) -> dict[str, Any]:
    """Original annotation with the corrected fields applied.

    The box is carried under a single snake_case key so a camelCase
    correction cannot be shadowed by the original's snake_case box.
    """
    corrected = {k: v for k, v in event.original_data.items() if k not in _BOX_KEYS}
    corrected.update({k: v for k, v in event.corrected_data.items() if k not in _BOX_KEYS})
    box = _extract_box(event.corrected_data) or _extract_box(event.original_data)
    if box is not None:
        corrected["bounding_box"] = box.model_dump()
    return corrected


class ReinforcementLearningEngine:
    """Capture reviewer feedback and maintain the positioning model."""

    def __init__(
        self,
        session: AsyncSession,
        learner: PatternLearner | None = None,
        min_samples: int = 3,
    ):
        self.session = session
        self.learner = learner
        self.min_samples = min_samples
        # One session, so feedback writes are serialized
        self._lock = asyncio.Lock()

    async def capture_feedback(self, feedback: FeedbackEvent | Mapping[str, Any]) -> bool:
        """
        Persist one feedback event and forward it to the pattern learner.

        Args:
            feedback: Event or mapping with ``type``, ``annotation_id``,
                ``original_data`` and optional ``corrected_data``,
                ``rejection_reason``, ``user_id``, ``metadata``

        Returns:
            True if the audit write committed (or there was nothing to write)

        Raises:
            FeedbackError: If the event itself is malformed (unknown type)
        """
        if isinstance(feedback, FeedbackEvent):
            event = feedback
        else:
            try:
                event = FeedbackEvent.model_validate(feedback)
            except ValidationError as e:
                raise FeedbackError(f"Malformed feedback event: {e}") from e
        logger.info(
            "Capturing {} feedback for annotation {} from {}",
            event.type.value,
            event.annotation_id,
            event.user_id,
        )

        stored = False
        async with self._lock:
            try:
                if event.type == FeedbackType.APPROVE:
                    await self._capture_approval(event)
                elif event.type == FeedbackType.REJECT:
                    await self._capture_rejection(event)
                else:
                    await self._capture_position_fix(event)
                await self.session.commit()
                stored = True
            except Exception:
                logger.exception(
                    "Failed to capture {} feedback for annotation {}",
                    event.type.value,
                    event.annotation_id,
                )
                await self._rollback()

        await self._forward_to_learner(event)
        return stored

    async def _rollback(self) -> None:
        try:
            await self.session.rollback()
        except Exception as e:
            logger.warning(f"Rollback after failed feedback capture also failed: {e}")

    async def _insert_metric(
        self,
        metric_type: str,
        species: str | None,
        feature: str,
        value: float,
    ) -> None:
        await self.session.execute(
            text(
                """
                INSERT INTO feedback_metrics (
                    metric_type, species, feature_type, value, sample_size,
                    time_window, calculated_at
                ) VALUES (:metric_type, :species, :feature_type, :value, 1, :time_window, NOW())
                ON CONFLICT DO NOTHING
                """
            ),
            {
                "metric_type": metric_type,
                "species": species,
                "feature_type": feature,
                "value": value,
                "time_window": METRIC_TIME_WINDOW,
            },
        )

    async def _capture_approval(self, event: FeedbackEvent) -> None:
        species = event.metadata.species if event.metadata else None
        await self._insert_metric("approval_rate", species, _resolve_feature(event), 1.0)
        logger.debug("Approval captured for {}", event.annotation_id)

    async def _capture_rejection(self, event: FeedbackEvent) -> None:
        species = event.metadata.species if event.metadata else None
        feature = _resolve_feature(event)
        category = extract_rejection_category(event.rejection_reason)
        box = event.original_data.get("bounding_box") or event.original_data.get("boundingBox")

        await self.session.execute(
            text(
                """
                INSERT INTO rejection_patterns (
                    annotation_id, rejection_category, rejection_notes, species,
                    feature_type, bounding_box, confidence_score, rejected_by
                ) VALUES (
                    :annotation_id, :category, :notes, :species,
                    :feature_type, :bounding_box, :confidence, :rejected_by
                )
                """
            ),
            {
                "annotation_id": event.annotation_id,
                "category": category.value,
                "notes": event.rejection_reason or "No reason provided",
                "species": species,
                "feature_type": feature,
                "bounding_box": json.dumps(box) if isinstance(box, dict) else box,
                "confidence": event.original_data.get("confidence"),
                "rejected_by": event.user_id,
            },
        )
        await self._insert_metric("rejection_rate", species, feature, 1.0)
        logger.debug("Rejection captured for {}: {}", event.annotation_id, category.value)

    async def _capture_position_fix(self, event: FeedbackEvent) -> None:
        original = _extract_box(event.original_data)
        corrected = _extract_box(event.corrected_data)
        if original is None or corrected is None:
            logger.info(
                "Skipping position fix for {}: bounding box missing",
                event.annotation_id,
            )
            return

        species = event.metadata.species if event.metadata else None
        feature = _resolve_feature(event)
        delta = compute_box_delta(original, corrected)

        await self.session.execute(
            text(
                """
                INSERT INTO annotation_corrections (
                    annotation_id, original_bounding_box, corrected_bounding_box,
                    delta_x, delta_y, delta_width, delta_height,
                    species, feature_type, corrected_by
                ) VALUES (
                    :annotation_id, :original, :corrected,
                    :delta_x, :delta_y, :delta_width, :delta_height,
                    :species, :feature_type, :corrected_by
                )
                """
            ),
            {
                "annotation_id": event.annotation_id,
                "original": original.model_dump_json(),
                "corrected": corrected.model_dump_json(),
                **delta.model_dump(),
                "species": species,
                "feature_type": feature,
                "corrected_by": event.user_id,
            },
        )
        await self._update_positioning_model(species or "unknown", feature, delta)
        await self._insert_metric("correction_rate", species, feature, 1.0)
        await self._insert_metric("avg_correction_magnitude", species, feature, delta.magnitude)
        logger.debug(
            "Position fix captured for {}: magnitude={:.4f}",
            event.annotation_id,
            delta.magnitude,
        )

    async def _update_positioning_model(self, species: str, feature: str, delta: BoxDelta) -> None:
        """Online upsert: blend the new delta into the running average."""
        result = await self.session.execute(
            text(
                """
                INSERT INTO positioning_model (
                    species, feature, avg_delta_x, avg_delta_y,
                    avg_delta_width, avg_delta_height, sample_count, confidence, last_trained
                ) VALUES (
                    :species, :feature, :delta_x, :delta_y,
                    :delta_width, :delta_height, 1, :initial_confidence, NOW()
                )
                ON CONFLICT (species, feature) DO UPDATE SET
                    avg_delta_x = (positioning_model.avg_delta_x * positioning_model.sample_count
                        + EXCLUDED.avg_delta_x) / (positioning_model.sample_count + 1),
                    avg_delta_y = (positioning_model.avg_delta_y * positioning_model.sample_count
                        + EXCLUDED.avg_delta_y) / (positioning_model.sample_count + 1),
                    avg_delta_width = (positioning_model.avg_delta_width * positioning_model.sample_count
                        + EXCLUDED.avg_delta_width) / (positioning_model.sample_count + 1),
                    avg_delta_height = (positioning_model.avg_delta_height * positioning_model.sample_count
                        + EXCLUDED.avg_delta_height) / (positioning_model.sample_count + 1),
                    sample_count = positioning_model.sample_count + 1,
                    confidence = LEAST(1.0, (positioning_model.sample_count + 1) / 10.0),
                    last_trained = NOW()
                RETURNING sample_count, confidence
                """
            ),
            {
                "species": species,
                "feature": feature,
                **delta.model_dump(),
                "initial_confidence": positioning_confidence(1),
            },
        )
        row = result.first()
        if row:
            logger.info(
                "Positioning model {}:{} now has {} samples (confidence {})",
                species,
                feature,
                row[0],
                row[1],
            )

    async def _forward_to_learner(self, event: FeedbackEvent) -> None:
        if self.learner is None:
            return
        context = {
            "species": event.metadata.species if event.metadata else None,
            "image_id": event.metadata.image_id if event.metadata else None,
            "reviewer_id": event.user_id,
        }
        # Learner mutators log and swallow their own failures
        if event.type == FeedbackType.APPROVE:
            await self.learner.learn_from_approval(event.original_data, context)
        elif event.type == FeedbackType.REJECT:
            category: RejectionCategory = extract_rejection_category(event.rejection_reason)
            await self.learner.learn_from_rejection(event.original_data, category, context)
        elif event.corrected_data:
            try:
                corrected = _corrected_annotation(event)
            except ValueError as e:
                logger.warning(f"Not forwarding correction for {event.annotation_id}: {e}")
                return
            await self.learner.learn_from_correction(event.original_data, corrected, context)

    # ========================================
    # Queries
    # ========================================

    async def get_positioning_adjustments(
        self,
        species: str,
        feature: str,
    ) -> PositioningAdjustment | None:
        """Learned correction for a (species, feature) pair, or None."""
        try:
            result = await self.session.execute(
                text(
                    """
                    SELECT avg_delta_x, avg_delta_y, avg_delta_width,
                           avg_delta_height, confidence, sample_count
                    FROM positioning_model
                    WHERE species = :species AND feature = :feature
                      AND sample_count >= :min_samples
                    """
                ),
                {"species": species, "feature": feature, "min_samples": self.min_samples},
            )
            row = result.first()
        except Exception as e:
            logger.warning(f"Failed to get positioning adjustments for {species}:{feature}: {e}")
            return None

        if not row:
            return None
        return PositioningAdjustment(
            species=species,
            feature=feature,
            delta_x=float(row[0]),
            delta_y=float(row[1]),
            delta_width=float(row[2]),
            delta_height=float(row[3]),
            confidence=float(row[4]),
            sample_count=int(row[5]),
        )

    async def get_rejection_analytics(self, window: str = "30 days") -> list[dict[str, Any]]:
        """Top rejection groups by category, species and feature within ``window``."""
        window = validate_window(window)
        try:
            result = await self.session.execute(
                text(
                    """
                    SELECT rejection_category, species, feature_type,
                           COUNT(*) AS count,
                           AVG(confidence_score) AS avg_confidence
                    FROM rejection_patterns
                    WHERE created_at > NOW() - CAST(:window AS INTERVAL)
                    GROUP BY rejection_category, species, feature_type
                    ORDER BY count DESC
                    LIMIT :limit
                    """
                ),
                {"window": window, "limit": ANALYTICS_LIMIT},
            )
            return [dict(row._mapping) for row in result.fetchall()]
        except Exception as e:
            logger.warning(f"Failed to get rejection analytics: {e}")
            return []

    async def get_feedback_summary(self, window: str = "30 days") -> dict[str, dict[str, float]]:
        """Count and average value per metric type within ``window``."""
        window = validate_window(window)
        try:
            result = await self.session.execute(
                text(
                    """
                    SELECT metric_type, COUNT(*) AS count, AVG(value) AS average
                    FROM feedback_metrics
                    WHERE calculated_at > NOW() - CAST(:window AS INTERVAL)
                    GROUP BY metric_type
                    """
                ),
                {"window": window},
            )
            return {
                row[0]: {"count": int(row[1]), "average": float(row[2] or 0.0)}
                for row in result.fetchall()
            }
        except Exception as e:
            logger.warning(f"Failed to get feedback summary: {e}")
            return {}
