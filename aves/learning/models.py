"""
Data models for the annotation learning loop.

Annotations arrive from the vision collaborator and the review database in
both camelCase and snake_case; the models accept either and always dump
snake_case.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SNAPSHOT_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PatternKey(NamedTuple):
    """Identity of a learned pattern. ``species=None`` is the global namespace."""

    species: str | None
    feature: str

    def __str__(self) -> str:
        return f"{self.species or 'global'}:{self.feature}"


class BoundingBox(BaseModel):
    """Axis-aligned box, normalized or in pixels."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @classmethod
    def from_raw(cls, value: Any) -> BoundingBox | None:
        """Parse a box from a model, mapping, JSON string or None."""
        if value is None or value == "":
            return None
        if isinstance(value, BoundingBox):
            return value
        if isinstance(value, str):
            value = json.loads(value)
        return cls.model_validate(value)


class BoxDelta(BaseModel):
    """Per-field difference between an AI box and its human correction."""

    model_config = ConfigDict(frozen=True)

    delta_x: float
    delta_y: float
    delta_width: float
    delta_height: float

    @property
    def magnitude(self) -> float:
        return math.sqrt(
            self.delta_x**2 + self.delta_y**2 + self.delta_width**2 + self.delta_height**2
        )

    @classmethod
    def between(cls, original: BoundingBox, corrected: BoundingBox) -> BoxDelta:
        return cls(
            delta_x=corrected.x - original.x,
            delta_y=corrected.y - original.y,
            delta_width=corrected.width - original.width,
            delta_height=corrected.height - original.height,
        )


class Annotation(BaseModel):
    """A single vocabulary annotation produced by the vision collaborator."""

    model_config = ConfigDict(extra="ignore")

    spanish_term: str = Field(validation_alias=AliasChoices("spanish_term", "spanishTerm"))
    english_term: str = Field(
        default="", validation_alias=AliasChoices("english_term", "englishTerm")
    )
    pronunciation: str | None = None
    difficulty_level: float | None = Field(
        default=None, validation_alias=AliasChoices("difficulty_level", "difficultyLevel")
    )
    confidence: float | None = None
    bounding_box: BoundingBox | None = Field(
        default=None, validation_alias=AliasChoices("bounding_box", "boundingBox")
    )
    annotation_type: str | None = Field(
        default=None, validation_alias=AliasChoices("annotation_type", "annotationType", "type")
    )

    @field_validator("bounding_box", mode="before")
    @classmethod
    def _parse_bounding_box(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value else None
        return value


class BoundingBoxPattern(BaseModel):
    """Weighted running mean of one cluster of boxes for a feature."""

    center_x: float
    center_y: float
    width: float
    height: float
    variance_x: float = 0.0
    variance_y: float = 0.0
    sample_size: float = 0.0

    def to_box(self) -> BoundingBox:
        return BoundingBox(
            x=self.center_x - self.width / 2,
            y=self.center_y - self.height / 2,
            width=self.width,
            height=self.height,
        )


class LearnedPattern(BaseModel):
    """Statistical profile for one (species, feature) pair."""

    feature: str
    species: str | None = None
    successful_prompts: list[str] = Field(default_factory=list)
    bounding_boxes: list[BoundingBoxPattern] = Field(default_factory=list)
    average_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    observation_count: int = Field(default=0, ge=0)
    last_updated: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> PatternKey:
        return PatternKey(self.species, self.feature)

    @property
    def primary_box(self) -> BoundingBoxPattern | None:
        """The cluster with the most accumulated weight."""
        if not self.bounding_boxes:
            return None
        return max(self.bounding_boxes, key=lambda box: box.sample_size)


class RejectionRecord(BaseModel):
    """Rejection bookkeeping for one (species, feature) pair."""

    feature: str
    species: str | None = None
    counts: dict[str, int] = Field(default_factory=dict)
    streak_category: str | None = None
    streak_length: int = 0
    escalated: list[str] = Field(default_factory=list)
    last_note: str | None = None
    last_rejected_at: datetime | None = None

    @property
    def key(self) -> PatternKey:
        return PatternKey(self.species, self.feature)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class PositionCorrection(BaseModel):
    """A reviewer's move/resize of an AI-proposed box."""

    feature: str
    species: str | None = None
    original: BoundingBox
    corrected: BoundingBox
    delta: BoxDelta
    reviewer_id: str | None = None
    corrected_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> PatternKey:
        return PatternKey(self.species, self.feature)


class QualityScore(BaseModel):
    """Quality estimate of an incoming annotation, every field in [0, 1]."""

    confidence: float
    bounding_box_quality: float
    prompt_effectiveness: float
    overall_quality: float


class PositionAdjustedFeature(BaseModel):
    """Learned position hint for one requested feature."""

    feature: str
    bounding_box: BoundingBox | None = None
    adjustment: BoxDelta | None = None
    based_on_corrections: int = 0


class PositioningAdjustment(BaseModel):
    """Projection of a positioning_model row."""

    species: str | None
    feature: str
    delta_x: float
    delta_y: float
    delta_width: float
    delta_height: float
    confidence: float
    sample_count: int


class FeedbackType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    POSITION_FIX = "position_fix"


class FeedbackMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    species: str | None = None
    image_id: str | None = Field(default=None, validation_alias=AliasChoices("image_id", "imageId"))
    feature: str | None = None


class FeedbackEvent(BaseModel):
    """One reviewer action, as captured by the reinforcement engine."""

    type: FeedbackType
    annotation_id: str = Field(validation_alias=AliasChoices("annotation_id", "annotationId"))
    original_data: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("original_data", "originalData")
    )
    corrected_data: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("corrected_data", "correctedData")
    )
    rejection_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("rejection_reason", "rejectionReason")
    )
    user_id: str | None = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    metadata: FeedbackMetadata | None = None


class PatternSnapshot(BaseModel):
    """Everything the pattern learner persists."""

    version: int = SNAPSHOT_VERSION
    saved_at: datetime = Field(default_factory=utc_now)
    patterns: list[LearnedPattern] = Field(default_factory=list)
    rejections: list[RejectionRecord] = Field(default_factory=list)
    corrections: list[PositionCorrection] = Field(default_factory=list)
