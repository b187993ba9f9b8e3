"""
Feedback-driven learning loop.

Reviewer actions flow through AnnotationReviewService into the
ReinforcementLearningEngine, which persists them and forwards them to the
PatternLearner that biases future vision prompts.
"""

from aves.learning.models import Annotation, BoundingBox, FeedbackEvent, FeedbackType, PatternKey
from aves.learning.pattern_learner import PatternLearner
from aves.learning.pattern_store import LocalBlobStore, PatternStore, SupabaseBlobStore
from aves.learning.reinforcement_engine import ReinforcementLearningEngine, compute_box_delta
from aves.learning.rejection import RejectionCategory, extract_rejection_category
from aves.learning.review_service import AnnotationReviewService, ReviewOutcome

__all__ = [
    "Annotation",
    "AnnotationReviewService",
    "BoundingBox",
    "FeedbackEvent",
    "FeedbackType",
    "LocalBlobStore",
    "PatternKey",
    "PatternLearner",
    "PatternStore",
    "RejectionCategory",
    "ReinforcementLearningEngine",
    "ReviewOutcome",
    "SupabaseBlobStore",
    "compute_box_delta",
    "extract_rejection_category",
]
