"""Exception hierarchy for the aves learning loop."""

from __future__ import annotations


class AvesError(Exception):
    """Base class for all aves errors."""


class ConfigurationError(AvesError):
    """Raised when settings are missing or inconsistent."""


class PatternStoreError(AvesError):
    """Raised when the object store rejects an upload or download."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FeedbackError(AvesError, ValueError):
    """Raised for malformed feedback events."""


class AnnotationNotFoundError(AvesError):
    """Raised when a review targets an item that is missing or already processed."""

    def __init__(self, annotation_id: str):
        super().__init__(f"AI annotation item not found or already processed: {annotation_id}")
        self.annotation_id = annotation_id


class BatchTaskTimeoutError(AvesError):
    """Raised when a batch task attempt exceeds its timeout."""

    def __init__(self, task_id: str, timeout: float):
        super().__init__(f"Task {task_id} timed out after {timeout:.1f}s")
        self.task_id = task_id
        self.timeout = timeout
