"""In-memory caches used by the exercise generation layer."""

from aves.cache.exercise_cache import CacheStats, ExerciseCache

__all__ = ["CacheStats", "ExerciseCache"]
