"""Throughput and cost utilities for annotation generation batches."""

from aves.processing.batch_processor import (
    BatchMetrics,
    BatchResult,
    BatchTask,
    ParallelBatchProcessor,
    ProcessorConfig,
)
from aves.processing.cost_estimator import CostBreakdown, CostEstimator, TokenUsage
from aves.processing.performance_tracker import PerformanceMetrics, PerformanceTracker

__all__ = [
    "BatchMetrics",
    "BatchResult",
    "BatchTask",
    "CostBreakdown",
    "CostEstimator",
    "ParallelBatchProcessor",
    "PerformanceMetrics",
    "PerformanceTracker",
    "ProcessorConfig",
    "TokenUsage",
]
