"""
Performance tracking for batch runs.

Accumulates raw task durations plus retry and error counts for the current
batch window and derives throughput and p50/p95/p99 on demand.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from loguru import logger


@dataclass
class PerformanceMetrics:
    """Snapshot of a batch window. Durations are in milliseconds."""

    batch_size: int
    concurrency: int
    total_duration_ms: float
    average_task_duration_ms: float
    throughput: float  # tasks per second
    success_rate: float  # percent of batch_size
    retry_rate: float  # average retries per recorded task
    error_rate: float  # percent of batch_size
    p50_duration_ms: float
    p95_duration_ms: float
    p99_duration_ms: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class Improvement:
    speedup: float = 1.0
    throughput_increase: float = 0.0  # percent
    duration_reduction: float = 0.0  # percent


@dataclass
class BenchmarkResult:
    name: str
    optimized: PerformanceMetrics
    baseline: PerformanceMetrics | None = None
    improvement: Improvement = field(default_factory=Improvement)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "optimized": self.optimized.to_dict(),
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "improvement": asdict(self.improvement),
        }


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile: sorted value at ``ceil(pct/100 * n) - 1``."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil((pct / 100) * len(ordered)) - 1
    return ordered[max(0, index)]


def _ratio(numerator: float, denominator: float, default: float = 0.0) -> float:
    return numerator / denominator if denominator else default


class PerformanceTracker:
    """Track task durations for one batch window at a time."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._durations: list[float] = []
        self._errors = 0
        self._retries = 0
        self._start_time = clock()
        self.benchmark_history: list[BenchmarkResult] = []

    def start_batch(self) -> None:
        """Reset accumulators and start the batch clock."""
        self._durations = []
        self._errors = 0
        self._retries = 0
        self._start_time = self._clock()

    def record_task(self, duration_ms: float, retries: int = 0, error: bool = False) -> None:
        self._durations.append(duration_ms)
        self._retries += retries
        if error:
            self._errors += 1

    def get_metrics(self, batch_size: int, concurrency: int) -> PerformanceMetrics:
        total_ms = (self._clock() - self._start_time) * 1000
        recorded = len(self._durations)
        return PerformanceMetrics(
            batch_size=batch_size,
            concurrency=concurrency,
            total_duration_ms=total_ms,
            average_task_duration_ms=_ratio(sum(self._durations), recorded),
            throughput=_ratio(recorded, total_ms / 1000),
            success_rate=_ratio(recorded - self._errors, batch_size) * 100,
            retry_rate=_ratio(self._retries, recorded),
            error_rate=_ratio(self._errors, batch_size) * 100,
            p50_duration_ms=percentile(self._durations, 50),
            p95_duration_ms=percentile(self._durations, 95),
            p99_duration_ms=percentile(self._durations, 99),
        )

    def create_benchmark(
        self,
        name: str,
        optimized: PerformanceMetrics,
        baseline: PerformanceMetrics | None = None,
    ) -> BenchmarkResult:
        """Compare a run against an optional baseline and keep it in history."""
        improvement = Improvement()
        if baseline is not None:
            improvement = Improvement(
                speedup=_ratio(
                    baseline.average_task_duration_ms, optimized.average_task_duration_ms, 1.0
                ),
                throughput_increase=_ratio(
                    optimized.throughput - baseline.throughput, baseline.throughput
                )
                * 100,
                duration_reduction=_ratio(
                    baseline.total_duration_ms - optimized.total_duration_ms,
                    baseline.total_duration_ms,
                )
                * 100,
            )
        benchmark = BenchmarkResult(name, optimized, baseline, improvement)
        self.benchmark_history.append(benchmark)
        return benchmark

    def export_metrics(self, output_path: Path | str, metrics: PerformanceMetrics) -> bool:
        """Write metrics and benchmark history as JSON. Failures are logged."""
        path = Path(output_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "exported_at": datetime.now().isoformat(),
                "metrics": metrics.to_dict(),
                "benchmarks": [b.to_dict() for b in self.benchmark_history],
            }
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to export performance metrics to {path}: {e}")
            return False
        logger.info(f"Performance metrics exported to {path}")
        return True

    def generate_report(self, metrics: PerformanceMetrics) -> str:
        rule = "=" * 80
        lines = [
            rule,
            "PERFORMANCE REPORT",
            rule,
            "",
            f"Timestamp:        {metrics.timestamp.isoformat()}",
            f"Batch Size:       {metrics.batch_size}",
            f"Concurrency:      {metrics.concurrency}",
            "",
            "Duration Metrics:",
            f"  Total:          {metrics.total_duration_ms / 1000:.2f}s",
            f"  Average/Task:   {metrics.average_task_duration_ms:.0f}ms",
            f"  P50 (median):   {metrics.p50_duration_ms:.0f}ms",
            f"  P95:            {metrics.p95_duration_ms:.0f}ms",
            f"  P99:            {metrics.p99_duration_ms:.0f}ms",
            "",
            "Throughput:",
            f"  Tasks/second:   {metrics.throughput:.2f}",
            "",
            "Quality Metrics:",
            f"  Success Rate:   {metrics.success_rate:.1f}%",
            f"  Error Rate:     {metrics.error_rate:.1f}%",
            f"  Avg Retries:    {metrics.retry_rate:.2f}",
            "",
        ]
        if self.benchmark_history:
            lines.append("Benchmark Comparisons:")
            for bench in self.benchmark_history:
                lines.extend(
                    [
                        f"  {bench.name}:",
                        f"    Speedup:      {bench.improvement.speedup:.2f}x",
                        f"    Throughput:   {bench.improvement.throughput_increase:+.1f}%",
                        f"    Duration:     {-bench.improvement.duration_reduction:+.1f}%",
                    ]
                )
            lines.append("")
        lines.append(rule)
        return "\n".join(lines)

    def log_progress(self, completed: int, total: int, metrics: PerformanceMetrics) -> None:
        percent = _ratio(completed, total) * 100
        eta = f"{(total - completed) / metrics.throughput:.0f}s" if metrics.throughput > 0 else "N/A"
        logger.info(
            "Batch progress: {}/{} ({:.1f}%), {:.2f} tasks/s, ETA {}, success {:.1f}%",
            completed,
            total,
            percent,
            metrics.throughput,
            eta,
            metrics.success_rate,
        )
