"""
Metrics Collection for the Billing Pipeline

Collects and exposes metrics for:
- Job lifecycle (started, completed, failed) per job type
- Fulfillment API calls (requests, retries, rate limits, failures)
- Stage processing times (average, p95)

Metrics are in-memory and scoped to the process.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class JobMetrics:
    """Metrics for batch job execution."""
    started: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0

    # By job type
    by_type: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: {"started": 0, "completed": 0, "failed": 0}))


@dataclass
class ApiMetrics:
    """Metrics for calls to the fulfillment platform."""
    requests: int = 0
    retries: int = 0
    rate_limited: int = 0
    failed: int = 0

    # By endpoint
    by_endpoint: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: {"requests": 0, "retries": 0, "failed": 0}))


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    # Raw timing samples (keep last N for percentile calculations)
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the billing pipeline.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_job_started("transaction_sync")
        metrics.record_api_request("transactions:query")
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.jobs = JobMetrics()
        self.api = ApiMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None

    # =========================================================================
    # Job Metrics
    # =========================================================================

    def record_job_started(self, job_type: str):
        with self._lock:
            self.jobs.started += 1
            self.jobs.in_progress += 1
            self.jobs.by_type[job_type]["started"] += 1

    def record_job_completed(self, job_type: str, duration_ms: float = None):
        with self._lock:
            self.jobs.completed += 1
            self.jobs.in_progress = max(0, self.jobs.in_progress - 1)
            self.jobs.by_type[job_type]["completed"] += 1

            if duration_ms:
                self.timings.add_sample(duration_ms, f"job.{job_type}")

    def record_job_failed(self, job_type: str):
        with self._lock:
            self.jobs.failed += 1
            self.jobs.in_progress = max(0, self.jobs.in_progress - 1)
            self.jobs.by_type[job_type]["failed"] += 1

    # =========================================================================
    # API Metrics
    # =========================================================================

    def record_api_request(self, endpoint: str):
        with self._lock:
            self.api.requests += 1
            self.api.by_endpoint[endpoint]["requests"] += 1

    def record_api_retry(self, endpoint: str, rate_limited: bool = False):
        with self._lock:
            self.api.retries += 1
            self.api.by_endpoint[endpoint]["retries"] += 1
            if rate_limited:
                self.api.rate_limited += 1

    def record_api_failure(self, endpoint: str):
        with self._lock:
            self.api.failed += 1
            self.api.by_endpoint[endpoint]["failed"] += 1

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "jobs": {
                    "started": self.jobs.started,
                    "completed": self.jobs.completed,
                    "failed": self.jobs.failed,
                    "in_progress": self.jobs.in_progress,
                    "by_type": {k: dict(v) for k, v in self.jobs.by_type.items()},
                },
                "api": {
                    "requests": self.api.requests,
                    "retries": self.api.retries,
                    "rate_limited": self.api.rate_limited,
                    "failed": self.api.failed,
                    "by_endpoint": {k: dict(v) for k, v in self.api.by_endpoint.items()},
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_job_started(job_type: str):
    get_metrics().record_job_started(job_type)


def record_job_completed(job_type: str, duration_ms: float = None):
    get_metrics().record_job_completed(job_type, duration_ms)


def record_job_failed(job_type: str):
    get_metrics().record_job_failed(job_type)


def record_processing_time(stage: str, duration_ms: float):
    get_metrics().record_processing_time(stage, duration_ms)
