"""Job modes and end-of-run summaries."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class JobMode(str, Enum):
    """Every job computes everything; only LIVE writes."""
    DRY_RUN = "dry_run"
    LIVE = "live"

    @property
    def is_live(self) -> bool:
        return self is JobMode.LIVE


@dataclass
class JobFailure:
    unit: str
    error: str
    error_type: str


@dataclass
class JobSummary:
    """What a job did: successes, skips, failures and per-unit details.

    Attributes:
        job_type: e.g. "transaction_sync", "invoice_generation"
        mode: dry_run or live
        successes: Units that completed
        skips: Units deliberately not processed, with reasons
        failures: Units that failed; the rest of the job still ran
        warnings: Units that completed with a caveat (e.g. partial fetch)
        details: Per-unit results
    """
    job_type: str
    mode: JobMode
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    successes: int = 0
    skips: List[Dict[str, str]] = field(default_factory=list)
    failures: List[JobFailure] = field(default_factory=list)
    warnings: List[Dict[str, str]] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    def record_success(self, detail: Optional[Dict[str, Any]] = None) -> None:
        self.successes += 1
        if detail:
            self.details.append(detail)

    def record_skip(self, unit: str, reason: str) -> None:
        self.skips.append({"unit": unit, "reason": reason})

    def record_failure(self, unit: str, error: BaseException) -> None:
        self.failures.append(JobFailure(unit=unit, error=str(error), error_type=type(error).__name__))

    def record_warning(self, unit: str, message: str) -> None:
        self.warnings.append({"unit": unit, "message": message})

    def finish(self) -> "JobSummary":
        self.finished_at = datetime.utcnow()
        return self

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def duration_ms(self) -> float:
        end = self.finished_at or datetime.utcnow()
        return (end - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type,
            "job_id": self.job_id,
            "mode": self.mode.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "successes": self.successes,
            "skips": self.skips,
            "failures": [f.__dict__ for f in self.failures],
            "warnings": self.warnings,
            "details": self.details,
        }

    def format(self) -> str:
        lines = [
            "=" * 60,
            f"{self.job_type} [{self.mode.value}] job {self.job_id}",
            "=" * 60,
            f"  Successes: {self.successes}",
            f"  Skips:     {len(self.skips)}",
            f"  Failures:  {len(self.failures)}",
            f"  Warnings:  {len(self.warnings)}",
        ]
        for skip in self.skips:
            lines.append(f"  - skipped {skip['unit']}: {skip['reason']}")
        for warning in self.warnings:
            lines.append(f"  ! {warning['unit']}: {warning['message']}")
        for failure in self.failures:
            lines.append(f"  X {failure.unit}: {failure.error_type}: {failure.error}")
        if not self.mode.is_live:
            lines.append("  (dry run: nothing was written)")
        return "\n".join(lines)

    def print(self) -> None:
        print(self.format())
