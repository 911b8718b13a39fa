"""
Internal records passed between pipeline stages.

These are plain dataclasses (not API models): they never leave the
worker except through processed_data JSON.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from .enums import JobState, JobStatus, MatchMethod


@dataclass
class ScanJob:
    """One claimed row of scan_jobs."""
    id: int
    user_id: str
    image_url: str
    ocr_text: Optional[str] = None
    scan_id: Optional[int] = None
    idempotency_key: Optional[str] = None
    retry_count: int = 0
    status: JobStatus = JobStatus.PENDING
    processed_data: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ScanJob":
        raw_data = row["processed_data"]
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            image_url=row["image_url"],
            ocr_text=row["ocr_text"],
            scan_id=row["scan_id"],
            idempotency_key=row["idempotency_key"],
            retry_count=row["retry_count"] or 0,
            status=JobStatus(row["status"]),
            processed_data=json.loads(raw_data) if raw_data else None,
            error_message=row["error_message"],
            created_at=row["created_at"],
        )


@dataclass
class MatchResult:
    """Outcome of a visual or text match attempt."""
    matched: bool
    wine_id: Optional[int] = None
    vintage_id: Optional[int] = None
    producer_name: Optional[str] = None
    wine_name: Optional[str] = None
    similarity: Optional[float] = None
    # Label embedding computed during a visual attempt, kept for storage
    embedding: Optional[list[float]] = None

    @classmethod
    def miss(cls, embedding: Optional[list[float]] = None) -> "MatchResult":
        return cls(matched=False, embedding=embedding)


@dataclass
class ScanMatchRecord:
    """How a scan was resolved; written back onto the scans row."""
    vintage_id: int
    method: MatchMethod
    confidence: float
    similarity: Optional[float] = None


@dataclass
class JobRun:
    """
    Per-job execution trace.

    States are appended in the order they were entered, so tests and
    logs can see exactly which path a job took.
    """
    job: ScanJob
    states: list[JobState] = field(default_factory=lambda: [JobState.PENDING])
    match_method: Optional[MatchMethod] = None
    error: Optional[str] = None

    @property
    def state(self) -> JobState:
        return self.states[-1]

    def advance(self, state: JobState) -> None:
        self.states.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.COMPLETED


@dataclass
class BatchStats:
    """Aggregate of one process_batch invocation."""
    processed: int = 0
    failed: int = 0
    total: int = 0
    match_method_counts: dict[str, int] = field(
        default_factory=lambda: {method.value: 0 for method in MatchMethod}
    )

    def record(self, run: JobRun) -> None:
        if run.succeeded:
            self.processed += 1
            if run.match_method is not None:
                self.match_method_counts[run.match_method.value] += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "total": self.total,
            "match_method_counts": dict(self.match_method_counts),
        }
