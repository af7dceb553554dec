"""
gdl Retrieval Report.

Per-task outcomes of a retrieval run, in the order the tasks were planned,
plus the run-level counters, exit-code decision and JSON export.

Outcomes:
- Fetched: file committed to its destination
- Skipped(reason): AlreadyExists, DryRun, UnsupportedFormat, Cancelled
- Failed(kind): kind is an ErrorCode (E_NOT_FOUND, E_TIMEOUT, ...)
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from gdl import __version__
from gdl.lib.errors import (
    EXIT_CANCELLED,
    EXIT_PARTIAL_FAILURE,
    EXIT_SUCCESS,
    ErrorCode,
)
from gdl.lib.io import atomic_write_json


class Outcome(str, Enum):
    FETCHED = "Fetched"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class SkipReason(str, Enum):
    ALREADY_EXISTS = "AlreadyExists"
    DRY_RUN = "DryRun"
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    CANCELLED = "Cancelled"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TaskResult:
    """
    Final outcome of one RetrievalTask.

    Attributes:
        accession: Assembly accession.
        outcome: Fetched, Skipped or Failed.
        url: Source URL, None if no URL could be derived.
        dest: Destination path.
        reason: Skip reason when outcome is Skipped.
        error_code: Failure kind when outcome is Failed.
        message: Human-readable detail for skips and failures.
        bytes: Bytes written (0 unless Fetched).
        attempts: Transfer attempts made.
    """

    accession: str
    outcome: Outcome
    url: Optional[str] = None
    dest: Optional[str] = None
    reason: Optional[SkipReason] = None
    error_code: Optional[ErrorCode] = None
    message: Optional[str] = None
    bytes: int = 0
    attempts: int = 0

    @property
    def label(self) -> str:
        """
        Outcome with its qualifier.

        Example:
            >>> TaskResult("GCF_1.1", Outcome.SKIPPED, reason=SkipReason.DRY_RUN).label
            'Skipped(DryRun)'
        """
        if self.outcome is Outcome.SKIPPED and self.reason is not None:
            return f"Skipped({self.reason.value})"
        if self.outcome is Outcome.FAILED and self.error_code is not None:
            return f"Failed({self.error_code.value})"
        return self.outcome.value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            result[key] = value.value if isinstance(value, Enum) else value
        return result


@dataclass
class RetrievalReport:
    """
    Aggregate of every TaskResult of one run.

    Attributes:
        results: One entry per planned task, in plan order.
        dry_run: Whether the run was a dry run.
        cancelled: Whether a stop signal interrupted the run.
        started_at: ISO timestamp when execution began.
        finished_at: ISO timestamp when execution ended.
        selection: Catalog selection counters, when known.
    """

    results: list[TaskResult] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False
    started_at: str = field(default_factory=utc_timestamp)
    finished_at: Optional[str] = None
    selection: Optional[dict[str, int]] = None

    def __len__(self) -> int:
        return len(self.results)

    def _with(self, outcome: Outcome) -> list[TaskResult]:
        return [r for r in self.results if r.outcome is outcome]

    @property
    def fetched(self) -> list[TaskResult]:
        return self._with(Outcome.FETCHED)

    @property
    def skipped(self) -> list[TaskResult]:
        return self._with(Outcome.SKIPPED)

    @property
    def failed(self) -> list[TaskResult]:
        return self._with(Outcome.FAILED)

    @property
    def total_bytes(self) -> int:
        return sum(r.bytes for r in self.results)

    @property
    def is_empty(self) -> bool:
        """True when nothing matched the selection."""
        return not self.results

    def counts(self) -> dict[str, int]:
        """
        Number of tasks per outcome label.

        Example:
            >>> report.counts()
            {'Fetched': 3, 'Skipped(AlreadyExists)': 2}
        """
        counts: dict[str, int] = {}
        for result in self.results:
            counts[result.label] = counts.get(result.label, 0) + 1
        return counts

    def exit_code(self) -> int:
        """
        Process exit status for this run.

        Returns:
            130 if cancelled, 7 if any task failed, else 0.
        """
        if self.cancelled:
            return EXIT_CANCELLED
        if self.failed:
            return EXIT_PARTIAL_FAILURE
        return EXIT_SUCCESS

    def summary_lines(self) -> list[str]:
        """Human-readable summary, one line per fact."""
        if self.is_empty:
            return ["No assemblies matched the selection"]

        lines = []
        if self.dry_run:
            lines.append(f"Dry run: {len(self.results)} assemblies would be fetched")
            for result in self.results:
                if result.reason is SkipReason.DRY_RUN:
                    lines.append(f"  {result.accession}  {result.url}")
        counts = ", ".join(f"{label}: {n}" for label, n in self.counts().items())
        lines.append(f"{len(self.results)} task(s): {counts}")
        if self.fetched:
            lines.append(f"Downloaded {self.total_bytes} bytes")
        for result in self.failed:
            lines.append(f"  FAILED {result.accession}: {result.message}")
        if self.cancelled:
            abandoned = sum(
                1 for r in self.results
                if r.reason is SkipReason.CANCELLED or r.error_code is ErrorCode.E_CANCELLED
            )
            lines.append(
                f"Cancelled: {len(self.fetched)} completed, {abandoned} abandoned"
            )
        return lines

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "version": __version__,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "counts": self.counts(),
            "total_bytes": self.total_bytes,
            "exit_code": self.exit_code(),
            "tasks": [r.to_dict() for r in self.results],
        }
        if self.selection is not None:
            result["selection"] = self.selection
        return result


def write_report_json(report: RetrievalReport, path: Path) -> Path:
    """
    Atomically write a report as JSON.

    Args:
        report: The RetrievalReport to export.
        path: Target file; parent directories are created.

    Returns:
        The path written.
    """
    atomic_write_json(path, report.to_dict())
    return path
