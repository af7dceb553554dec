"""
gdl Retrieval Orchestrator.

Turns selected AssemblyRecords into RetrievalTasks (``plan``) and executes
them on a fixed pool of worker threads (``Retriever.execute``).

Guarantees:
- A destination path only ever names a complete file: every transfer goes
  through ``atomic_writer`` (temp file beside the destination, renamed on
  success, removed on failure or interruption).
- One shared ``requests.Session`` serves all workers.
- Transient failures are retried with backoff; terminal ones are recorded
  for that task only. Individual task failures never raise.
- The report lists tasks in plan order, whatever the completion order.
- A set stop event stops queued tasks from starting and aborts in-flight
  transfers between chunks.
"""

import logging
import posixpath
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

import requests

from gdl.lib.catalog import AssemblyRecord
from gdl.lib.errors import (
    Cancelled,
    DestinationMissing,
    GdlError,
    UnsupportedFormat,
)
from gdl.lib.io import remove_stale_temp
from gdl.lib.logging import DualLogger
from gdl.lib.report import Outcome, RetrievalReport, SkipReason, TaskResult
from gdl.lib.transport import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_TIMEOUT,
    RetryConfig,
    build_session,
    error_for_exception,
    fetch_to_file,
    normalize_url,
    with_retry,
)

_logger = logging.getLogger(__name__)

# Seconds between liveness checks while the main thread waits on workers
JOIN_POLL_INTERVAL = 0.2


class AssemblyFormat(str, Enum):
    FNA = "fna"
    FAA = "faa"
    GBFF = "gbff"
    GFF = "gff"


# Remote file suffix appended to the assembly's directory basename
FORMAT_SUFFIXES: dict[AssemblyFormat, str] = {
    AssemblyFormat.FNA: "_genomic.fna.gz",
    AssemblyFormat.FAA: "_protein.faa.gz",
    AssemblyFormat.GBFF: "_genomic.gbff.gz",
    AssemblyFormat.GFF: "_genomic.gff.gz",
}


@dataclass
class RetrievalTask:
    """
    One file to fetch.

    Attributes:
        accession: Assembly accession.
        url: Source URL; None when planning failed.
        dest: Destination path ``<out_dir>/<accession>.<format>.gz``.
        attempts: Transfer attempts made so far (mutated by the owning worker).
        error: Planning failure; such a task is skipped, never fetched.
    """

    accession: str
    url: Optional[str]
    dest: Path
    attempts: int = 0
    error: Optional[UnsupportedFormat] = None


# =============================================================================
# Planning
# =============================================================================

def destination_name(accession: str, fmt: AssemblyFormat) -> str:
    """
    File name for a downloaded assembly.

    Example:
        >>> destination_name("GCF_000005845.2", AssemblyFormat.FNA)
        'GCF_000005845.2.fna.gz'
    """
    return f"{accession}.{fmt.value}.gz"


def source_url(record: AssemblyRecord, fmt: AssemblyFormat) -> str:
    """
    Derive the remote URL of ``fmt`` for a record.

    Raises:
        UnsupportedFormat: If the record has no retrieval path or its
            repository is unknown.

    Example:
        >>> source_url(record, AssemblyFormat.FNA)
        'https://ftp.ncbi.nlm.nih.gov/genomes/all/GCF/000/005/845/GCF_000005845.2_ASM584v2/GCF_000005845.2_ASM584v2_genomic.fna.gz'
    """
    if not record.has_ftp_path:
        raise UnsupportedFormat(
            f"{record.accession} has no retrieval path",
            details="The catalog lists ftp_path as 'na'",
        )
    if record.source is None:
        raise UnsupportedFormat(
            f"{record.accession} is not from a known repository",
            details="Expected a GCF_ (RefSeq) or GCA_ (GenBank) accession",
        )
    base = normalize_url(record.ftp_path.rstrip("/"))
    return f"{base}/{posixpath.basename(base)}{FORMAT_SUFFIXES[fmt]}"


def plan(
    records: Iterable[AssemblyRecord],
    fmt: AssemblyFormat,
    out_dir: Path,
) -> list[RetrievalTask]:
    """
    Derive one RetrievalTask per record. Pure: no I/O.

    A record whose format cannot be mapped yields a task carrying the
    UnsupportedFormat error instead of a URL; the batch continues.
    A record repeating an earlier destination is dropped, so no two tasks
    ever write the same file.
    """
    tasks = []
    seen: set[Path] = set()
    for record in records:
        dest = out_dir / destination_name(record.accession, fmt)
        if dest in seen:
            _logger.warning(f"Duplicate catalog record for {record.accession}; planned once")
            continue
        seen.add(dest)
        try:
            url = source_url(record, fmt)
        except UnsupportedFormat as e:
            tasks.append(RetrievalTask(record.accession, None, dest, error=e))
            continue
        tasks.append(RetrievalTask(record.accession, url, dest))
    return tasks


# =============================================================================
# Execution
# =============================================================================

class Retriever:
    """
    Bounded-parallel executor for RetrievalTasks.

    Execution flow:
    1. Check destination directories exist (else DestinationMissing)
    2. Resolve tasks that need no transfer (unsupported, dry run, existing)
    3. Remove the tasks' own stale temp files, then fetch the rest on ``parallel`` workers
    4. Assemble the report in plan order

    Example:
        >>> retriever = Retriever(parallel=4)
        >>> report = retriever.execute(plan(records, AssemblyFormat.FNA, out_dir))
        >>> report.exit_code()
        0
    """

    def __init__(
        self,
        parallel: int = 1,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        force: bool = False,
        stop_event: Optional[threading.Event] = None,
        run_logger: Optional[DualLogger] = None,
    ):
        if parallel < 1:
            raise ValueError(f"parallel must be >= 1, got {parallel}")
        self.parallel = parallel
        self._session = session
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.force = force
        self.stop_event = stop_event or threading.Event()
        self.run_logger = run_logger

    @property
    def session(self) -> requests.Session:
        """The shared session, built on first use."""
        if self._session is None:
            self._session = build_session(pool_size=self.parallel)
        return self._session

    def execute(self, tasks: list[RetrievalTask], dry_run: bool = False) -> RetrievalReport:
        """
        Run every task and return the report.

        Args:
            tasks: Planned tasks.
            dry_run: Record every fetchable task as Skipped(DryRun) and
                touch neither network nor filesystem.

        Returns:
            RetrievalReport in plan order.

        Raises:
            DestinationMissing: If a destination directory does not exist
                (not checked on dry runs).
        """
        for directory in sorted({task.dest.parent for task in tasks}):
            if not dry_run and not directory.is_dir():
                raise DestinationMissing(
                    f"Output directory does not exist: {directory}",
                    details="Create it before starting the retrieval",
                )

        report = RetrievalReport(dry_run=dry_run)
        results: list[Optional[TaskResult]] = [None] * len(tasks)
        pending: list[int] = []

        for index, task in enumerate(tasks):
            early = self._resolve_without_transfer(task, dry_run)
            if early is None:
                pending.append(index)
            else:
                results[index] = early

        if pending:
            for index in pending:
                if remove_stale_temp(tasks[index].dest):
                    _logger.info(f"Removed stale temp file for {tasks[index].accession}")
            self._run_pool(tasks, pending, results)

        report.results = [r for r in results if r is not None]
        report.cancelled = self.stop_event.is_set()
        report.finished_at = datetime.now(timezone.utc).isoformat()

        for result in report.results:
            self._log_result(result)
        return report

    def _resolve_without_transfer(self, task: RetrievalTask, dry_run: bool) -> Optional[TaskResult]:
        if task.error is not None:
            return TaskResult(
                accession=task.accession,
                outcome=Outcome.SKIPPED,
                dest=str(task.dest),
                reason=SkipReason.UNSUPPORTED_FORMAT,
                message=task.error.message,
            )
        if dry_run:
            return TaskResult(
                accession=task.accession,
                outcome=Outcome.SKIPPED,
                url=task.url,
                dest=str(task.dest),
                reason=SkipReason.DRY_RUN,
            )
        if not self.force and task.dest.is_file() and task.dest.stat().st_size > 0:
            return TaskResult(
                accession=task.accession,
                outcome=Outcome.SKIPPED,
                url=task.url,
                dest=str(task.dest),
                reason=SkipReason.ALREADY_EXISTS,
            )
        return None

    def _run_pool(
        self,
        tasks: list[RetrievalTask],
        pending: list[int],
        results: list[Optional[TaskResult]],
    ) -> None:
        work: queue.Queue = queue.Queue()
        for index in pending:
            work.put(index)

        # One session for all workers
        session = self.session
        workers = [
            threading.Thread(
                target=self._worker,
                args=(session, work, tasks, results),
                name=f"gdl-worker-{n}",
                daemon=True,
            )
            for n in range(min(self.parallel, len(pending)))
        ]
        _logger.info(f"Fetching {len(pending)} file(s) with {len(workers)} worker(s)")
        for worker in workers:
            worker.start()

        try:
            while any(worker.is_alive() for worker in workers):
                for worker in workers:
                    worker.join(JOIN_POLL_INTERVAL)
        except KeyboardInterrupt:
            _logger.warning("Interrupted; stopping workers")
            self.stop_event.set()
            for worker in workers:
                worker.join()

    def _worker(
        self,
        session: requests.Session,
        work: queue.Queue,
        tasks: list[RetrievalTask],
        results: list[Optional[TaskResult]],
    ) -> None:
        while True:
            try:
                index = work.get_nowait()
            except queue.Empty:
                return
            task = tasks[index]
            if self.stop_event.is_set():
                results[index] = TaskResult(
                    accession=task.accession,
                    outcome=Outcome.SKIPPED,
                    url=task.url,
                    dest=str(task.dest),
                    reason=SkipReason.CANCELLED,
                )
                continue
            results[index] = self._fetch(session, task)

    def _fetch(self, session: requests.Session, task: RetrievalTask) -> TaskResult:
        def attempt(number: int) -> int:
            if self.stop_event.is_set():
                raise Cancelled(f"Stopped before fetching {task.accession}")
            task.attempts = number
            return fetch_to_file(
                session,
                task.url,
                task.dest,
                timeout=self.timeout,
                chunk_size=self.chunk_size,
                stop_event=self.stop_event,
            )

        try:
            nbytes = with_retry(
                attempt,
                self.retry_config,
                wait=self.stop_event.wait,
                describe=task.accession,
            )
        except GdlError as e:
            return self._failure(task, e)
        except Exception as e:
            _logger.exception(f"Unexpected error fetching {task.accession}")
            return self._failure(task, error_for_exception(e, task.url))

        return TaskResult(
            accession=task.accession,
            outcome=Outcome.FETCHED,
            url=task.url,
            dest=str(task.dest),
            bytes=nbytes,
            attempts=task.attempts,
        )

    def _failure(self, task: RetrievalTask, error: GdlError) -> TaskResult:
        return TaskResult(
            accession=task.accession,
            outcome=Outcome.FAILED,
            url=task.url,
            dest=str(task.dest),
            error_code=error.error_code,
            message=error.message,
            attempts=task.attempts,
        )

    def _log_result(self, result: TaskResult) -> None:
        if result.outcome is Outcome.FAILED:
            _logger.warning(f"{result.accession}: {result.label} {result.message}")
        else:
            _logger.debug(f"{result.accession}: {result.label}")

        if self.run_logger is None:
            return
        extra = result.to_dict()
        if result.outcome is Outcome.FAILED:
            self.run_logger.error(f"Task {result.label}", **extra)
        else:
            self.run_logger.info(f"Task {result.label}", **extra)


def execute(
    tasks: list[RetrievalTask],
    parallel: int = 1,
    dry_run: bool = False,
    **options,
) -> RetrievalReport:
    """
    Execute tasks with a one-off Retriever.

    Args:
        tasks: Planned tasks.
        parallel: Worker count (default 1).
        dry_run: Plan only; no network or filesystem writes.
        **options: Further Retriever keyword arguments (session, force, ...).
    """
    return Retriever(parallel=parallel, **options).execute(tasks, dry_run=dry_run)
