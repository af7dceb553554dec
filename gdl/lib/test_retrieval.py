"""
Unit tests for gdl/lib/retrieval.py

Tests task planning, skip decisions, retries, failure isolation, ordering
and cancellation of the retrieval pool.
"""

import threading
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest
import requests

from gdl.lib.catalog import AssemblyRecord, Source
from gdl.lib.errors import DestinationMissing, ErrorCode
from gdl.lib.io import get_temp_path
from gdl.lib.report import Outcome, SkipReason
from gdl.lib.retrieval import (
    AssemblyFormat,
    Retriever,
    RetrievalTask,
    destination_name,
    execute,
    plan,
    source_url,
)
from gdl.lib.transport import RetryConfig

BASE = "https://ftp.ncbi.nlm.nih.gov/genomes/all/GCF/000/005/845"
NO_WAIT = RetryConfig(max_retries=2, base_delay=0.0, jitter=0.0)


def record(accession: str = "GCF_000005845.2", ftp_path: str = None) -> AssemblyRecord:
    if ftp_path is None:
        ftp_path = f"{BASE}/{accession}_ASM584v2"
    return AssemblyRecord(
        accession=accession,
        taxid=511145,
        species_taxid=562,
        organism_name="Escherichia coli",
        assembly_level="Complete Genome",
        ftp_path=ftp_path,
        source=Source.from_accession(accession),
    )


def response(status_code: int = 200, body: bytes = b">chr\nACGT\n") -> MagicMock:
    resp = MagicMock()
    resp.__enter__.return_value = resp
    resp.status_code = status_code
    resp.iter_content.return_value = iter([body])
    return resp


def session_for(outcomes: dict) -> Mock:
    """
    Session mock whose ``get`` answers per URL substring.

    Each value is a list consumed one call at a time; items are status codes
    (int) or exceptions to raise.
    """
    remaining = {key: list(value) for key, value in outcomes.items()}
    lock = threading.Lock()

    def get(url, stream=True, timeout=None):
        with lock:
            for key, queue in remaining.items():
                if key in url:
                    item = queue.pop(0) if len(queue) > 1 else queue[0]
                    break
            else:
                item = 200
        if isinstance(item, Exception):
            raise item
        return response(item, body=url.encode())

    session = Mock()
    session.get.side_effect = get
    return session


# =============================================================================
# Planning
# =============================================================================

class TestPlan:
    """Tests for source_url / destination_name / plan."""

    def test_fna_url_from_ftp_path(self) -> None:
        """[P1] The URL joins ftp_path, its basename and the format suffix."""
        assert source_url(record(), AssemblyFormat.FNA) == (
            f"{BASE}/GCF_000005845.2_ASM584v2/GCF_000005845.2_ASM584v2_genomic.fna.gz"
        )

    @pytest.mark.parametrize(
        "fmt, suffix",
        [
            (AssemblyFormat.FAA, "_protein.faa.gz"),
            (AssemblyFormat.GBFF, "_genomic.gbff.gz"),
            (AssemblyFormat.GFF, "_genomic.gff.gz"),
        ],
    )
    def test_other_formats(self, fmt, suffix) -> None:
        """[P2] Each format maps to its remote suffix."""
        assert source_url(record(), fmt).endswith(f"GCF_000005845.2_ASM584v2{suffix}")

    def test_ftp_scheme_and_trailing_slash(self) -> None:
        """[P2] ftp:// paths are fetched over HTTPS; trailing slashes are ignored."""
        rec = record(ftp_path="ftp://ftp.ncbi.nlm.nih.gov/genomes/all/GCA/1/GCA_1.1_x/")

        assert source_url(rec, AssemblyFormat.FNA) == (
            "https://ftp.ncbi.nlm.nih.gov/genomes/all/GCA/1/GCA_1.1_x/GCA_1.1_x_genomic.fna.gz"
        )

    @pytest.mark.parametrize(
        "fmt, name",
        [
            (AssemblyFormat.FNA, "GCA_1.1.fna.gz"),
            (AssemblyFormat.FAA, "GCA_1.1.faa.gz"),
            (AssemblyFormat.GBFF, "GCA_1.1.gbff.gz"),
            (AssemblyFormat.GFF, "GCA_1.1.gff.gz"),
        ],
    )
    def test_destination_name(self, fmt, name) -> None:
        """[P1] Destinations keep the served gzip: <accession>.<format>.gz."""
        assert destination_name("GCA_1.1", fmt) == name

    def test_plan_marks_unsupported_without_aborting(self, tmp_path: Path) -> None:
        """[P1] A record without a path yields an error task; others are planned."""
        # When
        tasks = plan(
            [record("GCF_1.1", ftp_path="na"), record("GCF_2.1"), record("XYZ_3.1")],
            AssemblyFormat.FNA,
            tmp_path,
        )

        # Then
        assert [t.accession for t in tasks] == ["GCF_1.1", "GCF_2.1", "XYZ_3.1"]
        assert tasks[0].url is None and tasks[0].error is not None
        assert tasks[1].url is not None and tasks[1].error is None
        assert tasks[2].error is not None
        assert tasks[1].dest == tmp_path / "GCF_2.1.fna.gz"

    def test_plan_drops_duplicate_destinations(self, tmp_path: Path) -> None:
        """[P1] A repeated catalog record is planned once, so no two tasks share a file."""
        # When
        tasks = plan(
            [record("GCF_1.1"), record("GCF_2.1"), record("GCF_1.1")],
            AssemblyFormat.FNA,
            tmp_path,
        )

        # Then
        assert [t.accession for t in tasks] == ["GCF_1.1", "GCF_2.1"]
        assert len({t.dest for t in tasks}) == len(tasks)


# =============================================================================
# Execution
# =============================================================================

class TestExecute:
    """Tests for Retriever.execute()."""

    def test_fetches_into_destinations(self, tmp_path: Path) -> None:
        """[P1] Given two tasks, then both files are committed."""
        # Given
        tasks = plan([record("GCF_1.1"), record("GCF_2.1")], AssemblyFormat.FNA, tmp_path)
        session = session_for({})

        # When
        report = execute(tasks, parallel=2, session=session, retry_config=NO_WAIT)

        # Then
        assert [r.label for r in report.results] == ["Fetched", "Fetched"]
        assert (tmp_path / "GCF_1.1.fna.gz").read_bytes() == tasks[0].url.encode()
        assert report.exit_code() == 0

    def test_dry_run_touches_nothing(self, tmp_path: Path) -> None:
        """[P1] Dry run records DryRun for every task with no I/O."""
        # Given
        out_dir = tmp_path / "not-created"
        tasks = plan([record("GCF_1.1"), record("GCF_2.1")], AssemblyFormat.FNA, out_dir)
        session = Mock()

        # When
        report = execute(tasks, dry_run=True, session=session)

        # Then
        assert [r.label for r in report.results] == ["Skipped(DryRun)"] * 2
        assert report.results[0].url == tasks[0].url
        session.get.assert_not_called()
        assert not out_dir.exists()

    def test_existing_file_skipped(self, tmp_path: Path) -> None:
        """[P1] A non-empty destination is AlreadyExists with no network call."""
        # Given
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)
        tasks[0].dest.write_bytes(b"complete")
        session = Mock()

        # When
        report = execute(tasks, session=session)

        # Then
        assert report.results[0].label == "Skipped(AlreadyExists)"
        session.get.assert_not_called()
        assert tasks[0].dest.read_bytes() == b"complete"

    def test_empty_file_is_refetched(self, tmp_path: Path) -> None:
        """[P2] A zero-byte destination does not count as present."""
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)
        tasks[0].dest.write_bytes(b"")

        report = execute(tasks, session=session_for({}), retry_config=NO_WAIT)

        assert report.results[0].label == "Fetched"

    def test_force_overwrites(self, tmp_path: Path) -> None:
        """[P2] force re-fetches an existing destination."""
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)
        tasks[0].dest.write_bytes(b"old")

        report = execute(tasks, session=session_for({}), force=True, retry_config=NO_WAIT)

        assert report.results[0].label == "Fetched"
        assert tasks[0].dest.read_bytes() != b"old"

    def test_unsupported_task_skipped(self, tmp_path: Path) -> None:
        """[P1] A planning error becomes Skipped(UnsupportedFormat)."""
        tasks = plan([record("GCF_1.1", ftp_path="na")], AssemblyFormat.FNA, tmp_path)

        report = execute(tasks, session=Mock())

        assert report.results[0].reason is SkipReason.UNSUPPORTED_FORMAT
        assert report.exit_code() == 0

    def test_transient_failure_retried(self, tmp_path: Path) -> None:
        """[P1] A 503 followed by 200 ends Fetched after two attempts."""
        # Given
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)
        session = session_for({"GCF_1.1": [503, 200]})

        # When
        report = execute(tasks, session=session, retry_config=NO_WAIT)

        # Then
        assert report.results[0].label == "Fetched"
        assert report.results[0].attempts == 2
        assert session.get.call_count == 2

    def test_terminal_failure_isolated(self, tmp_path: Path) -> None:
        """[P1] A 404 fails only its own task and leaves no file."""
        # Given
        tasks = plan(
            [record("GCF_1.1"), record("GCF_2.1"), record("GCF_3.1")],
            AssemblyFormat.FNA,
            tmp_path,
        )
        session = session_for({"GCF_2.1": [404]})

        # When
        report = execute(tasks, parallel=3, session=session, retry_config=NO_WAIT)

        # Then
        assert [r.label for r in report.results] == [
            "Fetched", "Failed(E_NOT_FOUND)", "Fetched",
        ]
        assert report.results[1].attempts == 1
        assert not tasks[1].dest.exists()
        assert report.exit_code() == 7

    def test_retries_exhausted(self, tmp_path: Path) -> None:
        """[P1] Persistent connection errors fail after max_retries + 1 attempts."""
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)
        session = session_for({"GCF_1.1": [requests.ConnectionError("reset")]})

        report = execute(tasks, session=session, retry_config=NO_WAIT)

        assert report.results[0].error_code is ErrorCode.E_NET_TRANSIENT
        assert session.get.call_count == 3

    def test_report_in_plan_order(self, tmp_path: Path) -> None:
        """[P1] Results follow plan order regardless of completion order."""
        # Given
        accessions = [f"GCF_{i}.1" for i in range(12)]
        tasks = plan([record(a) for a in accessions], AssemblyFormat.FNA, tmp_path)
        session = session_for({"GCF_0.1": [503, 503, 200]})

        # When
        report = execute(tasks, parallel=4, session=session, retry_config=NO_WAIT)

        # Then
        assert [r.accession for r in report.results] == accessions

    def test_missing_destination_directory(self, tmp_path: Path) -> None:
        """[P1] A non-existent out_dir raises DestinationMissing before any work."""
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path / "missing")
        session = Mock()

        with pytest.raises(DestinationMissing):
            execute(tasks, session=session)

        session.get.assert_not_called()

    def test_stale_temp_of_task_removed(self, tmp_path: Path) -> None:
        """[P2] A temp file left by an earlier run of the same task is replaced."""
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)
        stale = get_temp_path(tasks[0].dest)
        stale.write_bytes(b"partial")

        execute(tasks, session=session_for({}), retry_config=NO_WAIT)

        assert not stale.exists()
        assert tasks[0].dest.read_bytes() != b"partial"

    def test_unrelated_tmp_files_survive(self, tmp_path: Path) -> None:
        """[P1] Other .tmp files in the output directory are left alone."""
        # Given
        notes = tmp_path / "my_notes.tmp"
        notes.write_text("keep")
        other = get_temp_path(tmp_path / "GCF_9.1.fna.gz")
        other.write_bytes(b"another run")
        tasks = plan([record("GCF_1.1")], AssemblyFormat.FNA, tmp_path)

        # When
        report = execute(tasks, session=session_for({}), retry_config=NO_WAIT)

        # Then
        assert report.results[0].outcome is Outcome.FETCHED
        assert notes.read_text() == "keep"
        assert other.read_bytes() == b"another run"

    def test_empty_task_list(self, tmp_path: Path) -> None:
        """[P2] No tasks gives an empty report."""
        report = execute([], session=Mock())

        assert report.is_empty
        assert report.exit_code() == 0

    def test_parallel_must_be_positive(self) -> None:
        """[P2] parallel below 1 is rejected."""
        with pytest.raises(ValueError):
            Retriever(parallel=0)


class TestCancellation:
    """Tests for stop-event handling."""

    def test_stop_before_start_skips_queued(self, tmp_path: Path) -> None:
        """[P1] With the stop event already set, queued tasks are Skipped(Cancelled)."""
        # Given
        stop = threading.Event()
        stop.set()
        tasks = plan([record("GCF_1.1"), record("GCF_2.1")], AssemblyFormat.FNA, tmp_path)
        session = Mock()

        # When
        report = Retriever(session=session, stop_event=stop).execute(tasks)

        # Then
        assert [r.label for r in report.results] == ["Skipped(Cancelled)"] * 2
        assert report.cancelled
        assert report.exit_code() == 130
        session.get.assert_not_called()

    def test_stop_mid_transfer(self, tmp_path: Path) -> None:
        """[P1] Stopping during a transfer fails it as cancelled with no partial file."""
        # Given
        stop = threading.Event()

        def chunks():
            yield b"ACGT"
            stop.set()
            yield b"TTGA"

        resp = response()
        resp.iter_content.return_value = chunks()
        session = Mock()
        session.get.return_value = resp
        tasks = plan([record("GCF_1.1"), record("GCF_2.1")], AssemblyFormat.FNA, tmp_path)

        # When
        report = Retriever(parallel=1, session=session, stop_event=stop,
                           retry_config=NO_WAIT).execute(tasks)

        # Then
        assert [r.label for r in report.results] == [
            "Failed(E_CANCELLED)", "Skipped(Cancelled)",
        ]
        assert list(tmp_path.iterdir()) == []
        assert report.exit_code() == 130


class TestRetrievalTask:
    """Tests for the RetrievalTask record."""

    def test_defaults(self, tmp_path: Path) -> None:
        """[P2] A fresh task has no attempts and no error."""
        task = RetrievalTask("GCF_1.1", "https://x", tmp_path / "GCF_1.1.fna.gz")

        assert task.attempts == 0
        assert task.error is None
        assert Outcome.FETCHED.value == "Fetched"
