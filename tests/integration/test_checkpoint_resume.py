"""
Integration tests for resuming interrupted retrievals.

A re-run skips every complete destination without touching the network,
and an interrupted transfer never leaves a partial file under its
destination name.
"""

import threading
from pathlib import Path
from unittest.mock import MagicMock, Mock

from gdl.lib.io import get_temp_path
from gdl.lib.pipeline import DownloadRequest, run_download
from gdl.lib.report import Outcome, SkipReason
from gdl.lib.retrieval import Retriever
from gdl.lib.taxonomy import load_taxdump


def download(taxdump_dir: Path, catalog: Path, out_dir: Path, retriever: Retriever):
    return run_download(
        DownloadRequest(selector=562, out_dir=out_dir),
        load_taxonomy=lambda: load_taxdump(taxdump_dir),
        locate_catalog=lambda: catalog,
        retriever=retriever,
    )


# =============================================================================
# Test Resume
# =============================================================================

class TestResume:
    """Tests for re-running over a populated output directory."""

    def test_rerun_skips_everything(
        self, taxdump_dir, write_catalog, catalog_row, tmp_path, fake_session
    ) -> None:
        """[P1] Given a completed run, when re-run, then all AlreadyExists and no requests."""
        # Given
        catalog = write_catalog([catalog_row(f"GCF_{i:09d}.1", 562) for i in range(5)])
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        first = download(taxdump_dir, catalog, out_dir, Retriever(parallel=3, session=fake_session))
        assert [r.outcome for r in first.results] == [Outcome.FETCHED] * 5

        second_session = Mock()

        # When
        second = download(taxdump_dir, catalog, out_dir, Retriever(parallel=3, session=second_session))

        # Then
        assert all(r.reason is SkipReason.ALREADY_EXISTS for r in second.results)
        second_session.get.assert_not_called()
        assert second.exit_code() == 0

    def test_rerun_completes_missing_files(
        self, taxdump_dir, write_catalog, catalog_row, tmp_path, fake_session
    ) -> None:
        """[P1] Given a run with one failure, when re-run, then only that file is fetched."""
        # Given
        catalog = write_catalog([catalog_row(f"GCF_{i:09d}.1", 562) for i in range(3)])
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        fake_session.statuses["GCF_000000001.1"] = 404
        first = download(taxdump_dir, catalog, out_dir, Retriever(session=fake_session))
        assert first.exit_code() == 7

        # When
        fake_session.statuses.clear()
        fake_session.get.reset_mock()
        second = download(taxdump_dir, catalog, out_dir, Retriever(session=fake_session))

        # Then
        assert [r.label for r in second.results] == [
            "Skipped(AlreadyExists)", "Fetched", "Skipped(AlreadyExists)",
        ]
        assert fake_session.get.call_count == 1


# =============================================================================
# Test Interruption
# =============================================================================

class TestInterruption:
    """Tests for transfers stopped mid-way."""

    def test_interrupted_transfer_leaves_no_destination(
        self, taxdump_dir, write_catalog, catalog_row, tmp_path
    ) -> None:
        """[P1] Given a stop mid-transfer, then no file exists at the destination or temp path."""
        # Given
        catalog = write_catalog([catalog_row("GCF_000005845.2", 511145)])
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        stop = threading.Event()

        def chunks():
            yield b">chr\n"
            stop.set()
            yield b"ACGT\n"

        response = MagicMock()
        response.__enter__.return_value = response
        response.status_code = 200
        response.iter_content.return_value = chunks()
        session = Mock()
        session.get.return_value = response

        # When
        report = download(taxdump_dir, catalog, out_dir, Retriever(session=session, stop_event=stop))

        # Then
        dest = out_dir / "GCF_000005845.2.fna.gz"
        assert report.results[0].label == "Failed(E_CANCELLED)"
        assert report.exit_code() == 130
        assert not dest.exists()
        assert not get_temp_path(dest).exists()

    def test_stale_temp_from_crash_is_replaced(
        self, taxdump_dir, write_catalog, catalog_row, tmp_path, fake_session
    ) -> None:
        """[P1] Given a temp file from a crashed run, then the re-run fetches and cleans it."""
        # Given
        catalog = write_catalog([catalog_row("GCF_000005845.2", 511145)])
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        dest = out_dir / "GCF_000005845.2.fna.gz"
        get_temp_path(dest).write_bytes(b"partial")

        # When
        report = download(taxdump_dir, catalog, out_dir, Retriever(session=fake_session))

        # Then
        assert report.results[0].outcome is Outcome.FETCHED
        assert dest.read_bytes() != b"partial"
        assert not get_temp_path(dest).exists()
