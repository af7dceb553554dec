"""
Integration tests for dry-run mode.

Tests that a dry run resolves, selects and plans exactly like a real run
but performs no transfers and creates no files.
"""

from pathlib import Path
from unittest.mock import Mock

from gdl.lib.catalog import select
from gdl.lib.pipeline import DownloadRequest, run_download
from gdl.lib.report import SkipReason
from gdl.lib.retrieval import AssemblyFormat, Retriever, plan
from gdl.lib.taxonomy import load_taxdump


# =============================================================================
# Test Dry-Run Planning
# =============================================================================

class TestDryRunPlanning:
    """Tests for dry runs over many records."""

    def test_ten_records_parallel_four(self, taxdump_dir, write_catalog, catalog_row, tmp_path) -> None:
        """[P1] Given 10 matching records and parallel 4, then 10 DryRun results and no files."""
        # Given
        catalog = write_catalog([catalog_row(f"GCF_{i:09d}.1", 562) for i in range(10)])
        out_dir = tmp_path / "out"
        session = Mock()
        files_before = set(tmp_path.rglob("*"))

        # When
        report = run_download(
            DownloadRequest(selector=562, out_dir=out_dir, dry_run=True),
            load_taxonomy=lambda: load_taxdump(taxdump_dir),
            locate_catalog=lambda: catalog,
            retriever=Retriever(parallel=4, session=session),
        )

        # Then
        assert len(report) == 10
        assert all(r.reason is SkipReason.DRY_RUN for r in report.results)
        assert [r.accession for r in report.results] == [f"GCF_{i:09d}.1" for i in range(10)]
        assert all(r.url.endswith("_genomic.fna.gz") for r in report.results)
        session.get.assert_not_called()
        assert set(tmp_path.rglob("*")) == files_before
        assert report.exit_code() == 0

    def test_dry_run_matches_real_plan(self, taxdump_dir, write_catalog, catalog_row, tmp_path) -> None:
        """[P1] The dry-run URLs equal the URLs a real run would fetch."""
        # Given
        catalog = write_catalog([
            catalog_row("GCF_000005845.2", 511145),
            catalog_row("GCF_000008865.2", 562, "Contig"),
        ])
        index = load_taxdump(taxdump_dir)
        records = list(select(catalog, index.resolve_selector(562)))
        tasks = plan(records, AssemblyFormat.GBFF, tmp_path)

        # When
        report = Retriever(session=Mock()).execute(tasks, dry_run=True)

        # Then
        assert [r.url for r in report.results] == [t.url for t in tasks]
        assert "Dry run: 2 assemblies would be fetched" in report.summary_lines()

    def test_dry_run_ignores_existing_files(self, taxdump_dir, write_catalog, catalog_row, tmp_path) -> None:
        """[P2] A dry run reports DryRun even for files that already exist."""
        # Given
        catalog = write_catalog([catalog_row("GCF_000005845.2", 511145)])
        (tmp_path / "GCF_000005845.2.fna.gz").write_bytes(b"complete")

        # When
        report = run_download(
            DownloadRequest(selector=562, out_dir=tmp_path, dry_run=True),
            load_taxonomy=lambda: load_taxdump(taxdump_dir),
            locate_catalog=lambda: catalog,
            retriever=Retriever(session=Mock()),
        )

        # Then
        assert report.results[0].reason is SkipReason.DRY_RUN
        assert (tmp_path / "GCF_000005845.2.fna.gz").read_bytes() == b"complete"
