"""Shared test fixtures for gdl."""

import threading
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest

NODES = [
    (1, 1, "no rank"),
    (2, 1, "superkingdom"),
    (561, 2, "genus"),
    (562, 561, "species"),
    (83333, 562, "strain"),
    (511145, 83333, "no rank"),
    (620, 2, "genus"),
    (1386, 2, "genus"),
    (55087, 1, "genus"),
]

NAMES = [
    (1, "root", "", "scientific name"),
    (2, "Bacteria", "Bacteria <bacteria>", "scientific name"),
    (561, "Escherichia", "", "scientific name"),
    (562, "Escherichia coli", "", "scientific name"),
    (83333, "Escherichia coli K-12", "", "scientific name"),
    (511145, "Escherichia coli str. K-12 substr. MG1655", "", "scientific name"),
    (620, "Shigella", "", "scientific name"),
    (1386, "Bacillus", "Bacillus <bacteria>", "scientific name"),
    (55087, "Bacillus", "Bacillus <stick insect>", "scientific name"),
]

CATALOG_COLUMNS = [
    "assembly_accession", "bioproject", "biosample", "wgs_master", "refseq_category",
    "taxid", "species_taxid", "organism_name", "infraspecific_name", "isolate",
    "version_status", "assembly_level", "release_type", "genome_rep", "seq_rel_date",
    "asm_name", "submitter", "gbrs_paired_asm", "paired_asm_comp", "ftp_path",
]

FTP_ROOT = "https://ftp.ncbi.nlm.nih.gov/genomes/all"


def _dmp(rows) -> str:
    return "".join("\t|\t".join(str(f) for f in row) + "\t|\n" for row in rows)


def _catalog_row(accession: str, taxid: int, level: str = "Complete Genome",
                species_taxid: int = 562, organism: str = "Escherichia coli",
                ftp_path: str = None) -> dict:
    """One catalog row as a column -> value dict."""
    if ftp_path is None:
        ftp_path = f"{FTP_ROOT}/{accession[:3]}/{accession}_ASM1v1"
    return {
        "assembly_accession": accession,
        "taxid": str(taxid),
        "species_taxid": str(species_taxid),
        "organism_name": organism,
        "assembly_level": level,
        "version_status": "latest",
        "seq_rel_date": "2020/01/01",
        "ftp_path": ftp_path,
    }


@pytest.fixture
def catalog_row():
    """Factory for one catalog row (column -> value dict)."""
    return _catalog_row


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def taxdump_dir(tmp_path: Path) -> Path:
    """Directory holding a small nodes.dmp / names.dmp pair."""
    dump_dir = tmp_path / "taxdump"
    dump_dir.mkdir()
    (dump_dir / "nodes.dmp").write_text(_dmp(NODES))
    (dump_dir / "names.dmp").write_text(_dmp(NAMES))
    return dump_dir


@pytest.fixture
def write_catalog(tmp_path: Path):
    """Factory writing an assembly_summary file from catalog_row dicts."""
    def write(rows: list[dict], name: str = "assembly_summary.txt") -> Path:
        lines = [
            "#   See ftp://ftp.ncbi.nlm.nih.gov/genomes/README_assembly_summary.txt\n",
            "# " + "\t".join(CATALOG_COLUMNS) + "\n",
        ]
        for row in rows:
            lines.append("\t".join(row.get(c, "na") for c in CATALOG_COLUMNS) + "\n")
        path = tmp_path / name
        path.write_text("".join(lines))
        return path

    return write


@pytest.fixture
def fake_session():
    """
    Session mock serving ``url.encode()`` as the body of every URL.

    ``fake_session.statuses`` maps a URL substring to a status code to
    return instead of 200.
    """
    lock = threading.Lock()
    session = Mock()
    session.statuses = {}

    def get(url, stream=True, timeout=None):
        with lock:
            status = next((s for key, s in session.statuses.items() if key in url), 200)
        response = MagicMock()
        response.__enter__.return_value = response
        response.status_code = status
        response.iter_content.return_value = iter([url.encode()])
        return response

    session.get.side_effect = get
    return session
