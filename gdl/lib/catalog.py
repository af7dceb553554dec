"""
gdl Catalog Filter.

Streams an NCBI ``assembly_summary.txt`` catalog, parses each row into an
AssemblyRecord and yields the records that belong to the selected taxa and
satisfy the user predicate, optionally ranked by assembly level and capped
per species and overall.

Malformed rows are skipped and counted in ``SelectionStats``; they never
abort the pass. Only passing records are buffered, and only when ranking is
requested.
"""

import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Optional, TextIO, Union

from gdl.lib.errors import Cancelled, ErrorCode, GdlError, SourceUnavailable
from gdl.lib.filters import Predicate

_logger = logging.getLogger(__name__)

HEADER_PREFIX = "assembly_accession"
MISSING_VALUES = {"", "na", "NA"}
CATALOG_DATE_FORMAT = "%Y/%m/%d"

# Classic positional layout, used when the file has no header comment
DEFAULT_COLUMNS: dict[str, int] = {
    "assembly_accession": 0,
    "bioproject": 1,
    "biosample": 2,
    "wgs_master": 3,
    "refseq_category": 4,
    "taxid": 5,
    "species_taxid": 6,
    "organism_name": 7,
    "infraspecific_name": 8,
    "isolate": 9,
    "version_status": 10,
    "assembly_level": 11,
    "release_type": 12,
    "genome_rep": 13,
    "seq_rel_date": 14,
    "asm_name": 15,
    "submitter": 16,
    "gbrs_paired_asm": 17,
    "paired_asm_comp": 18,
    "ftp_path": 19,
    "excluded_from_refseq": 20,
    "relation_to_type_material": 21,
    "asm_not_live_date": 22,
    "assembly_type": 23,
    "group": 24,
    "genome_size": 25,
}

REQUIRED_COLUMNS = (
    "assembly_accession",
    "taxid",
    "species_taxid",
    "organism_name",
    "assembly_level",
    "ftp_path",
)


class Source(str, Enum):
    """Originating repository of a record."""

    REFSEQ = "RefSeq"
    GENBANK = "GenBank"

    @classmethod
    def from_accession(cls, accession: str) -> Optional["Source"]:
        """
        Derive the repository from the accession prefix.

        Examples:
            >>> Source.from_accession("GCF_000005845.2")
            <Source.REFSEQ: 'RefSeq'>
            >>> Source.from_accession("XYZ_1") is None
            True
        """
        if accession.startswith("GCF_"):
            return cls.REFSEQ
        if accession.startswith("GCA_"):
            return cls.GENBANK
        return None


class AssemblyLevel(str, Enum):
    COMPLETE_GENOME = "Complete Genome"
    CHROMOSOME = "Chromosome"
    SCAFFOLD = "Scaffold"
    CONTIG = "Contig"


# Lower rank sorts first
LEVEL_RANK: dict[str, int] = {
    AssemblyLevel.COMPLETE_GENOME.value.casefold(): 0,
    AssemblyLevel.CHROMOSOME.value.casefold(): 1,
    AssemblyLevel.SCAFFOLD.value.casefold(): 2,
    AssemblyLevel.CONTIG.value.casefold(): 3,
}
OTHER_LEVEL_RANK = len(LEVEL_RANK)


def level_rank(level: str) -> int:
    """
    Rank an assembly level: Complete Genome < Chromosome < Scaffold < Contig < other.

    Examples:
        >>> level_rank("Complete Genome")
        0
        >>> level_rank("something else")
        4
    """
    return LEVEL_RANK.get(level.strip().casefold(), OTHER_LEVEL_RANK)


@dataclass(frozen=True)
class AssemblyRecord:
    """
    One catalog row.

    ``ftp_path`` is the base retrieval path; file URLs are formed as
    ``<ftp_path>/<basename(ftp_path)><suffix>``.
    """

    accession: str
    taxid: int
    species_taxid: int
    organism_name: str
    assembly_level: str
    ftp_path: str
    source: Optional[Source] = None
    release_date: Optional[date] = None
    genome_size: Optional[int] = None
    infraspecific_name: Optional[str] = None
    refseq_category: Optional[str] = None
    version_status: Optional[str] = None
    release_type: Optional[str] = None
    genome_rep: Optional[str] = None
    asm_name: Optional[str] = None
    submitter: Optional[str] = None

    @property
    def level_rank(self) -> int:
        return level_rank(self.assembly_level)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.level_rank, self.accession)

    @property
    def has_ftp_path(self) -> bool:
        return self.ftp_path not in MISSING_VALUES


@dataclass
class SelectionStats:
    """Counters filled in while a selection streams."""

    lines: int = 0
    malformed: int = 0
    in_taxa: int = 0
    matched: int = 0
    selected: int = 0
    malformed_examples: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "lines": self.lines,
            "malformed": self.malformed,
            "in_taxa": self.in_taxa,
            "matched": self.matched,
            "selected": self.selected,
        }


class MalformedLine(ValueError):
    """A catalog row that cannot be parsed; skipped by ``select``."""


# =============================================================================
# Row Parsing
# =============================================================================

def parse_header(line: str) -> Optional[dict[str, int]]:
    """
    Return the column map if ``line`` is the header, else None.

    The header may be commented (NCBI files) or bare.

    Example:
        >>> parse_header("# assembly_accession\\tbioproject\\ttaxid")
        {'assembly_accession': 0, 'bioproject': 1, 'taxid': 2}
    """
    text = line.lstrip("#").strip()
    if not text.startswith(HEADER_PREFIX):
        return None
    return {name.strip(): i for i, name in enumerate(text.split("\t"))}


def _optional(fields: list[str], columns: dict[str, int], name: str) -> Optional[str]:
    index = columns.get(name)
    if index is None or index >= len(fields):
        return None
    value = fields[index].strip()
    return None if value in MISSING_VALUES else value


def _required(fields: list[str], columns: dict[str, int], name: str) -> str:
    value = _optional(fields, columns, name)
    if value is None and name != "ftp_path":
        raise MalformedLine(f"missing {name}")
    return value if value is not None else "na"


def _to_int(value: Optional[str], name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise MalformedLine(f"non-numeric {name}: {value!r}") from None


def _to_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return datetime.strptime(value, CATALOG_DATE_FORMAT).date()
    except ValueError:
        raise MalformedLine(f"bad date: {value!r}") from None


def parse_record(line: str, columns: dict[str, int] = DEFAULT_COLUMNS) -> AssemblyRecord:
    """
    Parse one tab-separated catalog row.

    Args:
        line: Raw row (trailing newline allowed).
        columns: Column name → index map from the header.

    Returns:
        AssemblyRecord.

    Raises:
        MalformedLine: Missing required column or unparsable number/date.
    """
    fields = line.rstrip("\r\n").split("\t")
    accession = _required(fields, columns, "assembly_accession")

    return AssemblyRecord(
        accession=accession,
        taxid=_to_int(_required(fields, columns, "taxid"), "taxid"),
        species_taxid=_to_int(_required(fields, columns, "species_taxid"), "species_taxid"),
        organism_name=_required(fields, columns, "organism_name"),
        assembly_level=_required(fields, columns, "assembly_level"),
        ftp_path=_required(fields, columns, "ftp_path"),
        source=Source.from_accession(accession),
        release_date=_to_date(_optional(fields, columns, "seq_rel_date")),
        genome_size=_to_int(_optional(fields, columns, "genome_size"), "genome_size"),
        infraspecific_name=_optional(fields, columns, "infraspecific_name"),
        refseq_category=_optional(fields, columns, "refseq_category"),
        version_status=_optional(fields, columns, "version_status"),
        release_type=_optional(fields, columns, "release_type"),
        genome_rep=_optional(fields, columns, "genome_rep"),
        asm_name=_optional(fields, columns, "asm_name"),
        submitter=_optional(fields, columns, "submitter"),
    )


def iter_records(
    lines: Iterable[str],
    stats: Optional[SelectionStats] = None,
    stop_event: Optional[threading.Event] = None,
) -> Iterator[AssemblyRecord]:
    """
    Parse catalog lines lazily, skipping comments and malformed rows.

    The header line, commented or not, switches the column map for all
    following rows and is never counted as a record.

    Raises:
        Cancelled: If ``stop_event`` is set while lines remain.
    """
    stats = stats if stats is not None else SelectionStats()
    columns = DEFAULT_COLUMNS

    for line_no, line in enumerate(lines, start=1):
        if stop_event is not None and stop_event.is_set():
            raise Cancelled(f"Catalog scan stopped at line {line_no}")
        header = parse_header(line)
        if header is not None:
            missing = [c for c in REQUIRED_COLUMNS if c not in header]
            if missing:
                raise GdlError(
                    ErrorCode.E_INPUT_FORMAT,
                    "Catalog header lacks required columns",
                    details=", ".join(missing),
                )
            columns = header
            continue
        if line.startswith("#"):
            continue
        if not line.strip():
            continue

        stats.lines += 1
        try:
            yield parse_record(line, columns)
        except MalformedLine as e:
            stats.malformed += 1
            if len(stats.malformed_examples) < 5:
                stats.malformed_examples.append(f"line {line_no}: {e}")
            _logger.debug("Skipping malformed catalog line %d: %s", line_no, e)


# =============================================================================
# Selection
# =============================================================================

def open_catalog(path: Path) -> TextIO:
    """
    Open a catalog file for streaming.

    Raises:
        SourceUnavailable: If the file cannot be opened.
    """
    try:
        return open(path, encoding="utf-8", errors="replace")
    except OSError as e:
        raise SourceUnavailable(f"Cannot open catalog {path}", details=str(e)) from e


def select(
    source: Union[Path, Iterable[str]],
    tax_ids: set[int],
    predicate: Optional[Predicate] = None,
    order_by_level: bool = False,
    limit: Optional[int] = None,
    limit_per_group: Optional[int] = None,
    stats: Optional[SelectionStats] = None,
    stop_event: Optional[threading.Event] = None,
) -> Iterator[AssemblyRecord]:
    """
    Select catalog records for a taxon set.

    A file path is opened immediately (so an unreadable catalog fails here,
    not on first iteration); the returned iterator is lazy and single-pass.

    Args:
        source: Catalog path or an iterable of lines.
        tax_ids: Accepted taxon ids (a record's ``taxid`` must be a member).
        predicate: User filters; None accepts everything.
        order_by_level: Rank by assembly level, then accession.
        limit: Cap on total records, applied after per-group limiting.
        limit_per_group: Cap on records per species taxon id.
        stats: Optional counters object to fill in.
        stop_event: Aborts the scan with Cancelled once set.

    Returns:
        Iterator of AssemblyRecord. Zero records is a valid result.

    Raises:
        SourceUnavailable: If ``source`` is a path that cannot be opened.
        Cancelled: If ``stop_event`` is set during iteration.
    """
    if isinstance(source, (str, Path)):
        handle = open_catalog(Path(source))
        return _select(handle, tax_ids, predicate, order_by_level, limit,
                       limit_per_group, stats, handle, stop_event)
    return _select(source, tax_ids, predicate, order_by_level, limit,
                   limit_per_group, stats, None, stop_event)


def _select(
    lines: Iterable[str],
    tax_ids: set[int],
    predicate: Optional[Predicate],
    order_by_level: bool,
    limit: Optional[int],
    limit_per_group: Optional[int],
    stats: Optional[SelectionStats],
    handle: Optional[TextIO],
    stop_event: Optional[threading.Event],
) -> Iterator[AssemblyRecord]:
    stats = stats if stats is not None else SelectionStats()
    try:
        passing = _passing(iter_records(lines, stats, stop_event), tax_ids, predicate, stats)
        if order_by_level:
            passing = iter(sorted(passing, key=lambda r: r.sort_key))

        per_group: dict[int, int] = {}
        for record in passing:
            if limit is not None and stats.selected >= limit:
                break
            if limit_per_group is not None:
                seen = per_group.get(record.species_taxid, 0)
                if seen >= limit_per_group:
                    continue
                per_group[record.species_taxid] = seen + 1
            stats.selected += 1
            yield record
    finally:
        if handle is not None:
            handle.close()
        if stats.malformed:
            _logger.warning(
                f"Skipped {stats.malformed} malformed catalog line(s) "
                f"of {stats.lines}"
            )


def _passing(
    records: Iterable[AssemblyRecord],
    tax_ids: set[int],
    predicate: Optional[Predicate],
    stats: SelectionStats,
) -> Iterator[AssemblyRecord]:
    for record in records:
        if record.taxid not in tax_ids:
            continue
        stats.in_taxa += 1
        if predicate is not None and not predicate.matches(record):
            continue
        stats.matched += 1
        yield record
