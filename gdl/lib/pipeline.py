"""
gdl staged pipeline: resolve → select → plan → execute.

Each stage runs to completion before the next begins. Taxonomy resolution
happens before the catalog is located or opened, so a bad selector fails
without any catalog I/O. The retriever's stop event is checked between
stages and during the catalog scan; once set, the run ends with Cancelled.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from gdl.lib.catalog import SelectionStats, select
from gdl.lib.errors import Cancelled
from gdl.lib.filters import Predicate
from gdl.lib.logging import DualLogger
from gdl.lib.report import RetrievalReport
from gdl.lib.retrieval import AssemblyFormat, Retriever, plan
from gdl.lib.taxonomy import Selector, TaxonomyIndex

_logger = logging.getLogger(__name__)

CatalogSource = Union[Path, Iterable[str]]


@dataclass
class DownloadRequest:
    """
    Everything one invocation asks for.

    Attributes:
        selector: Taxon id (int) or name (str).
        include_children: Include all descendants of the selected taxon.
        fmt: File format to fetch.
        out_dir: Destination directory (must exist unless dry_run).
        predicate: User filters over catalog fields.
        order_by_level: Rank by assembly level before limiting.
        limit: Overall record cap.
        limit_per_species: Per species-taxon cap.
        dry_run: Plan and report without transferring.
    """

    selector: Selector
    include_children: bool = True
    fmt: AssemblyFormat = AssemblyFormat.FNA
    out_dir: Path = Path(".")
    predicate: Predicate = field(default_factory=Predicate)
    order_by_level: bool = False
    limit: Optional[int] = None
    limit_per_species: Optional[int] = None
    dry_run: bool = False


def run_download(
    request: DownloadRequest,
    load_taxonomy: Callable[[], TaxonomyIndex],
    locate_catalog: Callable[[], CatalogSource],
    retriever: Retriever,
    run_logger: Optional[DualLogger] = None,
) -> RetrievalReport:
    """
    Execute one download request end to end.

    Args:
        request: The DownloadRequest.
        load_taxonomy: Returns the TaxonomyIndex (load-or-fetch).
        locate_catalog: Returns the catalog path or lines; called only
            after the selector resolved.
        retriever: Configured Retriever.
        run_logger: Optional run log.

    Returns:
        RetrievalReport. An empty report means nothing matched.

    Raises:
        MalformedDump, UnknownTaxon, AmbiguousTaxon: Taxonomy stage.
        SourceUnavailable: Catalog stage.
        DestinationMissing: Retrieval setup.
        Cancelled: The stop event was set before retrieval started.
    """
    stop_event = retriever.stop_event
    index = load_taxonomy()
    _check_stop(stop_event, "taxonomy loaded")
    tax_ids = index.resolve_selector(request.selector, request.include_children)
    _logger.info(f"Selector {request.selector!r} covers {len(tax_ids)} taxa")
    if run_logger is not None:
        run_logger.info("Selector resolved", selector=request.selector, taxa=len(tax_ids))

    stats = SelectionStats()
    records = list(select(
        locate_catalog(),
        tax_ids,
        predicate=request.predicate,
        order_by_level=request.order_by_level,
        limit=request.limit,
        limit_per_group=request.limit_per_species,
        stats=stats,
        stop_event=stop_event,
    ))
    _logger.info(
        f"Selected {stats.selected} of {stats.lines} catalog records "
        f"({stats.in_taxa} in taxa, {stats.matched} passed filters)"
    )
    if run_logger is not None:
        run_logger.info("Catalog filtered", **stats.to_dict())

    _check_stop(stop_event, "catalog filtered")

    tasks = plan(records, request.fmt, request.out_dir)
    report = retriever.execute(tasks, dry_run=request.dry_run)
    report.selection = stats.to_dict()
    return report


def _check_stop(stop_event: threading.Event, stage: str) -> None:
    if stop_event.is_set():
        raise Cancelled(f"Stopped after {stage}")
