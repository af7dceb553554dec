#!/usr/bin/env python3
"""
Download every NCBI genome assembly published under a taxon.

Resolves --tax-id / --tax-name to the taxon and (unless --no-children) all
of its descendants, filters the assembly_summary catalog and fetches the
matching files in parallel. Re-running resumes: complete files are skipped.

Usage:
    gdl --tax-id 562 --assembly-level "Complete Genome" --parallel 4
    gdl --tax-name "Escherichia coli" --format gbff --out-dir genomes --dry-run
    gdl --tax-id 2 --source none --assembly-summary-path assembly_summary.txt \\
        --include 'genome_size=>5000000' --exclude 'organism_name=/phage/i'

Exit codes:
    0 success, 2 configuration error, 3 input error, 5 resource error,
    6 network error, 7 some downloads failed, 130 cancelled.
"""

import argparse
import glob
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from gdl import __version__
from gdl.lib.config import get_config_value, load_config, merge_cli_config, validate_config
from gdl.lib.errors import (
    ConfigurationError,
    GdlError,
    format_error_message,
)
from gdl.lib.feeds import FeedCache, check_catalog_choice, make_fetcher
from gdl.lib.filters import GlobClause, Predicate
from gdl.lib.logging import configure_console_logging, create_logger
from gdl.lib.pipeline import DownloadRequest, run_download
from gdl.lib.report import RetrievalReport, write_report_json
from gdl.lib.retrieval import AssemblyFormat, Retriever
from gdl.lib.taxonomy import load_taxdump
from gdl.lib.transport import RetryConfig, build_session

_logger = logging.getLogger("gdl")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gdl",
        description="Download NCBI genome assemblies for a taxon and its descendants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Filter expressions (--include / --exclude FIELD=PATTERN):
  text fields      glob (case-insensitive), "glob" (case-sensitive),
                   /regex/ or /regex/i
  number and date  <V  <=V  >V  >=V  =V  A..B   (dates YYYY-MM-DD)

Examples:
  gdl --tax-id 562 --assembly-level "Complete Genome" --parallel 4
  gdl --tax-name Bacillus --include 'release_date=>=2020-01-01' --dry-run
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    selector = parser.add_mutually_exclusive_group(required=True)
    selector.add_argument("--tax-id", type=int, help="Taxon id to download assemblies for")
    selector.add_argument("--tax-name", help="Taxon name (exact, case-insensitive)")
    parser.add_argument(
        "--no-children",
        action="store_true",
        help="Only assemblies assigned to the taxon itself, not its descendants",
    )

    feeds = parser.add_argument_group("input feeds")
    feeds.add_argument("--taxdump-path", type=Path, help="Directory of the extracted taxdump")
    feeds.add_argument(
        "--source",
        choices=["refseq", "genbank", "none"],
        help="Repository whose catalog to use (default: refseq)",
    )
    feeds.add_argument(
        "--assembly-summary-path",
        type=Path,
        help="Local assembly_summary.txt (implies --source none)",
    )
    feeds.add_argument("--cache-dir", type=Path, help="Where fetched catalogs are cached")
    feeds.add_argument(
        "--no-cache",
        action="store_true",
        default=None,
        help="Re-fetch the catalog and taxonomy dump",
    )

    filters = parser.add_argument_group("filters")
    filters.add_argument(
        "--assembly-level",
        action="append",
        default=[],
        help="Keep assemblies at this level (repeatable)",
    )
    filters.add_argument(
        "--include",
        action="append",
        default=[],
        metavar="FIELD=PATTERN",
        help="Keep records matching (repeatable; OR within a field)",
    )
    filters.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="FIELD=PATTERN",
        help="Drop records matching (repeatable)",
    )
    filters.add_argument(
        "--order-by-level",
        action="store_true",
        help="Prefer Complete Genome > Chromosome > Scaffold > Contig before limiting",
    )
    filters.add_argument("--limit", type=int, help="Maximum number of assemblies")
    filters.add_argument("--limit-per-species", type=int, help="Maximum assemblies per species")

    output = parser.add_argument_group("retrieval")
    output.add_argument(
        "--format",
        choices=[f.value for f in AssemblyFormat],
        help="File format to fetch (default: fna)",
    )
    output.add_argument("--out-dir", type=Path, help="Output directory (default: .)")
    output.add_argument("--parallel", type=int, help="Concurrent downloads (default: 1)")
    output.add_argument("--dry-run", action="store_true", help="List what would be fetched")
    output.add_argument(
        "--force",
        action="store_true",
        default=None,
        help="Re-fetch files that already exist",
    )
    output.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    output.add_argument("--max-retries", type=int, help="Retries for transient failures")
    output.add_argument("--report", type=Path, help="Write the run report as JSON")

    general = parser.add_argument_group("general")
    general.add_argument("--config", type=Path, help="YAML configuration file")
    general.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO)",
    )
    general.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    general.add_argument("--log-dir", type=Path, help="Also write a run log (.log + .jsonl)")

    return parser


def _str_or_none(value: Optional[Path]) -> Optional[str]:
    return None if value is None else str(value)


def build_config(args: argparse.Namespace) -> dict:
    """
    Layer command-line flags over the defaults and optional config file.

    Raises:
        ConfigurationError: Invalid config file, values or flag combination.
    """
    source = args.source
    if args.assembly_summary_path is not None and source is None:
        source = "none"

    overrides = {
        "cache.dir": _str_or_none(args.cache_dir),
        "cache.refresh": args.no_cache,
        "taxonomy.dump_dir": _str_or_none(args.taxdump_path),
        "catalog.source": source,
        "catalog.path": _str_or_none(args.assembly_summary_path),
        "retrieval.parallel": args.parallel,
        "retrieval.format": args.format,
        "retrieval.out_dir": _str_or_none(args.out_dir),
        "retrieval.force": args.force,
        "retrieval.timeout": args.timeout,
        "retrieval.max_retries": args.max_retries,
        "logging.level": "WARNING" if args.quiet else args.log_level,
        "logging.dir": _str_or_none(args.log_dir),
    }
    config = merge_cli_config(load_config(args.config), overrides)
    validate_config(config)

    catalog_path = get_config_value(config, "catalog.path")
    check_catalog_choice(
        get_config_value(config, "catalog.source"),
        Path(catalog_path) if catalog_path else None,
    )

    for name in ("limit", "limit_per_species"):
        value = getattr(args, name)
        if value is not None and value < 0:
            raise ConfigurationError(f"--{name.replace('_', '-')} must be >= 0, got {value}")

    return config


def build_predicate(args: argparse.Namespace) -> Predicate:
    """Compile --include/--exclude/--assembly-level into one Predicate."""
    predicate = Predicate.from_expressions(args.include, args.exclude)
    for level in args.assembly_level:
        predicate.include("assembly_level", GlobClause(glob.escape(level)))
    return predicate


def install_stop_handlers(stop_event: threading.Event) -> dict:
    """
    Route SIGINT/SIGTERM to ``stop_event``.

    Returns:
        Previous handlers, for ``restore_handlers``.
    """
    def handle(signum, frame):
        if not stop_event.is_set():
            _logger.warning(f"Received {signal.Signals(signum).name}; stopping")
        stop_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handle)
    return previous


def restore_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def run(args: argparse.Namespace, config: dict, stop_event: threading.Event) -> RetrievalReport:
    """Wire feeds, retriever and pipeline from the merged configuration."""
    def cfg(key):
        return get_config_value(config, key)

    selector = args.tax_id if args.tax_id is not None else args.tax_name
    fmt = AssemblyFormat(cfg("retrieval.format"))
    out_dir = Path(cfg("retrieval.out_dir"))
    parallel = cfg("retrieval.parallel")

    retry_config = RetryConfig(
        max_retries=cfg("retrieval.max_retries"),
        base_delay=cfg("retrieval.base_delay"),
        max_delay=cfg("retrieval.max_delay"),
    )
    session = build_session(pool_size=parallel)
    cache = FeedCache(
        Path(cfg("cache.dir")),
        refresh=cfg("cache.refresh"),
        fetch=make_fetcher(
            session, retry_config, timeout=cfg("retrieval.timeout"), stop_event=stop_event
        ),
    )

    run_logger = None
    if cfg("logging.dir"):
        run_logger = create_logger(
            "download",
            context={"taxon": str(selector), "format": fmt.value},
            log_dir=Path(cfg("logging.dir")),
            level=cfg("logging.level"),
        )

    if not args.dry_run:
        out_dir.mkdir(parents=True, exist_ok=True)

    retriever = Retriever(
        parallel=parallel,
        session=session,
        retry_config=retry_config,
        timeout=cfg("retrieval.timeout"),
        chunk_size=cfg("retrieval.chunk_size"),
        force=cfg("retrieval.force"),
        stop_event=stop_event,
        run_logger=run_logger,
    )
    request = DownloadRequest(
        selector=selector,
        include_children=not args.no_children,
        fmt=fmt,
        out_dir=out_dir,
        predicate=build_predicate(args),
        order_by_level=args.order_by_level,
        limit=args.limit,
        limit_per_species=args.limit_per_species,
        dry_run=args.dry_run,
    )

    catalog_path = cfg("catalog.path")
    try:
        return run_download(
            request,
            load_taxonomy=lambda: load_taxdump(
                cache.taxonomy_dir(Path(cfg("taxonomy.dump_dir")), cfg("taxonomy.url"))
            ),
            locate_catalog=lambda: cache.catalog_path(
                cfg("catalog.source"), Path(catalog_path) if catalog_path else None
            ),
            retriever=retriever,
            run_logger=run_logger,
        )
    finally:
        session.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    use_color = sys.stderr.isatty()

    try:
        config = build_config(args)
        build_predicate(args)
    except GdlError as e:
        print(format_error_message(e, use_color=use_color), file=sys.stderr)
        return e.to_exit_code()

    configure_console_logging(get_config_value(config, "logging.level"))

    stop_event = threading.Event()
    previous = install_stop_handlers(stop_event)
    try:
        report = run(args, config, stop_event)
    except GdlError as e:
        print(format_error_message(e, use_color=use_color), file=sys.stderr)
        return e.to_exit_code()
    finally:
        restore_handlers(previous)

    for line in report.summary_lines():
        print(line)

    if args.report is not None:
        write_report_json(report, args.report)
        _logger.info(f"Report written to {args.report}")

    return report.exit_code()


if __name__ == "__main__":
    sys.exit(main())
