"""
gdl Shared Library

Modules:
    errors: Error codes, exit codes and exception classes
    io: Atomic file writing utilities
    logging: Console logging and dual-format run logs (text + JSON Lines)
    config: YAML configuration loading and schema validation
    taxonomy: Taxonomy dump parsing and selector resolution
    filters: Include/exclude filter predicates
    catalog: assembly_summary streaming, filtering, ranking and limits
    transport: Shared HTTP session, retry policy and atomic downloads
    feeds: Load-or-fetch cache for the taxonomy dump and catalog
    retrieval: Task planning and the parallel retrieval pool
    report: Per-task outcomes and run report export
    pipeline: resolve → select → plan → execute
"""

from gdl.lib.errors import (
    ErrorCode,
    ERROR_RECOVERY,
    EXIT_CODES,
    EXIT_SUCCESS,
    EXIT_GENERAL_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_PARTIAL_FAILURE,
    EXIT_CANCELLED,
    GdlError,
    ConfigurationError,
    MalformedDump,
    UnknownTaxon,
    AmbiguousTaxon,
    SourceUnavailable,
    UnsupportedFormat,
    DestinationMissing,
    get_recovery,
    format_error_message,
)

from gdl.lib.io import (
    atomic_writer,
    atomic_write,
    atomic_write_json,
    atomic_append,
)

from gdl.lib.logging import (
    DualLogger,
    get_log_paths,
    create_logger,
)

# Pipeline stages: import from their modules
# Usage: from gdl.lib.retrieval import Retriever, plan

__all__ = [
    # errors
    "ErrorCode",
    "ERROR_RECOVERY",
    "EXIT_CODES",
    "EXIT_SUCCESS",
    "EXIT_GENERAL_ERROR",
    "EXIT_CONFIG_ERROR",
    "EXIT_PARTIAL_FAILURE",
    "EXIT_CANCELLED",
    "GdlError",
    "ConfigurationError",
    "MalformedDump",
    "UnknownTaxon",
    "AmbiguousTaxon",
    "SourceUnavailable",
    "UnsupportedFormat",
    "DestinationMissing",
    "get_recovery",
    "format_error_message",
    # io
    "atomic_writer",
    "atomic_write",
    "atomic_write_json",
    "atomic_append",
    # logging
    "DualLogger",
    "get_log_paths",
    "create_logger",
]
