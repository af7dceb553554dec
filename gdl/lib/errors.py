"""
gdl Error Code System.

This module provides standardized error codes, recovery suggestions,
exit code mapping and the exception classes raised by the gdl pipeline.

Stage-level failures (bad taxonomy dump, unknown selector, unreachable
catalog, missing destination) are raised as exceptions and abort the run.
Task-level failures inside the retrieval stage reuse the same ErrorCode
values but are recorded in the report instead of being raised.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for the gdl pipeline.

    Inherits from str and Enum for JSON serialization compatibility.

    Error Code Categories:
    - E_INPUT_* / E_DUMP_* / E_*_TAXON: Input-related errors
    - E_SOURCE_* / E_NET_* / E_HTTP: Network errors
    - E_NOT_FOUND / E_PERMISSION / E_DISK_FULL / E_TIMEOUT: Per-file errors
    """

    E_INPUT_MISSING = "E_INPUT_MISSING"
    """Input file or directory not found. Check the file path."""

    E_INPUT_FORMAT = "E_INPUT_FORMAT"
    """Input file format error."""

    E_DUMP_FORMAT = "E_DUMP_FORMAT"
    """Taxonomy dump is malformed (dangling parent or cycle)."""

    E_UNKNOWN_TAXON = "E_UNKNOWN_TAXON"
    """Selector does not name any taxon in the dump."""

    E_AMBIGUOUS_TAXON = "E_AMBIGUOUS_TAXON"
    """Selector name matches more than one taxon."""

    E_SOURCE_UNAVAILABLE = "E_SOURCE_UNAVAILABLE"
    """Catalog or taxonomy feed could not be opened or fetched."""

    E_UNSUPPORTED_FORMAT = "E_UNSUPPORTED_FORMAT"
    """Repository does not publish the requested file format for a record."""

    E_OUTPUT_DIR_MISSING = "E_OUTPUT_DIR_MISSING"
    """Destination directory does not exist."""

    E_NOT_FOUND = "E_NOT_FOUND"
    """Remote file not found (HTTP 404/410)."""

    E_PERMISSION = "E_PERMISSION"
    """Permission denied (remote 401/403 or local filesystem)."""

    E_DISK_FULL = "E_DISK_FULL"
    """Disk space exhausted. Free up disk space before retrying."""

    E_IO = "E_IO"
    """Other local filesystem error while writing a download."""

    E_TIMEOUT = "E_TIMEOUT"
    """Network operation timed out."""

    E_NET_TRANSIENT = "E_NET_TRANSIENT"
    """Connection reset, refused or server 5xx response."""

    E_NET_RATE_LIMIT = "E_NET_RATE_LIMIT"
    """Network rate limit exceeded. Wait and retry automatically."""

    E_HTTP = "E_HTTP"
    """Other non-retryable HTTP error."""

    E_CANCELLED = "E_CANCELLED"
    """Operation aborted by a stop signal."""


# =============================================================================
# Error Recovery Mapping
# =============================================================================

ERROR_RECOVERY: dict[ErrorCode, tuple[bool, str]] = {
    ErrorCode.E_INPUT_MISSING: (False, "Check that the input path is correct"),
    ErrorCode.E_INPUT_FORMAT: (False, "Validate the input file format"),
    ErrorCode.E_DUMP_FORMAT: (False, "Re-download the taxonomy dump with --no-cache"),
    ErrorCode.E_UNKNOWN_TAXON: (False, "Check the taxon id or scientific name spelling"),
    ErrorCode.E_AMBIGUOUS_TAXON: (False, "Select the taxon by --tax-id instead of name"),
    ErrorCode.E_SOURCE_UNAVAILABLE: (False, "Check network access or the catalog path"),
    ErrorCode.E_UNSUPPORTED_FORMAT: (False, "Choose a format the repository publishes"),
    ErrorCode.E_OUTPUT_DIR_MISSING: (False, "Create the output directory first"),
    ErrorCode.E_NOT_FOUND: (False, "The file is not published at the expected URL"),
    ErrorCode.E_PERMISSION: (False, "Check credentials and file permissions"),
    ErrorCode.E_DISK_FULL: (False, "Free up disk space before retrying"),
    ErrorCode.E_IO: (False, "Check the output directory is writable"),
    ErrorCode.E_TIMEOUT: (True, "Increase the timeout or retry later"),
    ErrorCode.E_NET_TRANSIENT: (True, "Retried automatically; check connectivity"),
    ErrorCode.E_NET_RATE_LIMIT: (True, "Wait and retry automatically"),
    ErrorCode.E_HTTP: (False, "Inspect the HTTP status in the log"),
    ErrorCode.E_CANCELLED: (False, "Re-run to resume; completed files are kept"),
}


def get_recovery(code: ErrorCode) -> tuple[bool, str]:
    """
    Get recovery information for an error code.

    Args:
        code: The ErrorCode to look up.

    Returns:
        Tuple of (is_retryable, recovery_suggestion).
    """
    return ERROR_RECOVERY.get(code, (False, "Unknown error, check the log"))


# =============================================================================
# Exit Code Mapping
# =============================================================================

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INPUT_ERROR = 3
EXIT_RESOURCE_ERROR = 5
EXIT_NETWORK_ERROR = 6
EXIT_PARTIAL_FAILURE = 7
EXIT_CANCELLED = 130

EXIT_CODES: dict[ErrorCode, int] = {
    ErrorCode.E_INPUT_MISSING: EXIT_INPUT_ERROR,
    ErrorCode.E_INPUT_FORMAT: EXIT_INPUT_ERROR,
    ErrorCode.E_DUMP_FORMAT: EXIT_INPUT_ERROR,
    ErrorCode.E_UNKNOWN_TAXON: EXIT_INPUT_ERROR,
    ErrorCode.E_AMBIGUOUS_TAXON: EXIT_INPUT_ERROR,
    ErrorCode.E_OUTPUT_DIR_MISSING: EXIT_INPUT_ERROR,
    ErrorCode.E_UNSUPPORTED_FORMAT: EXIT_INPUT_ERROR,
    ErrorCode.E_DISK_FULL: EXIT_RESOURCE_ERROR,
    ErrorCode.E_IO: EXIT_RESOURCE_ERROR,
    ErrorCode.E_PERMISSION: EXIT_RESOURCE_ERROR,
    ErrorCode.E_SOURCE_UNAVAILABLE: EXIT_NETWORK_ERROR,
    ErrorCode.E_NOT_FOUND: EXIT_NETWORK_ERROR,
    ErrorCode.E_TIMEOUT: EXIT_NETWORK_ERROR,
    ErrorCode.E_NET_TRANSIENT: EXIT_NETWORK_ERROR,
    ErrorCode.E_NET_RATE_LIMIT: EXIT_NETWORK_ERROR,
    ErrorCode.E_HTTP: EXIT_NETWORK_ERROR,
    ErrorCode.E_CANCELLED: EXIT_CANCELLED,
}


# =============================================================================
# GdlError Exception Class
# =============================================================================

class GdlError(Exception):
    """
    Base exception class for gdl pipeline errors.

    Attributes:
        error_code: The ErrorCode enum value identifying the error type.
        message: Human-readable error description.
        details: Optional additional error details (path, URL, candidates).
        is_retryable: Whether the operation can be automatically retried.
        recovery_suggestion: Human-readable suggestion for resolving the error.

    Example:
        >>> raise GdlError(
        ...     ErrorCode.E_INPUT_MISSING,
        ...     "Taxonomy dump not found",
        ...     details="taxdump/nodes.dmp"
        ... )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        details: Optional[str] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details

        self.is_retryable, self.recovery_suggestion = get_recovery(error_code)

        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the exception message."""
        return f"[{self.error_code.value}] {self.message}"

    def __str__(self) -> str:
        return self._format_message()

    def to_exit_code(self) -> int:
        """
        Get the process exit code for this error.

        Returns:
            Integer exit code:
            - 1: General error
            - 2: Configuration error
            - 3: Input error
            - 5: Resource error
            - 6: Network error
            - 130: Cancelled
        """
        return EXIT_CODES.get(self.error_code, EXIT_GENERAL_ERROR)

    def __reduce__(self):
        """Support pickle serialization for multiprocessing compatibility."""
        return (
            self.__class__,
            (self.error_code, self.message, self.details)
        )


class _FixedCodeError(GdlError):
    """GdlError subclass whose error code is fixed by the class."""

    code: ErrorCode = ErrorCode.E_INPUT_FORMAT

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(self.code, message, details)

    def __reduce__(self):
        return (self.__class__, (self.message, self.details))


class MalformedDump(_FixedCodeError):
    """Taxonomy dump references a missing parent or contains a cycle."""

    code = ErrorCode.E_DUMP_FORMAT


class UnknownTaxon(_FixedCodeError):
    """Selector id or name is not present in the taxonomy."""

    code = ErrorCode.E_UNKNOWN_TAXON


class AmbiguousTaxon(_FixedCodeError):
    """Selector name matches several taxa."""

    code = ErrorCode.E_AMBIGUOUS_TAXON


class SourceUnavailable(_FixedCodeError):
    """A feed (catalog or taxonomy dump) cannot be opened or fetched."""

    code = ErrorCode.E_SOURCE_UNAVAILABLE


class UnsupportedFormat(_FixedCodeError):
    """The record's repository does not publish the requested format."""

    code = ErrorCode.E_UNSUPPORTED_FORMAT


class DestinationMissing(_FixedCodeError):
    """Output directory handed to the orchestrator does not exist."""

    code = ErrorCode.E_OUTPUT_DIR_MISSING


class Cancelled(_FixedCodeError):
    """A transfer or retry wait was interrupted by the stop signal."""

    code = ErrorCode.E_CANCELLED


# =============================================================================
# Error Formatting and Output
# =============================================================================

def format_error_message(error: GdlError, use_color: bool = True) -> str:
    """
    Format a GdlError for terminal output.

    Args:
        error: The GdlError to format.
        use_color: Whether to use ANSI color codes (default: True).

    Returns:
        Formatted error message string with error code, message,
        recovery suggestion, and optional details.
    """
    RED = "\033[91m" if use_color else ""
    YELLOW = "\033[93m" if use_color else ""
    CYAN = "\033[96m" if use_color else ""
    RESET = "\033[0m" if use_color else ""
    BOLD = "\033[1m" if use_color else ""

    lines = []

    lines.append(f"{RED}{BOLD}ERROR [{error.error_code.value}]{RESET}")
    lines.append(f"  {error.message}")

    if error.details:
        lines.append(f"  {CYAN}Details:{RESET} {error.details}")

    retry_indicator = "[retryable]" if error.is_retryable else "[not retryable]"
    lines.append(f"  {YELLOW}Recovery:{RESET} {error.recovery_suggestion} {retry_indicator}")

    return "\n".join(lines)


# =============================================================================
# Configuration Error (Special Case for Exit Code 2)
# =============================================================================

class ConfigurationError(GdlError):
    """
    Exception for configuration and command-line validation errors.

    Uses E_INPUT_FORMAT as the internal error_code for recovery suggestion
    lookup, but to_exit_code() always returns EXIT_CONFIG_ERROR (2).
    """

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(ErrorCode.E_INPUT_FORMAT, message, details)

    def to_exit_code(self) -> int:
        """Configuration errors always return exit code 2."""
        return EXIT_CONFIG_ERROR

    def __reduce__(self):
        return (
            self.__class__,
            (self.message, self.details)
        )
