"""
gdl Transport Policy.

The retry, backoff, error-classification and atomic-commit policy layered
on top of ``requests``:

- ``build_session``: one pooled ``requests.Session`` per run, shared by all
  retrieval workers (urllib3's pool owns its thread-safety).
- ``error_for_status`` / ``error_for_exception``: map HTTP statuses and
  client/filesystem exceptions onto ErrorCode values. Retryable codes
  (timeouts, connection failures, 5xx, 429) are listed in ERROR_RECOVERY.
- ``with_retry``: exponential backoff with jitter,
  ``min(base_delay * 2**attempt, max_delay)``.
- ``fetch_to_file``: stream a URL into ``atomic_writer`` so the destination
  only ever names a complete file.
"""

import errno
import logging
import random
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

import requests
from requests.adapters import HTTPAdapter

from gdl import __version__
from gdl.lib.errors import Cancelled, ErrorCode, GdlError
from gdl.lib.io import atomic_writer

_logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = f"gdl/{__version__}"

DEFAULT_TIMEOUT = 300
DEFAULT_CHUNK_SIZE = 1 << 16


# =============================================================================
# Session
# =============================================================================

def build_session(pool_size: int = 1, user_agent: str = USER_AGENT) -> requests.Session:
    """
    Create the persistent HTTP session shared by every worker.

    Adapter-level retries are disabled; ``with_retry`` governs backoff.

    Args:
        pool_size: Maximum pooled connections per host; set to the worker count.
        user_agent: User-Agent header value.

    Returns:
        Configured requests.Session.
    """
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers["User-Agent"] = user_agent
    return session


def normalize_url(url: str) -> str:
    """
    Rewrite legacy ``ftp://`` catalog paths to HTTPS.

    NCBI serves the same tree over both protocols.

    Example:
        >>> normalize_url("ftp://ftp.ncbi.nlm.nih.gov/genomes/all/GCF/000/005/845")
        'https://ftp.ncbi.nlm.nih.gov/genomes/all/GCF/000/005/845'
    """
    if url.startswith("ftp://"):
        return "https://" + url[len("ftp://"):]
    return url


# =============================================================================
# Error Classification
# =============================================================================

def error_for_status(status_code: int, url: str) -> Optional[GdlError]:
    """
    Classify an HTTP status code.

    Returns:
        None for success statuses, otherwise a GdlError (not raised).
    """
    if status_code < 400:
        return None
    if status_code in (404, 410):
        code, message = ErrorCode.E_NOT_FOUND, f"File not found: {url}"
    elif status_code in (401, 403):
        code, message = ErrorCode.E_PERMISSION, f"Access denied: {url}"
    elif status_code == 429:
        code, message = ErrorCode.E_NET_RATE_LIMIT, f"Rate limit exceeded: {url}"
    elif status_code == 408:
        code, message = ErrorCode.E_TIMEOUT, f"Request timed out: {url}"
    elif status_code >= 500:
        code, message = ErrorCode.E_NET_TRANSIENT, f"Server error downloading {url}"
    else:
        code, message = ErrorCode.E_HTTP, f"HTTP error downloading {url}"
    return GdlError(code, message, details=f"HTTP {status_code}")


def error_for_exception(exc: BaseException, url: str) -> GdlError:
    """
    Classify a client or filesystem exception raised during a transfer.

    Args:
        exc: The exception raised by requests or by writing the file.
        url: Source URL for the message.

    Returns:
        GdlError with the matching ErrorCode (not raised).
    """
    if isinstance(exc, GdlError):
        return exc
    if isinstance(exc, requests.Timeout):
        return GdlError(ErrorCode.E_TIMEOUT, f"Timed out downloading {url}", details=str(exc))
    if isinstance(exc, (requests.ConnectionError, requests.exceptions.ChunkedEncodingError)):
        return GdlError(ErrorCode.E_NET_TRANSIENT, f"Connection failed for {url}", details=str(exc))
    if isinstance(exc, requests.RequestException):
        return GdlError(ErrorCode.E_HTTP, f"Request failed for {url}", details=str(exc))
    if isinstance(exc, OSError):
        if exc.errno == errno.ENOSPC:
            return GdlError(ErrorCode.E_DISK_FULL, "No space left on device", details=str(exc))
        if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
            return GdlError(ErrorCode.E_PERMISSION, "Cannot write download", details=str(exc))
        return GdlError(ErrorCode.E_IO, "Filesystem error writing download", details=str(exc))
    return GdlError(ErrorCode.E_HTTP, f"Unexpected error downloading {url}", details=repr(exc))


# =============================================================================
# Retry Logic
# =============================================================================

@dataclass
class RetryConfig:
    """
    Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3).
        base_delay: Initial delay in seconds before first retry (default: 1.0).
        max_delay: Maximum delay in seconds between retries (default: 60.0).
        jitter: Fraction of delay to add as random jitter (default: 0.1).

    Example:
        >>> config = RetryConfig(max_retries=3, base_delay=1.0)
        >>> # First retry waits ~1s, second ~2s, third ~4s (with jitter)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        """
        Backoff delay before retry number ``attempt + 1``.

        Args:
            attempt: Zero-based index of the attempt that just failed.
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)


def with_retry(
    func: Callable[[int], T],
    config: RetryConfig,
    wait: Callable[[float], Optional[bool]] = time.sleep,
    describe: str = "request",
) -> T:
    """
    Call ``func`` until it succeeds or fails with a non-retryable error.

    Args:
        func: Called with the 1-based attempt number.
        config: Retry limits and backoff.
        wait: Sleep function. A stop event's ``wait`` may be passed; a
            truthy return value means "stop requested" and aborts the retry
            loop with Cancelled.
        describe: Label for log messages.

    Returns:
        The function's return value.

    Raises:
        GdlError: The last error once retries are exhausted, or the first
            non-retryable error.
        Cancelled: If ``wait`` reports a stop request.
    """
    for attempt in range(config.max_retries + 1):
        try:
            return func(attempt + 1)
        except GdlError as e:
            if not e.is_retryable or attempt >= config.max_retries:
                raise
            delay = config.delay(attempt)
            _logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for {describe} "
                f"after {delay:.1f}s: {e}"
            )
            if wait(delay):
                raise Cancelled(f"Stopped while waiting to retry {describe}") from e

    raise RuntimeError("Unexpected retry state")


# =============================================================================
# Download
# =============================================================================

def fetch_to_file(
    session: requests.Session,
    url: str,
    dest: Path,
    timeout: float = DEFAULT_TIMEOUT,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """
    Stream ``url`` to ``dest`` through an atomic temp-file commit.

    Args:
        session: Shared HTTP session.
        url: Source URL.
        dest: Destination path; its directory must exist.
        timeout: Connect/read timeout in seconds.
        chunk_size: Streaming chunk size in bytes.
        stop_event: Checked between chunks; when set the transfer aborts.

    Returns:
        Number of bytes written.

    Raises:
        GdlError: Classified network or filesystem failure. ``dest`` is
            never created on failure.
        Cancelled: If ``stop_event`` was set mid-transfer.
    """
    total_bytes = 0
    try:
        with session.get(url, stream=True, timeout=timeout) as response:
            error = error_for_status(response.status_code, url)
            if error is not None:
                raise error

            with atomic_writer(dest) as fh:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if stop_event is not None and stop_event.is_set():
                        raise Cancelled(f"Transfer of {url} interrupted")
                    if chunk:
                        fh.write(chunk)
                        total_bytes += len(chunk)
    except GdlError:
        raise
    except (requests.RequestException, OSError) as e:
        raise error_for_exception(e, url) from e

    _logger.debug(f"Downloaded {total_bytes} bytes to {dest}")
    return total_bytes
