"""
gdl Logging.

Two layers:
- Console logging through the standard ``logging`` module; every gdl
  module logs via ``logging.getLogger(__name__)`` and the CLI calls
  ``configure_console_logging`` once.
- An optional run log (``DualLogger``) that records the run both as a
  human-readable ``.log`` file and as machine-readable JSON Lines.
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from gdl.lib.io import atomic_append


CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_DATEFMT = "%H:%M:%S"

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


# =============================================================================
# ANSI Color Codes
# =============================================================================

class ANSIColors:
    """ANSI color codes for terminal output."""
    RED = "\033[91m"
    YELLOW = "\033[93m"
    GREEN = "\033[92m"
    GRAY = "\033[90m"
    RESET = "\033[0m"


LEVEL_COLORS = {
    logging.DEBUG: ANSIColors.GRAY,
    logging.INFO: ANSIColors.GREEN,
    logging.WARNING: ANSIColors.YELLOW,
    logging.ERROR: ANSIColors.RED,
}


def level_from_string(level_str: str) -> int:
    """
    Convert a level string to a logging level constant.

    Unknown names fall back to INFO.
    """
    return LEVEL_MAP.get(level_str.upper(), logging.INFO)


def configure_console_logging(level: str = "INFO") -> None:
    """
    Configure the root logger to write to stderr.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=level_from_string(level),
        format=CONSOLE_FORMAT,
        datefmt=CONSOLE_DATEFMT,
        stream=sys.stderr,
        force=True,
    )
    # urllib3 logs every pooled connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# =============================================================================
# Log Path Generation
# =============================================================================

def format_context_for_path(context: dict[str, str]) -> str:
    """
    Format a context dictionary into a path-safe string.

    Example:
        >>> format_context_for_path({"taxon": "562", "format": "fna"})
        'format=fna_taxon=562'
    """
    if not context:
        return "default"
    raw = "_".join(f"{k}={v}" for k, v in sorted(context.items()))
    return raw.replace("/", "_").replace(" ", "_")


def get_log_paths(
    run: str,
    context: dict[str, str],
    log_dir: Path = Path("logs")
) -> tuple[Path, Path]:
    """
    Generate log file paths for a run.

    Args:
        run: The run name (e.g. "download").
        context: Values identifying the run (selector, format, ...).
        log_dir: Base directory for logs (default: "logs").

    Returns:
        Tuple of (text_log_path, jsonl_log_path).

    Example:
        >>> log_path, _ = get_log_paths("download", {"taxon": "562"})
        >>> print(log_path)
        logs/download/taxon=562.log
    """
    base_path = log_dir / run / format_context_for_path(context)
    return (
        base_path.with_name(base_path.name + ".log"),
        base_path.with_name(base_path.name + ".jsonl"),
    )


# =============================================================================
# DualLogger Class
# =============================================================================

class DualLogger:
    """
    Logger that outputs both human-readable text and JSON Lines format.

    Safe to share between retrieval workers: each record is written to both
    files under one lock so lines never interleave.

    Attributes:
        run: The run name being logged.
        context: Dictionary of values identifying the run.
        log_path: Path to the text log file.
        jsonl_path: Path to the JSON Lines log file.
        level: Current logging level.
        use_color: Whether to use ANSI colors in text output.

    Example:
        >>> logger = DualLogger("download", {"taxon": "562"})
        >>> logger.info("Task fetched", accession="GCF_000005845.2", bytes=1024)
    """

    def __init__(
        self,
        run: str,
        context: Optional[dict[str, str]] = None,
        log_dir: Path = Path("logs"),
        level: int = logging.INFO,
        use_color: bool = False
    ):
        self.run = run
        self.context = context or {}
        self.level = level
        self.use_color = use_color
        self._lock = threading.Lock()

        self.log_path, self.jsonl_path = get_log_paths(run, self.context, log_dir)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _should_log(self, level: int) -> bool:
        return level >= self.level

    def _format_text_line(self, level: int, msg: str) -> str:
        """
        Format a log message for text output.

        Format: YYYY-MM-DD HH:MM:SS [LEVEL] run: message
        """
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        level_name = logging.getLevelName(level)

        if self.use_color:
            color = LEVEL_COLORS.get(level, "")
            return f"{timestamp} {color}[{level_name}]{ANSIColors.RESET} {self.run}: {msg}\n"
        return f"{timestamp} [{level_name}] {self.run}: {msg}\n"

    def _format_json_line(self, level: int, msg: str, **extra: Any) -> str:
        """
        Format a log message for JSON Lines output.

        Format: {"ts": "ISO8601", "level": "LEVEL", "run": "run", "msg": "message", ...}
        """
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level),
            "run": self.run,
            "msg": msg,
        }
        if self.context:
            record["context"] = self.context
        record.update(extra)

        return json.dumps(record, ensure_ascii=False, default=str) + "\n"

    def _log(self, level: int, msg: str, **extra: Any) -> None:
        if not self._should_log(level):
            return

        text_line = self._format_text_line(level, msg)
        json_line = self._format_json_line(level, msg, **extra)
        with self._lock:
            atomic_append(self.log_path, text_line)
            atomic_append(self.jsonl_path, json_line)

    def debug(self, msg: str, **extra: Any) -> None:
        """Log a DEBUG level message."""
        self._log(logging.DEBUG, msg, **extra)

    def info(self, msg: str, **extra: Any) -> None:
        """Log an INFO level message."""
        self._log(logging.INFO, msg, **extra)

    def warning(self, msg: str, **extra: Any) -> None:
        """Log a WARNING level message."""
        self._log(logging.WARNING, msg, **extra)

    def error(self, msg: str, **extra: Any) -> None:
        """Log an ERROR level message."""
        self._log(logging.ERROR, msg, **extra)

    def set_level(self, level: int) -> None:
        self.level = level


def create_logger(
    run: str,
    context: Optional[dict[str, str]] = None,
    log_dir: Optional[Path] = None,
    level: str = "INFO",
    use_color: bool = False
) -> DualLogger:
    """
    Create a DualLogger with common defaults.

    Args:
        run: The run name being logged.
        context: Dictionary of values identifying the run.
        log_dir: Base directory for logs (default: "logs").
        level: Logging level as string (default: "INFO").
        use_color: Whether to use ANSI colors (default: False).

    Returns:
        Configured DualLogger instance.
    """
    return DualLogger(
        run=run,
        context=context,
        log_dir=log_dir if log_dir is not None else Path("logs"),
        level=level_from_string(level),
        use_color=use_color,
    )
