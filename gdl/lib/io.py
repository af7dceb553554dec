"""
gdl I/O Utilities.

This module provides atomic file writing for the gdl pipeline.

Key features:
- Atomic writes: the final path only ever names a complete file
- Streaming atomic writer for downloads (temp file colocated with target)
- Removal of the temp file an interrupted download left beside its target
"""

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Iterator

# Module logger
_logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def get_temp_path(path: Path) -> Path:
    """
    Get the temporary file path for a given target path.

    The temporary file lives in the same directory as the target so that
    the final rename never crosses a filesystem boundary.

    Args:
        path: Target file path.

    Returns:
        Path to the corresponding .tmp file.

    Example:
        >>> get_temp_path(Path("out/GCF_000005845.2.fna.gz"))
        PosixPath('out/GCF_000005845.2.fna.gz.tmp')
    """
    return path.with_name(path.name + TEMP_SUFFIX)


@contextmanager
def atomic_writer(path: Path) -> Iterator[BinaryIO]:
    """
    Open a binary handle whose content lands at ``path`` only on success.

    Data is written to ``get_temp_path(path)``. When the ``with`` block
    exits normally the handle is flushed, closed and renamed over ``path``.
    When the block raises (including KeyboardInterrupt), the temporary
    file is removed and the exception propagates; ``path`` is untouched.

    Args:
        path: Target file path. Its parent directory must exist.

    Yields:
        Writable binary file object.

    Example:
        >>> with atomic_writer(Path("genome.fna.gz")) as fh:
        ...     fh.write(b"...")
    """
    temp_path = get_temp_path(path)
    handle = open(temp_path, "wb")
    try:
        yield handle
        handle.close()
        temp_path.replace(path)
    except BaseException:
        handle.close()
        temp_path.unlink(missing_ok=True)
        raise


def atomic_write(path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Atomically write text content to a file.

    Writes to a temporary file first, then renames to the target path, so
    readers never see a partially written file. On failure the temporary
    file is cleaned up.

    Args:
        path: Target file path.
        content: Text content to write.
        encoding: Text encoding (default: utf-8).

    Raises:
        OSError: If write or rename fails (after cleanup).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with atomic_writer(path) as fh:
        fh.write(content.encode(encoding))


def atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """
    Atomically write JSON data to a file.

    Args:
        path: Target file path.
        data: JSON-serializable data.
        indent: JSON indentation level (default: 2).
    """
    content = json.dumps(data, ensure_ascii=False, indent=indent)
    atomic_write(path, content + "\n")


def atomic_append(path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Append content to a file, creating it if it doesn't exist.

    Note: This is NOT atomic for the append operation itself. Used for
    line-oriented log files only.

    Args:
        path: Target file path.
        content: Text content to append.
        encoding: Text encoding (default: utf-8).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding=encoding) as f:
        f.write(content)



def remove_stale_temp(path: Path) -> bool:
    """
    Remove the temp file an interrupted write left beside ``path``.

    Only the temp path belonging to ``path`` is considered; other files in
    the directory are never touched.

    Args:
        path: Target path whose temp sibling should be removed.

    Returns:
        True if a temp file was removed.
    """
    temp_path = get_temp_path(path)
    if not temp_path.is_file():
        return False
    try:
        temp_path.unlink()
    except OSError as e:
        # A temp file held by another process stays; atomic_writer truncates it
        _logger.debug("Could not remove temp file %s: %s", temp_path, e)
        return False
    return True
