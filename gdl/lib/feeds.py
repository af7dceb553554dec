"""
gdl Feed Cache.

Load-or-fetch for the two input feeds: the taxonomy dump and the assembly
catalog. Cached copies are reused verbatim unless a refresh was requested.

The refresh-or-reuse decision for each feed is taken once per FeedCache and
before the retrieval pool starts; later calls return the already resolved
path without touching the network.
"""

import logging
import shutil
import tarfile
import threading
from pathlib import Path
from typing import Callable, Optional

import requests

from gdl.lib.errors import Cancelled, ConfigurationError, GdlError, SourceUnavailable
from gdl.lib.io import atomic_writer
from gdl.lib.taxonomy import NAMES_FILE, NODES_FILE
from gdl.lib.transport import RetryConfig, fetch_to_file, with_retry

_logger = logging.getLogger(__name__)

TAXDUMP_URL = "https://ftp.ncbi.nih.gov/pub/taxonomy/taxdump.tar.gz"
TAXDUMP_ARCHIVE = "taxdump.tar.gz"
TAXDUMP_MEMBERS = (NODES_FILE, NAMES_FILE)

CATALOG_URLS = {
    "refseq": "https://ftp.ncbi.nlm.nih.gov/genomes/ASSEMBLY_REPORTS/assembly_summary_refseq.txt",
    "genbank": "https://ftp.ncbi.nlm.nih.gov/genomes/ASSEMBLY_REPORTS/assembly_summary_genbank.txt",
}
SOURCE_NONE = "none"

Fetcher = Callable[[str, Path], None]


def catalog_cache_name(source: str) -> str:
    """
    File name of a cached catalog.

    Example:
        >>> catalog_cache_name("refseq")
        'assembly_summary_refseq.txt'
    """
    return f"assembly_summary_{source}.txt"


def check_catalog_choice(source: str, path: Optional[Path]) -> None:
    """
    Validate the repository / catalog-path combination.

    A user-supplied catalog requires source "none"; source "none" requires
    a catalog path.

    Raises:
        ConfigurationError: On an invalid combination.
    """
    if path is not None and source != SOURCE_NONE:
        raise ConfigurationError(
            "--source and --assembly-summary-path are mutually exclusive",
            details="Pass --source none together with --assembly-summary-path",
        )
    if path is None and source not in CATALOG_URLS:
        raise ConfigurationError(
            f"Catalog source {source!r} needs --assembly-summary-path",
            details=f"Known sources: {', '.join(CATALOG_URLS)}",
        )


def make_fetcher(
    session: requests.Session,
    retry_config: Optional[RetryConfig] = None,
    timeout: float = 300,
    stop_event: Optional[threading.Event] = None,
) -> Fetcher:
    """
    Build the default ``fetch(url, dest)`` used by FeedCache.

    Transfers go through the shared session with the same retry policy as
    assembly downloads. A set ``stop_event`` aborts the transfer between
    chunks or during a retry wait with Cancelled; nothing is committed.
    """
    retry_config = retry_config or RetryConfig()
    stop_event = stop_event or threading.Event()

    def attempt(url: str, dest: Path) -> int:
        if stop_event.is_set():
            raise Cancelled(f"Stopped before fetching {url}")
        return fetch_to_file(session, url, dest, timeout=timeout, stop_event=stop_event)

    def fetch(url: str, dest: Path) -> None:
        with_retry(
            lambda number: attempt(url, dest),
            retry_config,
            wait=stop_event.wait,
            describe=url,
        )

    return fetch


def extract_taxdump(archive: Path, dump_dir: Path) -> None:
    """
    Extract nodes.dmp and names.dmp from a taxdump tarball.

    Only the two needed members are read; each is committed atomically.

    Raises:
        SourceUnavailable: If the archive is unreadable or lacks a member.
    """
    dump_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:gz") as tar:
            for name in TAXDUMP_MEMBERS:
                try:
                    member = tar.getmember(name)
                except KeyError:
                    raise SourceUnavailable(
                        f"Taxonomy archive lacks {name}", details=str(archive)
                    ) from None
                source = tar.extractfile(member)
                if source is None:
                    raise SourceUnavailable(
                        f"Taxonomy archive member {name} is not a file", details=str(archive)
                    )
                with source, atomic_writer(dump_dir / name) as fh:
                    shutil.copyfileobj(source, fh)
    except (tarfile.TarError, EOFError) as e:
        raise SourceUnavailable(f"Cannot read taxonomy archive {archive}", details=str(e)) from e


class FeedCache:
    """
    Explicit cache object for the taxonomy dump and the catalog.

    Attributes:
        cache_dir: Where fetched catalogs and the transient archive live.
        refresh: Re-fetch feeds even when cached copies exist.

    Example:
        >>> cache = FeedCache(Path("."), refresh=False, fetch=make_fetcher(session))
        >>> dump_dir = cache.taxonomy_dir(Path("taxdump"))
        >>> catalog = cache.catalog_path("refseq")
    """

    def __init__(self, cache_dir: Path, refresh: bool = False, fetch: Optional[Fetcher] = None):
        self.cache_dir = cache_dir
        self.refresh = refresh
        self._fetch = fetch
        self._lock = threading.Lock()
        self._resolved: dict[str, Path] = {}

    def _require_fetch(self) -> Fetcher:
        if self._fetch is None:
            raise SourceUnavailable(
                "No cached copy available and fetching is disabled",
                details=f"cache dir: {self.cache_dir}",
            )
        return self._fetch

    def _download(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        _logger.info(f"Fetching {url}")
        try:
            self._require_fetch()(url, dest)
        except (SourceUnavailable, Cancelled):
            raise
        except GdlError as e:
            raise SourceUnavailable(f"Unable to fetch {url}", details=e.message) from e

    def taxonomy_dir(self, dump_dir: Path, url: str = TAXDUMP_URL) -> Path:
        """
        Return a directory holding nodes.dmp and names.dmp, fetching if needed.

        Raises:
            SourceUnavailable: If the dump cannot be fetched or extracted.
        """
        key = f"taxonomy:{dump_dir}"
        with self._lock:
            if key in self._resolved:
                return self._resolved[key]

            present = all((dump_dir / name).is_file() for name in TAXDUMP_MEMBERS)
            if present and not self.refresh:
                _logger.info(f"Using cached taxonomy dump in {dump_dir}")
            else:
                archive = self.cache_dir / TAXDUMP_ARCHIVE
                self._download(url, archive)
                try:
                    extract_taxdump(archive, dump_dir)
                finally:
                    archive.unlink(missing_ok=True)

            self._resolved[key] = dump_dir
            return dump_dir

    def catalog_path(self, source: str, path: Optional[Path] = None) -> Path:
        """
        Return the catalog to stream.

        Args:
            source: "refseq", "genbank" or "none".
            path: User-supplied catalog; requires ``source == "none"``.

        Raises:
            ConfigurationError: Source and path both (or neither) given.
            SourceUnavailable: The catalog cannot be found or fetched.
        """
        check_catalog_choice(source, path)
        if path is not None:
            if not path.is_file():
                raise SourceUnavailable(f"Catalog not found: {path}")
            return path

        key = f"catalog:{source}"
        with self._lock:
            if key in self._resolved:
                return self._resolved[key]

            dest = self.cache_dir / catalog_cache_name(source)
            if dest.is_file() and not self.refresh:
                _logger.info(f"Using cached catalog {dest}")
            else:
                self._download(CATALOG_URLS[source], dest)

            self._resolved[key] = dest
            return dest
