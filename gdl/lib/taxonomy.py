"""
gdl Taxonomy Store.

Parses the NCBI taxonomy dump (``nodes.dmp`` + ``names.dmp``) into an
in-memory index and answers descendant-set and name-resolution queries.

Dump format: one record per line, fields separated by ``\\t|\\t`` and the
line terminated by ``\\t|``::

    nodes.dmp   tax_id | parent tax_id | rank | ...
    names.dmp   tax_id | name_txt | unique name | name class |

The index is built once per process and is read-only afterwards. A dump with
a dangling parent reference or a parent cycle is rejected at build time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from gdl.lib.errors import (
    AmbiguousTaxon,
    ErrorCode,
    GdlError,
    MalformedDump,
    UnknownTaxon,
)

_logger = logging.getLogger(__name__)

NODES_FILE = "nodes.dmp"
NAMES_FILE = "names.dmp"

FIELD_SEPARATOR = "\t|\t"
LINE_TERMINATOR = "\t|"

SCIENTIFIC_NAME = "scientific name"

# A parent id of 0 is accepted as "no parent" alongside the NCBI convention
# of the root being its own parent.
ROOT_SENTINEL = 0

Selector = Union[int, str]


@dataclass(frozen=True)
class TaxonNode:
    """
    One node of the taxonomy tree.

    Attributes:
        tax_id: Stable integer identifier.
        name: Display (scientific) name.
        parent_id: Parent identifier; equals tax_id (or 0) for a root.
        rank: Optional rank such as "genus" or "species".
    """

    tax_id: int
    name: str
    parent_id: int
    rank: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id == self.tax_id or self.parent_id == ROOT_SENTINEL


def split_dump_line(line: str) -> list[str]:
    """
    Split one taxdump line into its fields.

    Example:
        >>> split_dump_line("562\\t|\\t561\\t|\\tspecies\\t|\\n")
        ['562', '561', 'species']
    """
    line = line.rstrip("\n").rstrip("\r")
    if line.endswith(LINE_TERMINATOR):
        line = line[: -len(LINE_TERMINATOR)]
    return [field.strip() for field in line.split(FIELD_SEPARATOR)]


# =============================================================================
# Taxonomy Index
# =============================================================================


class TaxonomyIndex:
    """
    Identifier → node and identifier → children mappings.

    Use :func:`build` or :func:`load_taxdump` to construct one from a dump;
    the constructor validates the parent structure.

    Example:
        >>> index = load_taxdump(Path("taxdump"))
        >>> 562 in index.resolve_selector("Escherichia coli", include_children=True)
        True
    """

    def __init__(
        self,
        nodes: dict[int, TaxonNode],
        scientific_names: Optional[dict[str, list[int]]] = None,
        other_names: Optional[dict[str, list[int]]] = None,
    ):
        self._nodes = nodes
        self._scientific_names = scientific_names or {}
        self._other_names = other_names or {}
        self._children: dict[int, list[int]] = {}

        self._check_parents()
        self._check_cycles()

        for tax_id, node in nodes.items():
            if not node.is_root:
                self._children.setdefault(node.parent_id, []).append(tax_id)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _check_parents(self) -> None:
        for node in self._nodes.values():
            if not node.is_root and node.parent_id not in self._nodes:
                raise MalformedDump(
                    f"Taxon {node.tax_id} references missing parent {node.parent_id}",
                    details="Every non-root node's parent must be present in nodes.dmp",
                )

    def _check_cycles(self) -> None:
        """
        Reject parent cycles with an iterative walk towards the root.

        Nodes on the current walk are "visiting"; reaching a visiting node
        again means the parent chain loops and never reaches a root.
        """
        unseen, visiting, done = 0, 1, 2
        state: dict[int, int] = {}

        for start in self._nodes:
            if state.get(start, unseen) == done:
                continue

            path: list[int] = []
            current = start
            while True:
                current_state = state.get(current, unseen)
                if current_state == done:
                    break
                if current_state == visiting:
                    cycle = path[path.index(current):] + [current]
                    raise MalformedDump(
                        f"Cycle in taxonomy parent chain at taxon {current}",
                        details=" -> ".join(str(t) for t in cycle),
                    )
                state[current] = visiting
                path.append(current)

                node = self._nodes[current]
                if node.is_root:
                    break
                current = node.parent_id

            for tax_id in path:
                state[tax_id] = done

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, tax_id: object) -> bool:
        return tax_id in self._nodes

    def get(self, tax_id: int) -> TaxonNode:
        """Return the node for ``tax_id``; raises UnknownTaxon if absent."""
        try:
            return self._nodes[tax_id]
        except KeyError:
            raise UnknownTaxon(f"Taxon id {tax_id} not found in taxonomy") from None

    def children(self, tax_id: int) -> tuple[int, ...]:
        """Direct children of ``tax_id`` in dump order."""
        return tuple(self._children.get(tax_id, ()))

    def lineage(self, tax_id: int) -> list[TaxonNode]:
        """Nodes from ``tax_id`` up to its root, inclusive."""
        result = [self.get(tax_id)]
        while not result[-1].is_root:
            result.append(self._nodes[result[-1].parent_id])
        return result

    def find_by_name(self, name: str) -> list[int]:
        """
        Case-insensitive exact name lookup.

        Scientific names take precedence: other name classes (synonyms,
        common names, ...) are consulted only when no scientific name
        matches.
        """
        key = name.strip().casefold()
        matches = self._scientific_names.get(key)
        if matches:
            return list(matches)
        return list(self._other_names.get(key, ()))

    def descendants(self, tax_id: int) -> set[int]:
        """
        All taxa strictly below ``tax_id``.

        Uses an explicit work stack; runs in O(subtree size) regardless of
        tree depth.
        """
        self.get(tax_id)
        found: set[int] = set()
        stack = list(self._children.get(tax_id, ()))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._children.get(current, ()))
        return found

    # -------------------------------------------------------------------------
    # Selector resolution
    # -------------------------------------------------------------------------

    def resolve_tax_id(self, selector: Selector) -> int:
        """
        Map a selector (id or name) to a single taxon id.

        Raises:
            UnknownTaxon: No taxon has this id or name.
            AmbiguousTaxon: The name matches more than one taxon.
        """
        if isinstance(selector, int):
            if selector not in self._nodes:
                raise UnknownTaxon(f"Taxon id {selector} not found in taxonomy")
            return selector

        matches = self.find_by_name(selector)
        if not matches:
            raise UnknownTaxon(
                f"No taxon named {selector!r}",
                details="Names are matched exactly (case-insensitive)",
            )
        if len(matches) > 1:
            candidates = ", ".join(
                f"{tax_id} ({self._describe(tax_id)})" for tax_id in matches
            )
            raise AmbiguousTaxon(
                f"Name {selector!r} matches {len(matches)} taxa",
                details=candidates,
            )
        return matches[0]

    def resolve_selector(self, selector: Selector, include_children: bool = True) -> set[int]:
        """
        Resolve a selector to the set of taxon ids it covers.

        Args:
            selector: Taxon id (int) or taxon name (str).
            include_children: Include every descendant of the selected taxon.

        Returns:
            ``{id}`` or ``{id} | descendants(id)``.
        """
        tax_id = self.resolve_tax_id(selector)
        if not include_children:
            return {tax_id}
        return {tax_id} | self.descendants(tax_id)

    def _describe(self, tax_id: int) -> str:
        lineage = self.lineage(tax_id)
        node = lineage[0]
        parent = lineage[1].name if len(lineage) > 1 else "root"
        rank = node.rank or "no rank"
        return f"{rank}, under {parent}"


# =============================================================================
# Dump Parsing
# =============================================================================


def _parse_int(value: str, line_no: int, source: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise MalformedDump(
            f"Non-numeric taxon id {value!r} in {source} line {line_no}"
        ) from None


def build(nodes_lines: Iterable[str], names_lines: Iterable[str]) -> TaxonomyIndex:
    """
    Build a TaxonomyIndex from the two correlated dump tables.

    Args:
        nodes_lines: Lines of nodes.dmp.
        names_lines: Lines of names.dmp.

    Returns:
        Validated TaxonomyIndex.

    Raises:
        MalformedDump: Short or non-numeric rows, duplicate ids, dangling
            parents, or parent cycles.
    """
    parents: dict[int, tuple[int, Optional[str]]] = {}
    for line_no, line in enumerate(nodes_lines, start=1):
        if not line.strip():
            continue
        fields = split_dump_line(line)
        if len(fields) < 2:
            raise MalformedDump(f"Too few fields in {NODES_FILE} line {line_no}")
        tax_id = _parse_int(fields[0], line_no, NODES_FILE)
        parent_id = _parse_int(fields[1], line_no, NODES_FILE)
        if tax_id in parents:
            raise MalformedDump(f"Duplicate taxon id {tax_id} in {NODES_FILE} line {line_no}")
        rank = fields[2] if len(fields) > 2 and fields[2] else None
        parents[tax_id] = (parent_id, rank)

    display: dict[int, str] = {}
    scientific: dict[str, list[int]] = {}
    other: dict[str, list[int]] = {}
    for line_no, line in enumerate(names_lines, start=1):
        if not line.strip():
            continue
        fields = split_dump_line(line)
        if len(fields) < 2:
            raise MalformedDump(f"Too few fields in {NAMES_FILE} line {line_no}")
        tax_id = _parse_int(fields[0], line_no, NAMES_FILE)
        name = fields[1]
        name_class = fields[3] if len(fields) > 3 else SCIENTIFIC_NAME
        if tax_id not in parents:
            _logger.debug("Skipping name %r for unknown taxon %d", name, tax_id)
            continue

        table = scientific if name_class == SCIENTIFIC_NAME else other
        ids = table.setdefault(name.casefold(), [])
        if tax_id not in ids:
            ids.append(tax_id)

        if name_class == SCIENTIFIC_NAME:
            display[tax_id] = name
        else:
            display.setdefault(tax_id, name)

    nodes = {
        tax_id: TaxonNode(
            tax_id=tax_id,
            name=display.get(tax_id, str(tax_id)),
            parent_id=parent_id,
            rank=rank,
        )
        for tax_id, (parent_id, rank) in parents.items()
    }

    return TaxonomyIndex(nodes, scientific_names=scientific, other_names=other)


def load_taxdump(dump_dir: Path) -> TaxonomyIndex:
    """
    Load and index a taxonomy dump directory.

    Args:
        dump_dir: Directory containing nodes.dmp and names.dmp.

    Raises:
        GdlError: E_INPUT_MISSING if either file is absent.
        MalformedDump: If the dump is structurally invalid.
    """
    nodes_path = dump_dir / NODES_FILE
    names_path = dump_dir / NAMES_FILE
    for path in (nodes_path, names_path):
        if not path.is_file():
            raise GdlError(
                ErrorCode.E_INPUT_MISSING,
                f"Taxonomy dump file not found: {path}",
                details="Expected nodes.dmp and names.dmp; re-run with --no-cache to fetch them",
            )

    _logger.info(f"Loading taxonomy from {dump_dir}")
    with open(nodes_path, encoding="utf-8", errors="replace") as nodes_fh, \
            open(names_path, encoding="utf-8", errors="replace") as names_fh:
        index = build(nodes_fh, names_fh)

    _logger.info(f"Loaded {len(index)} taxa")
    return index
