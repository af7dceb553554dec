"""
gdl Filter Predicates.

Compound record predicates built from ``--include`` / ``--exclude``
expressions of the form ``FIELD=PATTERN``.

Clause kinds are a tagged variant (GlobClause, RegexClause, NumericClause,
DateClause); each kind has exactly one matcher function, looked up by clause
type in ``_MATCHERS``.

Combination rules per constrained field:
- include clauses are OR-combined (no include clauses means "accept all")
- exclude clauses are OR-combined and negated
- fields are AND-combined

A missing (``None``) field value never matches a clause: it fails any
include constraint on that field and is never excluded by it.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from gdl.lib.errors import ConfigurationError


class FieldKind(str, Enum):
    """Value type of a filterable field."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"


# Attribute names on AssemblyRecord
FIELDS: dict[str, FieldKind] = {
    "accession": FieldKind.TEXT,
    "organism_name": FieldKind.TEXT,
    "infraspecific_name": FieldKind.TEXT,
    "assembly_level": FieldKind.TEXT,
    "refseq_category": FieldKind.TEXT,
    "version_status": FieldKind.TEXT,
    "release_type": FieldKind.TEXT,
    "genome_rep": FieldKind.TEXT,
    "asm_name": FieldKind.TEXT,
    "submitter": FieldKind.TEXT,
    "source": FieldKind.TEXT,
    "taxid": FieldKind.NUMBER,
    "species_taxid": FieldKind.NUMBER,
    "genome_size": FieldKind.NUMBER,
    "release_date": FieldKind.DATE,
}

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d")


# =============================================================================
# Clause Kinds
# =============================================================================

@dataclass(frozen=True)
class GlobClause:
    """Shell-style wildcard match over the whole value."""

    pattern: str
    case_sensitive: bool = False
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        flags = 0 if self.case_sensitive else re.IGNORECASE
        object.__setattr__(self, "_regex", re.compile(fnmatch.translate(self.pattern), flags))


@dataclass(frozen=True)
class RegexClause:
    """Regular expression searched anywhere in the value."""

    pattern: str
    ignore_case: bool = False
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        flags = re.IGNORECASE if self.ignore_case else 0
        object.__setattr__(self, "_regex", re.compile(self.pattern, flags))


@dataclass(frozen=True)
class NumericClause:
    """Closed, open or half-bounded numeric interval."""

    low: Optional[float] = None
    high: Optional[float] = None
    low_inclusive: bool = True
    high_inclusive: bool = True


@dataclass(frozen=True)
class DateClause:
    """Closed, open or half-bounded date interval."""

    low: Optional[date] = None
    high: Optional[date] = None
    low_inclusive: bool = True
    high_inclusive: bool = True


Clause = Union[GlobClause, RegexClause, NumericClause, DateClause]


# =============================================================================
# Matchers
# =============================================================================

def _text_value(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _in_bounds(value, clause: Union[NumericClause, DateClause]) -> bool:
    if clause.low is not None:
        if value < clause.low or (value == clause.low and not clause.low_inclusive):
            return False
    if clause.high is not None:
        if value > clause.high or (value == clause.high and not clause.high_inclusive):
            return False
    return True


def _match_glob(clause: GlobClause, value: Any) -> bool:
    return clause._regex.match(_text_value(value)) is not None


def _match_regex(clause: RegexClause, value: Any) -> bool:
    return clause._regex.search(_text_value(value)) is not None


def _match_numeric(clause: NumericClause, value: Any) -> bool:
    if not isinstance(value, (int, float)):
        return False
    return _in_bounds(value, clause)


def _match_date(clause: DateClause, value: Any) -> bool:
    if not isinstance(value, date):
        return False
    return _in_bounds(value, clause)


_MATCHERS: dict[type, Callable[[Any, Any], bool]] = {
    GlobClause: _match_glob,
    RegexClause: _match_regex,
    NumericClause: _match_numeric,
    DateClause: _match_date,
}


def clause_matches(clause: Clause, value: Any) -> bool:
    """
    Evaluate one clause against one field value.

    Args:
        clause: Any clause kind.
        value: The record's value for the clause's field, or None.

    Returns:
        True if the value satisfies the clause. None never matches.
    """
    if value is None:
        return False
    return _MATCHERS[type(clause)](clause, value)


# =============================================================================
# Predicate
# =============================================================================

@dataclass
class FieldFilter:
    """Include and exclude clauses attached to one field."""

    includes: list = field(default_factory=list)
    excludes: list = field(default_factory=list)

    def matches(self, value: Any) -> bool:
        if self.includes and not any(clause_matches(c, value) for c in self.includes):
            return False
        return not any(clause_matches(c, value) for c in self.excludes)


class Predicate:
    """
    Stateless compound predicate over AssemblyRecord fields.

    Example:
        >>> predicate = Predicate()
        >>> predicate.include("assembly_level", GlobClause("complete genome"))
        >>> predicate.exclude("organism_name", RegexClause("phage", ignore_case=True))
        >>> predicate.matches(record)
    """

    def __init__(self):
        self._fields: dict[str, FieldFilter] = {}

    def _filter_for(self, name: str) -> FieldFilter:
        if name not in FIELDS:
            raise ConfigurationError(
                f"Unknown filter field: {name!r}",
                details=f"Valid fields: {', '.join(sorted(FIELDS))}",
            )
        return self._fields.setdefault(name, FieldFilter())

    def include(self, name: str, clause: Clause) -> None:
        self._filter_for(name).includes.append(clause)

    def exclude(self, name: str, clause: Clause) -> None:
        self._filter_for(name).excludes.append(clause)

    @property
    def fields(self) -> list[str]:
        """Names of the constrained fields."""
        return list(self._fields)

    def is_empty(self) -> bool:
        return not self._fields

    def matches(self, record: Any) -> bool:
        """True if ``record`` satisfies every constrained field."""
        for name, field_filter in self._fields.items():
            if not field_filter.matches(getattr(record, name, None)):
                return False
        return True

    @classmethod
    def from_expressions(
        cls,
        includes: Optional[list[str]] = None,
        excludes: Optional[list[str]] = None,
    ) -> "Predicate":
        """
        Build a Predicate from ``FIELD=PATTERN`` expressions.

        Raises:
            ConfigurationError: If an expression is malformed.
        """
        predicate = cls()
        for expression in includes or []:
            predicate.include(*parse_expression(expression))
        for expression in excludes or []:
            predicate.exclude(*parse_expression(expression))
        return predicate


# =============================================================================
# Expression Parsing
# =============================================================================

def parse_expression(expression: str) -> tuple[str, Clause]:
    """
    Split ``FIELD=PATTERN`` and parse PATTERN according to FIELD's kind.

    Examples:
        >>> parse_expression("assembly_level=complete*")
        ('assembly_level', GlobClause(pattern='complete*', case_sensitive=False))
        >>> parse_expression("genome_size=>4000000")[1].low
        4000000.0
    """
    name, sep, pattern = expression.partition("=")
    name = name.strip()
    if not sep or not name:
        raise ConfigurationError(
            f"Malformed filter expression: {expression!r}",
            details="Expected FIELD=PATTERN, e.g. assembly_level=\"Complete Genome\"",
        )
    return name, parse_clause(name, pattern)


def parse_clause(name: str, pattern: str) -> Clause:
    """Parse a pattern for the named field into a clause."""
    kind = FIELDS.get(name)
    if kind is None:
        raise ConfigurationError(
            f"Unknown filter field: {name!r}",
            details=f"Valid fields: {', '.join(sorted(FIELDS))}",
        )
    if kind is FieldKind.TEXT:
        return _parse_text(pattern)
    if kind is FieldKind.NUMBER:
        low, high, low_inc, high_inc = _parse_comparison(pattern, _parse_number)
        return NumericClause(low, high, low_inc, high_inc)
    low, high, low_inc, high_inc = _parse_comparison(pattern, parse_date)
    return DateClause(low, high, low_inc, high_inc)


def _parse_text(pattern: str) -> Clause:
    if len(pattern) >= 2 and pattern.startswith("/"):
        if pattern.endswith("/i") and len(pattern) >= 3:
            body, ignore_case = pattern[1:-2], True
        elif pattern.endswith("/"):
            body, ignore_case = pattern[1:-1], False
        else:
            body = None
        if body is not None:
            try:
                return RegexClause(body, ignore_case=ignore_case)
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid regular expression: {body!r}", details=str(e)
                ) from e

    if len(pattern) >= 2 and pattern.startswith('"') and pattern.endswith('"'):
        return GlobClause(pattern[1:-1], case_sensitive=True)

    return GlobClause(pattern)


def _parse_number(text: str) -> float:
    try:
        return float(text.replace("_", ""))
    except ValueError:
        raise ConfigurationError(f"Invalid number in filter: {text!r}") from None


def parse_date(text: str) -> date:
    """
    Parse ``YYYY-MM-DD`` or ``YYYY/MM/DD``.

    Raises:
        ConfigurationError: If neither format matches.
    """
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ConfigurationError(
        f"Invalid date in filter: {text!r}",
        details="Use YYYY-MM-DD or YYYY/MM/DD",
    )


def _parse_comparison(pattern: str, convert: Callable[[str], Any]) -> tuple:
    """Return (low, high, low_inclusive, high_inclusive)."""
    pattern = pattern.strip()

    if ".." in pattern:
        left, _, right = pattern.partition("..")
        left, right = left.strip(), right.strip()
        if not left and not right:
            raise ConfigurationError(f"Empty range in filter: {pattern!r}")
        low = convert(left) if left else None
        high = convert(right) if right else None
        return low, high, True, True

    for op in ("<=", ">=", "<", ">", "="):
        if pattern.startswith(op):
            value = convert(pattern[len(op):].strip())
            if op == "<=":
                return None, value, True, True
            if op == ">=":
                return value, None, True, True
            if op == "<":
                return None, value, True, False
            if op == ">":
                return value, None, False, True
            return value, value, True, True

    value = convert(pattern)
    return value, value, True, True
