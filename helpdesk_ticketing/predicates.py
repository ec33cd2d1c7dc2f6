"""Store-agnostic predicate tree for ticket queries.

The filter builder produces these nodes; each store adapter either evaluates
them in-process (``matches``) or compiles them to its own query language
(see ``pg_store.compile_predicate``).
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union


@dataclass(frozen=True)
class Eq:
    """``field == value``; a ``None`` value means the field is null."""

    field: str
    value: Any


@dataclass(frozen=True)
class In:
    """``field`` is one of ``values``. A ``None`` member also matches null."""

    field: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class Range:
    """Inclusive range; an absent bound leaves that side open."""

    field: str
    gte: Optional[float] = None
    lte: Optional[float] = None


@dataclass(frozen=True)
class Contains:
    """Case-insensitive literal substring match."""

    field: str
    text: str


@dataclass(frozen=True)
class ArrayEmpty:
    field: str
    empty: bool = True


@dataclass(frozen=True)
class And:
    clauses: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Or:
    clauses: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Not:
    clause: "Predicate"


@dataclass(frozen=True)
class MatchAll:
    pass


@dataclass(frozen=True)
class MatchNone:
    pass


Predicate = Union[Eq, In, Range, Contains, ArrayEmpty, And, Or, Not, MatchAll, MatchNone]

MATCH_ALL = MatchAll()
MATCH_NONE = MatchNone()


def and_(*clauses: Predicate) -> Predicate:
    """Conjunction that drops MatchAll terms and collapses trivial cases."""
    kept = tuple(c for c in clauses if not isinstance(c, MatchAll))
    if not kept:
        return MATCH_ALL
    if any(isinstance(c, MatchNone) for c in kept):
        return MATCH_NONE
    if len(kept) == 1:
        return kept[0]
    return And(kept)


def or_(*clauses: Predicate) -> Predicate:
    kept = tuple(c for c in clauses if not isinstance(c, MatchNone))
    if not kept:
        return MATCH_NONE
    if len(kept) == 1:
        return kept[0]
    return Or(kept)


def in_(field: str, values: Iterable[Any]) -> In:
    return In(field, tuple(values))


def matches(predicate: Predicate, row: Dict[str, Any]) -> bool:
    """Evaluate a predicate against a ticket row held in memory.

    Args:
        predicate: Predicate tree produced by the filter builder.
        row: Ticket row as a plain dict (store column names).

    Returns:
        True if the row satisfies the predicate.

    Raises:
        TypeError: If an unknown node type is encountered.
    """
    if isinstance(predicate, MatchAll):
        return True
    if isinstance(predicate, MatchNone):
        return False
    if isinstance(predicate, And):
        return all(matches(c, row) for c in predicate.clauses)
    if isinstance(predicate, Or):
        return any(matches(c, row) for c in predicate.clauses)
    if isinstance(predicate, Not):
        return not matches(predicate.clause, row)

    value = row.get(predicate.field)

    if isinstance(predicate, Eq):
        return value == predicate.value
    if isinstance(predicate, In):
        return value in predicate.values
    if isinstance(predicate, Range):
        if value is None:
            return False
        if predicate.gte is not None and value < predicate.gte:
            return False
        if predicate.lte is not None and value > predicate.lte:
            return False
        return True
    if isinstance(predicate, Contains):
        if value is None:
            return False
        return predicate.text.lower() in str(value).lower()
    if isinstance(predicate, ArrayEmpty):
        return (len(value or ()) == 0) == predicate.empty

    raise TypeError(f"Unknown predicate node: {predicate!r}")
