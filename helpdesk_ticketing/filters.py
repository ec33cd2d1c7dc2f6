"""FilterPredicateBuilder - turns a FilterRequest into one Predicate.

The same predicate feeds the paged, unbounded and count queries, so every
listing path filters identically.

Resolution rules:
- A singular field (``queue_id``) wins over its array form (``queue_ids``).
  Empty arrays are treated as absent.
- ``assigned_to_id`` explicitly set to ``None`` means "unassigned"; an
  omitted key means "no assignment filter". Pydantic's ``model_fields_set``
  tells the two apart.
- A non-empty ``user_ids`` replaces every assignee/creator filter with
  ``created_by_id IN user_ids OR assigned_to_id IN user_ids``.
- ``service_desk_filter`` adds ``queue_id IN queues OR created_by_id == user``.
- ``search`` matches title, details or any comment on the ticket.
- Archived tickets are excluded unless ``include_archived`` is set.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, NamedTuple, Optional, Tuple

from helpdesk_ticketing.errors import InvalidFilterError
from helpdesk_ticketing.models import FilterRequest
from helpdesk_ticketing.ports import CommentIndex
from helpdesk_ticketing.predicates import (
    MATCH_NONE,
    ArrayEmpty,
    Contains,
    Eq,
    Not,
    Predicate,
    Range,
    and_,
    in_,
    or_,
)

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# Dimension resolution                                                        #
# --------------------------------------------------------------------------- #


class DimensionRule(NamedTuple):
    column: str
    singular: str
    plural: str
    nullable: bool = False


class Dimension(NamedTuple):
    """Resolved dimension: ``kind`` is "one" (equality) or "any" (membership)."""

    column: str
    kind: str
    values: Tuple[Any, ...]


RESOLUTION_TABLE: Tuple[DimensionRule, ...] = (
    DimensionRule("queue_id", "queue_id", "queue_ids"),
    DimensionRule("category_id", "category_id", "category_ids"),
    DimensionRule("status", "status", "statuses"),
    DimensionRule("priority", "priority", "priorities"),
    DimensionRule("assigned_to_id", "assigned_to_id", "assigned_to_user_ids", nullable=True),
    DimensionRule("created_by_id", "created_by_id", "created_by_user_ids"),
)

# Dimensions that a non-empty user_ids overrides
USER_DIMENSIONS = {"assigned_to_id", "created_by_id"}

DATE_RANGES: Tuple[Tuple[str, str, str], ...] = (
    ("created_at", "created_after", "created_before"),
    ("updated_at", "updated_after", "updated_before"),
    ("closed_at", "closed_after", "closed_before"),
)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def resolve_dimension(filters: FilterRequest, rule: DimensionRule) -> Optional[Dimension]:
    """Resolve one singular/array pair of a FilterRequest.

    Returns:
        The resolved Dimension, or None when the dimension is absent.
    """
    explicit = filters.model_fields_set

    singular = getattr(filters, rule.singular)
    if singular is not None:
        return Dimension(rule.column, "one", (_plain(singular),))
    if rule.nullable and rule.singular in explicit:
        return Dimension(rule.column, "one", (None,))

    values = getattr(filters, rule.plural)
    if values:
        return Dimension(rule.column, "any", tuple(_plain(v) for v in values))
    if rule.nullable and values is None and rule.plural in explicit:
        return Dimension(rule.column, "one", (None,))
    return None


def dimension_predicate(dimension: Dimension) -> Predicate:
    if dimension.kind == "one":
        return Eq(dimension.column, dimension.values[0])
    return in_(dimension.column, dimension.values)


def parse_filter_date(field: str, value: str) -> float:
    """Parse an ISO-8601 filter bound into epoch seconds.

    Naive values are read as UTC and a trailing ``Z`` is accepted.

    Raises:
        InvalidFilterError: If the value is not a valid ISO-8601 date.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidFilterError(field, value) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# --------------------------------------------------------------------------- #
# Builder                                                                     #
# --------------------------------------------------------------------------- #


class FilterPredicateBuilder:
    """Build a store-agnostic Predicate from a FilterRequest.

    Pure apart from the injected comment index, which is consulted for
    ``search`` and ``has_comments``.
    """

    def __init__(self, comment_index: CommentIndex):
        self.comment_index = comment_index

    def build(self, filters: Optional[FilterRequest] = None) -> Predicate:
        """Build the predicate for a listing request.

        Args:
            filters: Listing filters. None means "everything not archived".

        Returns:
            Conjunction of every clause the filters produce.

        Raises:
            InvalidFilterError: If a date bound cannot be parsed.
        """
        if filters is None:
            filters = FilterRequest()

        clauses: List[Predicate] = []
        user_ids = [u for u in (filters.user_ids or []) if u]

        for rule in RESOLUTION_TABLE:
            if user_ids and rule.column in USER_DIMENSIONS:
                continue
            dimension = resolve_dimension(filters, rule)
            if dimension is None:
                if (
                    rule.column == "assigned_to_id"
                    and not user_ids
                    and filters.unassigned
                ):
                    clauses.append(Eq("assigned_to_id", None))
                continue
            clauses.append(dimension_predicate(dimension))

        if user_ids:
            clauses.append(
                or_(in_("created_by_id", user_ids), in_("assigned_to_id", user_ids))
            )

        if filters.service_desk_filter is not None:
            desk = filters.service_desk_filter
            clauses.append(
                or_(
                    in_("queue_id", desk.queue_ids),
                    Eq("created_by_id", desk.user_id),
                )
            )

        search = (filters.search or "").strip()
        if search:
            clauses.append(self._search_clause(search))

        for column, after_field, before_field in DATE_RANGES:
            clause = self._range_clause(filters, column, after_field, before_field)
            if clause is not None:
                clauses.append(clause)

        if filters.has_documents is not None:
            clauses.append(ArrayEmpty("document_ids", empty=not filters.has_documents))

        if filters.has_comments is not None:
            commented = self.comment_index.find_ticket_ids_matching(None)
            if filters.has_comments:
                clauses.append(in_("id", sorted(commented)) if commented else MATCH_NONE)
            elif commented:
                clauses.append(Not(in_("id", sorted(commented))))

        if not filters.include_archived:
            clauses.append(Eq("archived", False))

        logger.debug("built ticket predicate with %d clauses", len(clauses))
        return and_(*clauses)

    def _search_clause(self, search: str) -> Predicate:
        terms: List[Predicate] = [
            Contains("title", search),
            Contains("details", search),
        ]
        comment_ticket_ids = self.comment_index.find_ticket_ids_matching(search)
        if comment_ticket_ids:
            terms.append(in_("id", sorted(comment_ticket_ids)))
        return or_(*terms)

    @staticmethod
    def _range_clause(
        filters: FilterRequest, column: str, after_field: str, before_field: str
    ) -> Optional[Predicate]:
        after = getattr(filters, after_field)
        before = getattr(filters, before_field)
        if after is None and before is None:
            return None
        return Range(
            column,
            gte=None if after is None else parse_filter_date(after_field, after),
            lte=None if before is None else parse_filter_date(before_field, before),
        )
