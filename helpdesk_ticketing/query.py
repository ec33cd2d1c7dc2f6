"""Query executor and finder for ticket listings.

``QueryExecutor`` runs one predicate three ways (page, all, count) with a
shared sort, so a page is always a prefix-consistent slice of ``all`` and
``count`` always equals ``len(all)``.
"""

import logging
from collections import Counter, defaultdict
from statistics import mean, median
from typing import Dict, List, Optional

from helpdesk_ticketing.filters import FilterPredicateBuilder
from helpdesk_ticketing.models import (
    AssigneeResolutionTime,
    FilterRequest,
    QueueCount,
    QueueResolutionTime,
    ResolutionTimeReport,
    ResolutionTimeSummary,
    Ticket,
    TicketListResponse,
    TicketPriority,
    TicketStatistics,
    TicketStatus,
)
from helpdesk_ticketing.ports import SortSpec, TicketStore
from helpdesk_ticketing.predicates import Eq, Predicate, and_

logger = logging.getLogger(__name__)

DEFAULT_SORT: SortSpec = (("created_at", "desc"),)
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
SECONDS_PER_HOUR = 3600.0


def row_to_ticket(row) -> Ticket:
    """Convert a store row to a Ticket, dropping store-only columns."""
    return Ticket(
        id=row["id"],
        queue_id=row["queue_id"],
        category_id=row["category_id"],
        title=row["title"],
        details=row.get("details") or "",
        status=row["status"],
        priority=row["priority"],
        assigned_to_id=row.get("assigned_to_id"),
        created_by_id=row["created_by_id"],
        document_ids=list(row.get("document_ids") or []),
        closing_notes=row.get("closing_notes"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        closed_at=row.get("closed_at"),
    )


class QueryExecutor:
    """Run a predicate against a TicketStore."""

    def __init__(self, store: TicketStore, sort: SortSpec = DEFAULT_SORT):
        self.store = store
        self.sort = sort

    def page(self, predicate: Predicate, page: int, limit: int) -> List[Ticket]:
        """One page of matching tickets, newest first.

        Raises:
            ValueError: If page or limit is not positive.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        rows = self.store.find_matching(
            predicate, self.sort, skip=(page - 1) * limit, limit=limit
        )
        return [row_to_ticket(r) for r in rows]

    def all(self, predicate: Predicate) -> List[Ticket]:
        """Every matching ticket. Unbounded: callers own the result size."""
        return [row_to_ticket(r) for r in self.store.find_matching(predicate, self.sort)]

    def count(self, predicate: Predicate) -> int:
        return self.store.count_matching(predicate)


class TicketFinder:
    """Filter-request level entry point combining the builder and executor."""

    def __init__(
        self,
        builder: FilterPredicateBuilder,
        executor: QueryExecutor,
        default_limit: int = DEFAULT_LIMIT,
    ):
        self.builder = builder
        self.executor = executor
        self.default_limit = default_limit

    def find_page(
        self,
        filters: Optional[FilterRequest] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> TicketListResponse:
        """Paged listing with the total match count.

        Args:
            filters: Listing filters.
            page: 1-based page number (default 1).
            limit: Page size (default from settings, 10).

        Returns:
            TicketListResponse with the page and total.
        """
        page = page or DEFAULT_PAGE
        limit = limit or self.default_limit
        predicate = self.builder.build(filters)
        tickets = self.executor.page(predicate, page, limit)
        total = self.executor.count(predicate)
        return TicketListResponse(tickets=tickets, total=total, page=page, limit=limit)

    def find_all(self, filters: Optional[FilterRequest] = None) -> List[Ticket]:
        return self.executor.all(self.builder.build(filters))

    def count(self, filters: Optional[FilterRequest] = None) -> int:
        return self.executor.count(self.builder.build(filters))

    def statistics(self, filters: Optional[FilterRequest] = None) -> TicketStatistics:
        """Status, priority and queue breakdown over the filtered tickets."""
        predicate = self.builder.build(filters)
        by_priority = {
            p.value: self.executor.count(and_(predicate, Eq("priority", p.value)))
            for p in TicketPriority
        }
        queue_counts = Counter(t.queue_id for t in self.executor.all(predicate))
        stats = TicketStatistics(
            total=self.executor.count(predicate),
            opened=self.executor.count(
                and_(predicate, Eq("status", TicketStatus.opened.value))
            ),
            closed=self.executor.count(
                and_(predicate, Eq("status", TicketStatus.closed.value))
            ),
            by_priority=by_priority,
            by_queue=[
                QueueCount(queue_id=queue_id, count=count)
                for queue_id, count in sorted(
                    queue_counts.items(), key=lambda item: (-item[1], item[0])
                )
            ],
        )
        logger.debug("ticket statistics: total=%d", stats.total)
        return stats

    def resolution_time(
        self, filters: Optional[FilterRequest] = None
    ) -> ResolutionTimeReport:
        """Creation-to-close durations over the filtered closed tickets.

        Only tickets currently Closed with a ``closed_at`` count. Hours are
        rounded to two decimals. Groups are ordered by ticket count, largest
        first; unassigned tickets are left out of ``by_assignee``.
        """
        predicate = and_(
            self.builder.build(filters), Eq("status", TicketStatus.closed.value)
        )
        resolved = [
            t for t in self.executor.all(predicate)
            if t.closed_at is not None and t.created_at is not None
        ]

        by_priority: Dict[str, List[float]] = {p.value: [] for p in TicketPriority}
        by_queue: Dict[str, List[float]] = defaultdict(list)
        by_assignee: Dict[str, List[float]] = defaultdict(list)
        for ticket in resolved:
            hours = (ticket.closed_at - ticket.created_at) / SECONDS_PER_HOUR
            by_priority[TicketPriority(ticket.priority).value].append(hours)
            by_queue[ticket.queue_id].append(hours)
            if ticket.assigned_to_id:
                by_assignee[ticket.assigned_to_id].append(hours)

        overall = [h for hours in by_priority.values() for h in hours]
        return ResolutionTimeReport(
            overall=_summarize(overall),
            by_priority={key: _summarize(hours) for key, hours in by_priority.items()},
            by_queue=[
                QueueResolutionTime(
                    queue_id=key,
                    average_resolution_time_hours=round(mean(hours), 2),
                    ticket_count=len(hours),
                )
                for key, hours in _largest_first(by_queue)
            ],
            by_assignee=[
                AssigneeResolutionTime(
                    user_id=key,
                    average_resolution_time_hours=round(mean(hours), 2),
                    ticket_count=len(hours),
                )
                for key, hours in _largest_first(by_assignee)
            ],
        )


def _summarize(hours: List[float]) -> ResolutionTimeSummary:
    if not hours:
        return ResolutionTimeSummary()
    return ResolutionTimeSummary(
        average_resolution_time_hours=round(mean(hours), 2),
        median_resolution_time_hours=round(median(hours), 2),
        total_tickets_resolved=len(hours),
    )


def _largest_first(groups: Dict[str, List[float]]):
    return sorted(groups.items(), key=lambda item: (-len(item[1]), item[0]))
