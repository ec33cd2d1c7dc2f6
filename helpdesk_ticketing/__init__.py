"""Helpdesk Ticketing - ticket filtering, lifecycle and audit trail."""

from helpdesk_ticketing.errors import (
    ConflictError,
    ForbiddenError,
    InvalidFilterError,
    NotFoundError,
    TicketingError,
)
from helpdesk_ticketing.filters import FilterPredicateBuilder
from helpdesk_ticketing.history import HistoryLog
from helpdesk_ticketing.models import (
    FilterRequest,
    HistoryItem,
    HistoryItemType,
    Ticket,
    TicketCreate,
    TicketEvent,
    TicketMutation,
    TicketPriority,
    TicketStatus,
    TicketUpdate,
)
from helpdesk_ticketing.notifications import ChannelNotificationPort, NotificationDispatcher
from helpdesk_ticketing.query import QueryExecutor, TicketFinder
from helpdesk_ticketing.service import TicketService

__version__ = "0.1.0"

__all__ = [
    "TicketService",
    "HistoryLog",
    "FilterPredicateBuilder",
    "QueryExecutor",
    "TicketFinder",
    "NotificationDispatcher",
    "ChannelNotificationPort",
    "Ticket",
    "TicketCreate",
    "TicketUpdate",
    "TicketStatus",
    "TicketPriority",
    "TicketEvent",
    "TicketMutation",
    "HistoryItem",
    "HistoryItemType",
    "FilterRequest",
    "TicketingError",
    "NotFoundError",
    "ForbiddenError",
    "InvalidFilterError",
    "ConflictError",
]
