"""Pydantic request/response models for helpdesk-ticketing."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# --------------------------------------------------------------------------- #
# Enums                                                                       #
# --------------------------------------------------------------------------- #


class TicketStatus(str, Enum):
    opened = "Opened"
    closed = "Closed"


class TicketPriority(str, Enum):
    high = "High"
    medium = "Medium"
    low = "Low"


class HistoryItemType(str, Enum):
    comment = "COMMENT"
    created = "CREATED"
    assigned = "ASSIGNED"
    status_changed = "STATUS_CHANGED"
    closed = "CLOSED"
    reopened = "REOPENED"
    document_added = "DOCUMENT_ADDED"
    document_removed = "DOCUMENT_REMOVED"
    priority_changed = "PRIORITY_CHANGED"
    category_changed = "CATEGORY_CHANGED"


class TicketEventType(str, Enum):
    ticket_created = "ticket_created"
    ticket_assigned = "ticket_assigned"
    ticket_closed = "ticket_closed"
    ticket_reopened = "ticket_reopened"
    document_added = "document_added"
    document_removed = "document_removed"
    priority_changed = "priority_changed"
    category_changed = "category_changed"
    comment_added = "comment_added"
    ticket_deleted = "ticket_deleted"


# --------------------------------------------------------------------------- #
# Entities                                                                    #
# --------------------------------------------------------------------------- #


class Ticket(BaseModel):
    id: str
    queue_id: str
    category_id: str
    title: str
    details: str
    status: TicketStatus = TicketStatus.opened
    priority: TicketPriority = TicketPriority.medium
    assigned_to_id: Optional[str] = None
    created_by_id: str
    document_ids: List[str] = Field(default_factory=list)
    closing_notes: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    closed_at: Optional[float] = None


class HistoryItem(BaseModel):
    id: str
    ticket_id: str
    user_id: str
    type: HistoryItemType
    details: str
    created_at: Optional[float] = None


# --------------------------------------------------------------------------- #
# Request models                                                              #
# --------------------------------------------------------------------------- #


class TicketCreate(BaseModel):
    queue_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=500)
    details: str = ""
    priority: TicketPriority = TicketPriority.medium
    document_ids: List[str] = Field(default_factory=list)


class TicketUpdate(BaseModel):
    """Generic field update.

    Only fields present in the payload are written. An explicit ``null`` for
    ``assigned_to_id`` or ``closed_at`` clears the field.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    details: Optional[str] = None
    category_id: Optional[str] = None
    priority: Optional[TicketPriority] = None
    assigned_to_id: Optional[str] = None
    status: Optional[TicketStatus] = None
    closing_notes: Optional[str] = None
    closed_at: Optional[float] = None


class TicketAssign(BaseModel):
    assigned_to_id: str = Field(..., min_length=1)


class TicketStatusChange(BaseModel):
    status: TicketStatus
    closing_notes: Optional[str] = None


class TicketPriorityChange(BaseModel):
    priority: TicketPriority


class TicketCategoryChange(BaseModel):
    category_id: str = Field(..., min_length=1)


class DocumentAttach(BaseModel):
    document_id: str = Field(..., min_length=1)


class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1)


class ServiceDeskFilter(BaseModel):
    queue_ids: List[str] = Field(default_factory=list)
    user_id: str


class FilterRequest(BaseModel):
    """Every listing dimension is optional and independent.

    Singular fields win over their array counterparts. ``assigned_to_id`` set
    explicitly to ``None`` selects unassigned tickets, which is why callers
    should construct this model with only the keys they mean to filter on.
    """

    queue_id: Optional[str] = None
    queue_ids: Optional[List[str]] = None
    category_id: Optional[str] = None
    category_ids: Optional[List[str]] = None
    status: Optional[TicketStatus] = None
    statuses: Optional[List[TicketStatus]] = None
    priority: Optional[TicketPriority] = None
    priorities: Optional[List[TicketPriority]] = None
    assigned_to_id: Optional[str] = None
    assigned_to_user_ids: Optional[List[Optional[str]]] = None
    created_by_id: Optional[str] = None
    created_by_user_ids: Optional[List[str]] = None
    unassigned: Optional[bool] = None
    user_ids: Optional[List[str]] = None
    search: Optional[str] = None
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    updated_after: Optional[str] = None
    updated_before: Optional[str] = None
    closed_after: Optional[str] = None
    closed_before: Optional[str] = None
    has_documents: Optional[bool] = None
    has_comments: Optional[bool] = None
    include_archived: bool = False
    service_desk_filter: Optional[ServiceDeskFilter] = None


class BatchTicketUpdate(BaseModel):
    id: str
    status: Optional[TicketStatus] = None
    assigned_to_id: Optional[str] = None
    closing_notes: Optional[str] = None


class BatchUpdateRequest(BaseModel):
    updates: List[BatchTicketUpdate] = Field(..., min_length=1, max_length=100)


class BatchAssignRequest(BaseModel):
    ticket_ids: List[str] = Field(..., min_length=1, max_length=100)
    assigned_to_id: str = Field(..., min_length=1)


# --------------------------------------------------------------------------- #
# Domain events                                                               #
# --------------------------------------------------------------------------- #


class TicketEvent(BaseModel):
    type: TicketEventType
    ticket_id: str
    actor_id: str
    # Snapshot fields the recipient rules need (creator, assignee, ...)
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[float] = None


class Notification(BaseModel):
    user_id: str
    title: str
    message: str
    link: Optional[str] = None


# --------------------------------------------------------------------------- #
# Response models                                                             #
# --------------------------------------------------------------------------- #


class TicketMutation(BaseModel):
    """Result of a mutating ticket operation, with its outbox of events."""

    ticket: Ticket
    events: List[TicketEvent] = Field(default_factory=list)
    history: List[HistoryItem] = Field(default_factory=list)


class TicketListResponse(BaseModel):
    tickets: List[Ticket]
    total: int
    page: int = 1
    limit: int = 10


class QueueCount(BaseModel):
    queue_id: str
    count: int


class TicketStatistics(BaseModel):
    total: int
    opened: int
    closed: int
    by_priority: Dict[str, int] = Field(default_factory=dict)
    by_queue: List[QueueCount] = Field(default_factory=list)


class ResolutionTimeSummary(BaseModel):
    """Hours from creation to close over a set of closed tickets."""

    average_resolution_time_hours: float = 0.0
    median_resolution_time_hours: float = 0.0
    total_tickets_resolved: int = 0


class QueueResolutionTime(BaseModel):
    queue_id: str
    average_resolution_time_hours: float
    ticket_count: int


class AssigneeResolutionTime(BaseModel):
    user_id: str
    average_resolution_time_hours: float
    ticket_count: int


class ResolutionTimeReport(BaseModel):
    overall: ResolutionTimeSummary
    by_priority: Dict[str, ResolutionTimeSummary] = Field(default_factory=dict)
    by_queue: List[QueueResolutionTime] = Field(default_factory=list)
    by_assignee: List[AssigneeResolutionTime] = Field(default_factory=list)


class BatchItemResult(BaseModel):
    ticket_id: str
    success: bool
    error: Optional[str] = None


class BatchOperationResult(BaseModel):
    results: List[BatchItemResult]
    succeeded: int
    failed: int
    events: List[TicketEvent] = Field(default_factory=list)
