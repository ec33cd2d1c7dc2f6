"""FastAPI REST API routes for helpdesk-ticketing.

The router is mounted at /tickets by the host application. The acting user
comes from the ``X-Actor-Id`` header; authenticating it is the host's job.

The router receives DB access and collaborators through configure_routes().
Domain events returned by mutations are dispatched from a background task
after the response is sent.
"""

from typing import Any, Callable, List, Optional, Tuple

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Query,
    status,
)

from helpdesk_ticketing.config import Settings, get_settings
from helpdesk_ticketing.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TicketingError,
)
from helpdesk_ticketing.filters import FilterPredicateBuilder
from helpdesk_ticketing.history import HistoryLog
from helpdesk_ticketing.models import (
    BatchAssignRequest,
    BatchOperationResult,
    BatchUpdateRequest,
    CommentCreate,
    DocumentAttach,
    FilterRequest,
    HistoryItem,
    ResolutionTimeReport,
    Ticket,
    TicketAssign,
    TicketCategoryChange,
    TicketCreate,
    TicketEvent,
    TicketListResponse,
    TicketPriority,
    TicketPriorityChange,
    TicketStatistics,
    TicketStatus,
    TicketStatusChange,
    TicketUpdate,
)
from helpdesk_ticketing.notifications import NotificationDispatcher
from helpdesk_ticketing.permissions import StaticAdminChecker
from helpdesk_ticketing.pg_store import PgHistoryStore, PgTicketStore
from helpdesk_ticketing.ports import HistoryStore, PermissionChecker, TicketStore
from helpdesk_ticketing.query import QueryExecutor, TicketFinder
from helpdesk_ticketing.service import TicketService
from helpdesk_ticketing.state_machine import InvalidTransitionError

router = APIRouter(prefix="/tickets", tags=["Tickets"])

# These will be set by the plugin registration.
# get_db_func() returns a context manager that yields a DB connection;
# store_factory(conn) returns the (ticket store, history store) pair.
_get_db: Optional[Callable] = None
_store_factory: Optional[Callable[[Any], Tuple[TicketStore, HistoryStore]]] = None
_permissions: PermissionChecker = StaticAdminChecker()
_dispatcher: Optional[NotificationDispatcher] = None
_settings: Optional[Settings] = None


def configure_routes(
    get_db_func: Callable,
    store_factory: Optional[Callable[[Any], Tuple[TicketStore, HistoryStore]]] = None,
    permissions: Optional[PermissionChecker] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Configure the router with database access and collaborators.

    Args:
        get_db_func: Function() -> context-manager DB connection.
        store_factory: Function(conn) -> (ticket store, history store). If None,
            PostgreSQL stores on ``settings.db_schema`` are used.
        permissions: Admin capability check. If None, nobody is admin.
        dispatcher: Notification dispatcher for mutation events.
        settings: Settings override; defaults to get_settings().
    """
    global _get_db, _store_factory, _permissions, _dispatcher, _settings
    _get_db = get_db_func
    _store_factory = store_factory
    _permissions = permissions or StaticAdminChecker()
    _dispatcher = dispatcher
    _settings = settings


def _current_settings() -> Settings:
    return _settings or get_settings()


def _require_db():
    """Ensure DB access is configured."""
    if _get_db is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ticketing DB access not configured",
        )


def _stores(conn) -> Tuple[TicketStore, HistoryStore]:
    if _store_factory is not None:
        return _store_factory(conn)
    schema = _current_settings().db_schema
    return PgTicketStore(conn, schema), PgHistoryStore(conn, schema)


def _service(conn) -> TicketService:
    tickets, history = _stores(conn)
    return TicketService(tickets, HistoryLog(history), _permissions)


def _finder(conn) -> TicketFinder:
    tickets, history = _stores(conn)
    return TicketFinder(
        FilterPredicateBuilder(HistoryLog(history)),
        QueryExecutor(tickets),
        default_limit=_current_settings().default_page_size,
    )


def _http_error(error: TicketingError) -> HTTPException:
    """Map the ticketing error taxonomy to HTTP status codes."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ForbiddenError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, InvalidTransitionError):
        # Opened and Closed reach each other; only an added status can land here.
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, ConflictError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))


def _dispatch(background_tasks: BackgroundTasks, events: List[TicketEvent]) -> None:
    if _dispatcher is not None and events:
        background_tasks.add_task(_dispatcher.dispatch, events)


def list_filters(
    queue_id: Optional[str] = Query(None),
    queue_ids: Optional[List[str]] = Query(None),
    category_id: Optional[str] = Query(None),
    category_ids: Optional[List[str]] = Query(None),
    ticket_status: Optional[TicketStatus] = Query(None, alias="status"),
    statuses: Optional[List[TicketStatus]] = Query(None),
    priority: Optional[TicketPriority] = Query(None),
    priorities: Optional[List[TicketPriority]] = Query(None),
    assigned_to_id: Optional[str] = Query(None),
    assigned_to_user_ids: Optional[List[str]] = Query(None),
    created_by_id: Optional[str] = Query(None),
    created_by_user_ids: Optional[List[str]] = Query(None),
    unassigned: Optional[bool] = Query(None),
    user_ids: Optional[List[str]] = Query(None),
    search: Optional[str] = Query(None),
    created_after: Optional[str] = Query(None),
    created_before: Optional[str] = Query(None),
    updated_after: Optional[str] = Query(None),
    updated_before: Optional[str] = Query(None),
    closed_after: Optional[str] = Query(None),
    closed_before: Optional[str] = Query(None),
    has_documents: Optional[bool] = Query(None),
    has_comments: Optional[bool] = Query(None),
    include_archived: bool = Query(False),
) -> FilterRequest:
    """Query-string filters. Unassigned tickets are selected with ``unassigned=true``."""
    values = dict(
        queue_id=queue_id,
        queue_ids=queue_ids,
        category_id=category_id,
        category_ids=category_ids,
        status=ticket_status,
        statuses=statuses,
        priority=priority,
        priorities=priorities,
        assigned_to_id=assigned_to_id,
        assigned_to_user_ids=assigned_to_user_ids,
        created_by_id=created_by_id,
        created_by_user_ids=created_by_user_ids,
        unassigned=unassigned,
        user_ids=user_ids,
        search=search,
        created_after=created_after,
        created_before=created_before,
        updated_after=updated_after,
        updated_before=updated_before,
        closed_after=closed_after,
        closed_before=closed_before,
        has_documents=has_documents,
        has_comments=has_comments,
    )
    # Only pass what was supplied so an absent assignee never reads as "unassigned"
    return FilterRequest(
        include_archived=include_archived,
        **{k: v for k, v in values.items() if v is not None},
    )


# --------------------------------------------------------------------------- #
# Listing                                                                     #
# --------------------------------------------------------------------------- #


@router.get("", response_model=TicketListResponse)
async def list_tickets(
    filters: FilterRequest = Depends(list_filters),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    """List one page of tickets, newest first."""
    _require_db()
    if limit is not None:
        limit = min(limit, _current_settings().max_page_size)
    with _get_db() as conn:
        try:
            return _finder(conn).find_page(filters, page, limit)
        except TicketingError as e:
            raise _http_error(e)


@router.post("/search", response_model=TicketListResponse)
async def search_tickets(
    body: FilterRequest,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    """List tickets with a JSON filter body.

    Unlike the query-string form, the body can carry an explicit
    ``"assigned_to_id": null`` and a service desk filter.
    """
    _require_db()
    if limit is not None:
        limit = min(limit, _current_settings().max_page_size)
    with _get_db() as conn:
        try:
            return _finder(conn).find_page(body, page, limit)
        except TicketingError as e:
            raise _http_error(e)


@router.get("/all", response_model=List[Ticket])
async def export_tickets(filters: FilterRequest = Depends(list_filters)):
    """Every matching ticket, unpaginated."""
    _require_db()
    with _get_db() as conn:
        try:
            return _finder(conn).find_all(filters)
        except TicketingError as e:
            raise _http_error(e)


@router.get("/count")
async def count_tickets(filters: FilterRequest = Depends(list_filters)):
    _require_db()
    with _get_db() as conn:
        try:
            return {"count": _finder(conn).count(filters)}
        except TicketingError as e:
            raise _http_error(e)


@router.get("/statistics", response_model=TicketStatistics)
async def ticket_statistics(filters: FilterRequest = Depends(list_filters)):
    _require_db()
    with _get_db() as conn:
        try:
            return _finder(conn).statistics(filters)
        except TicketingError as e:
            raise _http_error(e)


@router.get("/analytics/resolution-time", response_model=ResolutionTimeReport)
async def resolution_time(filters: FilterRequest = Depends(list_filters)):
    _require_db()
    with _get_db() as conn:
        try:
            return _finder(conn).resolution_time(filters)
        except TicketingError as e:
            raise _http_error(e)


# --------------------------------------------------------------------------- #
# Batch and maintenance                                                       #
# --------------------------------------------------------------------------- #


@router.patch("/batch", response_model=BatchOperationResult)
async def batch_update(
    body: BatchUpdateRequest,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Apply status/assignee changes to several tickets."""
    _require_db()
    with _get_db() as conn:
        result = _service(conn).batch_update(actor_id, body.updates)
    _dispatch(background_tasks, result.events)
    return result


@router.patch("/batch/assign", response_model=BatchOperationResult)
async def batch_assign(
    body: BatchAssignRequest,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    _require_db()
    with _get_db() as conn:
        result = _service(conn).batch_assign(actor_id, body.ticket_ids, body.assigned_to_id)
    _dispatch(background_tasks, result.events)
    return result


@router.post("/archive")
async def archive_tickets(older_than_days: Optional[int] = Query(None, ge=1)):
    """Manually trigger archival of stale closed tickets."""
    _require_db()
    days = older_than_days or _current_settings().archive_after_days
    with _get_db() as conn:
        count = _service(conn).archive_stale_tickets(days)
        return {"status": "archived", "count": count}


# --------------------------------------------------------------------------- #
# Ticket CRUD                                                                 #
# --------------------------------------------------------------------------- #


@router.post("", response_model=Ticket, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    body: TicketCreate,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Create a new ticket filed by the acting user."""
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).create(actor_id, body)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


@router.get("/{ticket_id}", response_model=Ticket)
async def get_ticket(ticket_id: str):
    _require_db()
    with _get_db() as conn:
        try:
            return _service(conn).get_ticket(ticket_id)
        except TicketingError as e:
            raise _http_error(e)


@router.patch("/{ticket_id}", response_model=Ticket)
async def update_ticket(
    ticket_id: str,
    body: TicketUpdate,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Update ticket fields directly. No history is recorded."""
    _require_db()
    with _get_db() as conn:
        try:
            return _service(conn).update(ticket_id, body, actor_id).ticket
        except TicketingError as e:
            raise _http_error(e)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(
    ticket_id: str,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Delete a ticket (admin or creator only). Its history is kept."""
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).remove(actor_id, ticket_id)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)


@router.patch("/{ticket_id}/assign", response_model=Ticket)
async def assign_ticket(
    ticket_id: str,
    body: TicketAssign,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).assign(actor_id, ticket_id, body.assigned_to_id)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


@router.patch("/{ticket_id}/status", response_model=Ticket)
async def change_ticket_status(
    ticket_id: str,
    body: TicketStatusChange,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Close or reopen a ticket."""
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).change_status(
                actor_id, ticket_id, body.status, body.closing_notes
            )
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


@router.patch("/{ticket_id}/priority", response_model=Ticket)
async def change_ticket_priority(
    ticket_id: str,
    body: TicketPriorityChange,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).change_priority(actor_id, ticket_id, body.priority)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


@router.patch("/{ticket_id}/category", response_model=Ticket)
async def change_ticket_category(
    ticket_id: str,
    body: TicketCategoryChange,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).change_category(actor_id, ticket_id, body.category_id)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


# --------------------------------------------------------------------------- #
# Documents                                                                   #
# --------------------------------------------------------------------------- #


@router.post("/{ticket_id}/documents", response_model=Ticket)
async def add_document(
    ticket_id: str,
    body: DocumentAttach,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Attach an already-stored document to a ticket."""
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).add_document(actor_id, ticket_id, body.document_id)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


@router.delete("/{ticket_id}/documents/{document_id}", response_model=Ticket)
async def remove_document(
    ticket_id: str,
    document_id: str,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).remove_document(actor_id, ticket_id, document_id)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.ticket


# --------------------------------------------------------------------------- #
# History and comments                                                        #
# --------------------------------------------------------------------------- #


@router.get("/{ticket_id}/history", response_model=List[HistoryItem])
async def ticket_history(ticket_id: str):
    """History entries for a ticket, newest first."""
    _require_db()
    with _get_db() as conn:
        return _service(conn).history(ticket_id)


@router.post(
    "/{ticket_id}/comments",
    response_model=HistoryItem,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    ticket_id: str,
    body: CommentCreate,
    background_tasks: BackgroundTasks,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    _require_db()
    with _get_db() as conn:
        try:
            mutation = _service(conn).add_comment(actor_id, ticket_id, body.text)
        except TicketingError as e:
            raise _http_error(e)
    _dispatch(background_tasks, mutation.events)
    return mutation.history[0]


@router.delete("/{ticket_id}/comments/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def retract_comment(
    ticket_id: str,
    item_id: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
):
    """Remove a comment (author or admin only)."""
    _require_db()
    with _get_db() as conn:
        try:
            _service(conn).retract_comment(actor_id, item_id, ticket_id=ticket_id)
        except TicketingError as e:
            raise _http_error(e)
