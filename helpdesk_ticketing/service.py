"""TicketService - lifecycle operations and audit trail for helpdesk tickets.

- Takes its stores and collaborators as constructor parameters (DI)
- Sole mutator of ticket fields; every dedicated operation appends history
- Mutations return a TicketMutation carrying the domain events to dispatch
- No atomicity between the ticket write and the history append: a failed
  append propagates and the ticket change stays
"""

import logging
import time
from typing import Any, Dict, List, Optional

from helpdesk_ticketing.errors import ForbiddenError, NotFoundError, TicketingError
from helpdesk_ticketing.history import HistoryLog
from helpdesk_ticketing.models import (
    BatchItemResult,
    BatchOperationResult,
    BatchTicketUpdate,
    HistoryItem,
    HistoryItemType,
    Ticket,
    TicketCreate,
    TicketEvent,
    TicketEventType,
    TicketMutation,
    TicketPriority,
    TicketStatus,
    TicketUpdate,
)
from helpdesk_ticketing.ports import CatalogLookup, PermissionChecker, TicketStore
from helpdesk_ticketing.query import row_to_ticket
from helpdesk_ticketing.state_machine import (
    INITIAL_STATUS,
    derive_closed_at,
    validate_transition,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

# Generic update fields that may be explicitly cleared with null
NULLABLE_UPDATE_FIELDS = {"assigned_to_id", "closing_notes", "closed_at"}


class TicketService:
    """Business logic for ticket operations.

    Args:
        tickets: Ticket store.
        history: Audit log service.
        permissions: Admin capability check used for delete and comment retraction.
        catalog: Optional queue/category existence check.
    """

    def __init__(
        self,
        tickets: TicketStore,
        history: HistoryLog,
        permissions: PermissionChecker,
        catalog: Optional[CatalogLookup] = None,
    ):
        self.tickets = tickets
        self.history_log = history
        self.permissions = permissions
        self.catalog = catalog

    # ----------------------------------------------------------------------- #
    # Reads                                                                   #
    # ----------------------------------------------------------------------- #

    def get_ticket(self, ticket_id: str) -> Ticket:
        """Get a ticket by ID.

        Raises:
            NotFoundError: If the ticket does not exist.
        """
        return row_to_ticket(self._load(ticket_id))

    def history(self, ticket_id: str) -> List[HistoryItem]:
        """History for a ticket, newest first. Survives ticket deletion."""
        return self.history_log.list_by_ticket(ticket_id)

    # ----------------------------------------------------------------------- #
    # Lifecycle                                                               #
    # ----------------------------------------------------------------------- #

    def create(self, creator_id: str, data: TicketCreate) -> TicketMutation:
        """Create a new ticket in the Opened state.

        Args:
            creator_id: User filing the ticket.
            data: Ticket creation data.

        Returns:
            TicketMutation with the stored ticket and a ticket_created event.

        Raises:
            NotFoundError: If a catalog is configured and the queue or
                category does not exist.
        """
        if self.catalog is not None:
            if not self.catalog.queue_exists(data.queue_id):
                raise NotFoundError("Queue", data.queue_id)
            if not self.catalog.category_exists(data.category_id):
                raise NotFoundError("Category", data.category_id)

        row = self.tickets.insert(
            {
                "queue_id": data.queue_id,
                "category_id": data.category_id,
                "title": data.title,
                "details": data.details,
                "status": INITIAL_STATUS.value,
                "priority": data.priority.value,
                "assigned_to_id": None,
                "created_by_id": creator_id,
                "document_ids": list(dict.fromkeys(data.document_ids)),
                "closing_notes": None,
                "closed_at": None,
            }
        )
        item = self.history_log.append(
            row["id"], creator_id, HistoryItemType.created, "Ticket created"
        )
        logger.info("ticket %s created by %s", row["id"], creator_id)
        return self._mutation(row, creator_id, TicketEventType.ticket_created, [item])

    def update(
        self, ticket_id: str, data: TicketUpdate, actor_id: Optional[str] = None
    ) -> TicketMutation:
        """Generic field update. Appends no history and emits no events.

        Only fields present in the payload are written. Whenever the payload
        touches ``status`` or ``closed_at``, ``closed_at`` is re-derived so a
        closed ticket always has a close time and an open one never does.

        Raises:
            NotFoundError: If the ticket (or a new category) does not exist.
        """
        current = self._load(ticket_id)
        payload = data.model_dump(exclude_unset=True)

        fields: Dict[str, Any] = {}
        for key, value in payload.items():
            if key == "closed_at":
                continue
            if value is None and key not in NULLABLE_UPDATE_FIELDS:
                continue
            fields[key] = value.value if isinstance(value, (TicketStatus, TicketPriority)) else value

        new_category = fields.get("category_id")
        if (
            new_category is not None
            and new_category != current["category_id"]
            and self.catalog is not None
            and not self.catalog.category_exists(new_category)
        ):
            raise NotFoundError("Category", new_category)

        if "status" in fields or "closed_at" in payload:
            target = TicketStatus(fields.get("status", current["status"]))
            if target != TicketStatus(current["status"]):
                validate_transition(current["status"], target)
            fields["closed_at"] = derive_closed_at(
                current["status"],
                current.get("closed_at"),
                target,
                time.time(),
                explicit_closed_at=payload.get("closed_at"),
            )

        if not fields:
            return TicketMutation(ticket=row_to_ticket(current))

        row = self._persist(ticket_id, fields)
        logger.info(
            "ticket %s updated (%s) by %s", ticket_id, ", ".join(sorted(fields)), actor_id
        )
        return TicketMutation(ticket=row_to_ticket(row))

    def assign(self, actor_id: str, ticket_id: str, assignee_id: str) -> TicketMutation:
        """Assign a ticket. Re-assigning the same user still records history."""
        current = self._load(ticket_id)
        previous = current.get("assigned_to_id")

        row = self._persist(ticket_id, {"assigned_to_id": assignee_id})
        details = "Ticket assigned "
        if previous:
            details += f"from user {previous} "
        details += f"to user {assignee_id}"
        item = self.history_log.append(ticket_id, actor_id, HistoryItemType.assigned, details)

        logger.info("ticket %s assigned to %s by %s", ticket_id, assignee_id, actor_id)
        return self._mutation(
            row,
            actor_id,
            TicketEventType.ticket_assigned,
            [item],
            previous_assignee_id=previous,
        )

    def change_status(
        self,
        actor_id: str,
        ticket_id: str,
        new_status: TicketStatus,
        closing_notes: Optional[str] = None,
    ) -> TicketMutation:
        """Close or reopen a ticket.

        Requesting the current status is a no-op: nothing is written, no
        history is appended and no events are returned.

        Args:
            actor_id: User making the change.
            ticket_id: Ticket ID.
            new_status: Target status.
            closing_notes: Optional notes stored with the change.

        Returns:
            TicketMutation with a ticket_closed or ticket_reopened event.

        Raises:
            NotFoundError: If the ticket does not exist.
        """
        current = self._load(ticket_id)
        target = TicketStatus(new_status)
        if TicketStatus(current["status"]) == target:
            return TicketMutation(ticket=row_to_ticket(current))

        validate_transition(current["status"], target)
        fields: Dict[str, Any] = {
            "status": target.value,
            "closed_at": derive_closed_at(
                current["status"], current.get("closed_at"), target, time.time()
            ),
        }
        if closing_notes is not None:
            fields["closing_notes"] = closing_notes
        row = self._persist(ticket_id, fields)

        if target == TicketStatus.closed:
            item = self.history_log.append(
                ticket_id, actor_id, HistoryItemType.closed, "Ticket closed"
            )
            event_type = TicketEventType.ticket_closed
        else:
            item = self.history_log.append(
                ticket_id, actor_id, HistoryItemType.reopened, "Ticket reopened"
            )
            event_type = TicketEventType.ticket_reopened

        logger.info("ticket %s %s by %s", ticket_id, target.value.lower(), actor_id)
        return self._mutation(row, actor_id, event_type, [item])

    def change_priority(
        self, actor_id: str, ticket_id: str, priority: TicketPriority
    ) -> TicketMutation:
        current = self._load(ticket_id)
        target = TicketPriority(priority)
        if TicketPriority(current["priority"]) == target:
            return TicketMutation(ticket=row_to_ticket(current))

        row = self._persist(ticket_id, {"priority": target.value})
        item = self.history_log.append(
            ticket_id,
            actor_id,
            HistoryItemType.priority_changed,
            f"Priority changed to {target.value}",
        )
        return self._mutation(
            row,
            actor_id,
            TicketEventType.priority_changed,
            [item],
            previous_priority=current["priority"],
        )

    def change_category(
        self, actor_id: str, ticket_id: str, category_id: str
    ) -> TicketMutation:
        current = self._load(ticket_id)
        if current["category_id"] == category_id:
            return TicketMutation(ticket=row_to_ticket(current))
        if self.catalog is not None and not self.catalog.category_exists(category_id):
            raise NotFoundError("Category", category_id)

        row = self._persist(ticket_id, {"category_id": category_id})
        item = self.history_log.append(
            ticket_id,
            actor_id,
            HistoryItemType.category_changed,
            f"Category changed to {category_id}",
        )
        return self._mutation(
            row,
            actor_id,
            TicketEventType.category_changed,
            [item],
            previous_category_id=current["category_id"],
        )

    def add_document(self, actor_id: str, ticket_id: str, document_id: str) -> TicketMutation:
        """Attach a document id. Attaching an existing id leaves the set unchanged."""
        self._load(ticket_id)
        row = self.tickets.add_document(ticket_id, document_id)
        if row is None:
            raise NotFoundError("Ticket", ticket_id)
        item = self.history_log.append(
            ticket_id,
            actor_id,
            HistoryItemType.document_added,
            f"Document added: {document_id}",
        )
        return self._mutation(
            row, actor_id, TicketEventType.document_added, [item], document_id=document_id
        )

    def remove_document(
        self, actor_id: str, ticket_id: str, document_id: str
    ) -> TicketMutation:
        """Detach a document id. History is recorded even if it was not attached."""
        self._load(ticket_id)
        row = self.tickets.remove_document(ticket_id, document_id)
        if row is None:
            raise NotFoundError("Ticket", ticket_id)
        item = self.history_log.append(
            ticket_id,
            actor_id,
            HistoryItemType.document_removed,
            f"Document removed: {document_id}",
        )
        return self._mutation(
            row, actor_id, TicketEventType.document_removed, [item], document_id=document_id
        )

    def remove(self, actor_id: str, ticket_id: str) -> TicketMutation:
        """Delete a ticket. Only admins and the ticket's creator may do this.

        The ticket's history is left in place.

        Raises:
            NotFoundError: If the ticket does not exist.
            ForbiddenError: If the actor is neither an admin nor the creator.
        """
        current = self._load(ticket_id)
        if not (
            current["created_by_id"] == actor_id
            or self.permissions.has_admin_capability(actor_id)
        ):
            raise ForbiddenError(f"User {actor_id} may not delete ticket {ticket_id}")

        if not self.tickets.delete(ticket_id):
            raise NotFoundError("Ticket", ticket_id)
        logger.info("ticket %s deleted by %s", ticket_id, actor_id)
        return self._mutation(current, actor_id, TicketEventType.ticket_deleted, [])

    # ----------------------------------------------------------------------- #
    # Comments                                                                #
    # ----------------------------------------------------------------------- #

    def add_comment(self, actor_id: str, ticket_id: str, text: str) -> TicketMutation:
        row = self._load(ticket_id)
        item = self.history_log.append(ticket_id, actor_id, HistoryItemType.comment, text)
        return self._mutation(
            row, actor_id, TicketEventType.comment_added, [item], comment=text
        )

    def retract_comment(
        self, actor_id: str, history_item_id: str, ticket_id: Optional[str] = None
    ) -> None:
        """Hard-delete a comment. Only its author or an admin may retract it.

        Raises:
            NotFoundError: If the history item does not exist (or belongs to
                a different ticket than ``ticket_id``).
            ForbiddenError: If the item is not a comment or the actor may not remove it.
        """
        item = self.history_log.get(history_item_id)
        if ticket_id is not None and item.ticket_id != ticket_id:
            raise NotFoundError("History item", history_item_id)
        if item.type != HistoryItemType.comment:
            raise ForbiddenError("Only comments can be removed from ticket history")
        if item.user_id != actor_id and not self.permissions.has_admin_capability(actor_id):
            raise ForbiddenError(f"User {actor_id} may not remove this comment")
        self.history_log.remove(history_item_id)

    # ----------------------------------------------------------------------- #
    # Batch operations                                                        #
    # ----------------------------------------------------------------------- #

    def batch_assign(
        self, actor_id: str, ticket_ids: List[str], assignee_id: str
    ) -> BatchOperationResult:
        """Assign several tickets; a failing ticket does not stop the rest."""
        results: List[BatchItemResult] = []
        events: List[TicketEvent] = []
        for ticket_id in ticket_ids:
            try:
                mutation = self.assign(actor_id, ticket_id, assignee_id)
            except TicketingError as e:
                results.append(BatchItemResult(ticket_id=ticket_id, success=False, error=str(e)))
                continue
            events.extend(mutation.events)
            results.append(BatchItemResult(ticket_id=ticket_id, success=True))
        return self._batch_result(results, events)

    def batch_update(
        self, actor_id: str, updates: List[BatchTicketUpdate]
    ) -> BatchOperationResult:
        """Apply per-ticket status/assignee changes through the dedicated operations.

        Args:
            actor_id: User making the changes.
            updates: One entry per ticket; unset fields are left alone.

        Returns:
            BatchOperationResult with one result per entry and all events.
        """
        results: List[BatchItemResult] = []
        events: List[TicketEvent] = []
        for update in updates:
            try:
                if update.assigned_to_id is not None:
                    events.extend(self.assign(actor_id, update.id, update.assigned_to_id).events)
                if update.status is not None:
                    events.extend(
                        self.change_status(
                            actor_id, update.id, update.status, update.closing_notes
                        ).events
                    )
                elif update.closing_notes is not None:
                    self.update(update.id, TicketUpdate(closing_notes=update.closing_notes))
            except TicketingError as e:
                results.append(BatchItemResult(ticket_id=update.id, success=False, error=str(e)))
                continue
            results.append(BatchItemResult(ticket_id=update.id, success=True))
        return self._batch_result(results, events)

    # ----------------------------------------------------------------------- #
    # Archival                                                                #
    # ----------------------------------------------------------------------- #

    def archive_stale_tickets(self, older_than_days: int = 30) -> int:
        """Archive Closed tickets whose close time is older than the cutoff.

        Archived tickets drop out of listings unless include_archived is set.

        Returns:
            Number of tickets archived.
        """
        cutoff = time.time() - older_than_days * SECONDS_PER_DAY
        count = self.tickets.archive_closed_before(cutoff)
        if count:
            logger.info("archived %d closed tickets older than %d days", count, older_than_days)
        return count

    # ----------------------------------------------------------------------- #
    # Helpers                                                                 #
    # ----------------------------------------------------------------------- #

    def _load(self, ticket_id: str) -> Dict[str, Any]:
        row = self.tickets.find_by_id(ticket_id)
        if not row:
            raise NotFoundError("Ticket", ticket_id)
        return row

    def _persist(self, ticket_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        row = self.tickets.update_fields(ticket_id, fields)
        if row is None:
            raise NotFoundError("Ticket", ticket_id)
        return row

    def _mutation(
        self,
        row: Dict[str, Any],
        actor_id: str,
        event_type: TicketEventType,
        items: List[HistoryItem],
        **extra: Any,
    ) -> TicketMutation:
        ticket = row_to_ticket(row)
        payload: Dict[str, Any] = {
            "title": ticket.title,
            "queue_id": ticket.queue_id,
            "created_by_id": ticket.created_by_id,
            "assigned_to_id": ticket.assigned_to_id,
            "status": ticket.status.value,
            "priority": ticket.priority.value,
        }
        payload.update(extra)
        event = TicketEvent(
            type=event_type,
            ticket_id=ticket.id,
            actor_id=actor_id,
            payload=payload,
            occurred_at=time.time(),
        )
        return TicketMutation(ticket=ticket, events=[event], history=items)

    @staticmethod
    def _batch_result(
        results: List[BatchItemResult], events: List[TicketEvent]
    ) -> BatchOperationResult:
        succeeded = sum(1 for r in results if r.success)
        return BatchOperationResult(
            results=results,
            succeeded=succeeded,
            failed=len(results) - succeeded,
            events=events,
        )
