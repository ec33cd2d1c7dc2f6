"""Collaborator protocols for helpdesk-ticketing.

The service layer only talks to these interfaces. ``memory_store`` and
``pg_store`` provide the concrete stores; the host application supplies the
permission check, catalog lookup and notification channels.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from helpdesk_ticketing.models import TicketEvent
from helpdesk_ticketing.predicates import Predicate

SortSpec = Sequence[Tuple[str, str]]


class TicketStore(Protocol):
    """Persistence for ticket rows (plain dicts keyed by column name)."""

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]: ...
    def find_by_id(self, ticket_id: str) -> Optional[Dict[str, Any]]: ...
    def find_matching(
        self,
        predicate: Predicate,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...
    def count_matching(self, predicate: Predicate) -> int: ...
    def update_fields(
        self, ticket_id: str, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]: ...
    def add_document(self, ticket_id: str, document_id: str) -> Optional[Dict[str, Any]]: ...
    def remove_document(self, ticket_id: str, document_id: str) -> Optional[Dict[str, Any]]: ...
    def archive_closed_before(self, cutoff: float) -> int: ...
    def delete(self, ticket_id: str) -> bool: ...


class HistoryStore(Protocol):
    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]: ...
    def find_by_id(self, item_id: str) -> Optional[Dict[str, Any]]: ...
    def find_by_ticket_id(self, ticket_id: str) -> List[Dict[str, Any]]: ...
    def find_commented_ticket_ids(self, text: Optional[str] = None) -> Set[str]: ...
    def delete(self, item_id: str) -> bool: ...


class CommentIndex(Protocol):
    """Read port used by the filter builder for search and has_comments."""

    def find_ticket_ids_matching(self, text: Optional[str] = None) -> Set[str]: ...


class NotificationPort(Protocol):
    def emit(self, event: TicketEvent) -> None: ...


class PermissionChecker(Protocol):
    def has_admin_capability(self, actor_id: str) -> bool: ...


class CatalogLookup(Protocol):
    """Optional existence check for queues and categories."""

    def queue_exists(self, queue_id: str) -> bool: ...
    def category_exists(self, category_id: str) -> bool: ...
