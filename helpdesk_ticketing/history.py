"""HistoryLog - append-only audit trail of ticket actions.

Entries are never edited. The only removal path is comment retraction,
which the ticket service guards. The log never notifies anyone.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Set

from helpdesk_ticketing.errors import NotFoundError
from helpdesk_ticketing.models import HistoryItem, HistoryItemType
from helpdesk_ticketing.ports import HistoryStore

logger = logging.getLogger(__name__)


class HistoryLog:
    """Audit log service over a HistoryStore.

    Also serves as the comment read port for the filter builder.
    """

    def __init__(self, store: HistoryStore):
        self.store = store

    def append(
        self,
        ticket_id: str,
        user_id: str,
        type: HistoryItemType,
        details: str,
    ) -> HistoryItem:
        """Record one history entry.

        No referential check is made against the ticket store.

        Raises:
            ValueError: If ticket_id or user_id is empty.
        """
        if not ticket_id:
            raise ValueError("History entry requires a ticket_id")
        if not user_id:
            raise ValueError("History entry requires a user_id")

        row = self.store.insert(
            {
                "ticket_id": ticket_id,
                "user_id": user_id,
                "type": HistoryItemType(type).value,
                "details": details,
                "created_at": time.time(),
            }
        )
        logger.debug("history %s appended for ticket %s", row["type"], ticket_id)
        return self._row_to_item(row)

    def get(self, item_id: str) -> HistoryItem:
        row = self.store.find_by_id(item_id)
        if not row:
            raise NotFoundError("History item", item_id)
        return self._row_to_item(row)

    def list_by_ticket(self, ticket_id: str) -> List[HistoryItem]:
        """All entries for a ticket, newest first."""
        return [self._row_to_item(r) for r in self.store.find_by_ticket_id(ticket_id)]

    def find_ticket_ids_matching(self, text: Optional[str] = None) -> Set[str]:
        """Ids of tickets with at least one comment.

        With ``text``, only comments whose details contain it
        (case-insensitive) count.
        """
        return set(self.store.find_commented_ticket_ids(text))

    def remove(self, item_id: str) -> None:
        if not self.store.delete(item_id):
            raise NotFoundError("History item", item_id)
        logger.info("history item %s removed", item_id)

    @staticmethod
    def _row_to_item(row: Dict[str, Any]) -> HistoryItem:
        return HistoryItem(
            id=row["id"],
            ticket_id=row["ticket_id"],
            user_id=row["user_id"],
            type=row["type"],
            details=row["details"],
            created_at=row.get("created_at"),
        )
