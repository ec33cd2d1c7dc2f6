"""In-memory ticket and history stores.

Dict-backed implementations of the store protocols. Predicates are evaluated
in-process with ``predicates.matches``. Used by the test suite and for
embedding the core without a database.
"""

import copy
import itertools
import time
import uuid
from typing import Any, Dict, List, Optional, Set

from helpdesk_ticketing.models import HistoryItemType
from helpdesk_ticketing.ports import SortSpec
from helpdesk_ticketing.predicates import Predicate, matches


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryTicketStore:
    """TicketStore over a dict of rows.

    ``created_at``/``updated_at`` are store-managed. An insertion sequence
    number breaks ties between rows with identical sort keys.
    """

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._seq = itertools.count()

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = time.time()
        row = {
            "assigned_to_id": None,
            "document_ids": [],
            "closing_notes": None,
            "closed_at": None,
            "archived": False,
        }
        row.update(copy.deepcopy(fields))
        row["id"] = row.get("id") or _new_id()
        row["created_at"] = now
        row["updated_at"] = now
        row["_seq"] = next(self._seq)
        self._rows[row["id"]] = row
        return self._public(row)

    def find_by_id(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(ticket_id)
        return self._public(row) if row else None

    def find_matching(
        self,
        predicate: Predicate,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [r for r in self._rows.values() if matches(predicate, r)]
        # Stable sorts applied last-key-first; the sequence number is the final tie-break
        descending_default = bool(sort) and sort[0][1].lower() == "desc"
        rows.sort(key=lambda r: r["_seq"], reverse=descending_default)
        for column, direction in reversed(list(sort)):
            rows.sort(
                key=lambda r: (r.get(column) is None, r.get(column)),
                reverse=direction.lower() == "desc",
            )
        end = None if limit is None else skip + limit
        return [self._public(r) for r in rows[skip:end]]

    def count_matching(self, predicate: Predicate) -> int:
        return sum(1 for r in self._rows.values() if matches(predicate, r))

    def update_fields(
        self, ticket_id: str, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        row = self._rows.get(ticket_id)
        if row is None:
            return None
        row.update(copy.deepcopy(fields))
        row["updated_at"] = time.time()
        return self._public(row)

    def add_document(self, ticket_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(ticket_id)
        if row is None:
            return None
        if document_id not in row["document_ids"]:
            row["document_ids"].append(document_id)
        row["updated_at"] = time.time()
        return self._public(row)

    def remove_document(self, ticket_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(ticket_id)
        if row is None:
            return None
        row["document_ids"] = [d for d in row["document_ids"] if d != document_id]
        row["updated_at"] = time.time()
        return self._public(row)

    def archive_closed_before(self, cutoff: float) -> int:
        count = 0
        for row in self._rows.values():
            if (
                not row["archived"]
                and row.get("status") == "Closed"
                and row.get("closed_at") is not None
                and row["closed_at"] < cutoff
            ):
                row["archived"] = True
                count += 1
        return count

    def delete(self, ticket_id: str) -> bool:
        return self._rows.pop(ticket_id, None) is not None

    @staticmethod
    def _public(row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in row.items() if not k.startswith("_")}


class InMemoryHistoryStore:
    """HistoryStore over a dict of rows, listed newest first."""

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._seq = itertools.count()

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(fields)
        row["id"] = row.get("id") or _new_id()
        if row.get("created_at") is None:
            row["created_at"] = time.time()
        row["_seq"] = next(self._seq)
        self._rows[row["id"]] = row
        return self._public(row)

    def find_by_id(self, item_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(item_id)
        return self._public(row) if row else None

    def find_by_ticket_id(self, ticket_id: str) -> List[Dict[str, Any]]:
        rows = [r for r in self._rows.values() if r["ticket_id"] == ticket_id]
        rows.sort(key=lambda r: (r["created_at"], r["_seq"]), reverse=True)
        return [self._public(r) for r in rows]

    def find_commented_ticket_ids(self, text: Optional[str] = None) -> Set[str]:
        needle = text.lower() if text else None
        return {
            r["ticket_id"]
            for r in self._rows.values()
            if r["type"] == HistoryItemType.comment.value
            and (needle is None or needle in (r["details"] or "").lower())
        }

    def delete(self, item_id: str) -> bool:
        return self._rows.pop(item_id, None) is not None

    @staticmethod
    def _public(row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in row.items() if not k.startswith("_")}
