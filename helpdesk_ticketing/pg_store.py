"""PostgreSQL ticket and history stores.

Sync psycopg2 stores with RealDictCursor rows:
- Schema names and columns always go through sql.Identifier
- Predicates compile to sql.Composed plus a parameter list
- Every write commits; on error the connection is rolled back and the
  exception re-raised
"""

import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Set, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor

from helpdesk_ticketing.models import HistoryItemType, TicketStatus
from helpdesk_ticketing.ports import SortSpec
from helpdesk_ticketing.predicates import (
    And,
    ArrayEmpty,
    Contains,
    Eq,
    In,
    MatchAll,
    MatchNone,
    Not,
    Or,
    Predicate,
    Range,
)
from helpdesk_ticketing.schema import get_all_ticket_tables_sql

TICKET_COLUMNS = frozenset(
    {
        "id",
        "queue_id",
        "category_id",
        "title",
        "details",
        "status",
        "priority",
        "assigned_to_id",
        "created_by_id",
        "document_ids",
        "closing_notes",
        "created_at",
        "updated_at",
        "closed_at",
        "archived",
    }
)

HISTORY_COLUMNS = ("id", "ticket_id", "user_id", "type", "details", "created_at")

SORT_DIRECTIONS = {"asc": sql.SQL("ASC"), "desc": sql.SQL("DESC")}


class DBConnection(Protocol):
    """Protocol for database connections used by the stores.

    This matches the psycopg2 connection interface.
    The caller is responsible for connection lifecycle.
    """

    def cursor(self, **kwargs) -> Any: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


@contextmanager
def pg_connection(dsn: str) -> Iterator[Any]:
    """Open a psycopg2 connection yielding RealDictCursor rows."""
    conn = psycopg2.connect(dsn, cursor_factory=RealDictCursor)
    try:
        yield conn
    finally:
        conn.close()


# =========================================================================== #
# Predicate compilation                                                       #
# =========================================================================== #


def _column(field: str) -> sql.Identifier:
    if field not in TICKET_COLUMNS:
        raise ValueError(f"Unknown ticket column: {field}")
    return sql.Identifier(field)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def compile_predicate(predicate: Predicate) -> Tuple[sql.Composable, List[Any]]:
    """Compile a predicate tree into a WHERE-clause fragment.

    Args:
        predicate: Predicate tree from the filter builder.

    Returns:
        (composable, params) ready to embed with sql.SQL(...).format().

    Raises:
        ValueError: If the predicate references a non-ticket column.
        TypeError: If an unknown node type is encountered.
    """
    if isinstance(predicate, MatchAll):
        return sql.SQL("TRUE"), []
    if isinstance(predicate, MatchNone):
        return sql.SQL("FALSE"), []

    if isinstance(predicate, (And, Or)):
        if not predicate.clauses:
            return (sql.SQL("TRUE") if isinstance(predicate, And) else sql.SQL("FALSE")), []
        joiner = sql.SQL(" AND ") if isinstance(predicate, And) else sql.SQL(" OR ")
        parts: List[sql.Composable] = []
        params: List[Any] = []
        for clause in predicate.clauses:
            part, clause_params = compile_predicate(clause)
            parts.append(sql.SQL("({})").format(part))
            params.extend(clause_params)
        return joiner.join(parts), params

    if isinstance(predicate, Not):
        part, params = compile_predicate(predicate.clause)
        return sql.SQL("NOT ({})").format(part), params

    col = _column(predicate.field)

    if isinstance(predicate, Eq):
        if predicate.value is None:
            return sql.SQL("{} IS NULL").format(col), []
        return sql.SQL("{} = %s").format(col), [predicate.value]

    if isinstance(predicate, In):
        values = [v for v in predicate.values if v is not None]
        include_null = len(values) != len(predicate.values)
        if values and include_null:
            return sql.SQL("({} = ANY(%s) OR {} IS NULL)").format(col, col), [values]
        if values:
            return sql.SQL("{} = ANY(%s)").format(col), [values]
        if include_null:
            return sql.SQL("{} IS NULL").format(col), []
        return sql.SQL("FALSE"), []

    if isinstance(predicate, Range):
        bounds: List[sql.Composable] = []
        params = []
        if predicate.gte is not None:
            bounds.append(sql.SQL("{} >= %s").format(col))
            params.append(predicate.gte)
        if predicate.lte is not None:
            bounds.append(sql.SQL("{} <= %s").format(col))
            params.append(predicate.lte)
        if not bounds:
            return sql.SQL("{} IS NOT NULL").format(col), []
        return sql.SQL(" AND ").join(bounds), params

    if isinstance(predicate, Contains):
        return (
            sql.SQL("{} ILIKE %s ESCAPE '\\'").format(col),
            [f"%{_escape_like(predicate.text)}%"],
        )

    if isinstance(predicate, ArrayEmpty):
        op = sql.SQL("=") if predicate.empty else sql.SQL(">")
        return sql.SQL("coalesce(cardinality({}), 0) {} 0").format(col, op), []

    raise TypeError(f"Unknown predicate node: {predicate!r}")


def compile_sort(sort: SortSpec) -> sql.Composable:
    """ORDER BY terms for a sort order, with id DESC as the final tie-break."""
    terms = []
    for field, direction in sort:
        key = direction.lower()
        if key not in SORT_DIRECTIONS:
            raise ValueError(f"Invalid sort direction: {direction}")
        terms.append(sql.SQL("{} {}").format(_column(field), SORT_DIRECTIONS[key]))
    terms.append(sql.SQL("{} DESC").format(sql.Identifier("id")))
    return sql.SQL(", ").join(terms)


# =========================================================================== #
# Ticket store                                                                #
# =========================================================================== #


class PgTicketStore:
    """TicketStore backed by ``{schema}.tickets``.

    The store does NOT manage connection lifecycle - the caller does.
    """

    def __init__(self, conn: DBConnection, schema: str):
        self.conn = conn
        self.schema = schema

    def ensure_schema(self) -> None:
        """Create the ticket tables and indexes if they don't exist."""
        cur = self.conn.cursor()
        try:
            cur.execute(get_all_ticket_tables_sql(self.schema))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = time.time()
        values = dict(fields)
        values.setdefault("id", uuid.uuid4().hex)
        values.setdefault("document_ids", [])
        values.setdefault("archived", False)
        values["created_at"] = now
        values["updated_at"] = now
        columns = list(values)

        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("""
                INSERT INTO {}.tickets ({})
                VALUES ({})
                RETURNING *
                """).format(
                    sql.Identifier(self.schema),
                    sql.SQL(", ").join(_column(c) for c in columns),
                    sql.SQL(", ").join(sql.Placeholder() for _ in columns),
                ),
                [values[c] for c in columns],
            )
            row = cur.fetchone()
            self.conn.commit()
            return dict(row)
        except Exception:
            self.conn.rollback()
            raise

    def find_by_id(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute(
            sql.SQL("SELECT * FROM {}.tickets WHERE id = %s").format(
                sql.Identifier(self.schema)
            ),
            (ticket_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def find_matching(
        self,
        predicate: Predicate,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        where_sql, params = compile_predicate(predicate)
        if limit is None:
            paging = sql.SQL("OFFSET %s")
            params = params + [skip]
        else:
            paging = sql.SQL("LIMIT %s OFFSET %s")
            params = params + [limit, skip]

        cur = self.conn.cursor()
        cur.execute(
            sql.SQL("""
            SELECT * FROM {}.tickets
            WHERE {}
            ORDER BY {}
            {}
            """).format(
                sql.Identifier(self.schema), where_sql, compile_sort(sort), paging
            ),
            params,
        )
        return [dict(r) for r in cur.fetchall()]

    def count_matching(self, predicate: Predicate) -> int:
        where_sql, params = compile_predicate(predicate)
        cur = self.conn.cursor()
        cur.execute(
            sql.SQL("SELECT COUNT(*) AS count FROM {}.tickets WHERE {}").format(
                sql.Identifier(self.schema), where_sql
            ),
            params,
        )
        return cur.fetchone()["count"]

    def update_fields(
        self, ticket_id: str, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        values = dict(fields)
        values["updated_at"] = time.time()
        set_clauses = [sql.SQL("{} = %s").format(_column(c)) for c in values]

        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("""
                UPDATE {}.tickets
                SET {}
                WHERE id = %s
                RETURNING *
                """).format(
                    sql.Identifier(self.schema),
                    sql.SQL(", ").join(set_clauses),
                ),
                list(values.values()) + [ticket_id],
            )
            row = cur.fetchone()
            self.conn.commit()
            return dict(row) if row else None
        except Exception:
            self.conn.rollback()
            raise

    def add_document(self, ticket_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        return self._update_documents(
            ticket_id,
            sql.SQL("""
                CASE WHEN %s = ANY(document_ids) THEN document_ids
                     ELSE array_append(document_ids, %s) END
            """),
            [document_id, document_id],
        )

    def remove_document(self, ticket_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        return self._update_documents(
            ticket_id, sql.SQL("array_remove(document_ids, %s)"), [document_id]
        )

    def _update_documents(
        self, ticket_id: str, expression: sql.Composable, params: List[Any]
    ) -> Optional[Dict[str, Any]]:
        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("""
                UPDATE {}.tickets
                SET document_ids = {}, updated_at = %s
                WHERE id = %s
                RETURNING *
                """).format(sql.Identifier(self.schema), expression),
                params + [time.time(), ticket_id],
            )
            row = cur.fetchone()
            self.conn.commit()
            return dict(row) if row else None
        except Exception:
            self.conn.rollback()
            raise

    def archive_closed_before(self, cutoff: float) -> int:
        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("""
                UPDATE {}.tickets
                SET archived = TRUE, updated_at = %s
                WHERE status = %s
                  AND closed_at IS NOT NULL
                  AND closed_at < %s
                  AND NOT archived
                """).format(sql.Identifier(self.schema)),
                (time.time(), TicketStatus.closed.value, cutoff),
            )
            count = cur.rowcount
            self.conn.commit()
            return count
        except Exception:
            self.conn.rollback()
            raise

    def delete(self, ticket_id: str) -> bool:
        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("DELETE FROM {}.tickets WHERE id = %s").format(
                    sql.Identifier(self.schema)
                ),
                (ticket_id,),
            )
            deleted = cur.rowcount > 0
            self.conn.commit()
            return deleted
        except Exception:
            self.conn.rollback()
            raise


# =========================================================================== #
# History store                                                               #
# =========================================================================== #


class PgHistoryStore:
    """HistoryStore backed by ``{schema}.history_items``."""

    def __init__(self, conn: DBConnection, schema: str):
        self.conn = conn
        self.schema = schema

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(fields)
        values.setdefault("id", uuid.uuid4().hex)
        if values.get("created_at") is None:
            values["created_at"] = time.time()

        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("""
                INSERT INTO {}.history_items
                    (id, ticket_id, user_id, type, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """).format(sql.Identifier(self.schema)),
                tuple(values.get(c) for c in HISTORY_COLUMNS),
            )
            row = cur.fetchone()
            self.conn.commit()
            return dict(row)
        except Exception:
            self.conn.rollback()
            raise

    def find_by_id(self, item_id: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute(
            sql.SQL("SELECT * FROM {}.history_items WHERE id = %s").format(
                sql.Identifier(self.schema)
            ),
            (item_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def find_by_ticket_id(self, ticket_id: str) -> List[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute(
            sql.SQL("""
            SELECT * FROM {}.history_items
            WHERE ticket_id = %s ORDER BY created_at DESC, id DESC
            """).format(sql.Identifier(self.schema)),
            (ticket_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    def find_commented_ticket_ids(self, text: Optional[str] = None) -> Set[str]:
        query = sql.SQL("""
            SELECT DISTINCT ticket_id FROM {}.history_items
            WHERE type = %s
        """).format(sql.Identifier(self.schema))
        params: List[Any] = [HistoryItemType.comment.value]
        if text:
            query = query + sql.SQL(" AND details ILIKE %s ESCAPE '\\'")
            params.append(f"%{_escape_like(text)}%")

        cur = self.conn.cursor()
        cur.execute(query, params)
        return {r["ticket_id"] for r in cur.fetchall()}

    def delete(self, item_id: str) -> bool:
        cur = self.conn.cursor()
        try:
            cur.execute(
                sql.SQL("DELETE FROM {}.history_items WHERE id = %s").format(
                    sql.Identifier(self.schema)
                ),
                (item_id,),
            )
            deleted = cur.rowcount > 0
            self.conn.commit()
            return deleted
        except Exception:
            self.conn.rollback()
            raise
