"""Tests for the PostgreSQL stores and predicate compilation with a mocked DB.

Verifies that every query uses psycopg2.sql composition (sql.Identifier for
the schema and columns) and that writes commit or roll back.
"""

from unittest.mock import MagicMock, patch

import pytest
from psycopg2 import sql as psql

from helpdesk_ticketing.pg_store import (
    PgHistoryStore,
    PgTicketStore,
    compile_predicate,
    compile_sort,
)
from helpdesk_ticketing.predicates import (
    MATCH_ALL,
    MATCH_NONE,
    And,
    ArrayEmpty,
    Contains,
    Eq,
    In,
    Not,
    Or,
    Range,
)
from helpdesk_ticketing.query import DEFAULT_SORT
from helpdesk_ticketing.schema import get_all_ticket_tables_sql

# --------------------------------------------------------------------------- #
# Fixtures                                                                    #
# --------------------------------------------------------------------------- #

FIXED_TIME = 1700000000.0
SCHEMA = "test_project"
# Schema names that would be dangerous if interpolated directly
MALICIOUS_SCHEMA = "test; DROP TABLE users; --"


def _make_ticket_row(**overrides):
    row = {
        "id": "t1",
        "queue_id": "q1",
        "category_id": "c1",
        "title": "Test ticket",
        "details": "Test details",
        "status": "Opened",
        "priority": "Medium",
        "assigned_to_id": None,
        "created_by_id": "u1",
        "document_ids": [],
        "closing_notes": None,
        "archived": False,
        "created_at": FIXED_TIME,
        "updated_at": FIXED_TIME,
        "closed_at": None,
    }
    row.update(overrides)
    return row


def _mock_conn_and_cursor(rows=None, fetchone_value=None):
    """Create a mock connection and cursor.

    Args:
        rows: List of rows for fetchall to return.
        fetchone_value: Value for fetchone to return (if None, returns first of rows).
    """
    conn = MagicMock()
    cur = MagicMock()
    conn.cursor.return_value = cur

    if rows is not None:
        cur.fetchall.return_value = rows

    if fetchone_value is not None:
        cur.fetchone.return_value = fetchone_value
    elif rows:
        cur.fetchone.return_value = rows[0]
    else:
        cur.fetchone.return_value = None

    return conn, cur


def _sql_to_str(query) -> str:
    """Convert a psycopg2 sql.Composed/SQL object to a plain string for assertions.

    Uses recursive extraction since as_string() requires a real psycopg2 connection.
    """
    if isinstance(query, psql.Composed):
        return "".join(_sql_to_str(part) for part in query._wrapped)
    if isinstance(query, psql.SQL):
        return query._wrapped
    if isinstance(query, psql.Identifier):
        return ".".join(query._wrapped)
    if isinstance(query, psql.Placeholder):
        return "%s"
    return str(query)


def _identifiers(query):
    """All identifier strings used in a composed query."""
    if isinstance(query, psql.Composed):
        found = []
        for part in query._wrapped:
            found.extend(_identifiers(part))
        return found
    if isinstance(query, psql.Identifier):
        return list(query._wrapped)
    return []


def _assert_uses_identifier(cur, schema):
    for call in cur.execute.call_args_list:
        query = call.args[0]
        assert isinstance(query, psql.Composable), f"raw string query: {query!r}"
        assert schema in _identifiers(query)
        assert schema not in "".join(
            p._wrapped for p in _sql_parts(query)
        ), "schema interpolated into SQL text"


def _sql_parts(query):
    if isinstance(query, psql.Composed):
        parts = []
        for part in query._wrapped:
            parts.extend(_sql_parts(part))
        return parts
    if isinstance(query, psql.SQL):
        return [query]
    return []


# --------------------------------------------------------------------------- #
# Predicate compilation                                                       #
# --------------------------------------------------------------------------- #


class TestCompilePredicate:
    def test_eq(self):
        where, params = compile_predicate(Eq("status", "Opened"))
        assert _sql_to_str(where) == "status = %s"
        assert params == ["Opened"]

    def test_eq_none_is_null_check(self):
        where, params = compile_predicate(Eq("assigned_to_id", None))
        assert _sql_to_str(where) == "assigned_to_id IS NULL"
        assert params == []

    def test_in_uses_any(self):
        where, params = compile_predicate(In("queue_id", ("q1", "q2")))
        assert _sql_to_str(where) == "queue_id = ANY(%s)"
        assert params == [["q1", "q2"]]

    def test_in_with_null_member(self):
        where, params = compile_predicate(In("assigned_to_id", ("u1", None)))
        assert _sql_to_str(where) == "(assigned_to_id = ANY(%s) OR assigned_to_id IS NULL)"
        assert params == [["u1"]]

    def test_empty_in_is_false(self):
        where, params = compile_predicate(In("id", ()))
        assert _sql_to_str(where) == "FALSE"

    def test_range(self):
        where, params = compile_predicate(Range("created_at", gte=1.0, lte=2.0))
        assert _sql_to_str(where) == "created_at >= %s AND created_at <= %s"
        assert params == [1.0, 2.0]

    def test_open_range(self):
        where, params = compile_predicate(Range("closed_at", lte=2.0))
        assert _sql_to_str(where) == "closed_at <= %s"
        assert params == [2.0]

    def test_contains_escapes_wildcards(self):
        where, params = compile_predicate(Contains("title", "50%_off"))
        assert "title ILIKE %s" in _sql_to_str(where)
        assert params == ["%50\\%\\_off%"]

    def test_array_empty(self):
        where, _ = compile_predicate(ArrayEmpty("document_ids", empty=False))
        assert _sql_to_str(where) == "coalesce(cardinality(document_ids), 0) > 0"

    def test_boolean_nodes(self):
        predicate = And(
            (
                Eq("archived", False),
                Or((Eq("queue_id", "q1"), Eq("created_by_id", "u1"))),
                Not(In("id", ("t1",))),
            )
        )
        where, params = compile_predicate(predicate)
        assert _sql_to_str(where) == (
            "(archived = %s) AND "
            "((queue_id = %s) OR (created_by_id = %s)) AND "
            "(NOT (id = ANY(%s)))"
        )
        assert params == [False, "q1", "u1", ["t1"]]

    def test_match_all_and_none(self):
        assert _sql_to_str(compile_predicate(MATCH_ALL)[0]) == "TRUE"
        assert _sql_to_str(compile_predicate(MATCH_NONE)[0]) == "FALSE"

    def test_unknown_column_rejected(self):
        with pytest.raises(ValueError, match="Unknown ticket column"):
            compile_predicate(Eq("title; DROP TABLE x", "y"))

    def test_sort(self):
        assert _sql_to_str(compile_sort(DEFAULT_SORT)) == "created_at DESC, id DESC"

    def test_sort_rejects_bad_direction(self):
        with pytest.raises(ValueError):
            compile_sort((("created_at", "sideways"),))


# --------------------------------------------------------------------------- #
# Ticket store                                                                #
# --------------------------------------------------------------------------- #


class TestPgTicketStore:
    @patch("helpdesk_ticketing.pg_store.time")
    def test_insert_commits_and_returns_row(self, mock_time):
        mock_time.time.return_value = FIXED_TIME
        row = _make_ticket_row()
        conn, cur = _mock_conn_and_cursor(fetchone_value=row)

        result = PgTicketStore(conn, SCHEMA).insert({"title": "Test ticket"})

        assert result == row
        conn.commit.assert_called_once()
        params = cur.execute.call_args.args[1]
        assert FIXED_TIME in params
        assert "RETURNING *" in _sql_to_str(cur.execute.call_args.args[0])

    def test_insert_rollback_on_error(self):
        conn, cur = _mock_conn_and_cursor()
        cur.execute.side_effect = Exception("DB error")

        with pytest.raises(Exception, match="DB error"):
            PgTicketStore(conn, SCHEMA).insert({"title": "Will fail"})

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_find_by_id_missing(self):
        conn, cur = _mock_conn_and_cursor(fetchone_value=None)
        assert PgTicketStore(conn, SCHEMA).find_by_id("t1") is None

    def test_find_matching_paged(self):
        rows = [_make_ticket_row(id="t2"), _make_ticket_row(id="t1")]
        conn, cur = _mock_conn_and_cursor(rows=rows)

        result = PgTicketStore(conn, SCHEMA).find_matching(
            Eq("status", "Opened"), DEFAULT_SORT, skip=20, limit=10
        )

        assert [r["id"] for r in result] == ["t2", "t1"]
        query, params = cur.execute.call_args.args
        text = _sql_to_str(query)
        assert "FROM test_project.tickets" in text
        assert "WHERE status = %s" in text
        assert "ORDER BY created_at DESC, id DESC" in text
        assert "LIMIT %s OFFSET %s" in text
        assert params == ["Opened", 10, 20]

    def test_find_matching_unbounded(self):
        conn, cur = _mock_conn_and_cursor(rows=[])
        PgTicketStore(conn, SCHEMA).find_matching(MATCH_ALL, DEFAULT_SORT)
        query, params = cur.execute.call_args.args
        assert "LIMIT" not in _sql_to_str(query)
        assert params == [0]

    def test_count_matching(self):
        conn, cur = _mock_conn_and_cursor(fetchone_value={"count": 4})
        assert PgTicketStore(conn, SCHEMA).count_matching(Eq("archived", False)) == 4

    def test_update_fields_uses_identifiers(self):
        conn, cur = _mock_conn_and_cursor(fetchone_value=_make_ticket_row(status="Closed"))

        PgTicketStore(conn, SCHEMA).update_fields("t1", {"status": "Closed", "closed_at": 1.0})

        query, params = cur.execute.call_args.args
        assert "status" in _identifiers(query)
        assert "closed_at" in _identifiers(query)
        assert params[:2] == ["Closed", 1.0]
        assert params[-1] == "t1"
        conn.commit.assert_called_once()

    def test_update_missing_returns_none(self):
        conn, cur = _mock_conn_and_cursor(fetchone_value=None)
        assert PgTicketStore(conn, SCHEMA).update_fields("nope", {"title": "x"}) is None

    def test_add_document_keeps_set_semantics(self):
        conn, cur = _mock_conn_and_cursor(fetchone_value=_make_ticket_row(document_ids=["d1"]))
        PgTicketStore(conn, SCHEMA).add_document("t1", "d1")
        text = _sql_to_str(cur.execute.call_args.args[0])
        assert "= ANY(document_ids)" in text
        assert "array_append" in text

    def test_remove_document(self):
        conn, cur = _mock_conn_and_cursor(fetchone_value=_make_ticket_row())
        PgTicketStore(conn, SCHEMA).remove_document("t1", "d1")
        assert "array_remove" in _sql_to_str(cur.execute.call_args.args[0])

    def test_delete_reports_rowcount(self):
        conn, cur = _mock_conn_and_cursor()
        cur.rowcount = 0
        assert PgTicketStore(conn, SCHEMA).delete("t1") is False
        cur.rowcount = 1
        assert PgTicketStore(conn, SCHEMA).delete("t1") is True

    def test_archive_closed_before(self):
        conn, cur = _mock_conn_and_cursor()
        cur.rowcount = 3
        assert PgTicketStore(conn, SCHEMA).archive_closed_before(FIXED_TIME) == 3
        params = cur.execute.call_args.args[1]
        assert params[1:] == ("Closed", FIXED_TIME)

    def test_ensure_schema_executes_ddl(self):
        conn, cur = _mock_conn_and_cursor()
        PgTicketStore(conn, SCHEMA).ensure_schema()
        text = _sql_to_str(cur.execute.call_args.args[0])
        assert "CREATE TABLE IF NOT EXISTS test_project.tickets" in text
        assert "CREATE TABLE IF NOT EXISTS test_project.history_items" in text
        conn.commit.assert_called_once()

    def test_malicious_schema_stays_an_identifier(self):
        conn, cur = _mock_conn_and_cursor(rows=[], fetchone_value={"count": 0})
        cur.rowcount = 0
        store = PgTicketStore(conn, MALICIOUS_SCHEMA)

        store.find_by_id("t1")
        store.find_matching(MATCH_ALL, DEFAULT_SORT, limit=5)
        store.count_matching(MATCH_ALL)
        store.delete("t1")

        _assert_uses_identifier(cur, MALICIOUS_SCHEMA)


# --------------------------------------------------------------------------- #
# History store and DDL                                                       #
# --------------------------------------------------------------------------- #


class TestPgHistoryStore:
    def test_insert(self):
        row = {
            "id": "h1",
            "ticket_id": "t1",
            "user_id": "u1",
            "type": "COMMENT",
            "details": "hi",
            "created_at": FIXED_TIME,
        }
        conn, cur = _mock_conn_and_cursor(fetchone_value=row)

        result = PgHistoryStore(conn, SCHEMA).insert(
            {"ticket_id": "t1", "user_id": "u1", "type": "COMMENT", "details": "hi",
             "created_at": FIXED_TIME}
        )

        assert result == row
        params = cur.execute.call_args.args[1]
        assert params[1:] == ("t1", "u1", "COMMENT", "hi", FIXED_TIME)
        conn.commit.assert_called_once()

    def test_find_by_ticket_orders_newest_first(self):
        conn, cur = _mock_conn_and_cursor(rows=[])
        PgHistoryStore(conn, SCHEMA).find_by_ticket_id("t1")
        assert "ORDER BY created_at DESC" in _sql_to_str(cur.execute.call_args.args[0])

    def test_commented_ticket_ids_with_text(self):
        conn, cur = _mock_conn_and_cursor(rows=[{"ticket_id": "t1"}, {"ticket_id": "t2"}])

        result = PgHistoryStore(conn, SCHEMA).find_commented_ticket_ids("print")

        assert result == {"t1", "t2"}
        query, params = cur.execute.call_args.args
        assert "details ILIKE %s" in _sql_to_str(query)
        assert params == ["COMMENT", "%print%"]

    def test_commented_ticket_ids_without_text(self):
        conn, cur = _mock_conn_and_cursor(rows=[])
        PgHistoryStore(conn, SCHEMA).find_commented_ticket_ids()
        assert cur.execute.call_args.args[1] == ["COMMENT"]

    def test_delete_rolls_back_on_error(self):
        conn, cur = _mock_conn_and_cursor()
        cur.execute.side_effect = Exception("DB error")
        with pytest.raises(Exception, match="DB error"):
            PgHistoryStore(conn, SCHEMA).delete("h1")
        conn.rollback.assert_called_once()


class TestSchema:
    def test_history_has_no_cascade(self):
        text = _sql_to_str(get_all_ticket_tables_sql(SCHEMA))
        assert "ON DELETE CASCADE" not in text
        assert "document_ids TEXT[] NOT NULL DEFAULT '{}'" in text

    def test_schema_is_identifier(self):
        query = get_all_ticket_tables_sql(MALICIOUS_SCHEMA)
        assert MALICIOUS_SCHEMA in _identifiers(query)
        assert MALICIOUS_SCHEMA not in "".join(p._wrapped for p in _sql_parts(query))
