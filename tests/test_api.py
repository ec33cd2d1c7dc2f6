"""Tests for REST API routes using httpx AsyncClient.

Routes are wired to in-memory stores via configure_routes(store_factory=...).
All test data is fixed and deterministic.
"""

from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from helpdesk_ticketing.api_routes import _http_error, configure_routes, router
from helpdesk_ticketing.config import Settings
from helpdesk_ticketing.errors import (
    ConflictError,
    ForbiddenError,
    InvalidFilterError,
    NotFoundError,
)
from helpdesk_ticketing.memory_store import InMemoryHistoryStore, InMemoryTicketStore
from helpdesk_ticketing.notifications import NotificationDispatcher
from helpdesk_ticketing.permissions import StaticAdminChecker
from helpdesk_ticketing.state_machine import InvalidTransitionError

# --------------------------------------------------------------------------- #
# Test fixtures                                                               #
# --------------------------------------------------------------------------- #

CREATOR = {"X-Actor-Id": "creator"}
AGENT = {"X-Actor-Id": "agent"}
ADMIN = {"X-Actor-Id": "admin"}
STRANGER = {"X-Actor-Id": "stranger"}

NEW_TICKET = {
    "queue_id": "q1",
    "category_id": "c1",
    "title": "Printer broken",
    "details": "Paper jam",
}


@contextmanager
def _mock_db_context(conn):
    """Context manager wrapper for mock connection."""
    yield conn


def _create_test_app():
    """Create a FastAPI test app over fresh in-memory stores."""
    tickets = InMemoryTicketStore()
    history = InMemoryHistoryStore()
    port = MagicMock()

    configure_routes(
        get_db_func=lambda: _mock_db_context(MagicMock()),
        store_factory=lambda conn: (tickets, history),
        permissions=StaticAdminChecker(["admin"]),
        dispatcher=NotificationDispatcher([port]),
        settings=Settings(default_page_size=2, max_page_size=3),
    )

    app = FastAPI()
    app.include_router(router)
    return app, port


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _create(client, body=None, headers=CREATOR):
    response = await client.post("/tickets", json=body or NEW_TICKET, headers=headers)
    assert response.status_code == 201
    return response.json()


# --------------------------------------------------------------------------- #
# Tests                                                                       #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
class TestCreateTicketAPI:
    async def test_create_ticket_returns_201(self):
        app, port = _create_test_app()
        async with _client(app) as client:
            data = await _create(client)

        assert data["status"] == "Opened"
        assert data["created_by_id"] == "creator"
        assert data["closed_at"] is None
        assert port.emit.call_args.args[0].type.value == "ticket_created"

    async def test_create_requires_actor_header(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            response = await client.post("/tickets", json=NEW_TICKET)
        assert response.status_code == 422

    async def test_create_missing_title_returns_422(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            response = await client.post(
                "/tickets", json={"queue_id": "q1", "category_id": "c1"}, headers=CREATOR
            )
        assert response.status_code == 422


@pytest.mark.asyncio
class TestListTicketsAPI:
    async def test_list_uses_default_page_size(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            for _ in range(3):
                await _create(client)
            response = await client.get("/tickets")

        data = response.json()
        assert response.status_code == 200
        assert data["total"] == 3
        assert data["limit"] == 2
        assert len(data["tickets"]) == 2

    async def test_limit_is_capped(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            for _ in range(4):
                await _create(client)
            response = await client.get("/tickets", params={"limit": 50})
        assert response.json()["limit"] == 3

    async def test_count_matches_all(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            await _create(client)
            await _create(client, {**NEW_TICKET, "queue_id": "q2"})
            count = await client.get("/tickets/count", params={"queue_ids": ["q2"]})
            everything = await client.get("/tickets/all", params={"queue_ids": ["q2"]})

        assert count.json() == {"count": 1}
        assert len(everything.json()) == 1

    async def test_unassigned_filter(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            first = await _create(client)
            await _create(client)
            await client.patch(
                f"/tickets/{first['id']}/assign",
                json={"assigned_to_id": "agent"},
                headers=AGENT,
            )
            response = await client.get("/tickets/all", params={"unassigned": "true"})

        assert first["id"] not in [t["id"] for t in response.json()]
        assert len(response.json()) == 1

    async def test_search_body_explicit_null_assignee(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            first = await _create(client)
            second = await _create(client)
            await client.patch(
                f"/tickets/{first['id']}/assign",
                json={"assigned_to_id": "agent"},
                headers=AGENT,
            )
            response = await client.post("/tickets/search", json={"assigned_to_id": None})

        assert [t["id"] for t in response.json()["tickets"]] == [second["id"]]

    async def test_invalid_date_returns_400(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            response = await client.get("/tickets", params={"created_after": "yesterday"})
        assert response.status_code == 400

    async def test_empty_date_returns_400(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            response = await client.get("/tickets?created_after=")
        assert response.status_code == 400

    async def test_statistics(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            await _create(client)
            await client.patch(
                f"/tickets/{ticket['id']}/status", json={"status": "Closed"}, headers=AGENT
            )
            response = await client.get("/tickets/statistics")

        data = response.json()
        assert data["total"] == 2
        assert data["opened"] == 1
        assert data["closed"] == 1
        assert data["by_queue"] == [{"queue_id": "q1", "count": 2}]

    async def test_resolution_time(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            await _create(client)
            await client.patch(
                f"/tickets/{ticket['id']}/status", json={"status": "Closed"}, headers=AGENT
            )
            response = await client.get("/tickets/analytics/resolution-time")

        data = response.json()
        assert response.status_code == 200
        assert data["overall"]["total_tickets_resolved"] == 1
        assert [q["queue_id"] for q in data["by_queue"]] == ["q1"]
        assert data["by_assignee"] == []


@pytest.mark.asyncio
class TestLifecycleAPI:
    async def test_get_missing_returns_404(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            response = await client.get("/tickets/missing")
        assert response.status_code == 404

    async def test_close_and_reopen(self):
        app, port = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            closed = await client.patch(
                f"/tickets/{ticket['id']}/status",
                json={"status": "Closed", "closing_notes": "fixed"},
                headers=AGENT,
            )
            reopened = await client.patch(
                f"/tickets/{ticket['id']}/status", json={"status": "Opened"}, headers=AGENT
            )

        assert closed.json()["closed_at"] is not None
        assert closed.json()["closing_notes"] == "fixed"
        assert reopened.json()["closed_at"] is None
        assert port.emit.call_args.args[0].type.value == "ticket_reopened"

    async def test_invalid_status_returns_422(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            response = await client.patch(
                f"/tickets/{ticket['id']}/status", json={"status": "Pending"}, headers=AGENT
            )
        assert response.status_code == 422

    async def test_generic_update_records_no_history(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            updated = await client.patch(
                f"/tickets/{ticket['id']}", json={"title": "Renamed"}, headers=AGENT
            )
            history = await client.get(f"/tickets/{ticket['id']}/history")

        assert updated.json()["title"] == "Renamed"
        assert [h["type"] for h in history.json()] == ["CREATED"]

    async def test_documents_and_history(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            added = await client.post(
                f"/tickets/{ticket['id']}/documents", json={"document_id": "d1"}, headers=AGENT
            )
            removed = await client.delete(
                f"/tickets/{ticket['id']}/documents/d1", headers=AGENT
            )
            history = await client.get(f"/tickets/{ticket['id']}/history")

        assert added.json()["document_ids"] == ["d1"]
        assert removed.json()["document_ids"] == []
        assert [h["type"] for h in history.json()] == [
            "DOCUMENT_REMOVED",
            "DOCUMENT_ADDED",
            "CREATED",
        ]

    async def test_delete_forbidden_for_stranger(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            response = await client.delete(f"/tickets/{ticket['id']}", headers=STRANGER)
            still_there = await client.get(f"/tickets/{ticket['id']}")

        assert response.status_code == 403
        assert still_there.status_code == 200

    async def test_delete_by_admin_keeps_history(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            response = await client.delete(f"/tickets/{ticket['id']}", headers=ADMIN)
            gone = await client.get(f"/tickets/{ticket['id']}")
            history = await client.get(f"/tickets/{ticket['id']}/history")

        assert response.status_code == 204
        assert gone.status_code == 404
        assert len(history.json()) == 1


@pytest.mark.asyncio
class TestCommentsAPI:
    async def test_comment_then_search(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            await _create(client, {**NEW_TICKET, "title": "Other", "details": "Other"})
            comment = await client.post(
                f"/tickets/{ticket['id']}/comments", json={"text": "Needs new toner"}, headers=AGENT
            )
            response = await client.get("/tickets/all", params={"search": "TONER"})

        assert comment.status_code == 201
        assert comment.json()["type"] == "COMMENT"
        assert [t["id"] for t in response.json()] == [ticket["id"]]

    async def test_retract_comment_forbidden_for_stranger(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            comment = await client.post(
                f"/tickets/{ticket['id']}/comments", json={"text": "hi"}, headers=AGENT
            )
            forbidden = await client.delete(
                f"/tickets/{ticket['id']}/comments/{comment.json()['id']}", headers=STRANGER
            )
            allowed = await client.delete(
                f"/tickets/{ticket['id']}/comments/{comment.json()['id']}", headers=AGENT
            )

        assert forbidden.status_code == 403
        assert allowed.status_code == 204


@pytest.mark.asyncio
class TestBatchAPI:
    async def test_batch_assign_reports_failures(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            ticket = await _create(client)
            response = await client.patch(
                "/tickets/batch/assign",
                json={"ticket_ids": [ticket["id"], "missing"], "assigned_to_id": "agent"},
                headers=AGENT,
            )

        data = response.json()
        assert data["succeeded"] == 1
        assert data["failed"] == 1

    async def test_archive_endpoint(self):
        app, _ = _create_test_app()
        async with _client(app) as client:
            response = await client.post("/tickets/archive")
        assert response.json() == {"status": "archived", "count": 0}


class TestErrorMapping:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (NotFoundError("Ticket", "t1"), 404),
            (ForbiddenError("no"), 403),
            (InvalidTransitionError("Closed -> Pending"), 422),
            (ConflictError("stale"), 409),
            (InvalidFilterError("created_after", ""), 400),
        ],
    )
    def test_status_codes(self, error, expected):
        assert _http_error(error).status_code == expected


@pytest.mark.asyncio
class TestNotConfigured:
    async def test_unconfigured_router_returns_503(self):
        import helpdesk_ticketing.api_routes as api_routes

        api_routes._get_db = None
        app = FastAPI()
        app.include_router(router)
        async with _client(app) as client:
            response = await client.get("/tickets")
        assert response.status_code == 503
