"""Plugin registration entry point for helpdesk-ticketing.

Provides a single function to wire the REST API routes, permission check
and notification channels into a host FastAPI application.
"""

import logging
from functools import partial
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from helpdesk_ticketing.api_routes import configure_routes, router
from helpdesk_ticketing.config import Settings, configure_logging, get_settings
from helpdesk_ticketing.notifications import NotificationDispatcher
from helpdesk_ticketing.permissions import StaticAdminChecker
from helpdesk_ticketing.pg_store import pg_connection
from helpdesk_ticketing.ports import HistoryStore, NotificationPort, PermissionChecker, TicketStore
from helpdesk_ticketing.schema import get_all_ticket_tables_sql

logger = logging.getLogger(__name__)


def register_plugin(
    api_router: Any,
    get_db_func: Optional[Callable] = None,
    store_factory: Optional[Callable[[Any], Tuple[TicketStore, HistoryStore]]] = None,
    permissions: Optional[PermissionChecker] = None,
    notification_ports: Sequence[NotificationPort] = (),
    settings: Optional[Settings] = None,
    setup_logging: bool = False,
) -> Dict[str, Any]:
    """One-call plugin registration.

    Wires up:
    1. Logging (optional, for hosts without their own logging config)
    2. The notification dispatcher over the given ports
    3. REST API routes on the api_router
    4. Returns the DDL function for the store schema

    Args:
        api_router: FastAPI APIRouter (or app) to include ticket routes.
        get_db_func: Function() -> context-manager DB connection. Defaults to a
            psycopg2 connection on ``settings.database_dsn``.
        store_factory: Optional function(conn) -> (ticket store, history store).
        permissions: Admin capability check. Defaults to ``settings.admin_user_ids``.
        notification_ports: Notification channels for ticket events.
        settings: Settings override; defaults to get_settings().
        setup_logging: Apply configure_logging(settings).

    Returns:
        Dict with:
            - dispatcher: The NotificationDispatcher in use
            - schema_sql_func: Function(schema) -> DDL SQL for the store tables
    """
    settings = settings or get_settings()
    if setup_logging:
        configure_logging(settings)

    if get_db_func is None:
        if not settings.database_dsn:
            raise ValueError("get_db_func or HELPDESK_DATABASE_DSN is required")
        get_db_func = partial(pg_connection, settings.database_dsn)

    # 1. Notification fan-out
    dispatcher = NotificationDispatcher(
        notification_ports, enabled=settings.notifications_enabled
    )
    logger.info(
        "helpdesk_ticketing: %d notification ports configured", len(dispatcher.ports)
    )

    # 2. Configure and include REST API routes
    configure_routes(
        get_db_func=get_db_func,
        store_factory=store_factory,
        permissions=permissions or StaticAdminChecker(settings.admin_user_ids),
        dispatcher=dispatcher,
        settings=settings,
    )
    api_router.include_router(router)
    logger.info("helpdesk_ticketing: REST API routes mounted")

    return {
        "dispatcher": dispatcher,
        "schema_sql_func": get_all_ticket_tables_sql,
    }
