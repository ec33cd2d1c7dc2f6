"""Database DDL functions for helpdesk-ticketing.

- Functions returning psycopg2.sql.Composed objects with sql.Identifier for schema
- TEXT ids (store-assigned hex), TEXT[] document ids, DOUBLE PRECISION timestamps
- history_items has no foreign key: the audit trail outlives deleted tickets
"""

from psycopg2 import sql


def get_schema_sql(schema: str) -> sql.Composed:
    return sql.SQL("CREATE SCHEMA IF NOT EXISTS {};").format(sql.Identifier(schema))


def get_tickets_table_sql(schema: str) -> sql.Composed:
    """Tickets table DDL for the given schema."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {}.tickets (
            id TEXT PRIMARY KEY,
            queue_id TEXT NOT NULL,
            category_id TEXT NOT NULL,
            title TEXT NOT NULL,
            details TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'Opened',
            priority TEXT NOT NULL DEFAULT 'Medium',
            assigned_to_id TEXT,
            created_by_id TEXT NOT NULL,
            document_ids TEXT[] NOT NULL DEFAULT '{{}}',
            closing_notes TEXT,
            archived BOOLEAN NOT NULL DEFAULT FALSE,
            created_at DOUBLE PRECISION,
            updated_at DOUBLE PRECISION,
            closed_at DOUBLE PRECISION
        );
    """).format(sch)


def get_history_items_table_sql(schema: str) -> sql.Composed:
    """History (audit trail) table DDL for the given schema."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE TABLE IF NOT EXISTS {}.history_items (
            id TEXT PRIMARY KEY,
            ticket_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            details TEXT NOT NULL DEFAULT '',
            created_at DOUBLE PRECISION
        );
    """).format(sch)


def get_tickets_indexes_sql(schema: str) -> sql.Composed:
    """Indexes for ticket tables in the given schema."""
    sch = sql.Identifier(schema)
    return sql.SQL("""
        CREATE INDEX IF NOT EXISTS {idx_queue}
            ON {sch}.tickets(queue_id);
        CREATE INDEX IF NOT EXISTS {idx_status}
            ON {sch}.tickets(status);
        CREATE INDEX IF NOT EXISTS {idx_assigned}
            ON {sch}.tickets(assigned_to_id)
            WHERE assigned_to_id IS NOT NULL;
        CREATE INDEX IF NOT EXISTS {idx_created_by}
            ON {sch}.tickets(created_by_id);
        CREATE INDEX IF NOT EXISTS {idx_created_at}
            ON {sch}.tickets(created_at DESC);
        CREATE INDEX IF NOT EXISTS {idx_history}
            ON {sch}.history_items(ticket_id);
        CREATE INDEX IF NOT EXISTS {idx_history_type}
            ON {sch}.history_items(type);
    """).format(
        sch=sch,
        idx_queue=sql.Identifier(f"idx_{schema}_tickets_queue"),
        idx_status=sql.Identifier(f"idx_{schema}_tickets_status"),
        idx_assigned=sql.Identifier(f"idx_{schema}_tickets_assigned"),
        idx_created_by=sql.Identifier(f"idx_{schema}_tickets_created_by"),
        idx_created_at=sql.Identifier(f"idx_{schema}_tickets_created_at"),
        idx_history=sql.Identifier(f"idx_{schema}_history_items_ticket"),
        idx_history_type=sql.Identifier(f"idx_{schema}_history_items_type"),
    )


def get_all_ticket_tables_sql(schema: str) -> sql.Composed:
    """All ticket tables for the given schema."""
    return (
        get_schema_sql(schema)
        + get_tickets_table_sql(schema)
        + get_history_items_table_sql(schema)
        + get_tickets_indexes_sql(schema)
    )
