"""Table definitions for records, adjustment history and the ETL audit trail."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import create_engine, text

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine


def create_db_engine(database_url: str) -> Engine:
    """Create an engine, selecting the psycopg driver for bare postgres URLs."""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return create_engine(database_url)


def create_schema(conn: Connection) -> None:
    """Create all tables and indexes if they do not exist yet."""
    if conn.dialect.name == "postgresql":
        event_pk = "BIGSERIAL PRIMARY KEY"
        timestamp_default = "(now()::text)"
    else:
        event_pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
        timestamp_default = "(datetime('now'))"

    conn.execute(
        text(f"""
        CREATE TABLE IF NOT EXISTS ncd_records (
            id TEXT PRIMARY KEY,
            target_group TEXT NOT NULL DEFAULT 'general',
            year INTEGER NOT NULL,
            month INTEGER NOT NULL CHECK (month BETWEEN 1 AND 12),
            period_key TEXT NOT NULL,
            district TEXT NOT NULL,
            subdistrict TEXT NOT NULL,
            village TEXT NOT NULL DEFAULT '',
            moo TEXT NOT NULL DEFAULT '',
            refer_count INTEGER NOT NULL DEFAULT 0,
            metrics TEXT NOT NULL,
            adjustments TEXT NOT NULL,
            created_by TEXT,
            created_at TEXT,
            updated_by TEXT,
            updated_at TEXT,
            loaded_at TEXT NOT NULL DEFAULT {timestamp_default}
        )
    """)  # noqa: S608
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS ncd_adjustments (
            id TEXT PRIMARY KEY,
            record_id TEXT NOT NULL
                REFERENCES ncd_records(id) ON DELETE CASCADE,
            diff TEXT NOT NULL,
            baseline TEXT,
            proposed TEXT,
            reason TEXT,
            created_by TEXT,
            created_at TEXT
        )
    """)
    )

    conn.execute(
        text(f"""
        CREATE TABLE IF NOT EXISTS etl_events (
            id {event_pk},
            event_type TEXT NOT NULL,
            period TEXT,
            record_id TEXT,
            success BOOLEAN NOT NULL,
            row_counts TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL
        )
    """)  # noqa: S608
    )

    indexes = [
        "CREATE INDEX IF NOT EXISTS idx_ncd_records_period"
        " ON ncd_records(period_key, district)",
        "CREATE INDEX IF NOT EXISTS idx_ncd_adjustments_record"
        " ON ncd_adjustments(record_id, created_at)",
        "CREATE INDEX IF NOT EXISTS idx_etl_events_type ON etl_events(event_type)",
    ]
    for index_sql in indexes:
        conn.execute(text(index_sql))
