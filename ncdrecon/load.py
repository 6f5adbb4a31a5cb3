# ncdrecon/load.py
"""Loader with idempotent upserts, adjustment history, and ETL event tracking."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from ncdrecon.models import AdjustmentEntry, NcdRecord

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "id, target_group, year, month, period_key, district, subdistrict, village, "
    "moo, refer_count, metrics, adjustments, created_by, created_at, "
    "updated_by, updated_at"
)


def _record_params(record: NcdRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "target_group": record.target_group,
        "year": record.year,
        "month": record.month,
        "period_key": record.period_key,
        "district": record.district,
        "subdistrict": record.subdistrict,
        "village": record.village,
        "moo": record.moo,
        "refer_count": record.refer_count,
        "metrics": json.dumps(record.metrics, ensure_ascii=False, default=str),
        "adjustments": json.dumps(record.adjustments, ensure_ascii=False, default=str),
        "created_by": record.created_by,
        "created_at": record.created_at,
        "updated_by": record.updated_by,
        "updated_at": record.updated_at,
    }


def _entry_params(entry: AdjustmentEntry, record_id: str) -> dict[str, Any]:
    def _dump(block: dict[str, Any] | None) -> str | None:
        if block is None:
            return None
        return json.dumps(block, ensure_ascii=False, default=str)

    return {
        "id": entry.id,
        "record_id": record_id,
        "diff": _dump(entry.diff),
        "baseline": _dump(entry.baseline),
        "proposed": _dump(entry.proposed),
        "reason": entry.reason,
        "created_by": entry.created_by,
        "created_at": entry.created_at,
    }


def _upsert_record(record: NcdRecord, conn: Connection) -> None:
    params = _record_params(record)

    if conn.dialect.name == "postgresql":
        conn.execute(
            text(f"""
                INSERT INTO ncd_records ({_RECORD_COLUMNS})
                VALUES (:id, :target_group, :year, :month, :period_key, :district,
                        :subdistrict, :village, :moo, :refer_count, :metrics,
                        :adjustments, :created_by, :created_at, :updated_by,
                        :updated_at)
                ON CONFLICT (id) DO UPDATE SET
                    target_group = EXCLUDED.target_group,
                    year = EXCLUDED.year,
                    month = EXCLUDED.month,
                    period_key = EXCLUDED.period_key,
                    district = EXCLUDED.district,
                    subdistrict = EXCLUDED.subdistrict,
                    village = EXCLUDED.village,
                    moo = EXCLUDED.moo,
                    refer_count = EXCLUDED.refer_count,
                    metrics = EXCLUDED.metrics,
                    adjustments = EXCLUDED.adjustments,
                    updated_by = EXCLUDED.updated_by,
                    updated_at = EXCLUDED.updated_at
            """),  # noqa: S608
            params,
        )
        return

    # SQLite (tests/demo): manual upsert
    existing = conn.execute(
        text("SELECT 1 FROM ncd_records WHERE id = :id"), {"id": record.id}
    ).fetchone()

    if existing:
        conn.execute(
            text("""
                UPDATE ncd_records
                SET target_group = :target_group, year = :year, month = :month,
                    period_key = :period_key, district = :district,
                    subdistrict = :subdistrict, village = :village, moo = :moo,
                    refer_count = :refer_count, metrics = :metrics,
                    adjustments = :adjustments, updated_by = :updated_by,
                    updated_at = :updated_at
                WHERE id = :id
            """),
            params,
        )
    else:
        conn.execute(
            text(f"""
                INSERT INTO ncd_records ({_RECORD_COLUMNS})
                VALUES (:id, :target_group, :year, :month, :period_key, :district,
                        :subdistrict, :village, :moo, :refer_count, :metrics,
                        :adjustments, :created_by, :created_at, :updated_by,
                        :updated_at)
            """),  # noqa: S608
            params,
        )


def _insert_entry_if_missing(
    entry: AdjustmentEntry, record_id: str, conn: Connection
) -> bool:
    """Insert an adjustment entry unless its id is already stored."""
    existing = conn.execute(
        text("SELECT 1 FROM ncd_adjustments WHERE id = :id"), {"id": entry.id}
    ).fetchone()
    if existing:
        return False

    conn.execute(
        text("""
            INSERT INTO ncd_adjustments
            (id, record_id, diff, baseline, proposed, reason, created_by, created_at)
            VALUES (:id, :record_id, :diff, :baseline, :proposed, :reason,
                    :created_by, :created_at)
        """),
        _entry_params(entry, record_id),
    )
    return True


def record_event(
    conn: Connection,
    event_type: str,
    row_counts: dict[str, Any],
    *,
    started_at: str,
    success: bool = True,
    period: str | None = None,
    record_id: str | None = None,
) -> None:
    """Append a row to the etl_events audit trail."""
    conn.execute(
        text("""
            INSERT INTO etl_events (
                event_type, period, record_id, row_counts,
                started_at, finished_at, success
            )
            VALUES (
                :event_type, :period, :record_id, :row_counts,
                :started_at, :finished_at, :success
            )
        """),
        {
            "event_type": event_type,
            "period": period,
            "record_id": record_id,
            "row_counts": json.dumps(row_counts, default=str),
            "started_at": started_at,
            "finished_at": datetime.now(UTC).isoformat(),
            "success": success,
        },
    )


def load_records(records: list[NcdRecord], conn: Connection | None) -> dict[str, int]:
    """Upsert records with their embedded adjustment history.

    - Idempotent by record id and adjustment id
    - Records row counts in etl_events

    Returns:
        Row counts of records and newly inserted adjustment entries
    """
    counts = {"records": 0, "adjustments": 0}
    if not records or conn is None:
        return counts

    started_at = datetime.now(UTC).isoformat()

    for record in records:
        _upsert_record(record, conn)
        counts["records"] += 1
        for entry in record.adjustment_entries:
            if _insert_entry_if_missing(entry, record.id, conn):
                counts["adjustments"] += 1

    record_event(conn, "load", counts, started_at=started_at)
    logger.info(
        "Loaded %d records (%d new adjustment entries)",
        counts["records"],
        counts["adjustments"],
    )
    return counts


def get_adjustment_entries(record_id: str, conn: Connection) -> list[AdjustmentEntry]:
    """Return a record's adjustment entries, oldest first."""
    rows = conn.execute(
        text("""
            SELECT id, record_id, diff, baseline, proposed, reason,
                   created_by, created_at
            FROM ncd_adjustments
            WHERE record_id = :record_id
            ORDER BY created_at, id
        """),
        {"record_id": record_id},
    ).fetchall()

    return [
        AdjustmentEntry(
            id=row.id,
            record_id=row.record_id,
            diff=json.loads(row.diff),
            baseline=json.loads(row.baseline) if row.baseline else None,
            proposed=json.loads(row.proposed) if row.proposed else None,
            reason=row.reason,
            created_by=row.created_by,
            created_at=row.created_at,
        )
        for row in rows
    ]


def _row_to_record(row: Any, conn: Connection) -> NcdRecord:  # noqa: ANN401
    return NcdRecord(
        id=row.id,
        target_group=row.target_group,
        year=row.year,
        month=row.month,
        district=row.district,
        subdistrict=row.subdistrict,
        village=row.village,
        moo=row.moo,
        refer_count=row.refer_count,
        metrics=json.loads(row.metrics),
        adjustments=json.loads(row.adjustments),
        adjustment_entries=get_adjustment_entries(row.id, conn),
        created_by=row.created_by,
        created_at=row.created_at,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )


def get_record(record_id: str, conn: Connection) -> NcdRecord | None:
    """Fetch one record with its adjustment history."""
    row = conn.execute(
        text(f"SELECT {_RECORD_COLUMNS} FROM ncd_records WHERE id = :id"),  # noqa: S608
        {"id": record_id},
    ).fetchone()
    return _row_to_record(row, conn) if row else None


def get_records_for_period(
    conn: Connection, period: str, district: str | None = None
) -> list[NcdRecord]:
    """Fetch all records of a period (``YYYY-MM``), optionally one district."""
    rows = conn.execute(
        text(f"""
            SELECT {_RECORD_COLUMNS}
            FROM ncd_records
            WHERE period_key = :period
              AND (CAST(:district AS TEXT) IS NULL OR district = :district)
            ORDER BY district, subdistrict, village, moo, id
        """),  # noqa: S608
        {"period": period, "district": district},
    ).fetchall()
    return [_row_to_record(row, conn) for row in rows]


def save_adjustment(
    record: NcdRecord, entry: AdjustmentEntry, conn: Connection
) -> None:
    """Persist an applied adjustment: the entry plus the record's new state.

    Args:
        record: Record with the adjustment already applied
        entry: The adjustment entry that produced it
        conn: Database connection (caller owns the transaction)

    Raises:
        ValueError: If the record is not stored or the entry already exists
    """
    started_at = datetime.now(UTC).isoformat()

    exists = conn.execute(
        text("SELECT 1 FROM ncd_records WHERE id = :id"), {"id": record.id}
    ).scalar()
    if not exists:
        msg = f"Record not found: {record.id}"
        raise ValueError(msg)

    if not _insert_entry_if_missing(entry, record.id, conn):
        msg = f"Adjustment already recorded: {entry.id}"
        raise ValueError(msg)

    _upsert_record(record, conn)
    record_event(
        conn,
        "adjust",
        {"adjustments": 1},
        started_at=started_at,
        period=record.period_key,
        record_id=record.id,
    )
    logger.info("Saved adjustment %s for record %s", entry.id, record.id)
