"""Reconciliation checks for NCD record integrity within a reporting period."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from ncdrecon.load import get_records_for_period
from ncdrecon.metrics import (
    compute_diff,
    derive_baseline,
    is_diff_empty,
    sum_metrics,
    validate_realism,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.engine import Connection

    from ncdrecon.models import NcdRecord

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def parse_period(period: str) -> tuple[int, int]:
    """Parse period string to (year, month).

    Args:
        period: Period like "2567-03"

    Returns:
        Tuple of (year, month)
    """
    match = _PERIOD_RE.match(period)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:  # noqa: PLR2004
            return year, month
    msg = f"Unsupported period format: {period}"
    raise ValueError(msg)


def check_baseline(records: list[NcdRecord]) -> dict[str, Any]:
    """Check that no record's derived baseline goes negative.

    Returns:
        Check result with passed status and offending cells
    """
    negative = [
        {"record_id": record.id, **entry}
        for record in records
        for entry in derive_baseline(record.metrics, record.adjustments)[
            "invalid_entries"
        ]
    ]
    return {"passed": not negative, "negative_baselines": negative}


def check_realism(records: list[NcdRecord]) -> dict[str, Any]:
    """Check that adjusted counts are non-negative integers."""
    issues = [
        {"record_id": record.id, **issue}
        for record in records
        for issue in validate_realism(record.metrics)["issues"]
    ]
    return {"passed": not issues, "issues": issues}


def check_adjustment_history(records: list[NcdRecord]) -> dict[str, Any]:
    """Check stored adjustments equal the sum of the recorded entry diffs.

    Records without entries are skipped; their adjustments have no history
    to compare against.
    """
    mismatched = []
    for record in records:
        if not record.adjustment_entries:
            continue
        history = sum_metrics(*(entry.diff for entry in record.adjustment_entries))
        gap = compute_diff(history, record.adjustments)
        if not is_diff_empty(gap):
            mismatched.append({"record_id": record.id, "difference": gap})

    return {"passed": not mismatched, "mismatched": mismatched}


def check_coverage(
    records: list[NcdRecord], expected_districts: Iterable[str] | None
) -> dict[str, Any]:
    """Validate that every expected district reported for the period.

    Args:
        records: Records of the period
        expected_districts: Districts that must be present; None skips the check

    Returns:
        Check result with passed status, missing districts, and extra districts
    """
    reported = {record.district for record in records}
    if expected_districts is None:
        return {"passed": True, "missing": [], "extra": []}

    expected = set(expected_districts)
    missing = sorted(expected - reported)
    extra = sorted(reported - expected)
    return {
        "passed": not missing and not extra,
        "missing": missing,
        "extra": extra,
    }


def period_totals(records: list[NcdRecord]) -> dict[str, Any]:
    """Aggregate baseline, adjusted and diff blocks over all records."""
    baseline = sum_metrics(
        *(derive_baseline(r.metrics, r.adjustments)["baseline"] for r in records)
    )
    adjusted = sum_metrics(*(r.metrics for r in records))
    return {
        "baseline": baseline,
        "adjusted": adjusted,
        "diff": compute_diff(baseline, adjusted),
    }


def run_reconciliation(
    conn: Connection,
    *,
    period: str,
    district: str | None = None,
    expected_districts: Iterable[str] | None = None,
) -> dict[str, Any]:
    """Run all reconciliation checks and return consolidated results.

    Read-only: nothing is written to the database.

    Args:
        conn: Database connection
        period: Period to reconcile (e.g., "2567-03")
        district: Optional district to scope reconciliation
        expected_districts: Optional districts that must have reported

    Returns:
        Reconciliation result with all check statuses and period totals
    """
    parse_period(period)
    records = get_records_for_period(conn, period, district)

    coverage = check_coverage(records, expected_districts)
    baseline = check_baseline(records)
    realism = check_realism(records)
    history = check_adjustment_history(records)

    success = (
        coverage["passed"]
        and baseline["passed"]
        and realism["passed"]
        and history["passed"]
    )

    return {
        "period": period,
        "district": district,
        "success": success,
        "record_count": len(records),
        "checks": {
            "coverage": coverage,
            "baseline": baseline,
            "realism": realism,
            "adjustment_history": history,
        },
        "totals": period_totals(records),
    }
