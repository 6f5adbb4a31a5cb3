"""Adjustment workflow: preview, build and apply corrections to a record."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from ncdrecon.metrics import (
    compute_diff,
    derive_baseline,
    is_diff_empty,
    sum_metrics,
    validate_realism,
)
from ncdrecon.models import AdjustmentEntry, NcdRecord
from ncdrecon.transform import category_title, normalize_metrics

logger = logging.getLogger(__name__)


def merge_proposed(record: NcdRecord, partial: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay a partial block on the record's current counts.

    Categories and statuses absent from ``partial`` keep their current value.
    """
    merged = {
        category: dict(counts) if isinstance(counts, Mapping) else {}
        for category, counts in record.metrics.items()
    }
    for category, counts in normalize_metrics(partial).items():
        merged.setdefault(category, {}).update(counts)
    return merged


def preview_adjustment(
    record: NcdRecord, proposed: Mapping[str, Any]
) -> dict[str, Any]:
    """Summarize what saving ``proposed`` over the record would change.

    Returns:
        Dict with the full ``diff``, ``has_change``, the proposed block's
        realism ``issues`` and one summary ``row`` per changed category
    """
    proposed_metrics = normalize_metrics(proposed)
    diff = compute_diff(record.metrics, proposed_metrics)
    realism = validate_realism(proposed_metrics)

    rows = []
    for category, counts in diff.items():
        if is_diff_empty({category: counts}):
            continue
        rows.append({
            "category": category,
            "title": category_title(category),
            "baseline": record.metrics.get(category, {}),
            "proposed": proposed_metrics.get(category, {}),
            "diff": counts,
        })

    return {
        "diff": diff,
        "has_change": not is_diff_empty(diff),
        "is_valid": realism["is_valid"],
        "issues": realism["issues"],
        "rows": rows,
    }


def build_adjustment(
    record: NcdRecord,
    proposed: Mapping[str, Any],
    *,
    reason: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
    entry_id: str | None = None,
) -> AdjustmentEntry:
    """Create the adjustment entry that moves the record to ``proposed``.

    Raises:
        ValueError: If nothing changes, the proposed counts are unrealistic,
            or the record's baseline would become negative
    """
    proposed_metrics = normalize_metrics(proposed)
    diff = compute_diff(record.metrics, proposed_metrics)

    if is_diff_empty(diff):
        msg = f"No change from current values for record {record.id}"
        raise ValueError(msg)

    realism = validate_realism(proposed_metrics)
    if not realism["is_valid"]:
        cells = ", ".join(
            f"{i['category']}.{i['status']}={i['value']} ({i['reason']})"
            for i in realism["issues"]
        )
        msg = f"Proposed metrics are not realistic: {cells}"
        raise ValueError(msg)

    adjustments = sum_metrics(record.adjustments, diff)
    derivation = derive_baseline(proposed_metrics, adjustments)
    if derivation["invalid_entries"]:
        cells = ", ".join(
            f"{e['category']}.{e['status']}={e['baseline']}"
            for e in derivation["invalid_entries"]
        )
        msg = f"Adjustment would make baseline negative: {cells}"
        raise ValueError(msg)

    created_at = (now or datetime.now(UTC)).isoformat()
    entry = AdjustmentEntry(
        id=entry_id or str(uuid.uuid4()),
        record_id=record.id,
        diff=diff,
        baseline=derivation["baseline"],
        proposed=proposed_metrics,
        reason=(reason or "").strip() or None,
        created_by=created_by,
        created_at=created_at,
    )
    logger.debug("Built adjustment %s for record %s", entry.id, record.id)
    return entry


def apply_adjustment(record: NcdRecord, entry: AdjustmentEntry) -> NcdRecord:
    """Return a copy of the record with the adjustment applied.

    The proposed counts become the record's metrics and the diff is added to
    its accumulated adjustments, so the derived baseline is unchanged.
    """
    if entry.record_id not in (None, record.id):
        msg = (
            f"Adjustment {entry.id} belongs to record {entry.record_id}, "
            f"not {record.id}"
        )
        raise ValueError(msg)

    proposed = entry.proposed
    if proposed is None:
        proposed = sum_metrics(record.metrics, entry.diff)

    return record.model_copy(
        update={
            "metrics": dict(proposed),
            "adjustments": sum_metrics(record.adjustments, entry.diff),
            "adjustment_entries": [*record.adjustment_entries, entry],
            "updated_by": entry.created_by or record.updated_by,
            "updated_at": entry.created_at or record.updated_at,
        }
    )
