# ncdrecon/transform.py
from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

import yaml

from ncdrecon.metrics import (
    category_totals,
    compute_diff,
    derive_baseline,
    is_diff_empty,
    to_safe_number,
    validate_realism,
)
from ncdrecon.models import NcdRecord


@lru_cache(maxsize=1)
def load_category_config() -> dict[str, Any]:
    """Load category/status titles and aliases from YAML (cached)."""
    config_path = Path(__file__).parent / "categories.yaml"
    result = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    return cast(dict[str, Any], result)


@lru_cache(maxsize=2)
def _alias_lookup(section: str) -> dict[str, str]:
    entries = cast(dict[str, Any], load_category_config()[section])
    lookup: dict[str, str] = {}
    for canonical, spec in entries.items():
        lookup.setdefault(canonical.lower(), canonical)
        for alias in (spec or {}).get("aliases", []):
            lookup.setdefault(str(alias).lower(), canonical)
    return lookup


def canonical_category(key: Any) -> str:  # noqa: ANN401
    """Map a raw category key onto its canonical name; unknown keys pass through."""
    text = str(key).strip()
    return _alias_lookup("categories").get(text.lower(), text)


def canonical_status(key: Any) -> str:  # noqa: ANN401
    text = str(key).strip()
    return _alias_lookup("statuses").get(text.lower(), text)


def category_title(category: str) -> str:
    entries = cast(dict[str, Any], load_category_config()["categories"])
    spec = entries.get(category) or {}
    return cast(str, spec.get("title", category))


def target_group_title(target_group: str) -> str:
    groups = cast(dict[str, str], load_category_config()["target_groups"])
    return groups.get(target_group, "ไม่ระบุ")


def period_label(year: int, month: int) -> str:
    """Human-readable period, e.g. ``มีนาคม 2567``."""
    months = cast(list[str], load_category_config()["months"])
    if 1 <= month <= len(months):
        return f"{months[month - 1]} {year}"
    return f"เดือน {month:02d} {year}"


def normalize_metrics(raw: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Rename aliased category/status keys to canonical ones.

    Values are left as-is for the reconciliation functions to coerce. When
    two raw keys map to the same cell the first one wins.
    """
    if not isinstance(raw, Mapping):
        return {}

    normalized: dict[str, dict[str, Any]] = {}
    for raw_category, raw_counts in raw.items():
        if raw_category is None or not isinstance(raw_counts, Mapping):
            continue
        category = normalized.setdefault(canonical_category(raw_category), {})
        for raw_status, value in raw_counts.items():
            if raw_status is None:
                continue
            category.setdefault(canonical_status(raw_status), value)
    return normalized


def map_raw_to_record(raw: Mapping[str, Any]) -> NcdRecord:
    """Validate one exported record, normalizing all of its metric blocks.

    Raises:
        ValueError: If the record or its adjustment entries are the wrong shape
        pydantic.ValidationError: If identifying fields are missing or invalid
    """
    if not isinstance(raw, Mapping):
        msg = f"Record must be a JSON object, got {type(raw).__name__}"
        raise ValueError(msg)

    data = dict(raw)
    data["metrics"] = normalize_metrics(raw.get("metrics"))
    data["adjustments"] = normalize_metrics(raw.get("adjustments"))

    raw_entries = raw.get("adjustmentEntries") or raw.get("adjustment_entries") or []
    if not isinstance(raw_entries, list):
        msg = (
            f"adjustmentEntries of record {raw.get('id')!r} must be a list, "
            f"got {type(raw_entries).__name__}"
        )
        raise ValueError(msg)

    entries = []
    for entry in raw_entries:
        if not isinstance(entry, Mapping):
            continue
        normalized_entry = dict(entry)
        normalized_entry["diff"] = normalize_metrics(entry.get("diff"))
        for key in ("baseline", "proposed"):
            if entry.get(key) is not None:
                normalized_entry[key] = normalize_metrics(entry.get(key))
        entries.append(normalized_entry)
    data.pop("adjustment_entries", None)
    data["adjustmentEntries"] = entries

    return NcdRecord.model_validate(data)


def overview_total(metrics: Mapping[str, Any] | None) -> int | float:
    """Sum the Overview counts of a block."""
    return category_totals((metrics or {}).get("Overview"))["total"]


def summarize_record(record: NcdRecord) -> dict[str, Any]:
    """Build the before/after view of a record for tables and detail pages."""
    derivation = derive_baseline(record.metrics, record.adjustments)
    baseline = derivation["baseline"]
    diff = compute_diff(baseline, record.metrics)
    realism = validate_realism(record.metrics)

    categories = [
        {
            "category": category,
            "title": category_title(category),
            "baseline": category_totals(baseline.get(category)),
            "adjusted": category_totals(record.metrics.get(category)),
            "diff": category_totals(diff.get(category)),
        }
        for category in diff
    ]

    return {
        "id": record.id,
        "period": record.period_key,
        "period_label": period_label(record.year, record.month),
        "target_group": target_group_title(record.target_group),
        "district": record.district,
        "subdistrict": record.subdistrict,
        "village": record.village,
        "moo": record.moo,
        "refer_count": to_safe_number(record.refer_count),
        "baseline": baseline,
        "adjusted": record.metrics,
        "adjustments": record.adjustments,
        "categories": categories,
        "baseline_overview_total": overview_total(baseline),
        "adjusted_overview_total": overview_total(record.metrics),
        "has_adjustments": not is_diff_empty(diff),
        "adjustment_count": len(record.adjustment_entries),
        "invalid_entries": derivation["invalid_entries"],
        "issues": realism["issues"],
    }


def sort_deterministically(records: list[NcdRecord]) -> list[NcdRecord]:
    """Sort by (period, district, subdistrict, village, moo, id)."""
    return sorted(
        records,
        key=lambda r: (r.period_key, r.district, r.subdistrict, r.village, r.moo, r.id),
    )
