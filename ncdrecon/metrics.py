"""Metrics reconciliation: baseline derivation, diffs and realism checks.

A metrics block maps a disease category to per-status population counts::

    {"Overview": {"normal": 120, "risk": 30, "sick": 12}, ...}

Every function here is pure and never raises. Malformed values coerce to 0
and anomalies are returned as data for the caller to act on.
"""

from __future__ import annotations

import math
import sys
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

DEFAULT_CATEGORY_ORDER: tuple[str, ...] = (
    "Overview",
    "Obesity",
    "Diabetes",
    "Hypertension",
    "Mental",
    "Alcohol",
    "Smoking",
)

DEFAULT_STATUS_ORDER: tuple[str, ...] = ("normal", "risk", "sick")

MetricsBlock = dict[str, dict[str, int | float]]


def to_safe_number(value: Any) -> int | float:  # noqa: ANN401
    """Coerce any value to a finite number, falling back to 0."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        # Counts beyond float range are non-finite once mixed with floats
        return 0 if abs(value) > sys.float_info.max else value

    try:
        if isinstance(value, float | Decimal):
            numeric = float(value)
        elif isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return 0
            numeric = float(stripped)
        else:
            return 0
    except (ValueError, OverflowError):
        return 0

    if not math.isfinite(numeric):
        return 0
    return int(numeric) if numeric.is_integer() else numeric


def _as_mapping(value: Any) -> Mapping[str, Any]:  # noqa: ANN401
    return value if isinstance(value, Mapping) else {}


def _unique_keys(keys: Iterable[Any]) -> list[str]:
    """Drop falsy, blank and duplicate keys, keeping first occurrence."""
    seen: set[str] = set()
    result: list[str] = []
    for key in keys:
        if not key:
            continue
        text = str(key)
        if not text.strip() or text in seen:
            continue
        seen.add(text)
        result.append(text)
    return result


def resolve_category_order(
    primary: Mapping[str, Any] | None,
    secondary: Mapping[str, Any] | None = None,
    override: Iterable[Any] | None = None,
) -> list[str]:
    """Resolve the category iteration order.

    Args:
        primary: Block whose extra keys follow the defaults
        secondary: Block whose extra keys follow the primary's
        override: Explicit ordering; used verbatim when non-empty

    Returns:
        Duplicate-free ordered list of category keys
    """
    if override is not None:
        explicit = list(override)
        if explicit:
            return _unique_keys(explicit)

    return _unique_keys([
        *DEFAULT_CATEGORY_ORDER,
        *_as_mapping(primary).keys(),
        *_as_mapping(secondary).keys(),
    ])


def resolve_status_order(override: Iterable[Any] | None = None) -> list[str]:
    """Resolve the status iteration order (defaults: normal, risk, sick)."""
    if override is not None:
        explicit = list(override)
        if explicit:
            return _unique_keys(explicit)
    return list(DEFAULT_STATUS_ORDER)


def _cell(block: Any, category: str, status: str) -> int | float:  # noqa: ANN401
    return to_safe_number(_as_mapping(_as_mapping(block).get(category)).get(status))


def empty_metrics(
    categories: Iterable[Any] | None = None,
    statuses: Iterable[Any] | None = None,
) -> MetricsBlock:
    """Return a zero-filled block for the resolved categories and statuses."""
    status_order = resolve_status_order(statuses)
    return {
        category: dict.fromkeys(status_order, 0)
        for category in resolve_category_order(None, None, categories)
    }


def derive_baseline(
    adjusted: Mapping[str, Any] | None,
    adjustments: Mapping[str, Any] | None = None,
    categories: Iterable[Any] | None = None,
    statuses: Iterable[Any] | None = None,
) -> dict[str, Any]:
    """Recover the baseline block by subtracting adjustments from adjusted totals.

    Negative baseline cells are kept in the result and also reported in
    ``invalid_entries`` in category-major order.

    Args:
        adjusted: Current (adjusted) counts
        adjustments: Accumulated adjustment deltas; omitted means all zero
        categories: Optional category order override
        statuses: Optional status order override

    Returns:
        Dict with ``baseline`` block and ``invalid_entries`` list
    """
    category_order = resolve_category_order(adjusted, adjustments, categories)
    status_order = resolve_status_order(statuses)

    baseline: MetricsBlock = {}
    invalid_entries: list[dict[str, Any]] = []

    for category in category_order:
        baseline_category: dict[str, int | float] = {}
        for status in status_order:
            adjusted_value = _cell(adjusted, category, status)
            adjustment_value = _cell(adjustments, category, status)
            baseline_value = adjusted_value - adjustment_value

            baseline_category[status] = baseline_value

            if baseline_value < 0:
                invalid_entries.append({
                    "category": category,
                    "status": status,
                    "baseline": baseline_value,
                    "adjusted": adjusted_value,
                    "adjustment": adjustment_value,
                })

        baseline[category] = baseline_category

    return {"baseline": baseline, "invalid_entries": invalid_entries}


def compute_diff(
    baseline: Mapping[str, Any] | None,
    proposed: Mapping[str, Any] | None,
    categories: Iterable[Any] | None = None,
    statuses: Iterable[Any] | None = None,
) -> MetricsBlock:
    """Compute ``proposed - baseline`` for every resolved category and status.

    A missing baseline is treated as all zero. Extra keys of ``proposed``
    are ordered before those of ``baseline``.
    """
    category_order = resolve_category_order(proposed, baseline, categories)
    status_order = resolve_status_order(statuses)

    return {
        category: {
            status: _cell(proposed, category, status)
            - _cell(baseline, category, status)
            for status in status_order
        }
        for category in category_order
    }


def is_diff_empty(
    diff: Mapping[str, Any] | None,
    categories: Iterable[Any] | None = None,
    statuses: Iterable[Any] | None = None,
) -> bool:
    """Return True when the diff is None or every cell coerces to 0."""
    if diff is None:
        return True

    category_order = resolve_category_order(diff, None, categories)
    status_order = resolve_status_order(statuses)

    return all(
        _cell(diff, category, status) == 0
        for category in category_order
        for status in status_order
    )


def validate_realism(
    metrics: Mapping[str, Any] | None,
    categories: Iterable[Any] | None = None,
    statuses: Iterable[Any] | None = None,
) -> dict[str, Any]:
    """Flag counts that are negative or fractional.

    A negative cell is reported as ``negative`` only, even when it is also
    fractional.

    Returns:
        Dict with ``is_valid`` flag and ``issues`` list
    """
    category_order = resolve_category_order(metrics, None, categories)
    status_order = resolve_status_order(statuses)
    issues: list[dict[str, Any]] = []

    for category in category_order:
        for status in status_order:
            value = _cell(metrics, category, status)

            if value < 0:
                issues.append({
                    "category": category,
                    "status": status,
                    "value": value,
                    "reason": "negative",
                })
            elif isinstance(value, float):
                # to_safe_number returns int for integral values
                issues.append({
                    "category": category,
                    "status": status,
                    "value": value,
                    "reason": "fractional",
                })

    return {"is_valid": not issues, "issues": issues}


def _safe_sum(values: Iterable[int | float]) -> int | float:
    # Re-coerce after each step so an overflowing running total becomes 0
    total: int | float = 0
    for value in values:
        total = to_safe_number(total + value)
    return total


def sum_metrics(
    *blocks: Mapping[str, Any] | None,
    categories: Iterable[Any] | None = None,
    statuses: Iterable[Any] | None = None,
) -> MetricsBlock:
    """Elementwise sum of any number of blocks."""
    if categories is None:
        keys: list[Any] = list(DEFAULT_CATEGORY_ORDER)
        for block in blocks:
            keys.extend(_as_mapping(block).keys())
        category_order = _unique_keys(keys)
    else:
        category_order = resolve_category_order(None, None, categories)
    status_order = resolve_status_order(statuses)

    return {
        category: {
            status: _safe_sum(_cell(block, category, status) for block in blocks)
            for status in status_order
        }
        for category in category_order
    }


def category_totals(
    counts: Mapping[str, Any] | None,
    statuses: Iterable[Any] | None = None,
) -> dict[str, int | float]:
    """Return the coerced status counts plus their ``total``."""
    status_order = resolve_status_order(statuses)
    source = _as_mapping(counts)
    result = {status: to_safe_number(source.get(status)) for status in status_order}
    result["total"] = _safe_sum(result[status] for status in status_order)
    return result
