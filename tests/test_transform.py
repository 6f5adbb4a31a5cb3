from __future__ import annotations

import pytest
from pydantic import ValidationError

from ncdrecon.transform import (
    canonical_category,
    canonical_status,
    map_raw_to_record,
    normalize_metrics,
    overview_total,
    period_label,
    sort_deterministically,
    summarize_record,
)
from tests.utils.factories import make_metrics, make_record


def raw_record(**overrides: object) -> dict[str, object]:
    raw: dict[str, object] = {
        "id": "rec-9",
        "targetGroup": "monk",
        "year": 2567,
        "month": 3,
        "district": "สอง",
        "subdistrict": "บ้านกลาง",
        "village": "บ้านกลาง",
        "moo": 5,
        "referCount": 2,
        "metrics": {"overview": {"normal": 12, "risk": 3, "ill": 1}},
    }
    raw.update(overrides)
    return raw


def test_aliases_map_to_canonical_keys() -> None:
    assert canonical_category("hypertension") == "Hypertension"
    assert canonical_category(" HT ") == "Hypertension"
    assert canonical_category("Kidney") == "Kidney"
    assert canonical_status("ill") == "sick"
    assert canonical_status("Risk") == "risk"


def test_normalize_metrics_renames_keys_and_keeps_values_raw() -> None:
    """Values are not coerced here; unknown categories pass through."""
    normalized = normalize_metrics({
        "diabetes": {"normal": "12", "ill": None},
        "Kidney": {"risk": 1},
        "Mental": "not a mapping",
    })

    assert normalized == {
        "Diabetes": {"normal": "12", "sick": None},
        "Kidney": {"risk": 1},
    }


def test_normalize_metrics_first_alias_wins() -> None:
    normalized = normalize_metrics({"Overview": {"sick": 4, "ill": 9}})
    assert normalized == {"Overview": {"sick": 4}}
    assert normalize_metrics(None) == {}


def test_map_raw_to_record_reads_camel_case_export() -> None:
    record = map_raw_to_record(
        raw_record(
            adjustments={"overview": {"normal": 2}},
            adjustmentEntries=[
                {"id": "adj-1", "diff": {"overview": {"normal": 2}}, "createdBy": "admin"}
            ],
        )
    )

    assert record.target_group == "monk"
    assert record.refer_count == 2
    assert record.moo == "5"
    assert record.period_key == "2567-03"
    assert record.metrics == {"Overview": {"normal": 12, "risk": 3, "sick": 1}}
    assert record.adjustments == {"Overview": {"normal": 2}}
    assert record.adjustment_entries[0].diff == {"Overview": {"normal": 2}}
    assert record.adjustment_entries[0].created_by == "admin"


@pytest.mark.parametrize(
    "overrides",
    [
        {"month": 13},
        {"district": ""},
        {"id": ""},
        {"referCount": -1},
    ],
)
def test_map_raw_to_record_rejects_bad_identifying_fields(
    overrides: dict[str, object],
) -> None:
    with pytest.raises(ValidationError):
        map_raw_to_record(raw_record(**overrides))


def test_map_raw_to_record_rejects_non_object_record() -> None:
    with pytest.raises(ValueError, match="must be a JSON object, got int"):
        map_raw_to_record(5)  # type: ignore[arg-type]


def test_map_raw_to_record_rejects_scalar_adjustment_entries() -> None:
    with pytest.raises(ValueError, match="adjustmentEntries of record 'rec-9' must be a list"):
        map_raw_to_record(raw_record(adjustmentEntries=7))


def test_map_raw_to_record_keeps_malformed_counts() -> None:
    """Count anomalies are detected later, never rejected at load."""
    record = map_raw_to_record(
        raw_record(metrics={"Overview": {"normal": -3, "risk": 2.5, "sick": "n/a"}})
    )
    assert record.metrics["Overview"] == {"normal": -3, "risk": 2.5, "sick": "n/a"}


def test_period_label_uses_thai_month_names() -> None:
    assert period_label(2567, 3) == "มีนาคม 2567"
    assert period_label(2567, 14) == "เดือน 14 2567"


def test_overview_total() -> None:
    assert overview_total({"Overview": {"normal": 90, "risk": 15, "sick": 5}}) == 110
    assert overview_total({}) == 0


def test_summarize_record_shows_before_and_after() -> None:
    record = make_record(
        metrics=make_metrics(Overview={"normal": 95, "risk": 12, "sick": 6}),
        adjustments={"Overview": {"normal": 5, "risk": -3, "sick": 1}},
    )

    summary = summarize_record(record)

    assert summary["baseline"]["Overview"] == {"normal": 90, "risk": 15, "sick": 5}
    assert summary["baseline_overview_total"] == 110
    assert summary["adjusted_overview_total"] == 113
    assert summary["has_adjustments"] is True
    overview = summary["categories"][0]
    assert overview["category"] == "Overview"
    assert overview["title"] == "ภาพรวม NCDs"
    assert overview["diff"] == {"normal": 5, "risk": -3, "sick": 1, "total": 3}
    assert summary["invalid_entries"] == []
    assert summary["issues"] == []


def test_summarize_record_surfaces_anomalies() -> None:
    record = make_record(
        metrics={"Overview": {"normal": 20, "risk": 1.5}},
        adjustments={"Overview": {"normal": 25}},
    )

    summary = summarize_record(record)

    assert [e["status"] for e in summary["invalid_entries"]] == ["normal"]
    assert summary["issues"] == [
        {"category": "Overview", "status": "risk", "value": 1.5, "reason": "fractional"}
    ]


def test_sort_deterministically() -> None:
    records = [
        make_record(id="b", month=4),
        make_record(id="c", month=3, moo="2"),
        make_record(id="a", month=3),
        make_record(id="d", month=3, moo="1", village="บ้านนาจักร"),
    ]
    assert [r.id for r in sort_deterministically(records)] == ["a", "d", "c", "b"]
