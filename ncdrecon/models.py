"""Record models for NCD surveillance data exported from the dashboard API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

__all__ = ["AdjustmentEntry", "NcdRecord", "period_key"]


def period_key(year: int, month: int) -> str:
    """Return the sortable period key, e.g. ``2567-03``."""
    return f"{year:04d}-{month:02d}"


class _ExportModel(BaseModel):
    # Export files use camelCase keys; attributes stay snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AdjustmentEntry(_ExportModel):
    """One recorded correction of a record's counts."""

    id: str
    record_id: str | None = None
    diff: dict[str, Any] = Field(default_factory=dict)
    baseline: dict[str, Any] | None = None
    proposed: dict[str, Any] | None = None
    reason: str | None = None
    created_by: str | None = None
    created_at: str | None = None


class NcdRecord(_ExportModel):
    """Monthly NCD screening counts for one village and target group.

    ``metrics`` holds the current (adjusted) counts and ``adjustments`` the
    accumulated deltas; the baseline is derived from the two on demand.
    """

    id: str = Field(min_length=1)
    target_group: str = "general"
    year: int
    month: int = Field(ge=1, le=12)
    district: str = Field(min_length=1)
    subdistrict: str = Field(min_length=1)
    village: str = ""
    moo: str = ""
    refer_count: int = Field(default=0, ge=0)
    metrics: dict[str, Any] = Field(default_factory=dict)
    adjustments: dict[str, Any] = Field(default_factory=dict)
    adjustment_entries: list[AdjustmentEntry] = Field(default_factory=list)
    created_by: str | None = None
    created_at: str | None = None
    updated_by: str | None = None
    updated_at: str | None = None

    @field_validator("village", "moo", mode="before")
    @classmethod
    def _location_as_text(cls, value: Any) -> str:  # noqa: ANN401
        # Sheet cells for village number come back as ints
        if value is None:
            return ""
        return str(value).strip()

    @property
    def period_key(self) -> str:
        return period_key(self.year, self.month)
