"""Deterministic HTML/PDF adjustment reports with Jinja2 templates."""

from decimal import ROUND_FLOOR, Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, FileSystemLoader

from ncdrecon.load import get_records_for_period
from ncdrecon.metrics import resolve_status_order
from ncdrecon.reconcile import parse_period, period_totals
from ncdrecon.transform import (
    category_title,
    load_category_config,
    period_label,
    summarize_record,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def _get_template_env() -> Environment:
    """Get Jinja2 environment with deterministic settings."""
    template_dir = Path(__file__).parent / "templates"
    return Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=True,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def _round_half_up(value: float) -> int:
    """Round halves toward positive infinity, as the dashboard does."""
    shifted = Decimal(str(value)) + Decimal("0.5")
    return int(shifted.to_integral_value(rounding=ROUND_FLOOR))


def format_count(value: float) -> str:
    """Format a count with thousands separators, rounded to a whole number."""
    return f"{_round_half_up(value):,}"


def format_delta(value: float) -> str:
    """Format a change as ``+5``, ``-3`` or ``0``."""
    rounded = _round_half_up(value)
    if rounded > 0:
        return f"+{rounded:,}"
    return f"{rounded:,}"


def _location(summary: dict[str, Any]) -> str:
    parts = [summary["district"]]
    if summary["subdistrict"]:
        parts.append(f"ตำบล {summary['subdistrict']}")
    if summary["village"]:
        parts.append(f"หมู่บ้าน {summary['village']}")
    if summary["moo"]:
        parts.append(f"หมู่ที่ {summary['moo']}")
    return " · ".join(parts)


def render_adjustment_report(
    period: str, engine: "Engine", district: str | None = None
) -> str:
    """Generate deterministic HTML for a period's adjustment report.

    Args:
        period: Period string (e.g., "2567-03")
        engine: Database engine
        district: Optional district filter

    Returns:
        HTML string with deterministic formatting
    """
    year, month = parse_period(period)

    with engine.begin() as conn:
        records = get_records_for_period(conn, period, district)

    summaries = [summarize_record(record) for record in records]

    record_rows = []
    for summary in summaries:
        flags = [
            f"{e['category']}.{e['status']} baseline<0"
            for e in summary["invalid_entries"]
        ]
        flags += [
            f"{i['category']}.{i['status']} {i['reason']}"
            for i in summary["issues"]
        ]
        record_rows.append({
            "location": _location(summary),
            "target_group": summary["target_group"],
            "baseline_total": format_count(summary["baseline_overview_total"]),
            "adjusted_total": format_count(summary["adjusted_overview_total"]),
            "delta": format_delta(
                summary["adjusted_overview_total"] - summary["baseline_overview_total"]
            ),
            "adjustment_count": summary["adjustment_count"],
            "flags": ", ".join(flags),
        })

    statuses = resolve_status_order()
    totals_by_block = period_totals(records)
    baseline_total = totals_by_block["baseline"]
    adjusted_total = totals_by_block["adjusted"]
    diff_total = totals_by_block["diff"]

    totals = [
        {
            "title": category_title(category),
            "cells": [
                {
                    "baseline": format_count(baseline_total[category][status]),
                    "adjusted": format_count(adjusted_total[category][status]),
                    "delta": format_delta(diff_total[category][status]),
                }
                for status in statuses
            ],
        }
        for category in diff_total
    ]

    status_config = load_category_config()["statuses"]
    env = _get_template_env()
    template = env.get_template("adjustments.html.j2")

    return template.render(
        period=period,
        period_label=period_label(year, month),
        district=district,
        statuses=[
            {
                "key": status,
                "title": (status_config.get(status) or {}).get("title", status),
            }
            for status in statuses
        ],
        totals=totals,
        records=record_rows,
    )


def write_pdf(html: str, out_path: Path) -> Path:
    """Convert HTML to PDF using WeasyPrint.

    Args:
        html: HTML string to convert
        out_path: Output PDF path

    Returns:
        Path to created PDF file
    """
    from weasyprint import HTML  # noqa: PLC0415

    out_path.parent.mkdir(parents=True, exist_ok=True)

    html_doc = HTML(string=html)
    html_doc.write_pdf(out_path)

    return out_path
