#!/usr/bin/env python3
"""CLI interface for the NCD metrics reconciliation pipeline."""

import importlib.util
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from ncdrecon.adjust import (
    apply_adjustment,
    build_adjustment,
    merge_proposed,
    preview_adjustment,
)
from ncdrecon.demo import (
    DEMO_DISTRICTS,
    DEMO_PERIOD,
    create_demo_engine,
    load_demo_fixtures,
)
from ncdrecon.load import get_record, load_records, record_event, save_adjustment
from ncdrecon.metrics import (
    DEFAULT_CATEGORY_ORDER,
    DEFAULT_STATUS_ORDER,
    compute_diff,
    is_diff_empty,
    validate_realism,
)
from ncdrecon.reconcile import parse_period, run_reconciliation
from ncdrecon.reports.render import render_adjustment_report, write_pdf
from ncdrecon.schema import create_db_engine, create_schema
from ncdrecon.transform import (
    load_category_config,
    map_raw_to_record,
    normalize_metrics,
    summarize_record,
)

app = typer.Typer(
    name="ncdrecon",
    help="NCD metrics reconciliation - records, adjustments, period checks and reports",
    no_args_is_help=True,
)


def _mark_success() -> str:
    """Return success indicator (emoji, or plain text when NCDRECON_PLAIN=1)."""
    return "" if os.getenv("NCDRECON_PLAIN") == "1" else "✅"


def _mark_error() -> str:
    """Return error indicator (emoji, or plain text when NCDRECON_PLAIN=1)."""
    return "" if os.getenv("NCDRECON_PLAIN") == "1" else "❌"


@app.callback()
def _load_env() -> None:
    # Skip dotenv loading in tests/CI for hermetic environments
    if os.getenv("NCDRECON_SKIP_DOTENV") != "1":
        load_dotenv(override=False)
    logging.basicConfig(
        level=os.getenv("NCDRECON_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _require_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        typer.echo(f"{_mark_error()} DATABASE_URL not found in environment", err=True)
        raise typer.Exit(2)
    return database_url


def _read_json(path: str, option: str) -> Any:  # noqa: ANN401
    """Read a JSON file given on the command line."""
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except Exception as e:
        typer.echo(f"{_mark_error()} Failed to read {option}: {e}", err=True)
        raise typer.Exit(1) from e


def _read_metrics(path: str, option: str) -> dict[str, Any]:
    data = _read_json(path, option)
    if not isinstance(data, dict):
        typer.echo(
            f"{_mark_error()} {option} must be a JSON object "
            "{category: {normal, risk, sick}}",
            err=True,
        )
        raise typer.Exit(1)
    return normalize_metrics(data)


def _echo_json(data: Any) -> None:  # noqa: ANN401
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _write_json(data: Any, out: str) -> None:  # noqa: ANN401
    out_path = Path(out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)


@app.command("init-db")
def init_db() -> None:
    """Create the records, adjustments and etl_events tables."""
    database_url = _require_database_url()

    try:
        engine = create_db_engine(database_url)
        with engine.begin() as conn:
            create_schema(conn)
        typer.echo(f"{_mark_success()} Database schema initialized successfully")
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e


@app.command("ingest")
def ingest(
    file: Annotated[
        str, typer.Option("--file", help="JSON export: list of NCD records")
    ],
) -> None:
    """Load exported NCD records (with adjustment history) into the database."""
    database_url = _require_database_url()
    raw_records = _read_json(file, "--file")

    if not isinstance(raw_records, list):
        typer.echo(
            f"{_mark_error()} --file must contain a JSON list of records", err=True
        )
        raise typer.Exit(1)

    try:
        records = [map_raw_to_record(raw) for raw in raw_records]
    except (ValidationError, ValueError) as e:
        typer.echo(f"{_mark_error()} Invalid record in {file}: {e}", err=True)
        raise typer.Exit(1) from e

    if not records:
        typer.echo("No records to ingest (0 records).")
        return

    try:
        engine = create_db_engine(database_url)
        with engine.begin() as conn:
            counts = load_records(records, conn)
    except Exception as e:
        typer.echo(f"{_mark_error()} Error during ingest: {e}", err=True)
        raise typer.Exit(1) from e

    typer.echo(
        f"{_mark_success()} Ingested {counts['records']} records "
        f"({counts['adjustments']} adjustment entries)."
    )


@app.command("baseline")
def baseline(
    record_id: Annotated[str, typer.Option("--record-id", help="NCD record ID")],
) -> None:
    """Show a record's derived baseline, deltas and anomalies as JSON."""
    database_url = _require_database_url()

    try:
        engine = create_db_engine(database_url)
        with engine.connect() as conn:
            record = get_record(record_id, conn)
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e

    if record is None:
        typer.echo(f"{_mark_error()} Record not found: {record_id}", err=True)
        raise typer.Exit(1)

    _echo_json(summarize_record(record))


@app.command("validate")
def validate(
    file: Annotated[str, typer.Option("--file", help="JSON metrics block")],
) -> None:
    """Check that a metrics block holds only non-negative whole counts."""
    result = validate_realism(_read_metrics(file, "--file"))
    _echo_json(result)
    if not result["is_valid"]:
        raise typer.Exit(1)


@app.command("diff")
def diff(
    baseline_file: Annotated[
        str, typer.Option("--baseline", help="JSON metrics block before the change")
    ],
    proposed_file: Annotated[
        str, typer.Option("--proposed", help="JSON metrics block after the change")
    ],
) -> None:
    """Print proposed minus baseline for every category and status."""
    result = compute_diff(
        _read_metrics(baseline_file, "--baseline"),
        _read_metrics(proposed_file, "--proposed"),
    )
    _echo_json({"diff": result, "is_empty": is_diff_empty(result)})


@app.command("adjust")
def adjust(
    record_id: Annotated[str, typer.Option("--record-id", help="NCD record ID")],
    metrics_json: Annotated[
        str,
        typer.Option(
            "--metrics-json",
            help="JSON metrics block with corrected counts (partial allowed)",
        ),
    ],
    reason: Annotated[
        str | None, typer.Option("--reason", help="Why the counts changed")
    ] = None,
    created_by: Annotated[
        str | None, typer.Option("--by", help="Who made the adjustment")
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Show the change without saving")
    ] = False,
) -> None:
    """Record an adjustment to a stored record's counts."""
    database_url = _require_database_url()
    partial = _read_metrics(metrics_json, "--metrics-json")

    try:
        engine = create_db_engine(database_url)
        with engine.begin() as conn:
            record = get_record(record_id, conn)
            if record is None:
                typer.echo(f"{_mark_error()} Record not found: {record_id}", err=True)
                raise typer.Exit(1)

            proposed = merge_proposed(record, partial)
            if dry_run:
                _echo_json(preview_adjustment(record, proposed))
                return

            entry = build_adjustment(
                record, proposed, reason=reason, created_by=created_by
            )
            save_adjustment(apply_adjustment(record, entry), entry, conn)
    except typer.Exit:
        raise
    except ValueError as e:
        typer.echo(f"{_mark_error()} Adjustment rejected: {e}", err=True)
        raise typer.Exit(1) from e
    except Exception as e:
        typer.echo(f"{_mark_error()} Error during adjustment: {e}", err=True)
        raise typer.Exit(1) from e

    typer.echo(f"{_mark_success()} Recorded adjustment {entry.id} for {record_id}")


def _log_reconcile_event(
    database_url: str,
    period: str,
    result: dict[str, Any] | None,
    started_at: str,
) -> None:
    """Log reconciliation event for audit trail."""
    if result is not None:
        row_counts: dict[str, Any] = {
            "period": period,
            "district": result.get("district"),
            "records": result.get("record_count", 0),
            "checks": {
                name: check.get("passed")
                for name, check in result.get("checks", {}).items()
            },
        }
        success = bool(result.get("success"))
    else:
        row_counts = {"period": period, "error": "Exception during reconciliation"}
        success = False

    engine = create_db_engine(database_url)
    with engine.begin() as conn:
        record_event(
            conn,
            "reconcile",
            row_counts,
            started_at=started_at,
            success=success,
            period=period,
        )


@app.command("reconcile")
def reconcile(
    period: Annotated[str, typer.Option("--period", help="Period (e.g., 2567-03)")],
    out: Annotated[str, typer.Option("--out", help="Output file for recon.json")],
    district: Annotated[
        str | None, typer.Option("--district", help="Limit to one district")
    ] = None,
    expected_districts: Annotated[
        str | None,
        typer.Option(
            "--expected-districts",
            help="Comma-separated districts that must have reported",
        ),
    ] = None,
) -> None:
    """Run reconciliation checks for a period and write recon.json."""
    try:
        parse_period(period)
    except ValueError as e:
        typer.echo(f"{_mark_error()} {e}. Use YYYY-MM", err=True)
        raise typer.Exit(1) from e

    database_url = _require_database_url()
    expected = (
        [d.strip() for d in expected_districts.split(",") if d.strip()]
        if expected_districts
        else None
    )

    started_at = datetime.now(UTC).isoformat()
    result = None

    try:
        engine = create_db_engine(database_url)
        with engine.connect() as conn:
            result = run_reconciliation(
                conn, period=period, district=district, expected_districts=expected
            )
        _write_json(result, out)

        if result["success"]:
            typer.echo(f"{_mark_success()} Reconciliation passed for {period}")
            typer.echo(f"Results written to {out}")
            raise typer.Exit(0)

        typer.echo(f"{_mark_error()} Reconciliation failed for {period}", err=True)
        missing = result["checks"]["coverage"]["missing"]
        if missing:
            typer.echo(f"Missing records for districts: {', '.join(missing)}", err=True)
        typer.echo(f"Details written to {out}", err=True)
        raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"{_mark_error()} Error during reconciliation: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        # Always record the run (success or failure) for the audit trail
        try:
            _log_reconcile_event(database_url, period, result, started_at)
        except Exception as log_error:
            typer.echo(f"WARNING: ETL event logging failed: {log_error}", err=True)


def _validate_report_formats(formats: str) -> list[str]:
    """Validate and parse report formats."""
    requested_formats = [f.strip().lower() for f in formats.split(",")]
    if not all(f in ["html", "pdf"] for f in requested_formats):
        typer.echo(
            f"{_mark_error()} Invalid format. Use: html,pdf or html or pdf", err=True
        )
        raise typer.Exit(1)
    return requested_formats


def _write_report(html: str, stem: str, out_path: Path, formats: list[str]) -> None:
    if "html" in formats:
        html_path = out_path / f"{stem}.html"
        html_path.write_text(html, encoding="utf-8")
        typer.echo(f"{_mark_success()} Generated: {html_path}")

    if "pdf" in formats:
        try:
            pdf_path = write_pdf(html, out_path / f"{stem}.pdf")
            typer.echo(f"{_mark_success()} Generated: {pdf_path}")
        except Exception as e:
            typer.echo(f"WARNING:  PDF generation not available: {e}")


@app.command("report")
def report(
    period: Annotated[str, typer.Option("--period", help="Period (e.g., 2567-03)")],
    formats: Annotated[
        str,
        typer.Option("--formats", help="Comma-separated formats (html,pdf)"),
    ] = "html,pdf",
    out: Annotated[str, typer.Option("--out", help="Output directory")] = "./build",
    district: Annotated[
        str | None, typer.Option("--district", help="Limit to one district")
    ] = None,
) -> None:
    """Generate the adjustment report for a period."""
    database_url = _require_database_url()
    requested_formats = _validate_report_formats(formats)

    try:
        out_path = Path(out)
        out_path.mkdir(parents=True, exist_ok=True)

        engine = create_db_engine(database_url)
        html = render_adjustment_report(period, engine, district)
        _write_report(html, f"adjustments_{period}", out_path, requested_formats)
        typer.echo(f"Reports generated for {period} in {out_path}")
    except Exception as e:
        typer.echo(f"{_mark_error()} Error generating reports: {e}", err=True)
        raise typer.Exit(1) from e


@app.command("demo")
def demo(
    out: Annotated[
        str,
        typer.Option("--out", help="Output directory for demo artifacts"),
    ] = "build",
) -> None:
    """Run offline demo with fixture data (SQLite in memory, no configuration)."""
    try:
        typer.echo("🚀 Starting offline demo (SQLite + fixtures)...")
        engine = create_demo_engine()

        with engine.begin() as conn:
            loaded = load_demo_fixtures(conn)
        typer.echo(f"{_mark_success()} Demo database initialized with {loaded} records")

        with engine.begin() as conn:
            result = run_reconciliation(
                conn, period=DEMO_PERIOD, expected_districts=DEMO_DISTRICTS
            )

        out_path = Path(out)
        out_path.mkdir(parents=True, exist_ok=True)

        recon_file = out_path / "demo_recon.json"
        _write_json(result, str(recon_file))
        typer.echo(f"{_mark_success()} Reconciliation: {recon_file}")

        report_file = out_path / f"demo_adjustments_{DEMO_PERIOD}.html"
        report_file.write_text(
            render_adjustment_report(DEMO_PERIOD, engine), encoding="utf-8"
        )
        typer.echo(f"{_mark_success()} Adjustment report: {report_file}")
    except Exception as e:
        typer.echo(f"{_mark_error()} Demo failed: {e}", err=True)
        raise typer.Exit(1) from e

    if not result["success"]:
        typer.echo(f"{_mark_error()} Reconciliation: FAILED")
        raise typer.Exit(1)
    count = result["record_count"]
    typer.echo(f"{_mark_success()} Reconciliation: PASSED ({count} records)")


_REQUIRED_TABLES = ("ncd_records", "ncd_adjustments", "etl_events")


def _check_category_config() -> bool:
    """Every default category and status must have a title in categories.yaml."""
    config = load_category_config()
    missing = [
        key
        for section, keys in (
            ("categories", DEFAULT_CATEGORY_ORDER),
            ("statuses", DEFAULT_STATUS_ORDER),
        )
        for key in keys
        if not (config.get(section, {}).get(key) or {}).get("title")
    ]
    if missing:
        typer.echo(
            f"{_mark_error()} categories.yaml lacks titles for: {', '.join(missing)}"
        )
        return False
    typer.echo(
        f"{_mark_success()} Category config OK "
        f"({len(DEFAULT_CATEGORY_ORDER)} categories, "
        f"{len(DEFAULT_STATUS_ORDER)} statuses)"
    )
    return True


def _check_database() -> bool:
    """Connect to DATABASE_URL and confirm init-db has created the tables."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        typer.echo("i  DATABASE_URL not set (only `demo`, `validate` and `diff` work)")
        return True

    try:
        engine = create_db_engine(database_url)
        with engine.connect() as conn:
            existing = set(inspect(conn).get_table_names())
            missing = [t for t in _REQUIRED_TABLES if t not in existing]
            records = (
                None
                if missing
                else conn.execute(text("SELECT COUNT(*) FROM ncd_records")).scalar()
            )
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database connection failed: {e}")
        return False

    if missing:
        typer.echo(
            f"{_mark_error()} Missing tables: {', '.join(missing)} "
            "(run `ncdrecon init-db`)"
        )
        return False
    typer.echo(f"{_mark_success()} Database ready ({records} records stored)")
    return True


def _check_pdf_support() -> None:
    if importlib.util.find_spec("weasyprint") is not None:
        typer.echo(f"{_mark_success()} PDF reports available")
    else:
        typer.echo("i  PDF reports disabled; install the `pdf` extra for WeasyPrint")


@app.command("doctor")
def doctor() -> None:
    """Check category config, database tables and PDF support."""
    checks = [_check_category_config(), _check_database()]
    _check_pdf_support()

    if not all(checks):
        typer.echo(f"{_mark_error()} ncdrecon is not ready. See above.")
        raise typer.Exit(1)
    typer.echo(f"{_mark_success()} ncdrecon is ready")


if __name__ == "__main__":
    app()
