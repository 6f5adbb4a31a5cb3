"""CLI tests: commands, exit codes and the reconcile audit trail."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from cli import app
from sqlalchemy import create_engine, text
from typer.testing import CliRunner

runner = CliRunner()

FIXTURE = Path(__file__).parent.parent / "fixtures" / "demo" / "records.json"


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite:///{tmp_path / 'ncd.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


@pytest.fixture
def loaded_db(database_url: str) -> str:
    assert runner.invoke(app, ["init-db"]).exit_code == 0
    result = runner.invoke(app, ["ingest", "--file", str(FIXTURE)])
    assert result.exit_code == 0, result.output
    return database_url


def _write(tmp_path: Path, name: str, data: object) -> str:
    path = tmp_path / name
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return str(path)


def test_commands_require_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 2
    assert "DATABASE_URL not found" in result.output


def test_init_db_and_ingest(loaded_db: str) -> None:
    engine = create_engine(loaded_db)
    with engine.connect() as conn:
        records = conn.execute(text("SELECT COUNT(*) FROM ncd_records")).scalar()
        entries = conn.execute(text("SELECT COUNT(*) FROM ncd_adjustments")).scalar()
    assert records == 3
    assert entries == 3


def test_ingest_twice_adds_no_duplicate_history(loaded_db: str) -> None:
    result = runner.invoke(app, ["ingest", "--file", str(FIXTURE)])

    assert result.exit_code == 0
    assert "Ingested 3 records (0 adjustment entries)" in result.output


def test_ingest_rejects_invalid_records(database_url: str, tmp_path: Path) -> None:
    runner.invoke(app, ["init-db"])
    bad = _write(tmp_path, "bad.json", [{"id": "x", "year": 2567, "month": 13}])
    not_a_list = _write(tmp_path, "obj.json", {"id": "x"})

    assert runner.invoke(app, ["ingest", "--file", bad]).exit_code == 1
    assert runner.invoke(app, ["ingest", "--file", not_a_list]).exit_code == 1
    missing = str(tmp_path / "missing.json")
    assert runner.invoke(app, ["ingest", "--file", missing]).exit_code == 1


@pytest.mark.parametrize(
    "records",
    [
        [5],
        [
            {
                "id": "x",
                "year": 2567,
                "month": 3,
                "district": "สอง",
                "subdistrict": "บ้านกลาง",
                "adjustmentEntries": 7,
            }
        ],
    ],
)
def test_ingest_reports_malformed_records(
    database_url: str, tmp_path: Path, records: list[object]
) -> None:
    runner.invoke(app, ["init-db"])

    result = runner.invoke(app, ["ingest", "--file", _write(tmp_path, "r.json", records)])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Invalid record in" in result.output


def test_baseline_prints_summary(loaded_db: str) -> None:
    result = runner.invoke(app, ["baseline", "--record-id", "rec-2567-03-001"])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary["baseline"]["Overview"] == {"normal": 90, "risk": 15, "sick": 5}
    assert summary["adjustment_count"] == 1


def test_baseline_unknown_record(loaded_db: str) -> None:
    result = runner.invoke(app, ["baseline", "--record-id", "nope"])

    assert result.exit_code == 1
    assert "Record not found: nope" in result.output


def test_validate_exit_codes(tmp_path: Path) -> None:
    good = _write(tmp_path, "good.json", {"overview": {"normal": 3, "ill": 1}})
    bad = _write(tmp_path, "bad.json", {"Overview": {"normal": -1, "risk": 0.5}})

    ok = runner.invoke(app, ["validate", "--file", good])
    failed = runner.invoke(app, ["validate", "--file", bad])

    assert ok.exit_code == 0
    assert json.loads(ok.output) == {"is_valid": True, "issues": []}
    assert failed.exit_code == 1
    assert [i["reason"] for i in json.loads(failed.output)["issues"]] == [
        "negative",
        "fractional",
    ]


def test_validate_rejects_non_object(tmp_path: Path) -> None:
    result = runner.invoke(app, ["validate", "--file", _write(tmp_path, "a.json", [1])])

    assert result.exit_code == 1
    assert "must be a JSON object" in result.output


def test_diff(tmp_path: Path) -> None:
    baseline = _write(tmp_path, "b.json", {"Overview": {"normal": 90, "risk": 15}})
    proposed = _write(tmp_path, "p.json", {"overview": {"normal": 95, "risk": 15}})

    result = runner.invoke(app, ["diff", "--baseline", baseline, "--proposed", proposed])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["is_empty"] is False
    assert payload["diff"]["Overview"] == {"normal": 5, "risk": 0, "sick": 0}

    same = runner.invoke(app, ["diff", "--baseline", baseline, "--proposed", baseline])
    assert json.loads(same.output)["is_empty"] is True


def test_adjust_dry_run_does_not_save(loaded_db: str, tmp_path: Path) -> None:
    change = _write(tmp_path, "change.json", {"Overview": {"sick": 7}})

    result = runner.invoke(
        app,
        ["adjust", "--record-id", "rec-2567-03-001", "--metrics-json", change, "--dry-run"],
    )

    assert result.exit_code == 0, result.output
    preview = json.loads(result.output)
    assert preview["has_change"] is True
    assert [row["category"] for row in preview["rows"]] == ["Overview"]

    engine = create_engine(loaded_db)
    with engine.connect() as conn:
        entries = conn.execute(text("SELECT COUNT(*) FROM ncd_adjustments")).scalar()
    assert entries == 3


def test_adjust_saves_and_reconcile_still_passes(loaded_db: str, tmp_path: Path) -> None:
    change = _write(tmp_path, "change.json", {"Overview": {"sick": 7}})

    result = runner.invoke(
        app,
        [
            "adjust",
            "--record-id",
            "rec-2567-03-001",
            "--metrics-json",
            change,
            "--reason",
            "late screening results",
            "--by",
            "admin",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Recorded adjustment" in result.output

    shown = json.loads(
        runner.invoke(app, ["baseline", "--record-id", "rec-2567-03-001"]).output
    )
    assert shown["adjusted"]["Overview"]["sick"] == 7
    assert shown["baseline"]["Overview"] == {"normal": 90, "risk": 15, "sick": 5}
    assert shown["adjustment_count"] == 2

    out = tmp_path / "recon.json"
    recon = runner.invoke(app, ["reconcile", "--period", "2567-03", "--out", str(out)])
    assert recon.exit_code == 0, recon.output


@pytest.mark.parametrize(
    ("change", "message"),
    [
        ({"Overview": {"sick": 5}}, "No change"),
        ({"Overview": {"sick": -1}}, "not realistic"),
    ],
)
def test_adjust_rejections(
    loaded_db: str, tmp_path: Path, change: dict[str, object], message: str
) -> None:
    path = _write(tmp_path, "change.json", change)

    result = runner.invoke(
        app, ["adjust", "--record-id", "rec-2567-03-001", "--metrics-json", path]
    )

    assert result.exit_code == 1
    assert "Adjustment rejected" in result.output
    assert message in result.output


def test_adjust_unknown_record(loaded_db: str, tmp_path: Path) -> None:
    path = _write(tmp_path, "change.json", {"Overview": {"sick": 1}})

    result = runner.invoke(app, ["adjust", "--record-id", "nope", "--metrics-json", path])

    assert result.exit_code == 1
    assert "Record not found" in result.output


def test_reconcile_passes_and_writes_events(loaded_db: str, tmp_path: Path) -> None:
    out = tmp_path / "out" / "recon.json"

    result = runner.invoke(
        app,
        [
            "reconcile",
            "--period",
            "2567-03",
            "--out",
            str(out),
            "--expected-districts",
            "เมืองแพร่, สอง",
        ],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["success"] is True
    assert payload["record_count"] == 3

    engine = create_engine(loaded_db)
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT period, success, row_counts FROM etl_events "
                 "WHERE event_type = 'reconcile'")
        ).one()
    assert row.period == "2567-03"
    assert row.success
    assert json.loads(row.row_counts)["checks"]["coverage"] is True


def test_reconcile_fails_on_missing_district(loaded_db: str, tmp_path: Path) -> None:
    out = tmp_path / "recon.json"

    result = runner.invoke(
        app,
        [
            "reconcile",
            "--period",
            "2567-03",
            "--out",
            str(out),
            "--expected-districts",
            "เมืองแพร่,สอง,ลอง",
        ],
    )

    assert result.exit_code == 1
    assert "Missing records for districts: ลอง" in result.output
    assert json.loads(out.read_text(encoding="utf-8"))["success"] is False


def test_reconcile_rejects_bad_period(loaded_db: str, tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["reconcile", "--period", "March", "--out", str(tmp_path / "r.json")]
    )

    assert result.exit_code == 1
    assert "Unsupported period format" in result.output


def test_report_writes_html(loaded_db: str, tmp_path: Path) -> None:
    out = tmp_path / "build"

    result = runner.invoke(
        app, ["report", "--period", "2567-03", "--formats", "html", "--out", str(out)]
    )

    assert result.exit_code == 0, result.output
    html = (out / "adjustments_2567-03.html").read_text(encoding="utf-8")
    assert "มีนาคม 2567" in html


def test_report_rejects_unknown_format(loaded_db: str, tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["report", "--period", "2567-03", "--formats", "csv", "--out", str(tmp_path)]
    )

    assert result.exit_code == 1
    assert "Invalid format" in result.output


def test_demo_writes_artifacts(tmp_path: Path) -> None:
    result = runner.invoke(app, ["demo", "--out", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Reconciliation: PASSED (3 records)" in result.output
    recon = json.loads((tmp_path / "demo_recon.json").read_text(encoding="utf-8"))
    assert recon["success"] is True
    assert (tmp_path / "demo_adjustments_2567-03.html").exists()


def test_doctor_without_database(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 0, result.output
    assert "DATABASE_URL not set" in result.output
    assert "Category config OK" in result.output


def test_doctor_flags_uninitialized_database(database_url: str) -> None:
    result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 1
    assert "Missing tables: ncd_records, ncd_adjustments, etl_events" in result.output


def test_doctor_reports_stored_records(loaded_db: str) -> None:
    result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 0, result.output
    assert "Database ready (3 records stored)" in result.output
