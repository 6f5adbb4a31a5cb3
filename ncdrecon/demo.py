"""Demo data loader for offline/deterministic demonstrations."""

import json
import os
from pathlib import Path

from sqlalchemy import Connection, create_engine, text
from sqlalchemy.engine import Engine

from ncdrecon.load import load_records
from ncdrecon.schema import create_schema
from ncdrecon.transform import map_raw_to_record, sort_deterministically

DEMO_PERIOD = "2567-03"
DEMO_DISTRICTS = ("เมืองแพร่", "สอง")

FIXTURES_DIR = Path(__file__).parent.parent / "fixtures" / "demo"


def create_demo_engine() -> Engine:
    """Create an in-memory SQLite engine with the schema applied."""
    os.environ["LC_ALL"] = "C.UTF-8"
    os.environ["TZ"] = "UTC"

    engine = create_engine("sqlite:///:memory:", echo=False)
    with engine.begin() as conn:
        conn.execute(text("PRAGMA foreign_keys = ON"))
        create_schema(conn)
    return engine


def load_demo_fixtures(conn: Connection) -> int:
    """Load demo records into the database; returns the number loaded."""
    records_file = FIXTURES_DIR / "records.json"
    if not records_file.exists():
        return 0

    raw_records = json.loads(records_file.read_text(encoding="utf-8"))
    records = sort_deterministically([map_raw_to_record(raw) for raw in raw_records])
    return load_records(records, conn)["records"]
