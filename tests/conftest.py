"""Test configuration and fixtures."""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine

from ncdrecon.schema import create_schema


@pytest.fixture(autouse=True)
def _hermetic_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # No .env leakage; plain markers keep CLI output assertions stable
    monkeypatch.setenv("NCDRECON_SKIP_DOTENV", "1")
    monkeypatch.setenv("NCDRECON_PLAIN", "1")


@pytest.fixture
def engine() -> Engine:
    """In-memory SQLite engine with the schema applied."""
    engine = create_engine("sqlite:///:memory:")
    with engine.begin() as conn:
        create_schema(conn)
    return engine
