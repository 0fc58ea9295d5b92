"""Shared test fixtures."""

from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import tagplace.config as config_module
import tagplace.database as db_module
from tagplace.database import get_session
from tagplace.engine.models import ReasonCode
from tagplace.main import app
from tagplace.store.models import PlacementRecord


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def env_file(tmp_path: Path) -> Generator[Path, None, None]:
    """Use a temporary .env file instead of the real one."""
    env_path = tmp_path / ".env"
    original = config_module._ENV_FILE
    config_module._ENV_FILE = env_path
    yield env_path
    config_module._ENV_FILE = original


@pytest.fixture
def client(engine, env_file) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with overridden DB engine and session."""
    # Patch the module-level engine so lifespan's init_db() and the
    # reconciler both use the test engine.
    original_engine = db_module.engine
    db_module.engine = engine

    def _override_session() -> Generator[Session, None, None]:
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    db_module.engine = original_engine


def make_record(
    identifier: str = "E280A1",
    owner_id: str = "M1",
    sequence: int = 1,
    timestamp: datetime | None = None,
    **overrides,
) -> PlacementRecord:
    values = {
        "owner_id": owner_id,
        "identifier": identifier,
        "timestamp": timestamp or datetime(2026, 1, 1, tzinfo=UTC),
        "session_id": "session-1",
        "sequence": sequence,
        "latitude": 52.52,
        "longitude": 13.405,
        "altitude": 34.0,
        "accuracy": 4.0,
        "rssi_avg": -41,
        "rssi_peak": -40,
        "reads_in_window": 3,
        "power_level": 28,
        "decision_reason": ReasonCode.accepted,
    }
    values.update(overrides)
    return PlacementRecord(**values)
