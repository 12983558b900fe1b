"""Shared test fixtures for nof1 tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from nof1.domains.experiments.domain_logic.lifecycle import ExperimentController  # noqa: E402


# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "experiments.db"))
    monkeypatch.chdir(tmp_path)  # keep a developer's .env out of Settings


# ---------------------------------------------------------------------------
# Clock and domain fixtures
# ---------------------------------------------------------------------------

START = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; every call returns the current value."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def controller(clock: FakeClock) -> ExperimentController:
    return ExperimentController(clock=clock)


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def experiment_db():
    """Create an in-memory ExperimentDatabase for testing."""
    from nof1.core.storage.database import ExperimentDatabase

    db = ExperimentDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a fresh key."""
    from cryptography.fernet import Fernet

    from nof1.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def experiment_repository(experiment_db, field_encryptor):
    """Create an ExperimentRepository backed by in-memory SQLite."""
    from nof1.core.storage.repository import ExperimentRepository

    return ExperimentRepository(experiment_db, field_encryptor)


@pytest.fixture
def audit_logger(experiment_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from nof1.core.audit.logger import AuditLogger

    return AuditLogger(experiment_db)
