"""
Pytest configuration for dbagent.

Provides fixtures for:
- Settings with short shutdown grace periods
- Worker command lines backed by the fake database
- A recorder that plays the caller's handler
- Database connection management for integration tests
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, List, Tuple

import psycopg
import pytest

from dbagent.config import Settings
from dbagent.domain.models import EOF

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


class Recorder:
    """Handler that records every ``(payload, correlation_id)`` it receives."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, Any]] = []

    def __call__(self, payload: Any, correlation_id: Any) -> None:
        self.calls.append((payload, correlation_id))

    @property
    def payloads(self) -> List[Any]:
        return [payload for payload, _ in self.calls]

    def eof_count(self) -> int:
        return sum(1 for payload in self.payloads if payload == EOF)

    async def wait_for_eof(self, count: int = 1, timeout: float = 10.0) -> None:
        async def _poll() -> None:
            while self.eof_count() < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "dbagent"),
        log_level="DEBUG",
        agent_shutdown_grace_seconds=1.0,
    )


@pytest.fixture(scope="session")
def fake_worker_command() -> List[str]:
    return [sys.executable, str(FAKE_WORKER)]


@pytest.fixture(scope="session")
def stubborn_worker_command() -> List[str]:
    """Fake worker that ignores SIGTERM, so only SIGKILL stops it."""
    return [sys.executable, str(FAKE_WORKER), "--ignore-sigterm"]


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except Exception:
        return False


@pytest.fixture
def scratch_table(test_dsn: str, db_connection_available: bool):
    """
    Create and seed ``dbagent_scratch`` for one test, then drop it.
    """
    if not db_connection_available:
        pytest.skip("PostgreSQL is not reachable")
    with psycopg.connect(test_dsn, autocommit=True) as conn:
        conn.execute("DROP TABLE IF EXISTS dbagent_scratch")
        conn.execute("CREATE TABLE dbagent_scratch (id integer PRIMARY KEY, name text NOT NULL)")
        conn.execute(
            "INSERT INTO dbagent_scratch (id, name) VALUES (1, 'ada'), (2, 'grace'), (3, 'linus')"
        )
    yield "dbagent_scratch"
    with psycopg.connect(test_dsn, autocommit=True) as conn:
        conn.execute("DROP TABLE IF EXISTS dbagent_scratch")
