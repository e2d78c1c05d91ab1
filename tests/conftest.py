"""Pytest configuration: environment, fake psycopg2 connections and DB fixtures.

.sl_env (if present) is loaded FIRST with override=True so that test runs do
not pick up a production DATABASE_URL from the shell.
"""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

_SL_ENV_FILE = Path(__file__).parent.parent / ".sl_env"
if _SL_ENV_FILE.exists():
    load_dotenv(_SL_ENV_FILE, override=True)

import os
import re
import uuid
from typing import Callable, Generator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse, urlunparse

import psycopg2
import pytest
from psycopg2 import sql

from stream_loader.config import get_settings
from stream_loader.io.stage import MemoryStage


def _validate_test_database(dsn: str) -> bool:
    """Ensure we're not about to drop a production database.

    Raises:
        RuntimeError: If the database name doesn't match test naming conventions
    """
    if os.getenv("SL_SKIP_DB_VALIDATION") == "1":
        return True

    db_name = urlparse(dsn).path.lstrip("/")
    if not db_name:
        raise RuntimeError(
            "Refusing to run tests against empty/missing database name. "
            "Override with SL_SKIP_DB_VALIDATION=1 (DANGEROUS)."
        )
    if not re.search(r"(test|tmp|dev|local|sandbox)", db_name, re.IGNORECASE):
        raise RuntimeError(
            f"Refusing to run tests against non-test database: {db_name}. "
            "Test databases must contain one of: test, tmp, dev, local, sandbox. "
            "Override with SL_SKIP_DB_VALIDATION=1 (DANGEROUS)."
        )
    return True


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    """Every test sees settings built from its own environment."""
    monkeypatch.setenv("STAGE_DIR", str(tmp_path / "stage"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Fake psycopg2 connection
# ============================================================================

Handler = Callable[[str, bytes], Optional[int]]


class FakeCursor:
    """Cursor double that records SQL and COPY payloads.

    ``handler(sql, staged)`` is called for every statement with the bytes of
    the last COPY; it returns the rowcount or raises a psycopg2 error. For
    ``SELECT count(*)`` the returned number is what ``fetchone`` yields.
    """

    def __init__(self, connection: "FakeConnection"):
        self.connection = connection
        self.rowcount = -1

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc) -> bool:
        return False

    def execute(self, statement: str, params: Optional[Sequence] = None) -> None:
        conn = self.connection
        conn.executed.append(statement)
        self.rowcount = -1
        if conn.handler is not None:
            result = conn.handler(statement, conn.staged)
            if result is not None:
                self.rowcount = result

    def copy_expert(self, statement: str, file) -> None:
        self.connection.executed.append(statement)
        self.connection.staged = file.read()
        self.connection.copies.append(self.connection.staged)

    def fetchall(self) -> List[Tuple[str, str]]:
        return list(self.connection.describe_rows)

    def fetchone(self) -> Tuple[int]:
        return (max(self.rowcount, 0),)


class FakeConnection:
    def __init__(self, describe_rows: Sequence[Tuple[str, str]], handler: Optional[Handler] = None):
        self.describe_rows = list(describe_rows)
        self.handler = handler
        self.executed: List[str] = []
        self.copies: List[bytes] = []
        self.staged = b""
        self.autocommit = True
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True

    def statements(self, prefix: str) -> List[str]:
        return [s for s in self.executed if s.startswith(prefix)]


def count_records(staged: bytes) -> int:
    return staged.count(b"\n")


def default_handler(statement: str, staged: bytes) -> Optional[int]:
    """INSERT reports every staged record; nothing matches for UPDATE and DELETE."""
    if statement.startswith("INSERT INTO"):
        return count_records(staged)
    if statement.startswith(("UPDATE", "DELETE", "SELECT count(*)")):
        return 0
    return None


@pytest.fixture
def orders_columns() -> List[Tuple[str, str]]:
    return [("id", "integer"), ("name", "text"), ("amount", "numeric")]


@pytest.fixture
def make_connection(orders_columns) -> Callable[..., FakeConnection]:
    """Factory: ``make_connection(handler=default_handler, columns=orders_columns)``."""

    def _make(handler: Optional[Handler] = default_handler,
              columns: Optional[Sequence[Tuple[str, str]]] = None) -> FakeConnection:
        return FakeConnection(orders_columns if columns is None else columns, handler)

    return _make


@pytest.fixture
def fake_connection(make_connection) -> FakeConnection:
    return make_connection()


@pytest.fixture
def memory_stage() -> MemoryStage:
    return MemoryStage()


# ============================================================================
# PostgreSQL-backed fixtures (marker: postgres)
# ============================================================================


def _resolve_postgres_dsn() -> str:
    database_url = os.environ.get("SL_TEST_DATABASE_URL") or os.environ.get("DATABASE_URL")
    if not database_url or not database_url.startswith("postgres"):
        pytest.skip("PostgreSQL SL_TEST_DATABASE_URL/DATABASE_URL must be set for postgres-backed tests")
    return database_url


def _create_ephemeral_database(base_dsn: str) -> tuple[str, str, str]:
    parsed = urlparse(base_dsn)
    base_db = parsed.path.lstrip("/") or "postgres"
    admin_db = "postgres" if base_db != "postgres" else base_db
    temp_db = f"{base_db}_test_{uuid.uuid4().hex[:8]}"

    admin_dsn = urlunparse(parsed._replace(path=f"/{admin_db}"))
    temp_dsn = urlunparse(parsed._replace(path=f"/{temp_db}"))

    conn = psycopg2.connect(admin_dsn)
    conn.autocommit = True
    try:
        with conn.cursor() as cursor:
            cursor.execute(
                sql.SQL("CREATE DATABASE {} TEMPLATE template0").format(sql.Identifier(temp_db))
            )
    finally:
        conn.close()

    return temp_dsn, temp_db, admin_dsn


def _drop_database(admin_dsn: str, db_name: str) -> None:
    conn = psycopg2.connect(admin_dsn)
    conn.autocommit = True
    try:
        with conn.cursor() as cursor:
            # Terminate any remaining connections to allow DROP DATABASE
            cursor.execute(
                """
                SELECT pg_terminate_backend(pid)
                FROM pg_stat_activity
                WHERE datname = %s AND pid <> pg_backend_pid();
                """,
                (db_name,),
            )
            cursor.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(db_name)))
    finally:
        conn.close()


@pytest.fixture
def postgres_dsn(monkeypatch: pytest.MonkeyPatch) -> Generator[str, None, None]:
    """Temporary PostgreSQL database, dropped after the test."""
    base_dsn = _resolve_postgres_dsn()
    temp_dsn, temp_db, admin_dsn = _create_ephemeral_database(base_dsn)
    monkeypatch.setenv("DATABASE_URL", temp_dsn)
    get_settings.cache_clear()
    try:
        yield temp_dsn
    finally:
        _validate_test_database(temp_dsn)
        _drop_database(admin_dsn, temp_db)
        get_settings.cache_clear()


@pytest.fixture
def postgres_connection(postgres_dsn: str):
    """Autocommit connection used to set up and inspect tables."""
    conn = psycopg2.connect(postgres_dsn, connect_timeout=5)
    conn.autocommit = True
    try:
        yield conn
    finally:
        conn.close()
