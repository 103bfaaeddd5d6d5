#!/usr/bin/env python3
"""
dbtransit Test Configuration - PyTest Configuration and Fixtures

Shared fixtures: an isolated TransitConfig (no environment overrides, no
retry delay), a driver registry with empty credentials, and helpers that
build small SQLite and CSV sources.
"""

import os
import sys
import sqlite3
from typing import Any, Iterable, List, Sequence, Tuple

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dbtransit.config.settings import Credentials, TransitConfig
from dbtransit.core.copy_runner import CopyRunner
from dbtransit.drivers import default_registry

USERS_DDL = """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT,
        score REAL,
        active BOOLEAN
    )
"""


def users_rows(count: int = 50) -> List[Tuple[Any, ...]]:
    rows = []
    for i in range(1, count + 1):
        email = None if i % 7 == 0 else f"user{i}@example.com"
        rows.append((i, f"User {i}", email, i * 1.5, i % 2))
    return rows


def create_sqlite(path: str, ddl: str = USERS_DDL, rows: Iterable[Sequence[Any]] = (),
                  table: str = 'users') -> str:
    """Create a SQLite database at `path` holding one table"""
    with sqlite3.connect(path) as conn:
        conn.execute(ddl)
        rows = list(rows)
        if rows:
            placeholders = ', '.join('?' for _ in rows[0])
            conn.executemany(f"INSERT INTO {table} VALUES ({placeholders})", rows)
    return path


def sqlite_rows(path: str, table: str = 'users', order_by: str = 'id') -> List[Tuple[Any, ...]]:
    conn = sqlite3.connect(path)
    try:
        return conn.execute(f'SELECT * FROM "{table}" ORDER BY {order_by}').fetchall()
    finally:
        conn.close()


def sqlite_count(path: str, table: str = 'users') -> int:
    conn = sqlite3.connect(path)
    try:
        return conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]
    finally:
        conn.close()


@pytest.fixture
def config(tmp_path):
    """Isolated settings: ignore DBTRANSIT_* variables, retry without sleeping"""
    scratch = tmp_path / "scratch"
    return TransitConfig(retry_delay=0.0, temp_dir=str(scratch), environ={})


@pytest.fixture
def credentials():
    return Credentials.from_environ({})


@pytest.fixture
def registry(credentials):
    return default_registry(credentials)


@pytest.fixture
def runner(registry, config):
    return CopyRunner(registry, config)


@pytest.fixture
def users_db(tmp_path):
    """SQLite source with 50 users"""
    return create_sqlite(str(tmp_path / "source.db"), rows=users_rows(50))
