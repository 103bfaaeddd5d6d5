#!/usr/bin/env python3
"""
End-to-end copies between SQLite databases and CSV files.

Covers parallelism invariance, If-Exists behaviour, upsert idempotence,
count consistency, capability fail-fast and temporary cleanup on success,
failure and cancellation.
"""

import asyncio
import os
from unittest.mock import patch

import pytest

from conftest import create_sqlite, sqlite_count, sqlite_rows, users_rows
from dbtransit.core import errors
from dbtransit.core.copy_runner import (
    CopyRequest, CopyRunner, CopyState, CountMismatchPolicy, StagingMode,
)
from dbtransit.core.driver_registry import DriverSpec, IfExists, IfExistsMode, RowStream
from dbtransit.core.locator import parse_locator
from dbtransit.drivers import DATABASE_ROLES, default_registry
from dbtransit.drivers import sqlite as sqlite_driver
from dbtransit.drivers.sqlite import SqliteDriver


def request(source, destination, **kwargs) -> CopyRequest:
    return CopyRequest(parse_locator(source), parse_locator(destination), **kwargs)


def copy(runner, source, destination, cancel_event=None, **kwargs):
    return asyncio.run(runner.copy(request(source, destination, **kwargs), cancel_event))


def scratch_entries(config):
    if not os.path.exists(config.temp_dir):
        return []
    return os.listdir(config.temp_dir)


# =============================================================================
# Plain copies
# =============================================================================

@pytest.mark.parametrize("max_streams", [1, 4])
def test_sqlite_to_sqlite(runner, users_db, tmp_path, max_streams):
    dest = str(tmp_path / "dest.db")
    result = copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", max_streams=max_streams)
    assert result.state == CopyState.COMPLETED
    assert result.rows_written == 50
    assert result.source_row_count == 50
    assert result.written_locators == [f"sqlite:{dest}#users"]
    assert sqlite_rows(dest) == sqlite_rows(users_db)


def test_stream_count_does_not_change_the_result(runner, users_db, tmp_path):
    results = []
    for streams in (1, 3, 8):
        dest = str(tmp_path / f"dest{streams}.db")
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", max_streams=streams, stream_size=64)
        results.append(sorted(sqlite_rows(dest)))
    assert results[0] == results[1] == results[2]


def test_nulls_survive(runner, users_db, tmp_path):
    dest = str(tmp_path / "dest.db")
    copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users")
    emails = {row[0]: row[2] for row in sqlite_rows(dest)}
    assert emails[7] is None and emails[14] is None
    assert emails[1] == "user1@example.com"


def test_empty_source(runner, tmp_path):
    source = create_sqlite(str(tmp_path / "empty.db"))
    dest = str(tmp_path / "dest.db")
    result = copy(runner, f"sqlite:{source}#users", f"sqlite:{dest}#users", max_streams=4)
    assert result.rows_written == 0
    assert sqlite_count(dest) == 0


def test_where_filter_matches_count(runner, users_db, tmp_path):
    source = parse_locator(f"sqlite:{users_db}#users")
    expected = asyncio.run(runner.count(source, where="id > 10 AND active = 1"))
    dest = str(tmp_path / "dest.db")
    result = copy(runner, str(source), f"sqlite:{dest}#users", where="id > 10 AND active = 1", max_streams=3)
    assert expected == 20
    assert result.rows_written == expected == sqlite_count(dest)


# =============================================================================
# If-Exists
# =============================================================================

def test_if_exists_error_leaves_destination_untouched(runner, users_db, tmp_path):
    dest = create_sqlite(str(tmp_path / "dest.db"), rows=users_rows(3))
    with pytest.raises(errors.SchemaConflictError):
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users")
    assert sqlite_count(dest) == 3


def test_if_exists_error_accepts_existing_empty_table(runner, users_db, tmp_path):
    dest = create_sqlite(str(tmp_path / "dest.db"))
    result = copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", max_streams=2)
    assert result.state == CopyState.COMPLETED
    assert sqlite_rows(dest) == sqlite_rows(users_db)


def test_overwrite_replaces_rows(runner, users_db, tmp_path):
    dest = create_sqlite(str(tmp_path / "dest.db"), rows=users_rows(3))
    copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", if_exists=IfExists(IfExistsMode.OVERWRITE))
    assert sqlite_count(dest) == 50


def test_append_adds_rows(runner, tmp_path):
    source = create_sqlite(str(tmp_path / "source.db"), rows=[r for r in users_rows(20) if r[0] > 10])
    dest = create_sqlite(str(tmp_path / "dest.db"), rows=users_rows(10))
    copy(runner, f"sqlite:{source}#users", f"sqlite:{dest}#users", if_exists=IfExists(IfExistsMode.APPEND))
    assert sqlite_rows(dest) == users_rows(20)


def test_append_rejects_incompatible_table(runner, users_db, tmp_path):
    dest = create_sqlite(str(tmp_path / "dest.db"), ddl="CREATE TABLE users (id INTEGER, other TEXT NOT NULL)")
    with pytest.raises(errors.SchemaConflictError):
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", if_exists=IfExists(IfExistsMode.APPEND))
    assert sqlite_count(dest) == 0


def test_upsert_is_idempotent(runner, users_db, tmp_path):
    dest = str(tmp_path / "dest.db")
    upsert = IfExists(IfExistsMode.UPSERT, 'id')
    copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", if_exists=upsert, max_streams=4)
    first = sqlite_rows(dest)
    copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", if_exists=upsert, max_streams=4)
    assert sqlite_rows(dest) == first
    assert len(first) == 50


def test_upsert_updates_and_inserts(runner, tmp_path):
    dest = create_sqlite(str(tmp_path / "dest.db"), rows=users_rows(5))
    changed = [(i, f"Renamed {i}", None, 0.0, 0) for i in (4, 5, 6)]
    source = create_sqlite(str(tmp_path / "source.db"), rows=changed)
    copy(runner, f"sqlite:{source}#users", f"sqlite:{dest}#users", if_exists=IfExists(IfExistsMode.UPSERT, 'id'))
    rows = sqlite_rows(dest)
    assert [r[0] for r in rows] == [1, 2, 3, 4, 5, 6]
    assert rows[3][1] == "Renamed 4" and rows[5][1] == "Renamed 6"
    assert rows[0] == users_rows(1)[0]


def test_upsert_key_must_be_a_source_column(runner, users_db, tmp_path):
    with pytest.raises(errors.SchemaConflictError):
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{tmp_path}/dest.db#users",
             if_exists=IfExists(IfExistsMode.UPSERT, 'nope'))


# =============================================================================
# CSV
# =============================================================================

def test_csv_directory_round_trip(runner, users_db, tmp_path):
    out_dir = tmp_path / "export"
    result = copy(runner, f"sqlite:{users_db}#users", f"csv:{out_dir}/", max_streams=4)
    assert len(result.written_locators) == 4
    assert sorted(os.listdir(out_dir)) == [f"part-{i:05d}.csv" for i in range(4)]

    counted = asyncio.run(runner.count(parse_locator(f"csv:{out_dir}/")))
    assert counted == 50

    dest = str(tmp_path / "restored.db")
    copy(runner, f"csv:{out_dir}/", f"sqlite:{dest}#users", schema=parse_locator(f"sqlite:{users_db}#users"))
    assert sqlite_rows(dest) == sqlite_rows(users_db)


def test_csv_file_has_header(runner, users_db, tmp_path):
    out = tmp_path / "users.csv"
    copy(runner, f"sqlite:{users_db}#users", f"csv:{out}", max_streams=4)
    lines = out.read_text().splitlines()
    assert lines[0] == "id,name,email,score,active"
    assert "1,User 1,user1@example.com,1.5,true" in lines
    assert "7,User 7,,10.5,true" in lines
    assert len(lines) == 51


def test_csv_file_with_only_a_header_takes_rows(runner, users_db, tmp_path):
    out = tmp_path / "users.csv"
    out.write_text("id,name,email,score,active\n")
    copy(runner, f"sqlite:{users_db}#users", f"csv:{out}")
    lines = out.read_text().splitlines()
    assert lines.count("id,name,email,score,active") == 1
    assert len(lines) == 51


def test_csv_file_with_rows_conflicts(runner, users_db, tmp_path):
    out = tmp_path / "users.csv"
    out.write_text("id,name,email,score,active\n1,x,,1.0,true\n")
    with pytest.raises(errors.SchemaConflictError):
        copy(runner, f"sqlite:{users_db}#users", f"csv:{out}")
    assert len(out.read_text().splitlines()) == 2


def test_csv_rejects_upsert_before_any_io(runner, users_db, tmp_path):
    out = tmp_path / "users.csv"
    with pytest.raises(errors.CapabilityError):
        copy(runner, f"sqlite:{users_db}#users", f"csv:{out}", if_exists=IfExists(IfExistsMode.UPSERT, 'id'))
    assert not out.exists()


# =============================================================================
# Fail-fast capability checks
# =============================================================================

def test_schema_only_source_is_rejected_before_allocation(runner, tmp_path):
    dest = tmp_path / "dest.db"
    with patch('dbtransit.core.copy_runner.TemporaryStorage') as storage:
        with pytest.raises(errors.CapabilityError):
            copy(runner, "postgres-sql:users.sql", f"sqlite:{dest}#users")
    storage.assert_not_called()
    assert not dest.exists()


def test_staging_destination_needs_a_temporary(runner, users_db):
    with patch('dbtransit.core.copy_runner.TemporaryStorage') as storage:
        with pytest.raises(errors.CapabilityError) as exc:
            copy(runner, f"sqlite:{users_db}#users", "redshift://u@cluster:5439/dw#users")
    assert exc.value.capability == 'temporary'
    storage.assert_not_called()


def test_staging_never_is_rejected_for_redshift(runner, users_db):
    with pytest.raises(errors.CapabilityError):
        copy(runner, f"sqlite:{users_db}#users", "redshift://u@cluster:5439/dw#users",
             temporaries=(parse_locator("s3://bucket/tmp/"),), staging=StagingMode.NEVER)


def test_where_on_csv_source_is_rejected(runner, tmp_path):
    with pytest.raises(errors.CapabilityError):
        copy(runner, f"csv:{tmp_path}/in.csv", f"sqlite:{tmp_path}/d.db#t", where="id > 1")


def test_unknown_destination_argument(runner, users_db, tmp_path):
    with pytest.raises(errors.CapabilityError):
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{tmp_path}/d.db#t", to_args={'bogus': '1'})


# =============================================================================
# Staging, failures and cancellation
# =============================================================================

def test_forced_staging_through_local_scratch(runner, config, users_db, tmp_path):
    dest = str(tmp_path / "dest.db")
    result = copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users",
                  staging=StagingMode.ALWAYS, max_streams=2)
    assert result.rows_written == 50
    assert sorted(sqlite_rows(dest)) == sorted(sqlite_rows(users_db))
    assert scratch_entries(config) == []


def test_forced_staging_keeps_empty_strings_and_nulls_apart(runner, config, tmp_path):
    rows = [(1, 'a', '', 1.0, 1), (2, 'b', None, 2.0, 0), (3, '\\N', '\\x', 3.0, 1), (4, '', ' ', 4.0, 0)]
    source = create_sqlite(str(tmp_path / "source.db"), rows=rows)
    dest = str(tmp_path / "dest.db")
    copy(runner, f"sqlite:{source}#users", f"sqlite:{dest}#users", staging=StagingMode.ALWAYS, max_streams=2)
    assert sqlite_rows(dest) == rows
    assert scratch_entries(config) == []


class ScriptedSqliteDriver(SqliteDriver):
    """SQLite driver whose source streams misbehave on request"""

    def __init__(self, behaviour: str, miscount: int = 0):
        super().__init__()
        self.behaviour = behaviour
        self.miscount = miscount

    async def count(self, locator, options):
        return await super().count(locator, options) + self.miscount

    async def open_streams(self, locator, options):
        if self.behaviour == 'normal':
            return await super().open_streams(locator, options)
        width = len(options.schema.columns)
        behaviour = self.behaviour

        def make(index):
            async def batches():
                yield [tuple(str(index * 100 + n) if i == 0 else f"v{n}" for i in range(width))
                       for n in range(5)]
                if behaviour == 'fail':
                    raise RuntimeError("source connection reset")
                await asyncio.sleep(30)

            return RowStream(index, f"scripted[{index}]", batches)

        return [make(i) for i in range(options.max_streams)]


def scripted_runner(config, behaviour, miscount=0):
    registry = default_registry()
    driver = ScriptedSqliteDriver(behaviour, miscount)
    registry.register(DriverSpec('sqlite', lambda credentials: driver, DATABASE_ROLES,
                                 supports_where=True, advisory_count=True))
    return CopyRunner(registry, config)


def test_stream_failure_releases_temporaries(config, users_db, tmp_path):
    runner = scripted_runner(config, 'fail')
    with pytest.raises(errors.FatalIOError) as exc:
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{tmp_path}/dest.db#users",
             staging=StagingMode.ALWAYS, max_streams=2)
    assert "source connection reset" in str(exc.value)
    assert scratch_entries(config) == []


def test_cancellation_releases_temporaries(config, users_db, tmp_path):
    runner = scripted_runner(config, 'hang')
    cancel = None

    async def scenario():
        nonlocal cancel
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel.set)
        req = request(f"sqlite:{users_db}#users", f"sqlite:{tmp_path}/dest.db#users",
                      staging=StagingMode.ALWAYS, max_streams=3)
        return await asyncio.wait_for(runner.copy(req, cancel), timeout=10)

    with pytest.raises(errors.CancelledError):
        asyncio.run(scenario())
    assert cancel.is_set()
    assert scratch_entries(config) == []


def test_count_mismatch_warns_by_default(config, users_db, tmp_path):
    runner = scripted_runner(config, 'normal', miscount=2)
    result = copy(runner, f"sqlite:{users_db}#users", f"sqlite:{tmp_path}/dest.db#users")
    assert result.state == CopyState.COMPLETED
    assert result.source_row_count == 52
    assert any("Row count mismatch" in w for w in result.warnings)


def test_count_mismatch_can_fail(config, users_db, tmp_path):
    runner = scripted_runner(config, 'normal', miscount=2)
    with pytest.raises(errors.FatalIOError):
        copy(runner, f"sqlite:{users_db}#users", f"sqlite:{tmp_path}/dest.db#users",
             count_mismatch=CountMismatchPolicy.FAIL)


def test_locked_destination_is_retried(runner, users_db, tmp_path):
    dest = str(tmp_path / "dest.db")
    calls = []
    real_write = sqlite_driver.SqliteStreamWriter._write_sync

    def flaky_write(self, rows):
        calls.append(len(rows))
        if len(calls) == 1:
            raise errors.TransientIOError("database is locked", locator=dest, stream=self.index)
        return real_write(self, rows)

    with patch.object(sqlite_driver.SqliteStreamWriter, '_write_sync', flaky_write):
        result = copy(runner, f"sqlite:{users_db}#users", f"sqlite:{dest}#users", max_streams=1)
    assert result.rows_written == 50
    assert len(calls) == 2
    assert sqlite_count(dest) == 50
