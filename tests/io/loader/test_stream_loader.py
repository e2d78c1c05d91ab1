"""
End-to-end StreamLoader flows on a fake connection and an in-memory stage.

Counter expectations follow the loader's accounting rules: every submitted
row ends up processed, ignored or rejected.
"""

import threading
from datetime import datetime

import pandas as pd
import psycopg2
import pytest

from stream_loader.io.loader import (
    BatchState,
    LoadConnectionError,
    LoadDataError,
    LoaderConfigError,
    LoaderState,
    Operation,
    ResultListener,
    StreamLoader,
    StreamLoaderError,
    build_config,
)
from stream_loader.io.loader.models import Batch
from stream_loader.io.stage import MemoryStage


def _loader(connection, stage, operation=Operation.INSERT, keys=None, columns=("id", "name", "amount"),
            **options):
    options.setdefault("max_workers", 2)
    return StreamLoader.configure(
        operation, "orders", list(columns), keys,
        connection=connection, stage=stage, **options,
    )


def _assert_balanced(snapshot):
    assert snapshot.submitted == snapshot.processed + snapshot.ignored + snapshot.rejected


def _reject_marked(statement, staged):
    """INSERT fails with a data error whenever a staged record contains 'bad'."""
    if statement.startswith("INSERT INTO"):
        if b"bad" in staged:
            raise psycopg2.DataError("value too long for type character varying(3)")
        return staged.count(b"\n")
    return None


class GatedStage(MemoryStage):
    """MemoryStage whose first put waits until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()
        self.puts = []

    def put(self, name, payload):
        self.puts.append(name)
        if len(self.puts) == 1:
            self.gate.wait(5)
        super().put(name, payload)


class FlakyStage(MemoryStage):
    """MemoryStage failing the first put of every object name."""

    def __init__(self):
        super().__init__()
        self.puts = []

    def put(self, name, payload):
        self.puts.append(name)
        if self.puts.count(name) == 1:
            raise ConnectionError(f"connection reset while writing {name}")
        super().put(name, payload)


@pytest.mark.unit
class TestLifecycle:
    def test_insert_across_several_batches(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage, csv_row_count_bound=2)
        loader.start()
        for i in range(5):
            loader.submit_row((i, f"name-{i}", i * 1.5))

        snapshot = loader.finish()

        assert snapshot.submitted == 5
        assert snapshot.processed == 5
        assert snapshot.inserted == 5
        assert snapshot.updated == 5
        assert snapshot.error_count == 0
        assert len(fake_connection.copies) == 3
        assert loader.state is LoaderState.FINISHED
        assert len(loader.listener.batch_results) == 3
        # Successful staged files are removed
        assert memory_stage.list() == []
        assert fake_connection.statements("DROP TABLE IF EXISTS")
        # Injected connections stay open
        assert fake_connection.closed is False
        _assert_balanced(snapshot)

    def test_empty_load(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage)
        loader.start()

        snapshot = loader.finish()

        assert snapshot.submitted == 0
        assert fake_connection.copies == []

    def test_submit_before_start(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage)

        with pytest.raises(LoaderConfigError, match="start"):
            loader.submit_row((1, "a", 1))

    def test_start_twice(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage)
        loader.start()

        with pytest.raises(LoaderConfigError):
            loader.start()
        loader.finish()

    def test_invalid_config_raises_at_start(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage, operation=Operation.UPSERT)

        with pytest.raises(LoaderConfigError, match="key"):
            loader.start()
        assert fake_connection.executed == []

    def test_unknown_option(self, fake_connection, memory_stage):
        with pytest.raises(LoaderConfigError):
            _loader(fake_connection, memory_stage, bogus=1)

    def test_no_connection_configured(self, memory_stage, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "")
        loader = StreamLoader.configure(Operation.INSERT, "orders", ["id"], stage=memory_stage)

        with pytest.raises(LoaderConfigError, match="DATABASE_URL"):
            loader.start()

    def test_context_manager_finishes(self, fake_connection, memory_stage):
        with _loader(fake_connection, memory_stage) as loader:
            loader.submit_row((1, "a", 1))

        assert loader.state is LoaderState.FINISHED
        assert loader.listener.inserted == 1

    def test_context_manager_aborts_on_exception(self, fake_connection, memory_stage):
        with pytest.raises(RuntimeError):
            with _loader(fake_connection, memory_stage, start_transaction=True) as loader:
                loader.submit_row((1, "a", 1))
                raise RuntimeError("caller failed")

        assert loader.state is LoaderState.FINISHED
        assert fake_connection.rollbacks >= 1
        assert isinstance(loader.fatal_error, StreamLoaderError)

    def test_staged_files_preserved(self, fake_connection, memory_stage):
        config = build_config(
            table="orders", columns=["id", "name", "amount"],
            preserve_staged_file=True, compress_staged_file=True,
        )
        loader = StreamLoader(config, connection=fake_connection, stage=memory_stage, run_id="run1")
        loader.start()
        loader.submit_row((1, "a", 1))
        loader.finish()

        assert memory_stage.list() == ["run1/orders_000000.csv.gz"]

    def test_submit_dataframe(self, fake_connection, memory_stage):
        df = pd.DataFrame(
            {"amount": [1.5, float("nan")], "id": [1, 2], "name": ["a", None], "extra": [0, 0]}
        )
        loader = _loader(fake_connection, memory_stage)
        loader.start()

        assert loader.submit_dataframe(df) == 2
        loader.finish()

        assert fake_connection.copies == [b"1,a,1.5\n2,,\n"]

    def test_submit_dataframe_missing_columns(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage)
        loader.start()

        with pytest.raises(LoaderConfigError, match="missing columns"):
            loader.submit_dataframe(pd.DataFrame({"id": [1]}))
        loader.finish()


@pytest.mark.unit
class TestErrorAccounting:
    def test_upsert_with_row_errors(self, make_connection, memory_stage):
        """One bad key among three rows: a value event plus the exclusion event."""

        def handler(statement, staged):
            if statement.startswith(("UPDATE", "INSERT INTO", "SELECT count(*)")):
                return 1
            return None

        conn = make_connection(handler)
        errors_seen = []
        listener = ResultListener(on_error=errors_seen.append)
        loader = StreamLoader.configure(
            Operation.UPSERT, "orders", ["id", "name", "amount"], ["id"],
            connection=conn, stage=memory_stage, listener=listener,
        )
        loader.start()
        loader.submit_row((1, "a", 1))
        loader.submit_row(("10002-", "b", 2))
        loader.submit_row((3, "c", 3))

        snapshot = loader.finish()

        assert snapshot.processed == 3
        assert snapshot.updated == 2
        assert snapshot.error_count == 2
        assert snapshot.error_record_count == 1
        assert [e.column for e in errors_seen] == ["id", None]
        assert all(e.row_index == 1 for e in errors_seen)
        _assert_balanced(snapshot)

    def test_throw_on_error_rolls_back_everything(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage, start_transaction=True, throw_on_error=True)
        loader.start()
        loader.submit_row((10001, "ok", 1))
        loader.submit_row(("10002-", "bad", 1))

        with pytest.raises(LoadDataError) as exc_info:
            loader.finish()

        message = str(exc_info.value)
        assert "10002-" in message
        assert "not recognized" in message
        listener = loader.listener
        assert listener.submitted == 2
        assert listener.processed == 0
        assert listener.updated == 0
        assert listener.error_count == 2
        assert listener.error_record_count == 1
        assert fake_connection.copies == []
        assert fake_connection.rollbacks >= 1
        _assert_balanced(listener.snapshot())

    def test_fatal_error_raised_on_next_submit(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage, on_error="ABORT_STATEMENT",
                         csv_row_count_bound=1, max_workers=1)
        loader.start()
        loader.submit_row(("bad-id", "x", 1))
        loader._scheduler.drain()

        with pytest.raises(LoadDataError):
            loader.submit_row((2, "b", 2))
        with pytest.raises(LoadDataError):
            loader.finish()

    def test_skip_file_is_not_fatal(self, fake_connection, memory_stage):
        loader = _loader(fake_connection, memory_stage, on_error="SKIP_FILE", csv_row_count_bound=2)
        loader.start()
        loader.submit_row((1, "a", 1))
        loader.submit_row(("bad", "b", 2))
        loader.submit_row((3, "c", 3))

        snapshot = loader.finish()

        assert snapshot.rejected == 2
        assert snapshot.processed == 1
        assert snapshot.error_count == 2
        assert snapshot.error_record_count == 1
        _assert_balanced(snapshot)

    def test_modify_one_match_one_miss(self, make_connection, memory_stage):
        conn = make_connection(lambda s, staged: 1 if s.startswith(("UPDATE", "SELECT count(*)")) else None)
        loader = _loader(conn, memory_stage, operation=Operation.MODIFY, keys=["id"])
        loader.start()
        loader.submit_row((1, "a", 10))
        loader.submit_row((999, "missing", 0))

        snapshot = loader.finish()

        assert snapshot.processed == 1
        assert snapshot.updated == 1
        assert snapshot.ignored == 1
        _assert_balanced(snapshot)

    def test_delete(self, make_connection, memory_stage):
        conn = make_connection(lambda s, staged: 1 if s.startswith(("DELETE", "SELECT count(*)")) else None)
        loader = _loader(conn, memory_stage, operation=Operation.DELETE, keys=["id"], columns=["id"])
        loader.start()
        loader.submit_row((1,))

        snapshot = loader.finish()

        assert snapshot.processed == 1
        assert snapshot.deleted == 1
        assert snapshot.error_count == 0

    def test_non_unique_delete_key(self, make_connection, memory_stage):
        """One staged key removes three target rows, the other removes none."""

        def handler(statement, staged):
            if statement.startswith("DELETE"):
                return 3
            if statement.startswith("SELECT count(*)"):
                return 1
            return None

        loader = _loader(make_connection(handler), memory_stage, operation=Operation.DELETE,
                         keys=["name"], columns=["name"])
        loader.start()
        loader.submit_row(("dup",))
        loader.submit_row(("nomatch",))

        snapshot = loader.finish()

        assert snapshot.deleted == 3
        assert snapshot.processed == 1
        assert snapshot.ignored == 1
        _assert_balanced(snapshot)

    def test_out_of_range_epoch_is_a_row_error(self, make_connection, memory_stage):
        conn = make_connection(columns=[("id", "integer"), ("created_at", "timestamp without time zone")])
        loader = StreamLoader.configure(
            Operation.INSERT, "events", ["id", "created_at"], connection=conn, stage=memory_stage
        )
        loader.start()
        loader.submit_row((1, 1_700_000_000_000_000))
        loader.submit_row((2, 0))

        snapshot = loader.finish()

        assert conn.copies == [b"2,1970-01-01 00:00:00.000000\n"]
        assert snapshot.error_count == 2
        assert snapshot.error_record_count == 1
        assert loader.listener.errors[0].column == "created_at"
        _assert_balanced(snapshot)


@pytest.mark.unit
class TestInfrastructureFailures:
    def test_execute_before_failure_surfaces_at_finish(self, make_connection, memory_stage):
        def handler(statement, staged):
            if statement == "CALL missing_proc()":
                raise psycopg2.ProgrammingError("procedure missing_proc() does not exist")
            return None

        loader = _loader(make_connection(handler), memory_stage, execute_before="CALL missing_proc()")
        loader.start()

        with pytest.raises(LoadConnectionError) as exc_info:
            loader.submit_row((1, "a", 1))
        assert isinstance(exc_info.value.cause, psycopg2.ProgrammingError)

        with pytest.raises(LoadConnectionError):
            loader.finish()

    def test_execute_after_failure(self, make_connection, memory_stage):
        def handler(statement, staged):
            if statement == "CALL after_proc()":
                raise psycopg2.ProgrammingError("procedure after_proc() does not exist")
            if statement.startswith("INSERT INTO"):
                return staged.count(b"\n")
            return None

        conn = make_connection(handler)
        loader = _loader(conn, memory_stage, start_transaction=True, execute_after="CALL after_proc()")
        loader.start()
        loader.submit_row((1, "a", 1))

        with pytest.raises(LoadConnectionError, match="execute_after") as exc_info:
            loader.finish()

        assert isinstance(exc_info.value.cause, psycopg2.ProgrammingError)
        assert conn.rollbacks >= 1

    def test_missing_target_table(self, make_connection, memory_stage):
        loader = _loader(make_connection(columns=[]), memory_stage)
        loader.start()

        with pytest.raises(LoadConnectionError, match="does not exist"):
            loader.finish()

    def test_upload_failure_is_fatal(self, fake_connection, monkeypatch):
        class BrokenStage:
            def put(self, name, payload):
                raise ConnectionError("stage unreachable")

            def get(self, name):
                raise FileNotFoundError(name)

            def remove(self, name):
                pass

            def exists(self, name):
                return False

        monkeypatch.setenv("LOADER_UPLOAD_RETRY_MAX", "2")
        monkeypatch.setenv("LOADER_UPLOAD_BACKOFF_MS", "0")
        from stream_loader.config import get_settings

        get_settings.cache_clear()
        loader = _loader(fake_connection, BrokenStage())
        loader.start()
        loader.submit_row((1, "a", 1))

        with pytest.raises(LoadConnectionError, match="after 2 attempts"):
            loader.finish()

        assert loader.listener.rejected == 1
        assert fake_connection.copies == []


@pytest.mark.unit
def test_timestamp_rendering_uses_described_kinds(make_connection, memory_stage):
    conn = make_connection(columns=[("id", "integer"), ("created_at", "timestamp without time zone")])
    loader = StreamLoader.configure(
        Operation.INSERT, "events", ["id", "created_at"], connection=conn, stage=memory_stage
    )
    loader.start()
    loader.submit_row((1, datetime(2024, 1, 2, 3, 4, 5)))
    loader.finish()

    assert conn.copies == [b"1,2024-01-02 03:04:05.000000\n"]


@pytest.mark.unit
class TestConcurrentBatches:
    def test_submit_blocks_while_pending_batches_are_full(self, fake_connection):
        stage = GatedStage()
        loader = _loader(fake_connection, stage, max_workers=1, max_pending_batches=1,
                         csv_row_count_bound=1)
        loader.start()
        loader.submit_row((1, "a", 1))

        second = threading.Thread(target=loader.submit_row, args=((2, "b", 2),))
        second.start()
        second.join(timeout=0.2)
        assert second.is_alive()
        assert fake_connection.copies == []

        stage.gate.set()
        second.join(timeout=5)
        assert not second.is_alive()
        snapshot = loader.finish()

        assert snapshot.inserted == 2
        assert len(fake_connection.copies) == 2
        _assert_balanced(snapshot)

    def test_fatal_error_cancels_queued_batches(self, make_connection):
        conn = make_connection(_reject_marked)
        stage = GatedStage()
        loader = _loader(conn, stage, on_error="ABORT_STATEMENT", max_workers=1,
                         max_pending_batches=4, csv_row_count_bound=1)
        loader.start()
        loader.submit_row((1, "bad", 1))
        loader.submit_row((2, "ok", 2))
        stage.gate.set()

        with pytest.raises(LoadDataError):
            loader.finish()

        # The queued batch never reaches the database
        assert conn.copies == [b"1,bad,1\n"]
        listener = loader.listener
        assert listener.submitted == 2
        assert listener.rejected == 2
        assert listener.processed == 0
        assert [r.state for r in listener.batch_results] == [BatchState.FAILED, BatchState.FAILED]
        _assert_balanced(listener.snapshot())

    def test_upload_retry_loads_each_batch_once(self, fake_connection):
        stage = FlakyStage()
        loader = _loader(fake_connection, stage, csv_row_count_bound=1, upload_backoff_ms=0)
        loader.start()
        for i in range(3):
            loader.submit_row((i, f"n{i}", i))

        snapshot = loader.finish()

        assert len(stage.puts) == 6
        assert len(set(stage.puts)) == 3
        assert sorted(fake_connection.copies) == [b"0,n0,0\n", b"1,n1,1\n", b"2,n2,2\n"]
        assert snapshot.inserted == 3
        assert stage.list() == []
        _assert_balanced(snapshot)

    def test_batch_passes_through_every_state(self, make_connection):
        batch = Batch(seq=0, first_row_index=0, rows=[(1, "a", 1)])
        seen = []

        class ObservingStage(MemoryStage):
            def put(self, name, payload):
                seen.append(batch.state)
                super().put(name, payload)

        def handler(statement, staged):
            if statement.startswith("INSERT INTO"):
                seen.append(batch.state)
                return 1
            return None

        loader = _loader(make_connection(handler), ObservingStage())
        loader.start()
        loader._process_batch(batch)

        assert seen == [BatchState.UPLOADING, BatchState.EXECUTING]
        assert batch.state is BatchState.SUCCEEDED
        assert loader.listener.batch_results[0].state is BatchState.SUCCEEDED
        loader.finish()
