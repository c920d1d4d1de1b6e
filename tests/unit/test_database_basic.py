"""
Basic database functionality unit tests.

These tests verify core database operations without requiring
external data files or complex setups.
"""

import duckdb
import pandas as pd
import pytest

from data.database import RESULT_TABLES, TabulationDatabase


@pytest.mark.unit
def test_database_creation(temp_db):
    """Test that database can be created and closed."""
    assert temp_db is not None
    assert temp_db.db_path == ":memory:"
    assert temp_db.conn is not None


@pytest.mark.unit
def test_default_path_is_in_memory():
    db = TabulationDatabase()
    try:
        assert db.db_path == ":memory:"
        assert db.query("SELECT 42 AS answer").iloc[0]["answer"] == 42
    finally:
        db.close()


@pytest.mark.unit
def test_basic_query(temp_db):
    """Test basic SQL query execution."""
    result = temp_db.query("SELECT 1 as test_value")
    assert isinstance(result, pd.DataFrame)
    assert len(result) == 1
    assert result.iloc[0]["test_value"] == 1


@pytest.mark.unit
def test_table_exists(temp_db):
    """Test table lookup before and after creation."""
    assert not temp_db.table_exists("ballots_long")

    temp_db.conn.execute(
        """
        CREATE TABLE ballots_long (
            BallotID TEXT,
            candidate_name TEXT,
            rank_position INTEGER
        )
    """
    )

    assert temp_db.table_exists("ballots_long")


@pytest.mark.unit
def test_result_table_schemas(temp_db):
    """Test that result tables can be created with the published columns."""
    for ddl in RESULT_TABLES.values():
        temp_db.conn.execute(ddl)

    columns = temp_db.query(
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_name = 'transfer_matrix' ORDER BY ordinal_position"
    )
    assert list(columns["column_name"]) == [
        "round",
        "from_candidate_name",
        "to_candidate_name",
        "vote_count",
        "transfer_reason",
        "transfer_weight",
    ]


@pytest.mark.unit
def test_close_is_idempotent():
    db = TabulationDatabase(":memory:")
    db.query("SELECT 1")

    db.close()
    db.close()

    assert db._conn is None


@pytest.mark.unit
def test_context_manager_closes_connection():
    with TabulationDatabase(":memory:") as db:
        db.query("SELECT 1")
        assert db._conn is not None

    assert db._conn is None


@pytest.mark.unit
def test_lock_retry(monkeypatch):
    """A locked database file is retried with backoff before giving up."""
    attempts = []
    real_connect = duckdb.connect

    def flaky_connect(path, read_only=False):
        attempts.append(path)
        if len(attempts) < 3:
            raise duckdb.IOException("Could not set lock on file")
        return real_connect(":memory:")

    monkeypatch.setattr(duckdb, "connect", flaky_connect)
    monkeypatch.setattr("data.database.time.sleep", lambda seconds: None)

    db = TabulationDatabase("locked.db", max_retries=3)
    try:
        assert db.conn is not None
        assert len(attempts) == 3
    finally:
        db.close()


@pytest.mark.unit
def test_lock_retry_gives_up(monkeypatch):
    def locked_connect(path, read_only=False):
        raise duckdb.IOException("Could not set lock on file")

    monkeypatch.setattr(duckdb, "connect", locked_connect)
    monkeypatch.setattr("data.database.time.sleep", lambda seconds: None)

    db = TabulationDatabase("locked.db", max_retries=2)
    with pytest.raises(duckdb.IOException):
        db.conn
