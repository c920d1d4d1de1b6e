import logging
import random
import re
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import duckdb
import pandas as pd

try:
    from ..tabulation.errors import DataError
    from ..tabulation.stv import RoundMeta, RoundRecord, STVResult
    from ..tabulation.transfers import TransferEdge
    from .ballots import VoteRow, rows_from_frame
except ImportError:
    from data.ballots import VoteRow, rows_from_frame
    from tabulation.errors import DataError
    from tabulation.stv import RoundMeta, RoundRecord, STVResult
    from tabulation.transfers import TransferEdge

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

RESULT_TABLES = {
    "stv_rounds": """
        CREATE OR REPLACE TABLE stv_rounds (
            round INTEGER,
            candidate_name VARCHAR,
            votes DOUBLE,
            status VARCHAR
        )
    """,
    "stv_meta": """
        CREATE OR REPLACE TABLE stv_meta (
            round INTEGER,
            quota DOUBLE,
            exhausted DOUBLE,
            elected_this_round VARCHAR[],
            eliminated_this_round VARCHAR[]
        )
    """,
    "transfer_matrix": """
        CREATE OR REPLACE TABLE transfer_matrix (
            round INTEGER,
            from_candidate_name VARCHAR,
            to_candidate_name VARCHAR,
            vote_count DOUBLE,
            transfer_reason VARCHAR,
            transfer_weight DOUBLE
        )
    """,
}


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.fullmatch(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


class TabulationDatabase:
    """
    DuckDB storage for vote rows and STV count results.
    Sits outside the counting core: it only moves rows in and out.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        read_only: bool = False,
        max_retries: int = 3,
    ):
        """
        Initialize database connection manager.

        Args:
            db_path: Path to DuckDB file. If None, uses in-memory database.
            read_only: Open an existing file read-only (avoids write locks)
            max_retries: Connection attempts while the file is locked
        """
        self.db_path = db_path or ":memory:"
        self.read_only = read_only
        self.max_retries = max_retries
        self._conn = None  # Will be created on-demand

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create a database connection on-demand."""
        if self._conn is None:
            self._conn = self._connect()
        return self._conn

    def _connect(self) -> duckdb.DuckDBPyConnection:
        read_only = self.read_only and self.db_path != ":memory:"
        read_only = read_only and Path(self.db_path).exists()
        for attempt in range(self.max_retries):
            try:
                conn = duckdb.connect(self.db_path, read_only=read_only)
                logger.debug(
                    f"Opened {'read-only' if read_only else 'read-write'} "
                    f"connection to {self.db_path}"
                )
                return conn
            except duckdb.IOException as e:
                if "lock" in str(e).lower() and attempt < self.max_retries - 1:
                    # Exponential backoff with jitter
                    wait_time = (2**attempt) + random.uniform(0, 1)  # nosec B311
                    logger.warning(
                        f"Database locked, retrying in {wait_time:.2f}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(wait_time)
                    continue
                logger.error(
                    f"Failed to connect to database after {attempt + 1} attempts: {e}"
                )
                raise

        raise duckdb.IOException(
            f"Could not establish database connection after {self.max_retries} attempts"
        )

    def query(self, sql: str) -> pd.DataFrame:
        """Execute a SQL query and return results as DataFrame."""
        return self.conn.execute(sql).fetchdf()

    def table_exists(self, table_name: str) -> bool:
        result = self.conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
            [table_name],
        ).fetchone()
        return result[0] > 0

    def load_vote_rows(self, table: str = "ballots_long") -> List[VoteRow]:
        """
        Load vote rows from a ``ballots_long`` style table.

        Rows are returned ordered by ballot, rank position and candidate, so
        a duplicated rank resolves the same way on every run.

        Args:
            table: Table holding BallotID/ballot_id, candidate_name,
                rank_position and optionally has_vote

        Returns:
            List of VoteRow
        """
        table = _check_identifier(table)
        if not self.table_exists(table):
            raise DataError(f"Required table '{table}' not found")

        df = self.query(f"SELECT * FROM {table}")
        ballot_column = "ballot_id" if "ballot_id" in df.columns else "BallotID"
        if ballot_column in df.columns:
            df = df.sort_values(
                [ballot_column, "rank_position", "candidate_name"], kind="mergesort"
            )

        rows = rows_from_frame(df)
        logger.info(f"Loaded {len(rows)} vote rows from {table}")
        return rows

    def store_results(
        self, result: STVResult, edges: Optional[Sequence[TransferEdge]] = None
    ):
        """
        Write round records, round metadata and optionally transfer edges,
        replacing any earlier results.
        """
        self.conn.execute(RESULT_TABLES["stv_rounds"])
        self.conn.execute(RESULT_TABLES["stv_meta"])

        self._insert(
            "stv_rounds",
            [(r.round, r.candidate_name, r.votes, r.status) for r in result.rounds],
        )
        self._insert(
            "stv_meta",
            [
                (
                    m.round,
                    m.quota,
                    m.exhausted,
                    m.elected_this_round,
                    m.eliminated_this_round,
                )
                for m in result.meta
            ],
        )

        if edges is not None:
            self.conn.execute(RESULT_TABLES["transfer_matrix"])
            self._insert(
                "transfer_matrix",
                [
                    (
                        e.round,
                        e.from_candidate_name,
                        e.to_candidate_name,
                        e.vote_count,
                        e.transfer_reason,
                        e.transfer_weight,
                    )
                    for e in edges
                ],
            )

        logger.info(
            f"Stored {len(result.rounds)} round records and {len(result.meta)} "
            f"round metadata rows"
        )

    def _insert(self, table: str, rows: List[tuple]):
        if not rows:
            return
        placeholders = ", ".join("?" for _ in rows[0])
        self.conn.executemany(f"INSERT INTO {table} VALUES ({placeholders})", rows)

    def load_results(self) -> Tuple[List[RoundRecord], List[RoundMeta]]:
        """
        Read stored round records and metadata back.

        Returns:
            (round records, round metadata) in round order
        """
        for table in ("stv_rounds", "stv_meta"):
            if not self.table_exists(table):
                raise DataError(f"Required table '{table}' not found")

        rounds = [
            RoundRecord(
                round=int(round_num),
                candidate_name=candidate_name,
                votes=float(votes),
                status=status,
            )
            for round_num, candidate_name, votes, status in self.conn.execute(
                "SELECT round, candidate_name, votes, status FROM stv_rounds "
                "ORDER BY round, candidate_name"
            ).fetchall()
        ]
        meta = [
            RoundMeta(
                round=int(round_num),
                quota=float(quota),
                exhausted=float(exhausted),
                elected_this_round=list(elected) if elected is not None else None,
                eliminated_this_round=(
                    list(eliminated) if eliminated is not None else None
                ),
            )
            for round_num, quota, exhausted, elected, eliminated in self.conn.execute(
                "SELECT round, quota, exhausted, elected_this_round, "
                "eliminated_this_round FROM stv_meta ORDER BY round"
            ).fetchall()
        ]
        return rounds, meta

    def close(self):
        """Close database connection."""
        if self._conn:
            try:
                self._conn.close()
                logger.debug(f"Closed database connection to {self.db_path}")
            finally:
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
