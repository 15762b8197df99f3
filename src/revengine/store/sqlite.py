from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from revengine.store.migrations import apply_schema

DEFAULT_TIMEOUT_SECONDS = 5.0

SCORE_COLUMNS = (
    "constituent_id",
    "as_of_date",
    "renewal_risk",
    "ask_readiness",
    "ticket_propensity",
    "corporate_propensity",
    "capacity_estimate",
    "last_touch_at",
    "days_since_touch",
    "created_at",
    "updated_at",
)


class SqliteSession:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        """Run a statement and return the number of rows it changed."""
        cur = self._conn.execute(query, params or [])
        return cur.rowcount

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        cur = self._conn.execute(query, params or [])
        return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        cur = self._conn.execute(query, params or [])
        return cur.fetchone()

    def upsert_scores(self, rows: Sequence[dict[str, Any]]) -> None:
        # One row per (constituent_id, as_of_date); created_at survives a rescore.
        placeholders = ", ".join("?" for _ in SCORE_COLUMNS)
        updates = ", ".join(
            f"{col}=excluded.{col}"
            for col in SCORE_COLUMNS
            if col not in ("constituent_id", "as_of_date", "created_at")
        )
        query = (
            f"INSERT INTO scores ({', '.join(SCORE_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(constituent_id, as_of_date) DO UPDATE SET {updates}"
        )
        self._conn.executemany(query, [[row[col] for col in SCORE_COLUMNS] for row in rows])


class SqliteStore:
    def __init__(self, db_path: Path, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout

    @contextmanager
    def connect(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def session(self) -> SqliteSession:
        with self.connect() as conn:
            yield SqliteSession(conn)

    def apply_schema(self, schema_path: Path) -> None:
        with self.connect() as conn:
            apply_schema(conn, schema_path)

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        with self.session() as session:
            return session.execute(query, params)

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        with self.connect() as conn:
            cur = conn.execute(query, params or [])
            return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        with self.connect() as conn:
            cur = conn.execute(query, params or [])
            return cur.fetchone()

    def upsert_scores(self, rows: Sequence[dict[str, Any]]) -> None:
        with self.session() as session:
            session.upsert_scores(rows)
