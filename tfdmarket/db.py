from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .records import ModuleRecord, derive_fields

DEFAULT_DB_PATH = Path("data") / "tfdmarket.db"
ENV_DB_PATH = "TFDMARKET_DB_PATH"


def resolve_db_path(db_path: Path | str | None = None) -> Path:
    if db_path:
        return Path(db_path)
    return Path(os.environ.get(ENV_DB_PATH) or DEFAULT_DB_PATH)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_connection(db_path: Path | str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    path = Path(db_path)
    _ensure_parent(path)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def db_session(db_path: Path | str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    conn = get_connection(db_path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS search_runs (
            run_id INTEGER PRIMARY KEY AUTOINCREMENT,
            module_type TEXT NOT NULL,
            module_name TEXT NOT NULL DEFAULT '',
            platform TEXT NOT NULL DEFAULT '',
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP,
            status TEXT NOT NULL DEFAULT 'done',
            error TEXT,
            item_count INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS search_records (
            run_id INTEGER NOT NULL,
            position INTEGER NOT NULL,
            identity TEXT NOT NULL,
            name TEXT,
            category TEXT,
            price TEXT,
            seller_name TEXT,
            seller_status TEXT,
            platform TEXT,
            record_json TEXT NOT NULL,
            PRIMARY KEY (run_id, position),
            FOREIGN KEY (run_id) REFERENCES search_runs (run_id) ON DELETE CASCADE
        );
        """
    )
    _ensure_column(conn, "search_runs", "error", "TEXT")


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


class SqliteKeyValueStore:
    """Durable string key-value storage, one row per key.

    Each call opens its own short session so the store can be shared between
    the CLI and the Streamlit app without holding a connection open.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = resolve_db_path(db_path)
        with db_session(self.db_path) as conn:
            initialize_schema(conn)

    def get(self, key: str) -> Optional[str]:
        with db_session(self.db_path) as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        now = datetime.utcnow().isoformat(timespec="seconds")
        with db_session(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now),
            )

    def delete(self, key: str) -> None:
        with db_session(self.db_path) as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))


@dataclass
class SearchRun:
    run_id: int
    module_type: str
    module_name: str
    platform: str
    started_at: str
    finished_at: Optional[str]
    status: str
    error: Optional[str]
    item_count: int


def save_search_run(
    conn: sqlite3.Connection,
    *,
    module_type: str,
    module_name: str,
    platform: str,
    records: Iterable[ModuleRecord],
    started_at: datetime,
    finished_at: Optional[datetime] = None,
    status: str = "done",
    error: Optional[str] = None,
) -> int:
    records = list(records)
    cursor = conn.execute(
        """
        INSERT INTO search_runs (
            module_type, module_name, platform, started_at, finished_at, status, error, item_count
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            module_type,
            module_name or "",
            platform or "",
            started_at.isoformat(timespec="seconds"),
            finished_at.isoformat(timespec="seconds") if finished_at else None,
            status,
            error,
            len(records),
        ),
    )
    run_id = int(cursor.lastrowid)
    conn.executemany(
        """
        INSERT INTO search_records (
            run_id, position, identity, name, category, price,
            seller_name, seller_status, platform, record_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            (
                run_id,
                position,
                record.identity,
                record.name,
                record.category,
                record.price,
                record.seller_name,
                record.seller_status,
                record.platform,
                json.dumps(record.to_dict(), ensure_ascii=False),
            )
            for position, record in enumerate(records)
        ),
    )
    return run_id


def list_search_runs(conn: sqlite3.Connection, limit: Optional[int] = None) -> List[SearchRun]:
    query = "SELECT * FROM search_runs ORDER BY run_id DESC"
    params: List[object] = []
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return [SearchRun(**dict(row)) for row in conn.execute(query, params).fetchall()]


def load_records(conn: sqlite3.Connection, run_id: int) -> List[ModuleRecord]:
    rows = conn.execute(
        "SELECT record_json FROM search_records WHERE run_id = ? ORDER BY position",
        (run_id,),
    ).fetchall()
    return [derive_fields(ModuleRecord.from_dict(json.loads(row["record_json"]))) for row in rows]


def delete_search_run(conn: sqlite3.Connection, run_id: int) -> None:
    conn.execute("DELETE FROM search_runs WHERE run_id = ?", (run_id,))


def load_records_dataframe(db_path: Path | str = DEFAULT_DB_PATH, run_id: Optional[int] = None):
    import pandas as pd

    with db_session(db_path) as conn:
        initialize_schema(conn)
        query = """
            SELECT r.run_id, r.started_at, r.module_type, r.module_name AS search_term,
                   s.position, s.record_json
            FROM search_records s
            JOIN search_runs r ON r.run_id = s.run_id
        """
        params: List[object] = []
        if run_id is not None:
            query += " WHERE s.run_id = ?"
            params.append(run_id)
        query += " ORDER BY s.run_id, s.position"
        frame = pd.read_sql_query(query, conn, params=params)
    if frame.empty:
        return frame
    records = [derive_fields(ModuleRecord.from_dict(json.loads(raw))) for raw in frame["record_json"]]
    details = pd.DataFrame(
        [
            {
                "name": rec.name,
                "category": rec.category,
                "price": rec.price,
                "seller_name": rec.seller_name,
                "seller_status": rec.seller_status,
                "platform": rec.platform,
                "socket_type": rec.socket_type,
                "mr_value": rec.mr_value,
                "reroll_value": rec.reroll_value,
                "age_days": rec.age_days,
                "age_hours": rec.age_hours,
                "attributes": ", ".join(rec.attributes),
            }
            for rec in records
        ]
    )
    return pd.concat([frame.drop(columns=["record_json"]), details], axis=1)
