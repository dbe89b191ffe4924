# db.py

import sqlite3
from datetime import datetime, timezone
from typing import Any, List, Dict, Optional, Tuple

from config import STATE_DB_PATH
from logger import get_logger


log = get_logger("db")

# ---------- DB-API Helpers (order store; pyodbc or sqlite3) ----------
def fetchall_dict(cur) -> List[Dict[str, Any]]:
    cols = [c[0] for c in cur.description]
    out = []
    for row in cur.fetchall():
        d = dict(zip(cols, row))

        # Add lowercase aliases so callers can use "order_id" whatever the driver returns
        for k, v in list(d.items()):
            lk = str(k).lower()
            if lk not in d:
                d[lk] = v

        out.append(d)
    return out

def rquery(conn, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(sql, params)
    return fetchall_dict(cur)

def rexec(conn, sql: str, params: Tuple[Any, ...] = ()) -> int:
    cur = conn.cursor()
    cur.execute(sql, params)
    return cur.rowcount

def _table_columns(cur: sqlite3.Cursor, table: str) -> set[str]:
    cur.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}

def _ensure_column(cur: sqlite3.Cursor, table: str, column: str, col_type: str) -> None:
    cols = _table_columns(cur, table)
    if column not in cols:
        log.info(f"DB MIGRATION: adding column {table}.{column} {col_type}")
        cur.execute(f'ALTER TABLE {table} ADD COLUMN "{column}" {col_type}')


# ---------- Local State DB ----------
def state_conn(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or STATE_DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn

def init_state_db(path: Optional[str] = None) -> None:
    conn = state_conn(path)
    cur = conn.cursor()

    cur.execute("""
    CREATE TABLE IF NOT EXISTS chain_event_cursor (
        id TEXT PRIMARY KEY,
        cursor TEXT,
        last_event_at INTEGER,
        created_ts TEXT,
        updated_ts TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS sync_runs (
        run_id TEXT PRIMARY KEY,
        start_ts TEXT,
        end_ts TEXT,
        env TEXT,
        mode TEXT,
        total_count INTEGER,
        created_count INTEGER,
        updated_count INTEGER,
        duration_ms INTEGER,
        status TEXT,
        error_summary TEXT
    )
    """)

    # ---- MIGRATIONS / SAFE UPGRADES ----
    _ensure_column(cur, "sync_runs", "error_summary", "TEXT")

    conn.commit()
    conn.close()

    ensure_state_indexes(path)


def mark_run(run_id: str, start_ts: str, env: str, path: Optional[str] = None) -> None:
    conn = state_conn(path)
    conn.execute("""
    INSERT INTO sync_runs (run_id, start_ts, env, total_count, created_count, updated_count, status)
    VALUES (?, ?, ?, 0, 0, 0, 'RUNNING')
    """, (run_id, start_ts, env))
    conn.commit()
    conn.close()

def close_run(
    run_id: str,
    end_ts: str,
    mode: Optional[str],
    total: int,
    created: int,
    updated: int,
    duration_ms: int,
    status: str,
    error_summary: Optional[str] = None,
    path: Optional[str] = None,
) -> None:
    conn = state_conn(path)
    conn.execute("""
    UPDATE sync_runs
    SET end_ts=?, mode=?, total_count=?, created_count=?, updated_count=?,
        duration_ms=?, status=?, error_summary=?
    WHERE run_id=?
    """, (end_ts, mode, total, created, updated, duration_ms, status, error_summary, run_id))
    conn.commit()
    conn.close()

def recent_runs(limit: int = 20, path: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = state_conn(path)
    rows = conn.execute(
        "SELECT * FROM sync_runs ORDER BY start_ts DESC LIMIT ?", (limit,)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()

def ensure_state_indexes(path: Optional[str] = None) -> None:
    conn = state_conn(path)
    conn.executescript("""
    CREATE INDEX IF NOT EXISTS idx_sync_runs_start_ts ON sync_runs(start_ts);
    CREATE INDEX IF NOT EXISTS idx_sync_runs_status ON sync_runs(status);
    """)
    conn.commit()
    conn.close()
