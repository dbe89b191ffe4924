# chain_sync/chain/sync_cursor.py

import json
from typing import Optional

from db import state_conn, init_state_db, utc_now
from logger import get_logger
from models import EventCursor, SyncCursor

log = get_logger("sync_cursor")

DEFAULT_STREAM_ID = "chain-orders"


class SyncCursorStore:
    """
    One row per event stream in the local state DB. No row means the next
    sync bootstraps. The store never compares cursors; callers only write
    when the cursor moved.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        init_state_db(path)

    def get(self, stream_id: str = DEFAULT_STREAM_ID) -> Optional[SyncCursor]:
        conn = state_conn(self.path)
        row = conn.execute(
            "SELECT id, cursor, last_event_at, updated_ts FROM chain_event_cursor WHERE id=?",
            (stream_id,),
        ).fetchone()
        conn.close()
        if not row:
            return None

        cursor = None
        if row["cursor"]:
            try:
                cursor = EventCursor.from_rpc(json.loads(row["cursor"]))
            except ValueError:
                log.warning(f"Stored cursor for {stream_id} is not valid JSON; treating as empty")
        return SyncCursor(
            id=row["id"],
            cursor=cursor,
            last_event_at=row["last_event_at"],
            updated_at=row["updated_ts"],
        )

    def update(
        self,
        stream_id: str,
        cursor: EventCursor,
        last_event_at: Optional[int] = None,
    ) -> None:
        now = utc_now()
        conn = state_conn(self.path)
        conn.execute("""
        INSERT INTO chain_event_cursor (id, cursor, last_event_at, created_ts, updated_ts)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            cursor=excluded.cursor,
            last_event_at=excluded.last_event_at,
            updated_ts=excluded.updated_ts
        """, (stream_id, json.dumps(cursor.to_rpc()), last_event_at, now, now))
        conn.commit()
        conn.close()
        log.info(f"Cursor {stream_id} -> {cursor.tx_digest}:{cursor.event_seq} (last_event_at={last_event_at})")
