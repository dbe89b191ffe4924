import db
from chain.sync_cursor import SyncCursorStore
from models import EventCursor


def test_missing_cursor_means_bootstrap(tmp_path):
    store = SyncCursorStore(str(tmp_path / "state.db"))
    assert store.get("chain-orders") is None


def test_update_is_an_upsert(tmp_path):
    path = str(tmp_path / "state.db")
    store = SyncCursorStore(path)

    store.update("chain-orders", EventCursor("d1", "0"), 100)
    store.update("chain-orders", EventCursor("d2", "4"), 200)

    state = store.get("chain-orders")
    assert state.cursor == EventCursor("d2", "4")
    assert state.last_event_at == 200

    conn = db.state_conn(path)
    rows = conn.execute("SELECT COUNT(*) FROM chain_event_cursor").fetchone()[0]
    conn.close()
    assert rows == 1


def test_streams_are_independent(tmp_path):
    store = SyncCursorStore(str(tmp_path / "state.db"))
    store.update("a", EventCursor("d1", "0"))
    assert store.get("b") is None
    assert store.get("a").last_event_at is None


def test_corrupt_cursor_reads_as_empty(tmp_path):
    path = str(tmp_path / "state.db")
    store = SyncCursorStore(path)
    conn = db.state_conn(path)
    conn.execute("INSERT INTO chain_event_cursor (id, cursor) VALUES ('chain-orders', '{not json')")
    conn.commit()
    conn.close()
    assert store.get("chain-orders").cursor is None


def test_sync_run_ledger(tmp_path):
    path = str(tmp_path / "state.db")
    db.init_state_db(path)
    db.mark_run("r1", "2026-01-01T00:00:00+00:00", "TEST", path=path)
    db.close_run("r1", "2026-01-01T00:00:01+00:00", "bootstrap", 3, 2, 1, 1000, "COMPLETE", path=path)

    runs = db.recent_runs(path=path)
    assert len(runs) == 1
    assert runs[0]["status"] == "COMPLETE"
    assert runs[0]["created_count"] == 2
    assert runs[0]["mode"] == "bootstrap"
