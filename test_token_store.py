from unittest.mock import patch

from execution.token_store import InMemoryResumeTokenStore, SQLiteResumeTokenStore


def test_in_memory_store_put_get_delete() -> None:
    store = InMemoryResumeTokenStore()
    store.put("rt-1", {"node_id": "wait"}, ttl_seconds=60)

    assert store.get("rt-1") == {"node_id": "wait"}
    assert len(store) == 1

    store.delete("rt-1")
    assert store.get("rt-1") is None


def test_in_memory_store_expires_entries() -> None:
    store = InMemoryResumeTokenStore()
    with patch("execution.token_store.time.time", return_value=1000.0):
        store.put("rt-1", {"node_id": "wait"}, ttl_seconds=10)
    with patch("execution.token_store.time.time", return_value=1011.0):
        assert store.get("rt-1") is None
    assert len(store) == 0


def test_sqlite_store_persists_across_connections(tmp_path) -> None:
    db_path = str(tmp_path / "tokens.db")
    store = SQLiteResumeTokenStore(db_path=db_path)
    store.put("rt-1", {"node_id": "wait", "graph_name": "ritual"}, ttl_seconds=60)
    store.close()

    reopened = SQLiteResumeTokenStore(db_path=db_path)
    try:
        assert reopened.get("rt-1") == {"node_id": "wait", "graph_name": "ritual"}
        reopened.delete("rt-1")
        assert reopened.get("rt-1") is None
    finally:
        reopened.close()


def test_sqlite_store_purges_expired(tmp_path) -> None:
    store = SQLiteResumeTokenStore(db_path=str(tmp_path / "tokens.db"))
    try:
        with patch("execution.token_store.time.time", return_value=1000.0):
            store.put("rt-old", {"node_id": "a"}, ttl_seconds=5)
            store.put("rt-new", {"node_id": "b"}, ttl_seconds=500)
        with patch("execution.token_store.time.time", return_value=1100.0):
            assert store.purge_expired() == 1
            assert store.get("rt-old") is None
            assert store.get("rt-new") == {"node_id": "b"}
    finally:
        store.close()
