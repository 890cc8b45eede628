"""Tests for the session store backends."""
from unittest.mock import MagicMock

import pytest
import redis

from dialogbot.config import BotConfig
from dialogbot.errors import SessionStoreError
from dialogbot.storage import (
    MemorySessionStore,
    RedisSessionStore,
    create_redis_client,
    create_session_store,
    session_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_session_key():
    assert session_key("T1", "D2") == "T1:D2"


class TestMemoryStore:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def mem(self, clock):
        return MemorySessionStore(clock=clock)

    def test_missing_key_is_empty(self, mem):
        assert mem.get("T:C") == {}

    def test_create_and_get(self, mem):
        mem.create("T:C", {"interaction": "q1", "stop_word": "stop"}, ttl=60)
        assert mem.get("T:C") == {"interaction": "q1", "stop_word": "stop"}

    def test_create_replaces_leftovers(self, mem):
        mem.create("T:C", {"interaction": "q1", "response:q1": "old"}, ttl=60)
        mem.create("T:C", {"searchTerm": "help"}, ttl=300)
        assert mem.get("T:C") == {"searchTerm": "help"}
        assert mem.ttl("T:C") == 300

    def test_get_returns_copy(self, mem):
        mem.create("T:C", {"a": "1"}, ttl=60)
        mem.get("T:C")["a"] = "changed"
        assert mem.get("T:C") == {"a": "1"}

    def test_expires_after_ttl(self, mem, clock):
        mem.create("T:C", {"searchTerm": "help"}, ttl=300)
        clock.now += 299
        assert mem.get("T:C") == {"searchTerm": "help"}
        clock.now += 1
        assert mem.get("T:C") == {}

    def test_append_and_update_keep_ttl(self, mem, clock):
        mem.create("T:C", {"interaction": "q1"}, ttl=100)
        clock.now += 50
        assert mem.append_field("T:C", "response:q1", "Alice")
        assert mem.set_fields("T:C", {"interaction": "q2"})
        assert mem.ttl("T:C") == 50
        assert mem.get("T:C") == {"interaction": "q2", "response:q1": "Alice"}
        clock.now += 50
        assert mem.get("T:C") == {}

    def test_writes_to_expired_session_are_dropped(self, mem, clock):
        mem.create("T:C", {"interaction": "q1"}, ttl=100)
        clock.now += 100
        assert not mem.append_field("T:C", "response:q1", "late")
        assert not mem.set_fields("T:C", {"interaction": "q2"})
        assert mem.get("T:C") == {}

    def test_writes_to_missing_session_are_dropped(self, mem):
        assert not mem.set_fields("T:C", {"a": "1"})
        assert mem.get("T:C") == {}

    def test_delete(self, mem):
        mem.create("T:C", {"a": "1"}, ttl=10)
        mem.delete("T:C")
        assert mem.get("T:C") == {}
        assert mem.ttl("T:C") is None

    def test_keys_isolated(self, mem):
        mem.create("T:C1", {"a": "1"}, ttl=10)
        mem.create("T:C2", {"a": "2"}, ttl=10)
        mem.delete("T:C1")
        assert mem.get("T:C2") == {"a": "2"}

    def test_lock_can_be_reacquired(self, mem):
        with mem.lock("T:C"):
            pass
        with mem.lock("T:C"):
            mem.create("T:C", {"a": "1"}, ttl=10)
        assert mem.get("T:C") == {"a": "1"}

    def test_lock_entries_released(self, mem):
        for channel in range(50):
            with mem.lock(f"T:C{channel}"):
                assert mem.lock_count() == 1
        assert mem.lock_count() == 0

    def test_lock_entry_released_when_body_raises(self, mem):
        with pytest.raises(ValueError):
            with mem.lock("T:C"):
                raise ValueError("boom")
        assert mem.lock_count() == 0


class TestRedisStore:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def rstore(self, client):
        return RedisSessionStore(client)

    @pytest.fixture
    def watched(self, client):
        """The pipeline used for conditional writes."""
        return client.pipeline.return_value.__enter__.return_value

    def test_get(self, rstore, client):
        client.hgetall.return_value = {"interaction": "q1"}
        assert rstore.get("T:C") == {"interaction": "q1"}
        client.hgetall.assert_called_once_with("T:C")

    def test_create_overwrites_atomically(self, rstore, client):
        pipe = client.pipeline.return_value
        rstore.create("T:C", {"interaction": "q1"}, ttl=1740)
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_called_once_with("T:C")
        pipe.hset.assert_called_once_with("T:C", mapping={"interaction": "q1"})
        pipe.expire.assert_called_once_with("T:C", 1740)
        pipe.execute.assert_called_once()

    def test_set_fields_on_live_session(self, rstore, watched):
        watched.exists.return_value = 1
        assert rstore.set_fields("T:C", {"interaction": "q2"})
        watched.watch.assert_called_once_with("T:C")
        watched.multi.assert_called_once()
        watched.hset.assert_called_once_with("T:C", mapping={"interaction": "q2"})
        watched.expire.assert_not_called()
        watched.execute.assert_called_once()

    def test_set_fields_on_expired_session(self, rstore, watched):
        watched.exists.return_value = 0
        assert not rstore.set_fields("T:C", {"interaction": "q2"})
        watched.hset.assert_not_called()
        watched.execute.assert_not_called()

    def test_key_expiring_during_watch_is_rechecked(self, rstore, watched):
        watched.exists.side_effect = [1, 0]
        watched.execute.side_effect = redis.WatchError("changed")
        assert not rstore.set_fields("T:C", {"interaction": "q2"})
        assert watched.watch.call_count == 2

    def test_append_field(self, rstore, watched):
        watched.exists.return_value = 1
        assert rstore.append_field("T:C", "response:q1", "Alice")
        watched.hset.assert_called_once_with("T:C", mapping={"response:q1": "Alice"})

    def test_delete(self, rstore, client):
        rstore.delete("T:C")
        client.delete.assert_called_once_with("T:C")

    @pytest.mark.parametrize("method,args", [
        ("get", ("T:C",)),
        ("append_field", ("T:C", "a", "b")),
        ("set_fields", ("T:C", {"a": "b"})),
        ("delete", ("T:C",)),
    ])
    def test_redis_errors_wrapped(self, rstore, client, watched, method, args):
        client.hgetall.side_effect = redis.ConnectionError("down")
        watched.watch.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")
        with pytest.raises(SessionStoreError):
            getattr(rstore, method)(*args)

    def test_pipeline_error_wrapped(self, rstore, client):
        client.pipeline.return_value.execute.side_effect = redis.TimeoutError("slow")
        with pytest.raises(SessionStoreError, match="Error setting hash"):
            rstore.create("T:C", {"a": "1"}, ttl=10)

    def test_lock_acquire_and_release(self, rstore, client):
        lock = client.lock.return_value
        lock.acquire.return_value = True
        with rstore.lock("T:C"):
            lock.release.assert_not_called()
        client.lock.assert_called_once_with("sesslock:T:C", timeout=10, blocking_timeout=5.0)
        lock.release.assert_called_once()

    def test_lock_timeout(self, rstore, client):
        client.lock.return_value.acquire.return_value = False
        with pytest.raises(SessionStoreError, match="Timed out"):
            with rstore.lock("T:C"):
                pytest.fail("body must not run")

    def test_lock_expired_on_release_is_logged(self, rstore, client, caplog):
        lock = client.lock.return_value
        lock.acquire.return_value = True
        lock.release.side_effect = redis.exceptions.LockError("not owned")
        with rstore.lock("T:C"):
            pass
        assert "expired before release" in caplog.text

    def test_lock_released_when_body_raises(self, rstore, client):
        lock = client.lock.return_value
        lock.acquire.return_value = True
        with pytest.raises(ValueError):
            with rstore.lock("T:C"):
                raise ValueError("boom")
        lock.release.assert_called_once()


class TestFactories:
    def test_memory_backend(self):
        store = create_session_store(BotConfig(session_backend="memory"))
        assert isinstance(store, MemorySessionStore)

    def test_unknown_backend(self):
        with pytest.raises(SessionStoreError, match="Unknown session backend"):
            create_session_store(BotConfig(session_backend="etcd"))

    def test_redis_backend(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr("dialogbot.storage.redis.Redis", fake)
        store = create_session_store(
            BotConfig(redis_addr="cache:6380", redis_password="pw", redis_db=2)
        )
        assert isinstance(store, RedisSessionStore)
        fake.assert_called_once_with(
            host="cache", port=6380, password="pw", db=2, decode_responses=True
        )
        fake.return_value.ping.assert_called_once()

    def test_redis_unreachable(self, monkeypatch):
        fake = MagicMock()
        fake.return_value.ping.side_effect = redis.ConnectionError("refused")
        monkeypatch.setattr("dialogbot.storage.redis.Redis", fake)
        with pytest.raises(SessionStoreError, match="Redis error"):
            create_redis_client("localhost:6379")

    def test_redis_addr_without_port(self, monkeypatch):
        fake = MagicMock()
        monkeypatch.setattr("dialogbot.storage.redis.Redis", fake)
        create_redis_client("localhost")
        assert fake.call_args.kwargs["port"] == 6379
        assert fake.call_args.kwargs["password"] is None

    def test_redis_addr_bad_port(self):
        with pytest.raises(SessionStoreError, match="Invalid Redis address"):
            create_redis_client("localhost:abc")
