"""Redis store tests against a live server.

Skipped when nothing answers on REDIS_URL.
"""

import os
import time
import uuid

import pytest
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from jwtsessions.service.session import Session
from jwtsessions.storage.errors import StoreUnavailable
from jwtsessions.storage.redis_store import RedisStore

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/1")


@pytest.fixture
def redis_store():
    store = RedisStore(REDIS_URL, prefix=f"jwt-test-{uuid.uuid4().hex[:8]}", socket_timeout=0.5)
    try:
        store.verify_connection()
    except StoreUnavailable:
        store.close()
        pytest.skip("Redis not available")
    yield store
    store.clear()
    store.close()


def _future(seconds=600):
    return int(time.time()) + seconds


def test_refresh_record_roundtrip(redis_store):
    exp = _future()
    redis_store.persist_refresh("r1", "a1", exp - 100, "csrf", exp, "ns")

    record = redis_store.fetch_refresh("r1", "ns")

    assert record.access_uid == "a1"
    assert record.access_expiration == exp - 100
    assert record.expiration == exp
    assert record.namespace == "ns"
    assert redis_store.fetch_refresh("r1") is None


def test_refresh_keys_carry_ttl(redis_store):
    redis_store.persist_refresh("r1", "a1", 0, "c", _future(120))

    ttl = redis_store.client.ttl(redis_store._refresh_key("r1", None))

    assert 0 < ttl <= 120


def test_first_match_searches_namespaces(redis_store):
    redis_store.persist_refresh("r1", "a1", 0, "c", _future(), "tenant:a")

    record = redis_store.fetch_refresh("r1", first_match=True)

    assert record.namespace == "tenant:a"


def test_update_refresh_only_touches_existing_records(redis_store):
    redis_store.persist_refresh("r1", "a1", 0, "c", _future())

    assert redis_store.update_refresh("r1", "a2", 5, "c2", _future(900)) is True
    assert redis_store.update_refresh("ghost", "a2", 5, "c2", _future()) is False
    assert redis_store.fetch_refresh("ghost") is None
    assert redis_store.fetch_refresh("r1").access_uid == "a2"


def test_update_refresh_checks_expected_pointer(redis_store):
    redis_store.persist_refresh("r1", "a2", 20, "c2", _future())

    assert redis_store.update_refresh(
        "r1", "a3", 30, "c3", _future(), expected_access_uid="a1", expected_access_expiration=10
    ) is False
    assert redis_store.fetch_refresh("r1").access_uid == "a2"

    assert redis_store.update_refresh(
        "r1", "a3", 30, "c3", _future(), expected_access_uid="a2", expected_access_expiration=20
    ) is True
    assert redis_store.fetch_refresh("r1").access_uid == "a3"


def test_destroy_refresh_checks_expected_pointer(redis_store):
    redis_store.persist_refresh("r1", "a1", 10, "c", _future())

    assert redis_store.destroy_refresh("r1", expected_access_uid="a0", expected_access_expiration=5) is False
    assert redis_store.fetch_refresh("r1") is not None
    assert redis_store.destroy_refresh("r1", expected_access_uid="a1", expected_access_expiration=10) is True
    assert redis_store.destroy_refresh("r1") is False


def test_all_refresh_tokens_filters_namespace(redis_store):
    redis_store.persist_refresh("r1", "a1", 0, "c", _future(), "ns")
    redis_store.persist_refresh("r2", "a2", 0, "c", _future(), "ns:sub")
    redis_store.persist_refresh("r3", "a3", 0, "c", _future())

    assert set(redis_store.all_refresh_tokens("ns")) == {"r1"}
    assert set(redis_store.all_refresh_tokens()) == {"r3"}
    assert set(redis_store.all_refresh_tokens(all_namespaces=True)) == {"r1", "r2", "r3"}


def test_access_records(redis_store):
    redis_store.persist_access("a1", "csrf", _future())

    assert redis_store.fetch_access("a1").csrf == "csrf"

    redis_store.destroy_access("a1")
    assert redis_store.fetch_access("a1") is None


def test_session_lifecycle_on_redis(redis_store, settings):
    session = Session({"user_id": 7}, namespace="web", store=redis_store, settings=settings)
    tokens = session.login()

    assert Session(namespace="web", store=redis_store, settings=settings).flush_namespaced() == 1
    assert redis_store.fetch_refresh(session.refresh_token.uid, "web") is None
    assert tokens["refresh"]


def test_unreachable_server_raises_store_unavailable():
    client = Redis.from_url("redis://127.0.0.1:1/0", socket_connect_timeout=0.2)
    store = RedisStore("redis://127.0.0.1:1/0", client=client)

    with pytest.raises(StoreUnavailable) as excinfo:
        store.fetch_refresh("r1")

    assert isinstance(excinfo.value.__cause__, RedisConnectionError)
