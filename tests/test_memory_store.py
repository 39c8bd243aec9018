import time

from jwtsessions.storage.common import AccessTokenStore, RefreshTokenStore, TokenStore
from jwtsessions.storage.memory import MemoryStore


def _future(seconds=600):
    return int(time.time()) + seconds


def test_memory_store_implements_contract():
    store = MemoryStore()

    assert isinstance(store, RefreshTokenStore)
    assert isinstance(store, AccessTokenStore)
    assert isinstance(store, TokenStore)


def test_fetch_missing_refresh_returns_none(store):
    assert store.fetch_refresh("nope") is None
    assert store.fetch_refresh("nope", "ns", first_match=True) is None


def test_refresh_record_roundtrip(store):
    exp = _future()
    store.persist_refresh("r1", "a1", exp - 300, "csrf-1", exp, "ns")

    record = store.fetch_refresh("r1", "ns")

    assert record.uid == "r1"
    assert record.access_uid == "a1"
    assert record.access_expiration == exp - 300
    assert record.csrf == "csrf-1"
    assert record.expiration == exp
    assert record.namespace == "ns"


def test_namespaces_are_isolated(store):
    store.persist_refresh("r1", "a1", 0, "c", _future(), "ns-a")

    assert store.fetch_refresh("r1", "ns-b") is None
    assert store.fetch_refresh("r1") is None
    assert store.fetch_refresh("r1", first_match=True).namespace == "ns-a"


def test_expired_records_read_as_absent(store):
    store.persist_refresh("r1", "a1", 0, "c", int(time.time()) - 1)
    store.persist_access("a1", "c", int(time.time()) - 1)

    assert store.fetch_refresh("r1") is None
    assert store.all_refresh_tokens() == {}
    assert store.fetch_access("a1") is None


def test_update_refresh_rewrites_pointer(store):
    store.persist_refresh("r1", "a1", 10, "c1", _future())
    new_exp = _future(1200)

    assert store.update_refresh("r1", "a2", 20, "c2", new_exp) is True

    record = store.fetch_refresh("r1")
    assert (record.access_uid, record.access_expiration, record.csrf) == ("a2", 20, "c2")
    assert record.expiration == new_exp


def test_update_missing_refresh_reports_false(store):
    assert store.update_refresh("ghost", "a", 1, "c", _future()) is False
    assert store.fetch_refresh("ghost") is None


def test_fetched_records_are_copies(store):
    store.persist_refresh("r1", "a1", 10, "c1", _future())

    store.fetch_refresh("r1").access_uid = "mutated"

    assert store.fetch_refresh("r1").access_uid == "a1"


def test_all_refresh_tokens_by_namespace(store):
    store.persist_refresh("r1", "a1", 0, "c", _future(), "ns")
    store.persist_refresh("r2", "a2", 0, "c", _future(), "ns")
    store.persist_refresh("r3", "a3", 0, "c", _future(), "other")
    store.persist_refresh("r4", "a4", 0, "c", _future())

    assert set(store.all_refresh_tokens("ns")) == {"r1", "r2"}
    assert set(store.all_refresh_tokens()) == {"r4"}
    assert set(store.all_refresh_tokens(all_namespaces=True)) == {"r1", "r2", "r3", "r4"}


def test_destroy_refresh(store):
    store.persist_refresh("r1", "a1", 0, "c", _future(), "ns")

    store.destroy_refresh("r1", "other")
    assert store.fetch_refresh("r1", "ns") is not None

    store.destroy_refresh("r1", "ns")
    assert store.fetch_refresh("r1", "ns") is None


def test_access_records(store):
    store.persist_access("a1", "csrf", _future())

    assert store.fetch_access("a1").csrf == "csrf"

    store.destroy_access("a1")
    assert store.fetch_access("a1") is None


def test_clear(store):
    store.persist_refresh("r1", "a1", 0, "c", _future())
    store.persist_access("a1", "c", _future())

    store.clear()

    assert store.all_refresh_tokens(all_namespaces=True) == {}
    assert store.fetch_access("a1") is None


def test_update_refresh_with_stale_pointer_writes_nothing(store):
    store.persist_refresh("r1", "a2", 20, "c2", _future())

    written = store.update_refresh(
        "r1", "a3", 30, "c3", _future(), expected_access_uid="a1", expected_access_expiration=10
    )

    assert written is False
    record = store.fetch_refresh("r1")
    assert (record.access_uid, record.access_expiration, record.csrf) == ("a2", 20, "c2")


def test_update_refresh_with_current_pointer(store):
    store.persist_refresh("r1", "a1", 10, "c1", _future())

    assert store.update_refresh(
        "r1", "a2", 20, "c2", _future(), expected_access_uid="a1", expected_access_expiration=10
    ) is True
    assert store.fetch_refresh("r1").access_uid == "a2"


def test_destroy_refresh_only_while_pointer_matches(store):
    store.persist_refresh("r1", "a1", 10, "c", _future())

    assert store.destroy_refresh("r1", expected_access_uid="a0", expected_access_expiration=5) is False
    assert store.fetch_refresh("r1") is not None
    assert store.destroy_refresh("r1", expected_access_uid="a1", expected_access_expiration=10) is True
    assert store.fetch_refresh("r1") is None
    assert store.destroy_refresh("r1") is False
