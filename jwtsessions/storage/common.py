"""Store contract and helpers shared between the memory and Redis backends.

The session engine only talks to a store through the Protocols defined here.
Refresh-record operations are always required; access-record operations are
only exercised when access tokens are persisted for individual revocation.

`update_refresh` and `destroy_refresh` accept an expected access pointer. When
given, the write happens only if the stored pointer still equals it, checked
atomically per key; both return False when nothing was written.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from jwtsessions.storage.models import AccessRecord, RefreshRecord


@runtime_checkable
class RefreshTokenStore(Protocol):
    def persist_refresh(
        self,
        uid: str,
        access_uid: str,
        access_expiration: int,
        csrf: str,
        expiration: int,
        namespace: Optional[str] = None,
    ) -> None: ...

    def fetch_refresh(
        self, uid: str, namespace: Optional[str] = None, first_match: bool = False
    ) -> Optional[RefreshRecord]: ...

    def update_refresh(
        self,
        uid: str,
        access_uid: str,
        access_expiration: int,
        csrf: str,
        expiration: int,
        namespace: Optional[str] = None,
        *,
        expected_access_uid: Optional[str] = None,
        expected_access_expiration: Optional[int] = None,
    ) -> bool: ...

    def destroy_refresh(
        self,
        uid: str,
        namespace: Optional[str] = None,
        *,
        expected_access_uid: Optional[str] = None,
        expected_access_expiration: Optional[int] = None,
    ) -> bool: ...

    def all_refresh_tokens(
        self, namespace: Optional[str] = None, *, all_namespaces: bool = False
    ) -> Dict[str, RefreshRecord]: ...


@runtime_checkable
class AccessTokenStore(Protocol):
    def persist_access(self, uid: str, csrf: str, expiration: int) -> None: ...

    def fetch_access(self, uid: str) -> Optional[AccessRecord]: ...

    def destroy_access(self, uid: str) -> None: ...


@runtime_checkable
class TokenStore(RefreshTokenStore, AccessTokenStore, Protocol):
    """Full contract implemented by every bundled backend."""


def now_epoch() -> int:
    """Current time as integer seconds since the epoch."""
    return int(time.time())


def is_expired(expiration: int, now: Optional[int] = None) -> bool:
    current = now_epoch() if now is None else now
    return int(expiration) <= current


def pointer_matches(
    record: RefreshRecord,
    expected_access_uid: Optional[str],
    expected_access_expiration: Optional[int],
) -> bool:
    """True when no pointer is expected or the record still carries it."""
    if expected_access_uid is None:
        return True
    return record.access_uid == str(expected_access_uid) and record.access_expiration == int(
        expected_access_expiration or 0
    )


def namespace_key(namespace: Optional[str]) -> str:
    """Serialize a namespace for storage; ``None`` becomes the empty partition."""
    return namespace or ""


def namespace_from_key(raw: Optional[str]) -> Optional[str]:
    return raw or None


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(float(value))


def refresh_record_from_mapping(uid: str, data: Mapping[str, Any]) -> RefreshRecord:
    """Build a record from a flat string mapping such as a Redis hash."""
    return RefreshRecord(
        uid=uid,
        csrf=str(data.get("csrf", "")),
        access_uid=str(data.get("access_uid", "")),
        access_expiration=_as_int(data.get("access_expiration")),
        expiration=_as_int(data.get("expiration")),
        namespace=namespace_from_key(data.get("namespace")),
    )


def refresh_record_to_mapping(record: RefreshRecord) -> Dict[str, str]:
    return {
        "csrf": record.csrf,
        "access_uid": record.access_uid,
        "access_expiration": str(int(record.access_expiration)),
        "expiration": str(int(record.expiration)),
        "namespace": namespace_key(record.namespace),
    }


def access_record_from_mapping(uid: str, data: Mapping[str, Any]) -> AccessRecord:
    return AccessRecord(
        uid=uid,
        csrf=str(data.get("csrf", "")),
        expiration=_as_int(data.get("expiration")),
    )


__all__ = [
    "AccessTokenStore",
    "RefreshTokenStore",
    "TokenStore",
    "access_record_from_mapping",
    "is_expired",
    "namespace_from_key",
    "namespace_key",
    "now_epoch",
    "pointer_matches",
    "refresh_record_from_mapping",
    "refresh_record_to_mapping",
]
