from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from jwtsessions.service.codec import TokenCodec
from jwtsessions.service.errors import (
    AccessTokenNotFound,
    RefreshTokenNotFound,
    ReplayDetected,
)
from jwtsessions.storage.common import (
    AccessTokenStore,
    RefreshTokenStore,
    is_expired,
)
from jwtsessions.storage.models import (
    CLEARED_ACCESS_EXPIRATION,
    CLEARED_ACCESS_UID,
    RefreshRecord,
)

# Claims owned by the engine; application payloads never override them
RESERVED_CLAIMS = frozenset({"uid", "exp", "ruid", "csrf", "iss"})


def new_uid() -> str:
    return str(uuid.uuid4())


def application_payload(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Strip engine-owned claims from a payload or decoded claim set."""
    return {k: v for k, v in (payload or {}).items() if k not in RESERVED_CLAIMS}


@dataclass(frozen=True)
class AccessToken:
    """Short-lived credential bound to the refresh token ``refresh_uid``.

    Instances are never mutated; every login or refresh issues a new one.
    Tokens hydrated from the store only carry ``uid``, ``csrf`` and
    ``expiration``.
    """

    uid: str
    csrf: str
    expiration: int
    refresh_uid: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    token: Optional[str] = None

    @classmethod
    def issue(
        cls,
        codec: TokenCodec,
        csrf: str,
        payload: Optional[Mapping[str, Any]],
        refresh_uid: str,
        *,
        expiration: int,
        uid: Optional[str] = None,
    ) -> "AccessToken":
        uid = uid or new_uid()
        app_payload = application_payload(payload)
        claims = {
            **app_payload,
            "uid": uid,
            "exp": int(expiration),
            "ruid": refresh_uid,
            "csrf": csrf,
        }
        return cls(
            uid=uid,
            csrf=csrf,
            expiration=int(expiration),
            refresh_uid=refresh_uid,
            payload=app_payload,
            token=codec.encode(claims),
        )

    @property
    def claims(self) -> Dict[str, Any]:
        return {
            **self.payload,
            "uid": self.uid,
            "exp": self.expiration,
            "ruid": self.refresh_uid,
            "csrf": self.csrf,
        }

    @property
    def expired(self) -> bool:
        return is_expired(self.expiration)

    def persist(self, store: AccessTokenStore) -> None:
        store.persist_access(self.uid, self.csrf, self.expiration)

    @classmethod
    def find(cls, uid: str, store: AccessTokenStore) -> "AccessToken":
        record = store.fetch_access(uid)
        if record is None or record.uid != uid:
            raise AccessTokenNotFound(detail={"uid": uid})
        return cls(uid=record.uid, csrf=record.csrf, expiration=record.expiration)

    @staticmethod
    def destroy(uid: Optional[str], store: object) -> None:
        """Drop the access record for ``uid`` when the store keeps them."""
        if not uid or uid == CLEARED_ACCESS_UID:
            return
        if isinstance(store, AccessTokenStore):
            store.destroy_access(uid)


class RefreshToken:
    """Store-tracked credential that mints access tokens.

    ``access_uid``/``access_expiration`` point at the access token this refresh
    token currently considers valid. The encoded ``token`` carries only
    ``uid``, ``exp`` and the application payload; pointer fields and the CSRF
    value live in the store record.
    """

    def __init__(
        self,
        csrf: str,
        access_uid: str,
        access_expiration: int,
        store: RefreshTokenStore,
        codec: TokenCodec,
        *,
        expiration: int,
        uid: Optional[str] = None,
        namespace: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.csrf = csrf
        self.access_uid = str(access_uid)
        self.access_expiration = int(access_expiration)
        self.store = store
        self.codec = codec
        self.uid = uid or new_uid()
        self.expiration = int(expiration)
        self.namespace = namespace or None
        self.payload = application_payload(payload)
        self.token = self._encode()

    def __repr__(self) -> str:
        return (
            f"RefreshToken(uid={self.uid!r}, namespace={self.namespace!r}, "
            f"access_uid={self.access_uid!r}, expiration={self.expiration})"
        )

    def _encode(self) -> str:
        return self.codec.encode({**self.payload, "uid": self.uid, "exp": self.expiration})

    @classmethod
    def create(
        cls,
        csrf: str,
        access_uid: str,
        access_expiration: int,
        store: RefreshTokenStore,
        payload: Optional[Mapping[str, Any]],
        namespace: Optional[str],
        expiration: int,
        *,
        codec: TokenCodec,
        uid: Optional[str] = None,
    ) -> "RefreshToken":
        inst = cls(
            csrf,
            access_uid,
            access_expiration,
            store,
            codec,
            expiration=expiration,
            uid=uid,
            namespace=namespace,
            payload=payload,
        )
        inst._persist()
        return inst

    @classmethod
    def _from_record(
        cls,
        record: RefreshRecord,
        store: RefreshTokenStore,
        codec: TokenCodec,
        namespace: Optional[str],
    ) -> "RefreshToken":
        return cls(
            record.csrf,
            record.access_uid,
            record.access_expiration,
            store,
            codec,
            expiration=record.expiration,
            uid=record.uid,
            namespace=record.namespace or namespace,
        )

    @classmethod
    def find(
        cls,
        uid: str,
        store: RefreshTokenStore,
        namespace: Optional[str] = None,
        *,
        codec: TokenCodec,
        first_match: bool = False,
    ) -> "RefreshToken":
        """Load a stored refresh token.

        ``first_match=True`` searches every namespace, for callers holding a
        token without knowing which namespace issued it.
        """
        record = store.fetch_refresh(uid, namespace, first_match)
        if record is None:
            raise RefreshTokenNotFound(detail={"uid": uid, "namespace": namespace})
        return cls._from_record(record, store, codec, namespace)

    @classmethod
    def all(
        cls,
        namespace: Optional[str],
        store: RefreshTokenStore,
        *,
        codec: TokenCodec,
        all_namespaces: bool = False,
    ) -> List["RefreshToken"]:
        records = store.all_refresh_tokens(namespace, all_namespaces=all_namespaces)
        return [
            cls._from_record(record, store, codec, namespace)
            for record in records.values()
        ]

    @property
    def access_cleared(self) -> bool:
        return (
            self.access_uid == CLEARED_ACCESS_UID
            and self.access_expiration == CLEARED_ACCESS_EXPIRATION
        )

    @property
    def expired(self) -> bool:
        return is_expired(self.expiration)

    def update(
        self,
        access_uid: str,
        access_expiration: int,
        csrf: str,
        expiration: Optional[int] = None,
        *,
        if_bound: bool = False,
    ) -> None:
        """Rebind to a new access token and write the record back.

        With ``if_bound=True`` the write only lands while the stored pointer
        still equals this token's ``access_uid``/``access_expiration``;
        otherwise another rotation won and ``ReplayDetected`` is raised.
        """
        new_expiration = self.expiration if expiration is None else int(expiration)
        updated = self.store.update_refresh(
            uid=self.uid,
            access_uid=str(access_uid),
            access_expiration=int(access_expiration),
            csrf=csrf,
            expiration=new_expiration,
            namespace=self.namespace,
            **self._expected_pointer(if_bound),
        )
        if not updated:
            detail = {"uid": self.uid, "namespace": self.namespace}
            if if_bound:
                raise ReplayDetected(detail=detail)
            raise RefreshTokenNotFound(detail=detail)
        self.csrf = csrf
        self.access_uid = str(access_uid)
        self.access_expiration = int(access_expiration)
        if expiration is not None:
            self.expiration = new_expiration
            self.token = self._encode()

    def clear_access(self) -> None:
        """Unlink the bound access token without ending the refresh session."""
        self.update(CLEARED_ACCESS_UID, CLEARED_ACCESS_EXPIRATION, self.csrf)

    def destroy(self, *, if_bound: bool = False) -> bool:
        """Remove the record; False when it was already gone or rebound."""
        return self.store.destroy_refresh(
            self.uid, self.namespace, **self._expected_pointer(if_bound)
        )

    def _expected_pointer(self, if_bound: bool) -> Dict[str, Any]:
        if not if_bound:
            return {}
        return {
            "expected_access_uid": self.access_uid,
            "expected_access_expiration": self.access_expiration,
        }

    def _persist(self) -> None:
        self.store.persist_refresh(
            uid=self.uid,
            access_uid=self.access_uid,
            access_expiration=self.access_expiration,
            csrf=self.csrf,
            expiration=self.expiration,
            namespace=self.namespace,
        )
