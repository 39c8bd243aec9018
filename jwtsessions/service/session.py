from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Type

from jwtsessions.config import Settings
from jwtsessions.logging import get_logger
from jwtsessions.service.codec import TokenCodec
from jwtsessions.service.csrf import CSRFToken
from jwtsessions.service.errors import (
    InvalidPayload,
    RefreshByAccessDisabled,
    RefreshDenied,
    RefreshTokenNotFound,
    ReplayDetected,
    Unauthorized,
)
from jwtsessions.service.runtime import get_runtime
from jwtsessions.service.tokens import (
    AccessToken,
    RefreshToken,
    application_payload,
    new_uid,
)
from jwtsessions.storage.common import AccessTokenStore, RefreshTokenStore, now_epoch

logger = get_logger(__name__)

# Called with (refresh_uid, bound access_expiration); True lets the refresh
# proceed, False denies it.
RefreshFallback = Callable[[str, int], bool]

_POINTER_CLAIMS = ("uid", "ruid", "exp")


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    FLUSHED = "flushed"


def _isoformat(expiration: int) -> str:
    return datetime.fromtimestamp(expiration, tz=timezone.utc).isoformat()


class Session:
    """Issues, rotates and revokes bound access/refresh token pairs.

    A session holds at most one active pair. ``payload`` is merged into every
    access token it mints; when it already carries ``uid``/``ruid``/``exp``
    (decoded access claims) it doubles as the access snapshot used by
    ``refresh_by_access_payload`` and ``flush_by_access_payload``.

    Store and settings default to the process runtime; pass them explicitly
    to isolate a session from process-wide state.
    """

    def __init__(
        self,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        namespace: Optional[str] = None,
        access_exp: Optional[int] = None,
        refresh_exp: Optional[int] = None,
        refresh_by_access_allowed: bool = False,
        renew_on_refresh: bool = False,
        refresh_payload: Optional[Mapping[str, Any]] = None,
        persist_access: Optional[bool] = None,
        store: Optional[RefreshTokenStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if store is None or settings is None:
            runtime = get_runtime()
            store = store if store is not None else runtime.store
            settings = settings or runtime.settings
        self.settings = settings
        self.store = store
        self.codec = TokenCodec.from_settings(settings)
        self.payload: Dict[str, Any] = dict(payload or {})
        self.refresh_payload = dict(refresh_payload) if refresh_payload is not None else None
        self.namespace = namespace or None
        self.access_ttl = settings.access_token_ttl_seconds if access_exp is None else int(access_exp)
        self.refresh_ttl = (
            settings.refresh_token_ttl_seconds if refresh_exp is None else int(refresh_exp)
        )
        self.refresh_by_access_allowed = refresh_by_access_allowed
        self.renew_on_refresh = renew_on_refresh
        self.persist_access = (
            settings.persist_access_tokens if persist_access is None else persist_access
        )
        if self.persist_access and not isinstance(store, AccessTokenStore):
            raise TypeError(
                f"{type(store).__name__} cannot persist access tokens; "
                "disable persist_access or use a store with access operations"
            )

        self.state = SessionState.UNAUTHENTICATED
        self._access: Optional[AccessToken] = None
        self._refresh: Optional[RefreshToken] = None
        self._csrf: Optional[CSRFToken] = None

    @classmethod
    def from_access_token(cls, token: str, **options: Any) -> "Session":
        """Build a session around a presented access token.

        The signature is verified but not the expiration, so an expired token
        can still drive ``refresh_by_access_payload``.
        """
        session = cls(**options)
        session.payload = session.codec.decode(token, verify_expiration=False)
        return session

    @property
    def access_token(self) -> Optional[AccessToken]:
        return self._access

    @property
    def refresh_token(self) -> Optional[RefreshToken]:
        return self._refresh

    @property
    def csrf_token(self) -> Optional[CSRFToken]:
        return self._csrf

    # issuance
    def login(self) -> Dict[str, str]:
        now = now_epoch()
        csrf = CSRFToken()
        refresh_uid = new_uid()
        access = self._issue_access(csrf, self._application_payload(), refresh_uid, now)
        refresh = RefreshToken.create(
            csrf.encoded,
            access.uid,
            access.expiration,
            self.store,
            self._refresh_claims_payload(),
            self.namespace,
            now + self.refresh_ttl,
            codec=self.codec,
            uid=refresh_uid,
        )
        self._persist_access(access)
        self._bind(csrf, access, refresh)
        logger.info("session_login", refresh_uid=refresh.uid, namespace=self.namespace)
        return {
            "access": access.token,
            "access_expires_at": _isoformat(access.expiration),
            "csrf": csrf.token,
            "refresh": refresh.token,
            "refresh_expires_at": _isoformat(refresh.expiration),
        }

    def refresh(
        self, refresh_token: str, fallback: Optional[RefreshFallback] = None
    ) -> Dict[str, str]:
        """Mint a new access token from a presented refresh token.

        Refreshing while the bound access token is still live needs
        ``fallback`` to permit it; without one the call is denied.
        """
        claims = self.codec.decode(refresh_token)
        uid = claims.get("uid")
        if not uid:
            raise RefreshTokenNotFound(detail={"reason": "refresh token has no uid"})
        refresh = RefreshToken.find(
            str(uid), self.store, self.namespace, codec=self.codec, first_match=True
        )
        refresh.payload = application_payload(claims)
        if not refresh.access_cleared and refresh.access_expiration > now_epoch():
            self._confirm(fallback, refresh, RefreshDenied)

        payload = {**application_payload(claims), **self._application_payload()}
        return self._rotate(
            refresh, payload, renew=False, if_bound=False, superseded=[refresh.access_uid]
        )

    def refresh_by_access_payload(
        self, fallback: Optional[RefreshFallback] = None
    ) -> Dict[str, str]:
        """Rotate the pair using the session's access claims, expired or not.

        The presented access token must still be the one its refresh record
        points at; a superseded token is rejected unless ``fallback`` permits
        it. A record whose pointer was cleared by an access-token flush
        accepts any access token it issued.
        """
        if not self.refresh_by_access_allowed:
            raise RefreshByAccessDisabled()
        claims = self._current_access_claims()
        access_uid, refresh_uid, access_exp = self._pointer_claims(claims)
        refresh = RefreshToken.find(refresh_uid, self.store, self.namespace, codec=self.codec)

        consulted = False
        bound = refresh.access_uid == access_uid and refresh.access_expiration == access_exp
        if not bound and not refresh.access_cleared:
            logger.warning(
                "refresh_replay_rejected",
                refresh_uid=refresh.uid,
                presented_uid=access_uid,
                namespace=self.namespace,
            )
            self._confirm(fallback, refresh, ReplayDetected)
            consulted = True
        if not consulted and access_exp > now_epoch():
            self._confirm(fallback, refresh, RefreshDenied)

        return self._rotate(
            refresh,
            application_payload(claims),
            renew=self.renew_on_refresh,
            if_bound=True,
            superseded=[access_uid, refresh.access_uid],
        )

    # revocation
    def flush_by_token(self, refresh_token: str) -> None:
        claims = self.codec.decode(refresh_token)
        uid = claims.get("uid")
        if not uid:
            raise RefreshTokenNotFound(detail={"reason": "refresh token has no uid"})
        self.flush_by_uid(str(uid))

    def flush_by_uid(self, uid: str) -> None:
        refresh = RefreshToken.find(
            uid, self.store, self.namespace, codec=self.codec, first_match=True
        )
        self._flush(refresh, reason="uid")

    def flush_by_access_payload(self) -> None:
        claims = self._current_access_claims()
        access_uid, refresh_uid, _ = self._pointer_claims(claims)
        refresh = RefreshToken.find(refresh_uid, self.store, self.namespace, codec=self.codec)
        AccessToken.destroy(access_uid, self.store)
        self._flush(refresh, reason="access_payload")

    def flush_namespaced(self) -> int:
        """Destroy every refresh record in this session's namespace."""
        if not self.namespace:
            return 0
        flushed = RefreshToken.all(self.namespace, self.store, codec=self.codec)
        for refresh in flushed:
            AccessToken.destroy(refresh.access_uid, self.store)
            refresh.destroy()
            if self._refresh is not None and self._refresh.uid == refresh.uid:
                self._mark_flushed()
        logger.info("namespace_flushed", namespace=self.namespace, count=len(flushed))
        return len(flushed)

    def flush_namespaced_access_tokens(self) -> int:
        """Revoke the namespace's access tokens but keep the refresh sessions.

        Each refresh record's pointer is reset to the cleared sentinel.
        """
        if not self.namespace:
            return 0
        tokens = RefreshToken.all(self.namespace, self.store, codec=self.codec)
        for refresh in tokens:
            AccessToken.destroy(refresh.access_uid, self.store)
            refresh.clear_access()
            if self._refresh is not None and self._refresh.uid == refresh.uid:
                self._refresh.access_uid = refresh.access_uid
                self._refresh.access_expiration = refresh.access_expiration
        logger.info("namespace_access_flushed", namespace=self.namespace, count=len(tokens))
        return len(tokens)

    @classmethod
    def flush_all(
        cls,
        store: Optional[RefreshTokenStore] = None,
        settings: Optional[Settings] = None,
    ) -> int:
        if store is None or settings is None:
            runtime = get_runtime()
            store = store if store is not None else runtime.store
            settings = settings or runtime.settings
        codec = TokenCodec.from_settings(settings)
        tokens = RefreshToken.all(None, store, codec=codec, all_namespaces=True)
        for refresh in tokens:
            AccessToken.destroy(refresh.access_uid, store)
            refresh.destroy()
        logger.info("all_sessions_flushed", count=len(tokens))
        return len(tokens)

    # csrf
    def valid_csrf(self, candidate: Optional[str]) -> bool:
        csrf = self._csrf
        if csrf is None:
            encoded = self.payload.get("csrf")
            if not isinstance(encoded, str) or not encoded:
                return False
            try:
                csrf = CSRFToken(encoded)
            except ValueError:
                return False
        return csrf.valid_authenticity_token(candidate)

    # internals
    def _application_payload(self) -> Dict[str, Any]:
        return application_payload(self.payload)

    def _refresh_claims_payload(self) -> Dict[str, Any]:
        if self.refresh_payload is not None:
            return application_payload(self.refresh_payload)
        return self._application_payload()

    def _issue_access(
        self, csrf: CSRFToken, payload: Mapping[str, Any], refresh_uid: str, now: int
    ) -> AccessToken:
        return AccessToken.issue(
            self.codec,
            csrf.encoded,
            payload,
            refresh_uid,
            expiration=now + self.access_ttl,
        )

    def _persist_access(self, access: AccessToken) -> None:
        if self.persist_access:
            access.persist(self.store)  # type: ignore[arg-type]

    def _bind(self, csrf: CSRFToken, access: AccessToken, refresh: RefreshToken) -> None:
        self._csrf = csrf
        self._access = access
        self._refresh = refresh
        self.payload = access.claims
        self.state = SessionState.ACTIVE

    def _mark_flushed(self) -> None:
        self._access = None
        self._refresh = None
        self._csrf = None
        self.state = SessionState.FLUSHED

    def _flush(self, refresh: RefreshToken, *, reason: str) -> None:
        AccessToken.destroy(refresh.access_uid, self.store)
        refresh.destroy()
        if self._refresh is not None and self._refresh.uid == refresh.uid:
            self._mark_flushed()
        logger.info(
            "session_flushed",
            refresh_uid=refresh.uid,
            namespace=refresh.namespace,
            reason=reason,
        )

    def _rotate(
        self,
        refresh: RefreshToken,
        payload: Mapping[str, Any],
        *,
        renew: bool,
        if_bound: bool,
        superseded: Iterable[str],
    ) -> Dict[str, str]:
        now = now_epoch()
        csrf = CSRFToken()
        expiration = now + self.refresh_ttl
        if renew:
            refresh_payload = (
                application_payload(self.refresh_payload)
                if self.refresh_payload is not None
                else refresh.payload or application_payload(payload)
            )
            renewed_uid = new_uid()
            access = self._issue_access(csrf, payload, renewed_uid, now)
            renewed = RefreshToken.create(
                csrf.encoded,
                access.uid,
                access.expiration,
                self.store,
                refresh_payload,
                refresh.namespace,
                expiration,
                codec=self.codec,
                uid=renewed_uid,
            )
            if not refresh.destroy(if_bound=if_bound):
                renewed.destroy()
                logger.warning(
                    "refresh_rotation_conflict",
                    refresh_uid=refresh.uid,
                    namespace=refresh.namespace,
                )
                error = ReplayDetected if if_bound else RefreshTokenNotFound
                raise error(detail={"refresh_uid": refresh.uid})
            refresh = renewed
        else:
            access = self._issue_access(csrf, payload, refresh.uid, now)
            refresh.update(
                access.uid, access.expiration, csrf.encoded, expiration, if_bound=if_bound
            )
        self._persist_access(access)
        for access_uid in set(superseded):
            AccessToken.destroy(access_uid, self.store)
        self._bind(csrf, access, refresh)
        logger.info(
            "session_refreshed",
            refresh_uid=refresh.uid,
            namespace=refresh.namespace,
            renewed=renew,
        )
        return {
            "access": access.token,
            "access_expires_at": _isoformat(access.expiration),
            "csrf": csrf.token,
        }

    def _confirm(
        self,
        fallback: Optional[RefreshFallback],
        refresh: RefreshToken,
        error: Type[Unauthorized],
    ) -> None:
        if fallback is None or not fallback(refresh.uid, refresh.access_expiration):
            raise error(detail={"refresh_uid": refresh.uid})

    def _current_access_claims(self) -> Dict[str, Any]:
        if self._access is not None and self._access.token:
            return self.codec.decode(self._access.token, verify_expiration=False)
        if all(claim in self.payload for claim in _POINTER_CLAIMS):
            return dict(self.payload)
        raise InvalidPayload(detail={"required": list(_POINTER_CLAIMS)})

    @staticmethod
    def _pointer_claims(claims: Mapping[str, Any]) -> Tuple[str, str, int]:
        try:
            access_uid = claims["uid"]
            refresh_uid = claims["ruid"]
            access_exp = int(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidPayload(detail={"required": list(_POINTER_CLAIMS)}) from None
        if not access_uid or not refresh_uid:
            raise InvalidPayload(detail={"required": list(_POINTER_CLAIMS)})
        return str(access_uid), str(refresh_uid), access_exp
