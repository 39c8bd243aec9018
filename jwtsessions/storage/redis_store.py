from __future__ import annotations

import contextlib
import re
from typing import Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from jwtsessions.logging import get_logger
from jwtsessions.storage.common import (
    access_record_from_mapping,
    is_expired,
    namespace_key,
    now_epoch,
    refresh_record_from_mapping,
    refresh_record_to_mapping,
)
from jwtsessions.storage.errors import StoreUnavailable
from jwtsessions.storage.models import AccessRecord, RefreshRecord

logger = get_logger(__name__)

_GLOB_CHARS = re.compile(r"([*?\[\]\\])")


def _escape_pattern(value: str) -> str:
    """Escape SCAN glob metacharacters in a literal key component."""
    return _GLOB_CHARS.sub(r"\\\1", value)


class RedisStore:
    """Synchronous Redis-backed token store.

    Refresh records live in hashes keyed ``{prefix}:refresh:{namespace}:{uid}``
    and access records in ``{prefix}:access:{uid}``. Every key carries a TTL
    matching the record expiration.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Pointer fields are rewritten only while the record still exists and,
    # when ARGV[6] is non-empty, still points at ARGV[6]/ARGV[7]
    _UPDATE_REFRESH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
if ARGV[6] ~= '' then
  local bound = redis.call('HMGET', KEYS[1], 'access_uid', 'access_expiration')
  if bound[1] ~= ARGV[6] or bound[2] ~= ARGV[7] then
    return 0
  end
end
redis.call('HSET', KEYS[1],
  'access_uid', ARGV[1],
  'access_expiration', ARGV[2],
  'csrf', ARGV[3],
  'expiration', ARGV[4])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
return 1
"""

    _DESTROY_REFRESH_SCRIPT = """
if ARGV[1] ~= '' then
  local bound = redis.call('HMGET', KEYS[1], 'access_uid', 'access_expiration')
  if bound[1] ~= ARGV[1] or bound[2] ~= ARGV[2] then
    return 0
  end
end
return redis.call('DEL', KEYS[1])
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "jwt",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._update_refresh = self.client.register_script(self._UPDATE_REFRESH_SCRIPT)
        self._destroy_refresh = self.client.register_script(self._DESTROY_REFRESH_SCRIPT)

    @staticmethod
    def _ttl_seconds(expiration: int) -> int:
        """TTL for an absolute expiry, clamped so Redis never rejects it."""
        return max(1, int(expiration) - now_epoch())

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error(
                "redis_store_command_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"redis {operation} failed", {"operation": operation}
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before using the store."""
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    def _refresh_key(self, uid: str, namespace: Optional[str]) -> str:
        return f"{self.prefix}:refresh:{namespace_key(namespace)}:{uid}"

    def _access_key(self, uid: str) -> str:
        return f"{self.prefix}:access:{uid}"

    @staticmethod
    def _uid_from_key(key: str) -> str:
        return key.rsplit(":", 1)[-1]

    @staticmethod
    def _expected_args(
        expected_access_uid: Optional[str], expected_access_expiration: Optional[int]
    ) -> List[str]:
        if expected_access_uid is None:
            return ["", ""]
        return [str(expected_access_uid), str(int(expected_access_expiration or 0))]

    def _scan(self, pattern: str) -> List[str]:
        with self._guard("scan"):
            return list(self.client.scan_iter(match=pattern, count=500))

    # refresh records
    def persist_refresh(
        self,
        uid: str,
        access_uid: str,
        access_expiration: int,
        csrf: str,
        expiration: int,
        namespace: Optional[str] = None,
    ) -> None:
        record = RefreshRecord(
            uid=uid,
            csrf=csrf,
            access_uid=str(access_uid),
            access_expiration=int(access_expiration),
            expiration=int(expiration),
            namespace=namespace or None,
        )
        key = self._refresh_key(uid, namespace)
        with self._guard("persist_refresh"):
            pipe = self.client.pipeline()
            pipe.hset(key, mapping=refresh_record_to_mapping(record))
            pipe.expire(key, self._ttl_seconds(expiration))
            pipe.execute()

    def _load_refresh(self, key: str) -> Optional[RefreshRecord]:
        with self._guard("fetch_refresh"):
            data = self.client.hgetall(key)
        if not data:
            return None
        record = refresh_record_from_mapping(self._uid_from_key(key), data)
        if is_expired(record.expiration):
            return None
        return record

    def fetch_refresh(
        self, uid: str, namespace: Optional[str] = None, first_match: bool = False
    ) -> Optional[RefreshRecord]:
        if not first_match:
            return self._load_refresh(self._refresh_key(uid, namespace))
        pattern = f"{_escape_pattern(self.prefix)}:refresh:*:{_escape_pattern(uid)}"
        for key in self._scan(pattern):
            record = self._load_refresh(key)
            if record is not None:
                return record
        return None

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
    ) -> bool:
        key = self._refresh_key(uid, namespace)
        with self._guard("update_refresh"):
            updated = self._update_refresh(
                keys=[key],
                args=[
                    str(access_uid),
                    int(access_expiration),
                    csrf,
                    int(expiration),
                    self._ttl_seconds(expiration),
                    *self._expected_args(expected_access_uid, expected_access_expiration),
                ],
            )
        return bool(int(updated))

    def destroy_refresh(
        self,
        uid: str,
        namespace: Optional[str] = None,
        *,
        expected_access_uid: Optional[str] = None,
        expected_access_expiration: Optional[int] = None,
    ) -> bool:
        with self._guard("destroy_refresh"):
            deleted = self._destroy_refresh(
                keys=[self._refresh_key(uid, namespace)],
                args=self._expected_args(expected_access_uid, expected_access_expiration),
            )
        return bool(int(deleted))

    def all_refresh_tokens(
        self, namespace: Optional[str] = None, *, all_namespaces: bool = False
    ) -> Dict[str, RefreshRecord]:
        prefix = _escape_pattern(self.prefix)
        if all_namespaces:
            pattern = f"{prefix}:refresh:*"
        else:
            pattern = f"{prefix}:refresh:{_escape_pattern(namespace_key(namespace))}:*"
        keys = self._scan(pattern)
        if not keys:
            return {}
        with self._guard("all_refresh_tokens"):
            pipe = self.client.pipeline(transaction=False)
            for key in keys:
                pipe.hgetall(key)
            rows = pipe.execute()
        tokens: Dict[str, RefreshRecord] = {}
        wanted = namespace or None
        for key, data in zip(keys, rows):
            if not data:
                continue
            record = refresh_record_from_mapping(self._uid_from_key(key), data)
            # "*" also spans namespaces that contain the separator
            if not all_namespaces and record.namespace != wanted:
                continue
            if is_expired(record.expiration):
                continue
            tokens[record.uid] = record
        return tokens

    # access records
    def persist_access(self, uid: str, csrf: str, expiration: int) -> None:
        key = self._access_key(uid)
        with self._guard("persist_access"):
            pipe = self.client.pipeline()
            pipe.hset(key, mapping={"csrf": csrf, "expiration": str(int(expiration))})
            pipe.expire(key, self._ttl_seconds(expiration))
            pipe.execute()

    def fetch_access(self, uid: str) -> Optional[AccessRecord]:
        with self._guard("fetch_access"):
            data = self.client.hgetall(self._access_key(uid))
        if not data:
            return None
        record = access_record_from_mapping(uid, data)
        if is_expired(record.expiration):
            return None
        return record

    def destroy_access(self, uid: str) -> None:
        with self._guard("destroy_access"):
            self.client.delete(self._access_key(uid))

    def clear(self) -> None:
        """Delete every key under this store's prefix."""
        keys = self._scan(f"{_escape_pattern(self.prefix)}:*")
        if keys:
            with self._guard("clear"):
                self.client.delete(*keys)
