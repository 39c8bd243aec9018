from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Optional, Tuple

from jwtsessions.logging import get_logger
from jwtsessions.storage.common import is_expired, namespace_key, now_epoch, pointer_matches
from jwtsessions.storage.models import AccessRecord, RefreshRecord


class MemoryStore:
    """In-process token store for tests and single-process deployments.

    Expired records are not evicted in the background; they are treated as
    absent on read and dropped when encountered.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        # (namespace, uid) -> record
        self.refresh_tokens: Dict[Tuple[str, str], RefreshRecord] = {}
        self.access_tokens: Dict[str, AccessRecord] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

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
        with self._data_lock:
            self.refresh_tokens[(namespace_key(namespace), uid)] = record

    def _live_refresh(self, key: Tuple[str, str], now: int) -> Optional[RefreshRecord]:
        record = self.refresh_tokens.get(key)
        if record is None:
            return None
        if is_expired(record.expiration, now):
            self.refresh_tokens.pop(key, None)
            return None
        return record

    def fetch_refresh(
        self, uid: str, namespace: Optional[str] = None, first_match: bool = False
    ) -> Optional[RefreshRecord]:
        now = now_epoch()
        with self._data_lock:
            if first_match:
                keys = [key for key in self.refresh_tokens if key[1] == uid]
            else:
                keys = [(namespace_key(namespace), uid)]
            for key in keys:
                record = self._live_refresh(key, now)
                if record is not None:
                    return replace(record)
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
        key = (namespace_key(namespace), uid)
        with self._data_lock:
            record = self._live_refresh(key, now_epoch())
            if record is None:
                return False
            if not pointer_matches(record, expected_access_uid, expected_access_expiration):
                return False
            record.access_uid = str(access_uid)
            record.access_expiration = int(access_expiration)
            record.csrf = csrf
            record.expiration = int(expiration)
            return True

    def destroy_refresh(
        self,
        uid: str,
        namespace: Optional[str] = None,
        *,
        expected_access_uid: Optional[str] = None,
        expected_access_expiration: Optional[int] = None,
    ) -> bool:
        key = (namespace_key(namespace), uid)
        with self._data_lock:
            record = self._live_refresh(key, now_epoch())
            if record is None:
                return False
            if not pointer_matches(record, expected_access_uid, expected_access_expiration):
                return False
            del self.refresh_tokens[key]
            return True

    def all_refresh_tokens(
        self, namespace: Optional[str] = None, *, all_namespaces: bool = False
    ) -> Dict[str, RefreshRecord]:
        now = now_epoch()
        wanted = namespace_key(namespace)
        tokens: Dict[str, RefreshRecord] = {}
        with self._data_lock:
            for key in list(self.refresh_tokens):
                if not all_namespaces and key[0] != wanted:
                    continue
                record = self._live_refresh(key, now)
                if record is not None:
                    tokens[record.uid] = replace(record)
        return tokens

    # access records
    def persist_access(self, uid: str, csrf: str, expiration: int) -> None:
        with self._data_lock:
            self.access_tokens[uid] = AccessRecord(
                uid=uid, csrf=csrf, expiration=int(expiration)
            )

    def fetch_access(self, uid: str) -> Optional[AccessRecord]:
        with self._data_lock:
            record = self.access_tokens.get(uid)
            if record is None:
                return None
            if is_expired(record.expiration):
                self.access_tokens.pop(uid, None)
                return None
            return replace(record)

    def destroy_access(self, uid: str) -> None:
        with self._data_lock:
            self.access_tokens.pop(uid, None)

    def clear(self) -> None:
        with self._data_lock:
            dropped = len(self.refresh_tokens) + len(self.access_tokens)
            self.refresh_tokens.clear()
            self.access_tokens.clear()
        self.logger.debug("memory_store_cleared", records=dropped)
