from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from typing import Optional

AUTHENTICITY_TOKEN_LENGTH = 32


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value.encode("utf-8"))


def _xor(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right))


class CSRFToken:
    """CSRF secret shared by an access/refresh pair.

    ``encoded`` is the raw value embedded in access claims and refresh
    records. ``token`` is a masked rendition (one-time pad followed by the
    pad XOR the raw bytes), so the value handed to a browser differs on
    every response while still validating against the same secret.
    """

    def __init__(self, encoded: Optional[str] = None) -> None:
        self.encoded = encoded or _b64encode(secrets.token_bytes(AUTHENTICITY_TOKEN_LENGTH))
        self._raw = _b64decode(self.encoded)
        self.token = self.masked()

    def masked(self) -> str:
        one_time_pad = secrets.token_bytes(len(self._raw))
        return _b64encode(one_time_pad + _xor(one_time_pad, self._raw))

    def valid_authenticity_token(self, candidate: Optional[str]) -> bool:
        if not candidate or not isinstance(candidate, str):
            return False
        try:
            decoded = _b64decode(candidate)
        except (binascii.Error, ValueError):
            return False
        if len(decoded) == len(self._raw):
            return hmac.compare_digest(decoded, self._raw)
        if len(decoded) == 2 * len(self._raw):
            pad, masked = decoded[: len(self._raw)], decoded[len(self._raw):]
            return hmac.compare_digest(_xor(pad, masked), self._raw)
        return False
