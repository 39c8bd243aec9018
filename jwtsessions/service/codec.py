from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Mapping, Optional

from jwtsessions.config import Settings
from jwtsessions.logging import get_logger
from jwtsessions.service.errors import ClaimsVerification

logger = get_logger(__name__)

_DIGESTS: dict[str, Callable[..., Any]] = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


class TokenCodec:
    """Signs claim sets into compact JWS strings and verifies them back.

    Only HMAC algorithms are supported; the header algorithm must match the
    configured one exactly, so a token cannot downgrade its own verification.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        leeway: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        algorithm = algorithm.upper()
        if algorithm not in _DIGESTS:
            raise ValueError(f"unsupported signing algorithm {algorithm!r}")
        self._secret = secret.encode()
        self._digest = _DIGESTS[algorithm]
        self.algorithm = algorithm
        self.issuer = issuer
        self.leeway = max(0, int(leeway))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret or "",
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            leeway=settings.jwt_leeway_seconds,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), self._digest).digest()
        )

    def encode(self, claims: Mapping[str, Any]) -> str:
        payload = dict(claims)
        if self.issuer:
            payload["iss"] = self.issuer
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, verify_expiration: bool = True) -> dict[str, Any]:
        """Verify ``token`` and return its claims.

        With ``verify_expiration=False`` the signature and issuer are still
        checked; only the ``exp`` deadline is ignored.
        """
        if not isinstance(token, str):
            raise ClaimsVerification("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise ClaimsVerification("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise ClaimsVerification("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise ClaimsVerification("unexpected signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise ClaimsVerification("signature verification failed")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise ClaimsVerification("malformed token payload") from None
        if not isinstance(payload, dict):
            raise ClaimsVerification("malformed token payload")

        if self.issuer and payload.get("iss") != self.issuer:
            raise ClaimsVerification("issuer mismatch")

        if verify_expiration:
            exp = payload.get("exp")
            if exp is None or isinstance(exp, bool):
                raise ClaimsVerification("token has no expiration")
            try:
                exp_ts = float(exp)
            except (TypeError, ValueError):
                raise ClaimsVerification("token expiration is not numeric") from None
            if exp_ts <= time.time() - self.leeway:
                raise ClaimsVerification("token has expired", detail={"exp": exp})
        return payload
