from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import InvalidTokenError
from tokenward.storage.common import Clock, system_clock

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    token_type: str
    token_id: str
    issued_at: int
    expires_at: int
    family_id: Optional[str] = None


class TokenIssuer(Protocol):
    def mint(
        self,
        subject_id: str,
        *,
        token_type: str,
        ttl_seconds: int,
        family_id: Optional[str] = None,
    ) -> str: ...

    def parse(self, token: str) -> TokenClaims: ...


def new_family_id() -> str:
    """Random URL-safe identifier shared by every token in one rotation chain."""
    return secrets.token_urlsafe(32)


class HmacTokenIssuer:
    """Compact HS256 JWTs signed with the shared ``jwt_secret``."""

    def __init__(self, settings: Settings, *, clock: Clock = system_clock) -> None:
        self.settings = settings
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def mint(
        self,
        subject_id: str,
        *,
        token_type: str,
        ttl_seconds: int,
        family_id: Optional[str] = None,
    ) -> str:
        if token_type not in (ACCESS, REFRESH):
            raise ValueError(f"unknown token type: {token_type}")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(subject_id),
            # jti keeps two tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(ttl_seconds),
            "type": token_type,
        }
        if family_id:
            payload["family"] = family_id
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: str) -> TokenClaims:
        """Verify ``token`` and return its claims or raise ``InvalidTokenError``."""
        if not token or not isinstance(token, str):
            raise InvalidTokenError("Token is missing")
        if not token.isascii():
            raise InvalidTokenError("Malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Malformed token") from None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("Invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Malformed token") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("Malformed token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Unexpected token audience")

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token has no valid expiry") from None
        if exp <= self._clock() - self.settings.jwt_clock_skew_seconds:
            raise InvalidTokenError("Token has expired")

        subject_id = payload.get("sub")
        token_type = payload.get("type")
        token_id = payload.get("jti")
        if not subject_id or token_type not in (ACCESS, REFRESH) or not token_id:
            raise InvalidTokenError("Token is missing required claims")
        return TokenClaims(
            subject_id=str(subject_id),
            token_type=token_type,
            token_id=str(token_id),
            issued_at=iat,
            expires_at=exp,
            family_id=payload.get("family"),
        )


__all__ = [
    "ACCESS",
    "REFRESH",
    "HmacTokenIssuer",
    "TokenClaims",
    "TokenIssuer",
    "new_family_id",
]
