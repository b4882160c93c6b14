"""Compact HS256 bearer tokens.

Tokens are ``base64url(header).base64url(payload).base64url(signature)``
with padding stripped. The header is fixed and the payload is a flat JSON
object; both are part of the wire contract with already-issued tokens, so
claim names and their order must not change.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from authcore.logging import get_logger

if TYPE_CHECKING:
    from authcore.config import Settings

logger = get_logger(__name__)

DEFAULT_ACCESS_TTL_SECONDS = 15 * 60
DEFAULT_REFRESH_TTL_SECONDS = 7 * 24 * 60 * 60

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class InvalidReason(str, Enum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_KIND = "wrong_kind"


@dataclass(frozen=True)
class TokenPayload:
    sub: str
    type: TokenKind
    iat: int
    exp: int
    username: Optional[str] = None
    admin: bool = False
    jti: Optional[str] = None

    def to_claims(self) -> dict[str, Any]:
        if self.type is TokenKind.ACCESS:
            return {
                "sub": self.sub,
                "username": self.username,
                "admin": self.admin,
                "iat": self.iat,
                "exp": self.exp,
                "type": self.type.value,
            }
        return {
            "sub": self.sub,
            "iat": self.iat,
            "exp": self.exp,
            "type": self.type.value,
            "jti": self.jti,
        }

    @classmethod
    def from_claims(cls, claims: Any) -> Optional["TokenPayload"]:
        """Parse a decoded claim object, or return None if it is not one of ours."""
        if not isinstance(claims, dict):
            return None
        sub = claims.get("sub")
        iat = claims.get("iat")
        exp = claims.get("exp")
        try:
            kind = TokenKind(claims.get("type"))
        except ValueError:
            return None
        if not isinstance(sub, str) or not sub:
            return None
        if not _is_epoch(iat) or not _is_epoch(exp):
            return None
        if kind is TokenKind.ACCESS:
            username = claims.get("username")
            admin = claims.get("admin")
            if not isinstance(username, str) or not isinstance(admin, bool):
                return None
            return cls(sub=sub, type=kind, iat=iat, exp=exp, username=username, admin=admin)
        jti = claims.get("jti")
        if not isinstance(jti, str) or not jti:
            return None
        return cls(sub=sub, type=kind, iat=iat, exp=exp, jti=jti)


@dataclass(frozen=True)
class InvalidToken:
    """Typed verification failure. Falsy, so ``if not result`` reads naturally."""

    reason: InvalidReason

    def __bool__(self) -> bool:
        return False


VerifyResult = Union[TokenPayload, InvalidToken]


def _is_epoch(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def generate_secret() -> str:
    """32 random bytes, standard base64. Used when no secret is configured."""
    return base64.b64encode(os.urandom(32)).decode("ascii")


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` value."""
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class TokenService:
    """Mints and verifies access/refresh tokens with one process-wide secret.

    Instances are immutable after construction and safe to share between
    threads without locking.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int = DEFAULT_ACCESS_TTL_SECONDS,
        refresh_ttl_seconds: int = DEFAULT_REFRESH_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ValueError("token lifetimes must be positive")
        self._key = secret.encode("utf-8")
        self.access_ttl_seconds = int(access_ttl_seconds)
        self.refresh_ttl_seconds = int(refresh_ttl_seconds)
        self._clock = clock
        self._header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TokenService":
        return cls(
            settings.jwt_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        )

    def _now(self) -> int:
        return int(self._clock())

    # minting

    def mint_access(self, identity_id: str, username: str, privileged: bool) -> str:
        now = self._now()
        payload = TokenPayload(
            sub=identity_id,
            type=TokenKind.ACCESS,
            iat=now,
            exp=now + self.access_ttl_seconds,
            username=username,
            admin=bool(privileged),
        )
        return self._encode(payload)

    def mint_refresh(self, identity_id: str) -> str:
        now = self._now()
        payload = TokenPayload(
            sub=identity_id,
            type=TokenKind.REFRESH,
            iat=now,
            exp=now + self.refresh_ttl_seconds,
            # Unique id so a deny list can target one token later
            jti=str(uuid.uuid4()),
        )
        return self._encode(payload)

    # verification

    def verify(self, token: str) -> VerifyResult:
        if not isinstance(token, str):
            return InvalidToken(InvalidReason.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            return InvalidToken(InvalidReason.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        expected = self._sign(f"{header_b64}.{payload_b64}")
        # compare_digest runs in time independent of the matching prefix
        supplied = sig_b64.encode("utf-8", errors="replace")
        if not hmac.compare_digest(expected.encode("ascii"), supplied):
            logger.debug("token_rejected", reason=InvalidReason.BAD_SIGNATURE.value)
            return InvalidToken(InvalidReason.BAD_SIGNATURE)
        if header_b64 != self._header_enc:
            # Only the fixed HS256 header is ever issued
            logger.debug("token_rejected", reason=InvalidReason.MALFORMED.value, part="header")
            return InvalidToken(InvalidReason.MALFORMED)

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.debug(
                "token_rejected", reason=InvalidReason.MALFORMED.value, error=str(exc)
            )
            return InvalidToken(InvalidReason.MALFORMED)
        payload = TokenPayload.from_claims(claims)
        if payload is None or payload.exp <= payload.iat:
            logger.debug("token_rejected", reason=InvalidReason.MALFORMED.value)
            return InvalidToken(InvalidReason.MALFORMED)

        if self._now() >= payload.exp:
            logger.debug("token_rejected", reason=InvalidReason.EXPIRED.value)
            return InvalidToken(InvalidReason.EXPIRED)
        return payload

    def verify_access(self, token: str) -> VerifyResult:
        return self._verify_kind(token, TokenKind.ACCESS)

    def verify_refresh(self, token: str) -> VerifyResult:
        return self._verify_kind(token, TokenKind.REFRESH)

    def remaining_seconds(self, token: str) -> int:
        result = self.verify(token)
        if not result:
            return 0
        return max(result.exp - self._now(), 0)

    def _verify_kind(self, token: str, kind: TokenKind) -> VerifyResult:
        result = self.verify(token)
        if not result:
            return result
        if result.type is not kind:
            logger.debug(
                "token_rejected",
                reason=InvalidReason.WRONG_KIND.value,
                expected=kind.value,
                actual=result.type.value,
            )
            return InvalidToken(InvalidReason.WRONG_KIND)
        return result

    # encoding helpers

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode((segment + padding).encode("ascii"))

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self._key, signing_input.encode("utf-8", errors="replace"), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: TokenPayload) -> str:
        payload_enc = self._encode_segment(
            json.dumps(payload.to_claims(), separators=(",", ":")).encode()
        )
        signing_input = f"{self._header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"


__all__ = [
    "InvalidReason",
    "InvalidToken",
    "TokenKind",
    "TokenPayload",
    "TokenService",
    "VerifyResult",
    "extract_bearer",
    "generate_secret",
]
