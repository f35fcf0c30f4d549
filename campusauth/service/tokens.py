from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from campusauth.config import Settings
from campusauth.logging import fingerprint, get_logger
from campusauth.service.errors import ExpiredTokenError, InvalidTokenError
from campusauth.storage.models import Principal, Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessTokenClaims:
    subject: str
    role: Role
    full_name: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class ResetTokenClaims:
    username: str
    expires_at: int
    checksum: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Signs and verifies access JWTs (HS256) and password-reset tokens.

    Access tokens carry ``sub`` (username), ``role``, ``fullName``, ``iat``,
    ``exp`` and ``iss``. Reset tokens are ``b64url(username:expiry:mac)``
    where ``mac`` is HMAC-SHA256 over ``username:expiry`` keyed with the
    reset secret, so usernames containing ``:`` cannot be encoded.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._signing_key = settings.jwt_secret.encode()
        self._reset_key = settings.reset_token_secret.encode()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_seconds

    # access tokens

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._signing_key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_access_token(self, principal: Principal) -> str:
        issued_at = int(self._now().timestamp())
        payload = {
            "sub": principal.username,
            "role": principal.role.value,
            "fullName": principal.full_name,
            "iat": issued_at,
            "exp": issued_at + self.access_token_ttl_seconds,
            "iss": self.settings.jwt_issuer,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Invalid access token")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid access token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid access token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64.encode()):
            raise InvalidTokenError("Invalid access token")

        try:
            payload: Dict[str, Any] = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid access token")
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid access token")

        try:
            claims = AccessTokenClaims(
                subject=str(payload["sub"]),
                role=Role(payload["role"]),
                full_name=str(payload.get("fullName") or ""),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid access token")

        if self._now().timestamp() >= claims.expires_at:
            raise ExpiredTokenError("Access token expired")
        return claims

    # password-reset tokens

    def _reset_checksum(self, username: str, expires_at: str) -> str:
        return _encode_segment(
            hmac.new(
                self._reset_key, f"{username}:{expires_at}".encode(), hashlib.sha256
            ).digest()
        )

    def issue_password_reset_token(self, username: str) -> str:
        if ":" in username:
            raise ValueError("username must not contain ':'")
        expires = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        epoch = str(int(expires.timestamp()))
        payload = f"{username}:{epoch}:{self._reset_checksum(username, epoch)}"
        return _encode_segment(payload.encode())

    def decode_password_reset_token(self, token: str) -> ResetTokenClaims:
        """Check structure and MAC of a reset token without looking at its expiry."""
        try:
            raw = _decode_segment(token)
            decoded = raw.decode("utf-8")
        except (TypeError, ValueError, binascii.Error):
            raise InvalidTokenError("Invalid reset token")
        # Reject non-canonical encodings so every character of the token counts
        if _encode_segment(raw) != token.rstrip("="):
            raise InvalidTokenError("Invalid reset token")
        parts = decoded.split(":")
        if len(parts) != 3:
            raise InvalidTokenError("Invalid reset token")
        username, raw_expiry, checksum = parts
        # Plain ASCII digits only; int() would also accept "_", "+", spaces and zero padding
        if not (raw_expiry.isascii() and raw_expiry.isdigit()) or raw_expiry != str(
            int(raw_expiry)
        ):
            raise InvalidTokenError("Invalid reset token")
        expires_at = int(raw_expiry)
        expected = self._reset_checksum(username, raw_expiry)
        if not checksum.isascii() or not hmac.compare_digest(
            expected.encode(), checksum.encode()
        ):
            logger.warning(
                "password_reset_checksum_mismatch", username_hash=fingerprint(username)
            )
            raise InvalidTokenError("Invalid reset token")
        return ResetTokenClaims(username=username, expires_at=expires_at, checksum=checksum)

    def verify_password_reset_claims(self, token: str) -> ResetTokenClaims:
        claims = self.decode_password_reset_token(token)
        if self._now().timestamp() > claims.expires_at:
            raise ExpiredTokenError("Reset token expired")
        return claims

    def verify_password_reset_token(self, token: str) -> str:
        return self.verify_password_reset_claims(token).username


class ResetTokenLedger:
    """Remembers redeemed reset tokens until they would have expired anyway."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._used: Dict[str, int] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def consume(self, checksum: str, expires_at: int) -> bool:
        """Mark a token as redeemed; False if it had already been redeemed."""
        now = self._now().timestamp()
        with self._lock:
            for key in [k for k, exp in self._used.items() if exp < now]:
                del self._used[key]
            if checksum in self._used:
                return False
            self._used[checksum] = expires_at
            return True


def make_ledger(settings: Settings) -> Optional[ResetTokenLedger]:
    return ResetTokenLedger() if settings.password_reset_single_use else None
