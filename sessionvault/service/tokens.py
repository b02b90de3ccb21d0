from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import InvalidSignatureError, TokenExpiredError
from sessionvault.storage.models import TokenClaims

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def hash_token(token: str) -> str:
    """SHA-256 digest of the full token; the only form a token is stored under."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Stateless HS256 JWT encoding and verification.

    Access and refresh tokens are signed with different secrets so one can
    never be replayed as the other. Output depends only on the settings and
    the injected clock.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self.clock = clock

    def issue_access_token(self, user_id: str, email: str) -> str:
        return self._issue(
            user_id,
            email,
            token_type=ACCESS_TOKEN_TYPE,
            lifetime_seconds=self.settings.access_token_ttl_seconds,
            secret=self.settings.jwt_access_secret,
        )

    def issue_refresh_token(
        self, user_id: str, email: str, *, family_id: Optional[str] = None
    ) -> str:
        extra = {"fam": family_id} if family_id else None
        return self._issue(
            user_id,
            email,
            token_type=REFRESH_TOKEN_TYPE,
            lifetime_seconds=self.settings.refresh_token_ttl_seconds,
            secret=self.settings.jwt_refresh_secret,
            extra=extra,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS_TOKEN_TYPE, self.settings.jwt_access_secret)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH_TOKEN_TYPE, self.settings.jwt_refresh_secret)

    def _issue(
        self,
        user_id: str,
        email: str,
        *,
        token_type: str,
        lifetime_seconds: int,
        secret: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> str:
        issued_at = int(self.clock())
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "typ": token_type,
            # Unique per token so two tokens minted in the same second never
            # share a hash
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + lifetime_seconds,
        }
        if extra:
            payload.update(extra)
        return self._encode_jwt(payload, secret)

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: str) -> dict[str, Any]:
        # Compact JWS is pure base64url; anything else cannot be one of ours
        if not isinstance(token, str) or not token.isascii():
            raise InvalidSignatureError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignatureError() from None

        # Reject anything but HS256 to prevent algorithm confusion attacks
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidSignatureError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError()

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignatureError() from None
        if not isinstance(payload, dict):
            raise InvalidSignatureError()
        return payload

    def _verify(self, token: str, expected_type: str, secret: str) -> TokenClaims:
        payload = self._decode_jwt(token, secret)
        # Claims are only inspected after the signature checked out
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignatureError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidSignatureError()
        if payload.get("typ") != expected_type:
            raise InvalidSignatureError("invalid token type")
        user_id = payload.get("sub")
        jti = payload.get("jti")
        try:
            issued_at = int(payload.get("iat"))
            expires_at = int(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidSignatureError() from None
        if not user_id or not jti:
            raise InvalidSignatureError()
        if expires_at <= self.clock() - self.settings.token_leeway_seconds:
            raise TokenExpiredError(f"{expected_type} token has expired")
        family_id = payload.get("fam")
        return TokenClaims(
            user_id=str(user_id),
            email=str(payload.get("email", "")),
            issued_at=issued_at,
            expires_at=expires_at,
            token_type=expected_type,
            jti=str(jti),
            family_id=str(family_id) if family_id else None,
        )


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "REFRESH_TOKEN_TYPE",
    "TokenCodec",
    "hash_token",
]
