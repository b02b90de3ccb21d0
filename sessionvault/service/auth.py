from __future__ import annotations

import asyncio
from typing import List, Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import StoreUnavailableError, TokenReuseDetectedError
from sessionvault.service.refresh_tokens import RefreshTokenRegistry, new_family_id
from sessionvault.service.sessions import SessionRegistry
from sessionvault.service.tokens import TokenCodec, hash_token
from sessionvault.storage.models import Session, TokenClaims, TokenPair

logger = get_logger(__name__)


class AuthSessionService:
    """Entry point for login, refresh and logout handlers.

    Callers hand in an already verified user identity; this service mints
    tokens and keeps refresh-token records and sessions in step.
    """

    def __init__(
        self,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenRegistry,
        sessions: SessionRegistry,
        settings: Settings,
    ) -> None:
        # Rotation rebinds sessions inside the registry, so both must share one
        if refresh_tokens.sessions is None:
            refresh_tokens.sessions = sessions
        elif refresh_tokens.sessions is not sessions:
            raise ValueError("refresh token registry is bound to a different session registry")
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.sessions = sessions
        self.settings = settings
        self.logger = logger

    def _pair(self, access_token: str, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def issue(
        self,
        user_id: str,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Start a new token family and session after a successful login.

        All-or-nothing: a refresh token is only returned once both its record
        and its session are stored. Partial writes are discarded and the whole
        issuance is retried with backoff.
        """
        attempts = self.settings.store_retry_attempts
        for attempt in range(1, attempts + 1):
            family_id = new_family_id()
            refresh_token = self.codec.issue_refresh_token(user_id, email, family_id=family_id)
            token_hash = hash_token(refresh_token)
            try:
                await self.refresh_tokens.register(refresh_token, user_id, email, family_id)
                await self.sessions.create(
                    user_id,
                    email,
                    token_hash,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            except StoreUnavailableError as exc:
                self.logger.warning(
                    "token_issue_failed",
                    user_id=user_id,
                    family_id=family_id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(exc),
                )
                await self._discard(family_id, token_hash)
                if attempt == attempts:
                    raise
                backoff_ms = self.settings.store_retry_backoff_ms * (4 ** (attempt - 1))
                await asyncio.sleep(backoff_ms / 1000)
                continue
            access_token = self.codec.issue_access_token(user_id, email)
            self.logger.info("tokens_issued", user_id=user_id, family_id=family_id)
            return self._pair(access_token, refresh_token)
        raise StoreUnavailableError("token issuance did not complete")

    async def _discard(self, family_id: str, token_hash: str) -> None:
        try:
            await self.refresh_tokens.invalidate_family(family_id, extra_hashes={token_hash})
        except StoreUnavailableError as exc:
            # Leftovers were never handed to a client and expire with their TTL
            self.logger.warning(
                "token_issue_cleanup_failed", family_id=family_id, error=str(exc)
            )

    async def refresh(
        self,
        presented_refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Rotate a refresh token and move its session to the new token.

        Reuse detection surfaces as TokenReuseDetectedError whose message is the
        generic "session expired" text; the audit details are logged here.
        """
        try:
            result = await self.refresh_tokens.rotate(
                presented_refresh_token, ip_address=ip_address, user_agent=user_agent
            )
        except TokenReuseDetectedError as exc:
            self.logger.warning(
                "refresh_rejected_reuse",
                user_id=exc.user_id,
                family_id=exc.family_id,
                reason=exc.reason,
            )
            raise
        return self._pair(result.access_token, result.refresh_token)

    async def revoke(self, refresh_token: str) -> bool:
        """Log out one client: drop the token record and its session together."""
        token_revoked = await self.refresh_tokens.revoke(refresh_token)
        session_deleted = await self.sessions.delete(hash_token(refresh_token))
        return token_revoked or session_deleted

    async def revoke_all(self, user_id: str) -> int:
        """Log out every client of a user; returns the number of revoked tokens."""
        revoked = await self.refresh_tokens.revoke_all_for_user(user_id)
        sessions_deleted = await self.sessions.delete_all_for_user(user_id)
        self.logger.info(
            "user_logged_out_everywhere",
            user_id=user_id,
            revoked_tokens=revoked,
            deleted_sessions=sessions_deleted,
        )
        return revoked

    def verify_access_token(self, token: str) -> TokenClaims:
        return self.codec.verify_access_token(token)

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_for_user(user_id)

    async def touch(self, refresh_token: str) -> Session:
        return await self.sessions.touch(hash_token(refresh_token))


__all__ = ["AuthSessionService"]
