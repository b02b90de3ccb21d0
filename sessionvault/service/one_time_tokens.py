from __future__ import annotations

import secrets
import time
from enum import Enum
from typing import Callable, Optional

from sessionvault.logging import get_logger
from sessionvault.service.tokens import hash_token
from sessionvault.storage.common import KeyValueStore
from sessionvault.storage.models import OneTimeToken, utc_from_timestamp

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


TOKEN_PREFIXES = {
    TokenPurpose.EMAIL_VERIFICATION: "verify_token:",
    TokenPurpose.PASSWORD_RESET: "reset_token:",
}

TOKEN_LIFETIMES = {
    TokenPurpose.EMAIL_VERIFICATION: 24 * 60 * 60,
    TokenPurpose.PASSWORD_RESET: 60 * 60,
}


class OneTimeTokenRegistry:
    """Single-use random tokens for email verification and password reset.

    Only the SHA-256 of a token is used as its key. ``consume`` is an atomic
    get-and-delete, so two concurrent redemptions cannot both succeed.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        scan_batch_size: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.scan_batch_size = scan_batch_size
        self.clock = clock

    @staticmethod
    def _key(purpose: TokenPurpose, token: str) -> str:
        return f"{TOKEN_PREFIXES[purpose]}{hash_token(token)}"

    async def create(self, user_id: str, email: str, purpose: TokenPurpose) -> str:
        purpose = TokenPurpose(purpose)
        token = secrets.token_hex(32)
        record = OneTimeToken(
            user_id=user_id,
            email=email,
            purpose=purpose.value,
            created_at=utc_from_timestamp(self.clock()),
        )
        await self.store.set_with_ttl(
            self._key(purpose, token), record.to_json(), TOKEN_LIFETIMES[purpose]
        )
        return token

    async def verify(self, token: str, purpose: TokenPurpose) -> Optional[OneTimeToken]:
        purpose = TokenPurpose(purpose)
        record = OneTimeToken.from_json(await self.store.get(self._key(purpose, token)))
        if record is None or record.purpose != purpose.value:
            return None
        return record

    async def consume(self, token: str, purpose: TokenPurpose) -> Optional[OneTimeToken]:
        purpose = TokenPurpose(purpose)
        record = OneTimeToken.from_json(await self.store.pop(self._key(purpose, token)))
        if record is None or record.purpose != purpose.value:
            return None
        return record

    async def invalidate_for_user(self, user_id: str, purpose: TokenPurpose) -> int:
        purpose = TokenPurpose(purpose)
        doomed = []
        async for key in self.store.scan_keys(
            f"{TOKEN_PREFIXES[purpose]}*", count=self.scan_batch_size
        ):
            record = OneTimeToken.from_json(await self.store.get(key))
            if record is not None and record.user_id == user_id:
                doomed.append(key)
        removed = await self.store.delete(*doomed) if doomed else 0
        if removed:
            logger.info(
                "one_time_tokens_invalidated",
                user_id=user_id,
                purpose=purpose.value,
                removed=removed,
            )
        return removed


__all__ = ["OneTimeTokenRegistry", "TokenPurpose", "TOKEN_LIFETIMES"]
