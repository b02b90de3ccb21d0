from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, NoReturn, Optional, Set

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import TokenReuseDetectedError
from sessionvault.service.sessions import SessionRegistry
from sessionvault.service.tokens import TokenCodec, hash_token
from sessionvault.storage.common import (
    REFRESH_TOKEN_PREFIX,
    KeyValueStore,
    refresh_token_key,
    session_key,
    token_family_key,
)
from sessionvault.storage.models import RotationRecord, utc_from_timestamp

logger = get_logger(__name__)


def new_family_id() -> str:
    return f"fam_{uuid.uuid4().hex}"


@dataclass
class RotationResult:
    access_token: str
    refresh_token: str
    record: RotationRecord
    token_hash: str
    previous_token_hash: str


class RefreshTokenRegistry:
    """Server-side tracking of refresh tokens and their rotation families.

    Lineage state machine::

        ISSUED --rotate(valid)--> ROTATED (old record deleted, new token ISSUED)
        ISSUED --rotate(already rotated / unknown)--> FAMILY_INVALIDATED
        ISSUED --ttl--> EXPIRED
        ISSUED --revoke()--> REVOKED

    A refresh token rotates exactly once. Presenting it again invalidates the
    whole family, including the newest token held by the legitimate client,
    which forces a fresh login. A retried client request is treated the same as
    a replayed stolen token.
    """

    def __init__(
        self,
        store: KeyValueStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        sessions: Optional[SessionRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.sessions = sessions
        self.clock = clock

    def _now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    async def get_record(self, token_hash: str) -> Optional[RotationRecord]:
        raw = await self.store.get(refresh_token_key(token_hash))
        return RotationRecord.from_json(raw)

    async def _persist(self, token_hash: str, record: RotationRecord) -> None:
        ttl = self.settings.refresh_token_ttl_seconds
        family_key = token_family_key(record.family_id)
        await self.store.set_with_ttl(refresh_token_key(token_hash), record.to_json(), ttl)
        await self.store.add_to_set(family_key, token_hash)
        # The family lives as long as its newest member
        await self.store.expire_set(family_key, ttl)

    async def register(
        self,
        refresh_token: str,
        user_id: str,
        email: str,
        family_id: Optional[str] = None,
    ) -> str:
        """Start tracking a freshly minted refresh token; returns its family id.

        Without an explicit ``family_id`` the token's own ``fam`` claim is used,
        falling back to a brand-new family.
        """
        claims = self.codec.verify_refresh_token(refresh_token)
        actual_family_id = family_id or claims.family_id or new_family_id()
        now = self._now()
        record = RotationRecord(
            user_id=user_id,
            email=email,
            family_id=actual_family_id,
            created_at=now,
            last_rotated_at=now,
            rotation_count=0,
        )
        await self._persist(hash_token(refresh_token), record)
        return actual_family_id

    async def rotate(
        self,
        old_refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RotationResult:
        # Signature and expiry first; these failures are terminal
        claims = self.codec.verify_refresh_token(old_refresh_token)
        old_hash = hash_token(old_refresh_token)

        record = await self.get_record(old_hash)
        if record is None:
            await self._reuse_detected(
                claims.family_id, claims.user_id, old_hash, reason="record_missing"
            )
        if record.user_id != claims.user_id or (
            claims.family_id and claims.family_id != record.family_id
        ):
            await self._reuse_detected(
                record.family_id, claims.user_id, old_hash, reason="record_mismatch"
            )
        family_key = token_family_key(record.family_id)
        if not await self.store.is_member(family_key, old_hash):
            await self._reuse_detected(
                record.family_id, record.user_id, old_hash, reason="not_in_family"
            )

        new_refresh_token = self.codec.issue_refresh_token(
            record.user_id, record.email, family_id=record.family_id
        )
        new_access_token = self.codec.issue_access_token(record.user_id, record.email)
        new_hash = hash_token(new_refresh_token)
        new_record = replace(
            record,
            rotation_count=record.rotation_count + 1,
            last_rotated_at=self._now(),
        )

        # New token is durable before the old one goes away: an interruption
        # here leaves both valid rather than neither.
        await self._persist(new_hash, new_record)

        # Atomic claim of the old record. Only one of several concurrent
        # rotations of the same token can see it.
        if await self.store.pop(refresh_token_key(old_hash)) is None:
            await self._reuse_detected(
                record.family_id, record.user_id, old_hash, reason="concurrent_rotation"
            )
        await self.store.remove_from_set(family_key, old_hash)

        if self.sessions is not None:
            await self.sessions.rebind(
                old_hash,
                new_hash,
                record.user_id,
                record.email,
                ip_address=ip_address,
                user_agent=user_agent,
                fallback_created_at=record.created_at,
            )
        # A concurrent reuse may have wiped the lineage while the session moved;
        # never hand out a token whose record is already gone.
        if not await self.store.exists(refresh_token_key(new_hash)):
            await self._reuse_detected(
                record.family_id, record.user_id, new_hash, reason="lineage_invalidated"
            )

        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            family_id=record.family_id,
            rotation_count=new_record.rotation_count,
        )
        return RotationResult(
            access_token=new_access_token,
            refresh_token=new_refresh_token,
            record=new_record,
            token_hash=new_hash,
            previous_token_hash=old_hash,
        )

    async def _reuse_detected(
        self,
        family_id: Optional[str],
        user_id: Optional[str],
        token_hash: str,
        *,
        reason: str,
    ) -> NoReturn:
        invalidated = 0
        if family_id:
            invalidated = await self.invalidate_family(family_id, extra_hashes={token_hash})
        else:
            # Lineage not discoverable; at least make sure this token is dead
            await self.store.delete(refresh_token_key(token_hash), session_key(token_hash))
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=user_id,
            family_id=family_id,
            reason=reason,
            invalidated_tokens=invalidated,
        )
        raise TokenReuseDetectedError(user_id=user_id, family_id=family_id, reason=reason)

    async def invalidate_family(
        self, family_id: str, *, extra_hashes: Optional[Set[str]] = None
    ) -> int:
        """Delete every record and session of a lineage plus the family set."""
        family_key = token_family_key(family_id)
        members = await self.store.set_members(family_key)
        hashes = members | (extra_hashes or set())
        keys: List[str] = [refresh_token_key(h) for h in hashes]
        # Records before sessions: a rotation racing with this call re-checks
        # its record after writing its session, so one side always cleans up.
        await self.store.delete(*keys, family_key)
        if self.sessions is not None:
            for token_hash in hashes:
                await self.sessions.delete(token_hash)
        return len(members)

    async def revoke(self, refresh_token: str) -> bool:
        """Drop one token's record and family membership. Idempotent.

        The signature is not checked; revoking requires no proof beyond
        possession of the token string.
        """
        token_hash = hash_token(refresh_token)
        record = await self.get_record(token_hash)
        if record is None:
            return False
        await self.store.remove_from_set(token_family_key(record.family_id), token_hash)
        await self.store.delete(refresh_token_key(token_hash))
        return True

    async def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every live record of ``user_id`` via a paginated key scan.

        Cost is proportional to the number of active tokens overall, which is
        bounded by the refresh-token TTL.
        """
        batch_size = self.settings.scan_batch_size
        matched: List[str] = []
        families: Set[str] = set()
        batch: List[str] = []

        async def _collect(keys: List[str]) -> None:
            for key, raw in zip(keys, await self.store.get_many(keys)):
                record = RotationRecord.from_json(raw)
                if record is not None and record.user_id == user_id:
                    matched.append(key)
                    families.add(record.family_id)

        async for key in self.store.scan_keys(f"{REFRESH_TOKEN_PREFIX}*", count=batch_size):
            batch.append(key)
            if len(batch) >= batch_size:
                await _collect(batch)
                batch = []
        if batch:
            await _collect(batch)

        revoked = 0
        for start in range(0, len(matched), batch_size):
            revoked += await self.store.delete(*matched[start : start + batch_size])
        if families:
            await self.store.delete(*(token_family_key(fid) for fid in families))
        logger.info(
            "user_refresh_tokens_revoked",
            user_id=user_id,
            revoked=revoked,
            families=len(families),
        )
        return revoked


__all__ = ["RefreshTokenRegistry", "RotationResult", "new_family_id"]
