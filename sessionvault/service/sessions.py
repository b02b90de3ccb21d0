from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import NotFoundError
from sessionvault.storage.common import KeyValueStore, session_key, user_sessions_key
from sessionvault.storage.models import Session, utc_from_timestamp

logger = get_logger(__name__)


class SessionRegistry:
    """Active sessions per user, stored under ``session:<id>``.

    Session ids are the hash of the refresh token the session is bound to.
    ``user_sessions:<user_id>`` indexes them for bulk revocation; it carries no
    TTL of its own and stale members are pruned lazily when read.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def _now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    async def create(
        self,
        user_id: str,
        email: str,
        session_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Session:
        now = self._now()
        session = Session(
            id=session_id,
            user_id=user_id,
            email=email,
            created_at=created_at or now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.store.set_with_ttl(
            session_key(session_id), session.to_json(), self.settings.session_timeout_seconds
        )
        await self.store.add_to_set(user_sessions_key(user_id), session_id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self.store.get(session_key(session_id))
        return Session.from_json(session_id, raw)

    async def exists(self, session_id: str) -> bool:
        return await self.store.exists(session_key(session_id))

    async def touch(self, session_id: str) -> Session:
        """Record activity and slide the expiry forward by the session timeout.

        The sliding expiry can outlive the bound refresh token's absolute exp;
        a session whose token has expired is unusable for rotation regardless.
        """
        session = await self.get(session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        touched = replace(session, last_activity=self._now())
        await self.store.set_with_ttl(
            session_key(session_id), touched.to_json(), self.settings.session_timeout_seconds
        )
        return touched

    async def delete(self, session_id: str) -> bool:
        session = await self.get(session_id)
        if session is None:
            # Expired or never existed; still drop the key in case it is corrupt
            await self.store.delete(session_key(session_id))
            return False
        await self.store.delete(session_key(session_id))
        await self.store.remove_from_set(user_sessions_key(session.user_id), session_id)
        return True

    async def delete_all_for_user(self, user_id: str) -> int:
        members_key = user_sessions_key(user_id)
        session_ids = await self.store.set_members(members_key)
        if not session_ids:
            return 0
        deleted = await self.store.delete(*(session_key(sid) for sid in session_ids))
        await self.store.delete(members_key)
        logger.info("user_sessions_deleted", user_id=user_id, deleted=deleted)
        return deleted

    async def list_for_user(self, user_id: str) -> List[Session]:
        members_key = user_sessions_key(user_id)
        session_ids = sorted(await self.store.set_members(members_key))
        if not session_ids:
            return []
        raw_values = await self.store.get_many(session_key(sid) for sid in session_ids)
        sessions: List[Session] = []
        for session_id, raw in zip(session_ids, raw_values):
            session = Session.from_json(session_id, raw)
            if session is None:
                # Session key expired on its own; drop the stale index entry
                await self.store.remove_from_set(members_key, session_id)
                continue
            sessions.append(session)
        return sessions

    async def cleanup_expired(self, user_id: str) -> int:
        """Prune index entries whose session has expired; returns how many."""
        members_key = user_sessions_key(user_id)
        cleaned = 0
        for session_id in await self.store.set_members(members_key):
            if not await self.store.exists(session_key(session_id)):
                await self.store.remove_from_set(members_key, session_id)
                cleaned += 1
        if cleaned:
            logger.debug("stale_sessions_pruned", user_id=user_id, cleaned=cleaned)
        return cleaned

    async def rebind(
        self,
        old_session_id: str,
        new_session_id: str,
        user_id: str,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fallback_created_at: Optional[datetime] = None,
    ) -> Session:
        """Move a session to a new id, keeping its original ``created_at``.

        The new session is written before the old one is removed. When the old
        session already expired, ``fallback_created_at`` stands in for its
        creation time.
        """
        previous = await self.get(old_session_id)
        if previous is not None:
            created_at = previous.created_at
            ip_address = ip_address or previous.ip_address
            user_agent = user_agent or previous.user_agent
        else:
            created_at = fallback_created_at
        session = await self.create(
            user_id,
            email,
            new_session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=created_at,
        )
        await self.delete(old_session_id)
        return session


__all__ = ["SessionRegistry"]
