from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


@dataclass
class TokenClaims:
    user_id: str
    email: str
    issued_at: int
    expires_at: int
    token_type: str
    jti: str
    family_id: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 0


@dataclass
class RotationRecord:
    """Server-side state of one live refresh token, keyed by its hash."""

    user_id: str
    email: str
    family_id: str
    created_at: datetime
    last_rotated_at: datetime
    rotation_count: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "email": self.email,
                "family_id": self.family_id,
                "rotation_count": self.rotation_count,
                "created_at": self.created_at.isoformat(),
                "last_rotated_at": self.last_rotated_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["RotationRecord"]:
        """Decode a stored record; corrupted entries decode to None."""
        data = _load_json(raw)
        if data is None:
            return None
        created_at = _parse_datetime(data.get("created_at"))
        last_rotated_at = _parse_datetime(data.get("last_rotated_at"))
        user_id = data.get("user_id")
        family_id = data.get("family_id")
        if not user_id or not family_id or created_at is None or last_rotated_at is None:
            return None
        try:
            rotation_count = int(data.get("rotation_count", 0))
        except (TypeError, ValueError):
            return None
        return cls(
            user_id=str(user_id),
            email=str(data.get("email", "")),
            family_id=str(family_id),
            created_at=created_at,
            last_rotated_at=last_rotated_at,
            rotation_count=rotation_count,
        )


@dataclass
class Session:
    id: str
    user_id: str
    email: str
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_json(self) -> str:
        # The id is the storage key, not part of the value
        payload = asdict(self)
        payload.pop("id")
        payload["created_at"] = self.created_at.isoformat()
        payload["last_activity"] = self.last_activity.isoformat()
        return json.dumps(payload)

    @classmethod
    def from_json(cls, session_id: str, raw: Optional[str]) -> Optional["Session"]:
        data = _load_json(raw)
        if data is None:
            return None
        created_at = _parse_datetime(data.get("created_at"))
        last_activity = _parse_datetime(data.get("last_activity"))
        if not data.get("user_id") or created_at is None or last_activity is None:
            return None
        return cls(
            id=session_id,
            user_id=str(data["user_id"]),
            email=str(data.get("email", "")),
            created_at=created_at,
            last_activity=last_activity,
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class OneTimeToken:
    user_id: str
    email: str
    purpose: str
    created_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "email": self.email,
                "purpose": self.purpose,
                "created_at": self.created_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["OneTimeToken"]:
        data = _load_json(raw)
        if data is None:
            return None
        created_at = _parse_datetime(data.get("created_at"))
        if not data.get("user_id") or not data.get("purpose") or created_at is None:
            return None
        return cls(
            user_id=str(data["user_id"]),
            email=str(data.get("email", "")),
            purpose=str(data["purpose"]),
            created_at=created_at,
        )
