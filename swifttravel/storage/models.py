from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_PREFERENCES: Dict[str, Any] = {
    "defaultPersona": None,
    "budgetRange": "mid-range",
    "accessibilityNeeds": [],
    "dietaryRestrictions": [],
    "travelStyle": "balanced",
    "preferredActivities": [],
}


def default_preferences() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_PREFERENCES)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=default_preferences)
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)


def _parse_timestamp(raw) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class MagicToken:
    """Value stored under ``magic_token:<token>`` until it is consumed or expires."""

    email: str
    created_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps({"email": self.email, "createdAt": self.created_at.isoformat()})

    @classmethod
    def from_json(cls, raw: str) -> "MagicToken":
        """Parse a stored token value; raises ValueError on corrupt data."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValueError("magic token payload is not valid JSON") from exc
        if not isinstance(data, dict) or not isinstance(data.get("email"), str):
            raise ValueError("magic token payload has no email")
        created_at = _parse_timestamp(data.get("createdAt")) or utcnow()
        return cls(email=data["email"], created_at=created_at)
