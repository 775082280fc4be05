"""
Profile Model.

A profile is a persona inside an account.  Resources are scoped to a
profile; the account only owns the profiles.

``is_transient`` marks a profile synthesized by the session synchronizer
while the store is unreachable.  It is excluded from every dump, so a
transient profile can never be written back.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from profilehub.utils.string_helpers import JsonValue, load_json_object


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Profile(BaseModel):
    """A profile row, from ``student_profiles`` or an embedded entry."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    account_id: str
    profile_name: str
    profile_color: str = "#3b82f6"
    preferences: dict[str, JsonValue] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    last_accessed_at: Optional[datetime] = None
    is_active: bool = True
    is_transient: bool = Field(default=False, exclude=True)

    @field_validator("preferences", mode="before")
    @classmethod
    def _decode_preferences(cls, value: object) -> object:
        if value is None or isinstance(value, (str, bytes)):
            return load_json_object(value)
        return value

    @field_validator("created_at", "updated_at", "last_accessed_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite CURRENT_TIMESTAMP values come back naive (UTC).
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_embedded(self) -> dict[str, JsonValue]:
        """Serialize as an entry of ``preferences.studentProfiles``."""
        return {
            "id": self.id,
            "profile_name": self.profile_name,
            "profile_color": self.profile_color,
            "preferences": self.preferences,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_accessed_at": (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
            "is_active": self.is_active,
        }

    @classmethod
    def from_embedded(
        cls,
        entry: dict[str, JsonValue],
        account_id: str,
        fallback_timestamp: datetime,
    ) -> "Profile":
        """Build a profile from an embedded entry.

        Older entries only carry ``id``, ``profile_name``, ``profile_color``,
        ``created_at`` and ``last_accessed_at``: missing timestamps fall back
        to *fallback_timestamp* and a missing ``is_active`` means active.
        """
        created_at = entry.get("created_at") or fallback_timestamp
        return cls(
            id=str(entry["id"]),
            account_id=account_id,
            profile_name=str(entry.get("profile_name") or ""),
            profile_color=str(entry.get("profile_color") or "#3b82f6"),
            preferences=entry.get("preferences") or {},
            created_at=created_at,
            updated_at=entry.get("updated_at") or created_at,
            last_accessed_at=entry.get("last_accessed_at"),
            is_active=bool(entry.get("is_active", True)),
        )


def order_by_recency(profiles: list[Profile]) -> list[Profile]:
    """Most recently accessed first; never-accessed last, oldest created first."""
    accessed = sorted(
        (p for p in profiles if p.last_accessed_at is not None),
        key=lambda p: (-p.last_accessed_at.timestamp(), p.created_at, p.id),
    )
    never = sorted(
        (p for p in profiles if p.last_accessed_at is None),
        key=lambda p: (p.created_at, p.id),
    )
    return accessed + never


class ProfilePatch(BaseModel):
    """Allowed profile mutations.  Anything else is rejected."""

    model_config = ConfigDict(extra="forbid")

    profile_name: Optional[str] = None
    profile_color: Optional[str] = None
    preferences: Optional[dict[str, JsonValue]] = None

    def is_empty(self) -> bool:
        return not self.model_fields_set
