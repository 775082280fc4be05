"""
Account Model.

One row per set of login credentials.  The ``preferences`` blob is opaque
to everything except two keys: ``activeProfileId`` (server-side active
profile pointer) and, for accounts still on the embedded representation,
``studentProfiles``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from profilehub.models.enums import AccountRole, ProfileStorageVersion
from profilehub.utils.string_helpers import JsonValue, first_word, load_json_object

PREF_ACTIVE_PROFILE_ID: str = "activeProfileId"
PREF_STUDENT_PROFILES: str = "studentProfiles"


class Account(BaseModel):
    """Represents an account.

    ``profile_storage_version`` is the per-account marker that tells the
    repository router which profile representation is authoritative.
    """

    id: str  # Supabase auth UUID
    email: str = ""
    full_name: str = ""
    role: AccountRole = AccountRole.USER
    credits_remaining: int = 0
    onboarding_completed: bool = False
    preferences: dict[str, JsonValue] = Field(default_factory=dict)
    profile_storage_version: ProfileStorageVersion = ProfileStorageVersion.NORMALIZED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("preferences", mode="before")
    @classmethod
    def _decode_preferences(cls, value: object) -> object:
        if value is None or isinstance(value, (str, bytes)):
            return load_json_object(value)
        return value

    @property
    def server_active_profile_id(self) -> Optional[str]:
        """The ``activeProfileId`` stored in preferences, if it is a string."""
        value = self.preferences.get(PREF_ACTIVE_PROFILE_ID)
        return value if isinstance(value, str) and value else None

    @property
    def first_name(self) -> Optional[str]:
        return first_word(self.full_name)

    @property
    def is_embedded(self) -> bool:
        return self.profile_storage_version == ProfileStorageVersion.EMBEDDED


class AccountUpdate(BaseModel):
    """Fields an account owner may change through account settings.

    ``role`` and ``credits_remaining`` are deliberately absent; unknown
    fields are rejected.
    """

    model_config = {"extra": "forbid"}

    full_name: Optional[str] = None
    onboarding_completed: Optional[bool] = None
    preferences: Optional[dict[str, JsonValue]] = None
