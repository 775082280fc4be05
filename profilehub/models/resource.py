"""
Scoped Resource Models.

Rows of the data tables (documents, assignments, notifications, ...) come
in two shapes:

- :class:`ResourceWithProfileRef` -- the row names the owning profile.
- :class:`LegacyResourceWithAccountRef` -- a row written before profiles
  existed, carrying only the account id in ``user_id``.

The union is tagged by ``kind`` so the ownership policy dispatches on the
type, never on a nullable column.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from profilehub.models.enums import ResourceKind
from profilehub.utils.string_helpers import JsonValue, load_json_object


class _ResourceBase(BaseModel):
    table: str
    id: str
    user_id: Optional[str] = None
    payload: dict[str, JsonValue] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: object) -> object:
        if value is None or isinstance(value, (str, bytes)):
            return load_json_object(value)
        return value


class ResourceWithProfileRef(_ResourceBase):
    kind: Literal["profile_ref"] = "profile_ref"
    student_profile_id: str


class LegacyResourceWithAccountRef(_ResourceBase):
    kind: Literal["legacy_account_ref"] = "legacy_account_ref"


ScopedResource = Annotated[
    Union[ResourceWithProfileRef, LegacyResourceWithAccountRef],
    Field(discriminator="kind"),
]

_scoped_resource_adapter: TypeAdapter[ScopedResource] = TypeAdapter(ScopedResource)


def resource_from_row(table: str, row: dict[str, JsonValue]) -> ScopedResource:
    """Classify a raw row by whether it carries a profile reference."""
    data = dict(row)
    data["table"] = table
    if data.get("student_profile_id"):
        data["kind"] = ResourceKind.PROFILE_REF.value
    else:
        data["kind"] = ResourceKind.LEGACY_ACCOUNT_REF.value
        data.pop("student_profile_id", None)
    return _scoped_resource_adapter.validate_python(data)
