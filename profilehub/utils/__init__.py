"""Shared utilities: audit trail and text/JSON helpers."""

from profilehub.utils.audit import AuditEvent, log_audit_event
from profilehub.utils.string_helpers import (
    JsonValue,
    first_word,
    has_control_chars,
    load_json_object,
    name_key,
    normalize_profile_name,
)

__all__ = [
    "AuditEvent",
    "JsonValue",
    "first_word",
    "has_control_chars",
    "load_json_object",
    "log_audit_event",
    "name_key",
    "normalize_profile_name",
]
