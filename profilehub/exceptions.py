"""
Domain Exceptions.

Every error raised by the profile core derives from :class:`ProfileHubError`
and carries a human-readable ``message`` plus the ``original_error`` that
caused it, if any.  ``status_code`` is the HTTP-style code the
``ProfileApi`` facade reports in its ``ServiceResult``.
"""

from __future__ import annotations

from typing import Optional


class ProfileHubError(Exception):
    """Base class for profile core failures."""

    status_code: int = 500

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        self.message: str = message
        self.original_error: Optional[Exception] = original_error
        super().__init__(self.message)


class OwnershipDenied(ProfileHubError):
    """The caller's account does not own the target profile or resource."""

    status_code = 403


class ValidationFailed(ProfileHubError):
    """Input violated a profile rule (name, limit, duplicate, last profile)."""

    status_code = 400


class NotFound(ProfileHubError):
    """The account or profile does not exist."""

    status_code = 404


class BackendUnavailable(ProfileHubError):
    """The store did not answer in time or failed."""

    status_code = 503


class MigrationIncomplete(ProfileHubError):
    """A resource table still holds rows the migration could not attribute.

    Reported as a warning; the table keeps its nullable profile reference.
    """

    status_code = 409

    def __init__(self, table: str, null_count: int, orphan_count: int = 0) -> None:
        self.table: str = table
        self.null_count: int = null_count
        self.orphan_count: int = orphan_count
        super().__init__(
            f"{table}: {null_count} row(s) without profile reference and "
            f"{orphan_count} row(s) referencing a missing profile; "
            "constraint not applied"
        )


class BootstrapError(ProfileHubError):
    """The account row itself could not be provisioned."""

    status_code = 500
