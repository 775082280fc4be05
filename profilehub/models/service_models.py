"""
Service Layer Result Envelope.
"""

from __future__ import annotations

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

__all__ = ["ServiceResult"]


class ServiceResult(BaseModel, Generic[T]):
    """
    Standard return envelope of the ``ProfileApi`` facade.

    Generic over ``T`` so callers can annotate precisely
    (``ServiceResult[Profile]``).  ``status_code`` follows HTTP
    conventions: 200/201 on success, 400 validation, 403 ownership,
    404 missing, 503 store unavailable.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: int = 200
