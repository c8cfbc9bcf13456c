"""Uniform success/data/error envelopes for the console boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Generic, Optional, TypeVar

from .errors import CascadeDeleteError, ContentError


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

CASCADE_WARNING = (
    "Partial cleanup may have occurred. Verify the remaining content manually before retrying."
)


@dataclass
class OperationResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    message: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[T] = None, message: Optional[str] = None) -> "OperationResult[T]":
        return cls(success=True, data=data, message=message)

    @classmethod
    def failed(cls, error: ContentError) -> "OperationResult[T]":
        message = CASCADE_WARNING if isinstance(error, CascadeDeleteError) else None
        data: Any = error.report.to_dict() if isinstance(error, CascadeDeleteError) else None
        return cls(success=False, data=data, error=str(error), message=message, kind=error.kind)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "data": self.data}
        if self.error is not None:
            body["error"] = self.error
        if self.message is not None:
            body["message"] = self.message
        return body


async def capture(
    operation: Awaitable[T], *, message: Optional[str] = None
) -> OperationResult[T]:
    """Await *operation* and fold any :class:`ContentError` into a failed result."""

    try:
        data = await operation
    except ContentError as error:
        LOGGER.warning("Operation failed (%s): %s", error.kind, error)
        return OperationResult.failed(error)
    return OperationResult.ok(data, message)


__all__ = ["CASCADE_WARNING", "OperationResult", "capture"]
