"""
core/results.py -- Caller-facing result envelope.

Every core operation that completes returns an OperationResult; every core
operation that fails raises a KeywardError, which the caller converts with
OperationResult.from_error(). The CLI prints this shape; any transport built on
top serializes it as-is. Callers parse success and failure the same way.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from core.errors import ErrorKind, KeywardError


class OperationResult(BaseModel):
    """Success flag, human-readable message, optional data, and error kind on failure."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, message: str, data: Optional[dict[str, Any]] = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def from_error(cls, exc: KeywardError) -> "OperationResult":
        """Build a failure result from a core error. details become the data payload."""
        return cls(
            success=False,
            message=exc.message,
            data=exc.details or None,
            kind=exc.kind,
        )
