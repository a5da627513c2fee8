"""
Exception hierarchy for the achievement engine.

Every error carries a machine-readable `code` string so callers can branch
on it without parsing English messages, and a `retryable` flag that tells
the caller layer whether replaying the same operation may succeed.
"""
from __future__ import annotations

from typing import Any

import pydantic


class AchievementError(Exception):
    """Base class for all engine-level errors."""
    code: str = "ACHIEVEMENT_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ):
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(AchievementError):
    """Malformed template or operation input. Never partially applied."""
    code = "VALIDATION_ERROR"

    @classmethod
    def from_pydantic(cls, exc: pydantic.ValidationError, message: str = "Validation failed.") -> ValidationError:
        field_errors = []
        for error in exc.errors():
            field_errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })
        return cls(message, details={"errors": field_errors})


class NotFoundError(AchievementError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, key: str):
        super().__init__(
            message=f"{kind} {key} not found.",
            details={"kind": kind, "key": key},
        )


class ConflictError(AchievementError):
    """Optimistic version precondition failed, or a unique key already exists."""
    code = "CONFLICT"
    retryable = True


class PrerequisiteNotMetError(AchievementError):
    """Raised by the gate; the engine turns it into a silent per-template skip."""
    code = "PREREQUISITES_NOT_MET"

    def __init__(self, template_id: str, missing: list[str]):
        super().__init__(
            message=f"Prerequisites not met for template {template_id}.",
            details={"template_id": template_id, "missing": missing},
        )


class TransientStorageError(AchievementError):
    """Storage timeout or unavailability. The write was not applied."""
    code = "STORAGE_UNAVAILABLE"
    retryable = True
