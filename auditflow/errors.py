"""Error types raised by the audit workflow engine."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import ValidationError


class AuditflowError(Exception):
    """Base class for all engine errors."""


class ValidationFailedError(AuditflowError):
    """Input was rejected; ``field_errors`` maps each bad field to a message."""

    def __init__(self, field_errors: Dict[str, str]) -> None:
        self.field_errors = dict(field_errors)
        detail = "; ".join(f"{k}: {v}" for k, v in self.field_errors.items())
        super().__init__(f"Validation failed ({detail})")

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "ValidationFailedError":
        """Collapse a pydantic error into one message per top-level field."""
        errors: Dict[str, str] = {}
        for item in exc.errors():
            loc = item.get("loc") or ("__root__",)
            field = str(loc[0])
            errors.setdefault(field, item.get("msg", "Invalid value"))
        return cls(errors)


class InvalidTransitionError(ValidationFailedError):
    """A step or audit was asked to move somewhere its state machine forbids."""

    def __init__(self, message: str, field: str = "status") -> None:
        super().__init__({field: message})
        self.message = message


class NotFoundError(AuditflowError):
    """Referenced entity does not exist."""

    kind = "entity"

    def __init__(self, key: Any, detail: Optional[str] = None) -> None:
        self.key = key
        super().__init__(detail or f"{self.kind} {key} not found")


class AuditNotFoundError(NotFoundError):
    kind = "audit"


class StepNotFoundError(NotFoundError):
    kind = "step"

    def __init__(self, key: Any, audit_id: Optional[int] = None) -> None:
        self.audit_id = audit_id
        detail = None
        if audit_id is not None:
            detail = f"step {key} does not belong to audit {audit_id}"
        super().__init__(key, detail)


class TemplateNotFoundError(NotFoundError):
    kind = "template"


class ConflictError(AuditflowError):
    """Request conflicts with the current state of an entity."""


class PublishConflictError(ConflictError):
    """Template is already published under a different version."""

    def __init__(self, path_id: int, published: Optional[str], requested: str) -> None:
        self.path_id = path_id
        self.published_version = published
        self.requested_version = requested
        super().__init__(
            f"template {path_id} already published as {published!r}, "
            f"cannot publish as {requested!r}"
        )


class TemplateFrozenError(ConflictError):
    """Step definitions of a published template cannot change."""

    def __init__(self, path_id: int) -> None:
        self.path_id = path_id
        super().__init__(
            f"template {path_id} is published; clone it to edit its steps"
        )


class TransactionError(AuditflowError):
    """A write could not be committed; nothing was persisted."""


class ConcurrentModificationError(TransactionError):
    """The stored aggregate changed since it was loaded."""

    def __init__(self, audit_id: int, expected: int, actual: Optional[int]) -> None:
        self.audit_id = audit_id
        self.expected_version = expected
        self.actual_version = actual
        super().__init__(
            f"audit {audit_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )


__all__ = [
    "AuditflowError",
    "ValidationFailedError",
    "InvalidTransitionError",
    "NotFoundError",
    "AuditNotFoundError",
    "StepNotFoundError",
    "TemplateNotFoundError",
    "ConflictError",
    "PublishConflictError",
    "TemplateFrozenError",
    "TransactionError",
    "ConcurrentModificationError",
]
