"""Error taxonomy shared by every enhancement layer and the storage client.

Usage errors are raised before any I/O happens. Known request errors carry a
stable ``code`` so callers can tell a policy denial from a validation failure
or a missing row. Anything else raised by the storage collaborator is wrapped
in :class:`UnknownRequestError` with the original exception chained.
"""

from typing import Any


class ErrorCode:
    """Stable error codes."""

    DENIED_BY_POLICY = "P2004"
    DATA_VALIDATION = "P2012"
    NOT_FOUND = "P2025"
    UNIQUE_CONSTRAINT = "P2002"
    FOREIGN_KEY_CONSTRAINT = "P2003"
    RESULT_NOT_READABLE = "P2028"
    USAGE = "USAGE"
    UNKNOWN = "UNKNOWN"


class DenialReason:
    """Reasons attached to policy related failures."""

    ACCESS_POLICY_VIOLATION = "ACCESS_POLICY_VIOLATION"
    DATA_VALIDATION_VIOLATION = "DATA_VALIDATION_VIOLATION"
    RESULT_NOT_READABLE = "RESULT_NOT_READABLE"


class WardenError(Exception):
    """Base class for all errors raised by warden."""

    code: str = ErrorCode.UNKNOWN

    def __init__(self, message: str, *, meta: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.meta = meta or {}


class UsageError(WardenError):
    """Invalid arguments or unsupported usage, detected before touching storage."""

    code = ErrorCode.USAGE


class KnownRequestError(WardenError):
    """A request failed for a well understood reason."""


class DeniedByPolicyError(KnownRequestError):
    """An access policy rejected the operation."""

    code = ErrorCode.DENIED_BY_POLICY

    def __init__(
        self,
        model: str,
        message: str = "",
        *,
        reason: str = DenialReason.ACCESS_POLICY_VIOLATION,
        meta: dict[str, Any] | None = None,
    ):
        text = f"denied by policy: {model} entities failed '{message}' check"
        if not message:
            text = f"denied by policy: {model}"
        super().__init__(text, meta={"model": model, "reason": reason, **(meta or {})})
        self.model = model
        self.reason = reason


class DataValidationError(KnownRequestError):
    """Payload or resulting entity failed a declared validation schema."""

    code = ErrorCode.DATA_VALIDATION

    def __init__(self, model: str, detail: str, *, meta: dict[str, Any] | None = None):
        super().__init__(
            f"data validation failed for model '{model}': {detail}",
            meta={"model": model, "reason": DenialReason.DATA_VALIDATION_VIOLATION, **(meta or {})},
        )
        self.model = model
        self.detail = detail
        self.reason = DenialReason.DATA_VALIDATION_VIOLATION


class ResultNotReadableError(KnownRequestError):
    """The write succeeded but its result can't be read back under read policies."""

    code = ErrorCode.RESULT_NOT_READABLE

    def __init__(self, model: str, *, meta: dict[str, Any] | None = None):
        super().__init__(
            f"result of the operation on model '{model}' is not readable",
            meta={"model": model, "reason": DenialReason.RESULT_NOT_READABLE, **(meta or {})},
        )
        self.model = model
        self.reason = DenialReason.RESULT_NOT_READABLE


class NotFoundError(KnownRequestError):
    """A required entity does not exist."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, model: str, message: str = "", *, meta: dict[str, Any] | None = None):
        super().__init__(message or f"entity not found for model '{model}'", meta={"model": model, **(meta or {})})
        self.model = model


class UniqueConstraintError(KnownRequestError):
    """A write violated a unique constraint."""

    code = ErrorCode.UNIQUE_CONSTRAINT

    def __init__(self, model: str, fields: list[str]):
        super().__init__(
            f"unique constraint failed on model '{model}': ({', '.join(fields)})",
            meta={"model": model, "target": list(fields)},
        )
        self.model = model
        self.fields = list(fields)


class ForeignKeyConstraintError(KnownRequestError):
    """A write or delete violated a foreign key constraint."""

    code = ErrorCode.FOREIGN_KEY_CONSTRAINT

    def __init__(self, model: str, field_name: str):
        super().__init__(
            f"foreign key constraint failed on model '{model}' field '{field_name}'",
            meta={"model": model, "field": field_name},
        )
        self.model = model
        self.field_name = field_name


class UnknownRequestError(WardenError):
    """Unexpected failure bubbling up from the storage collaborator."""

    code = ErrorCode.UNKNOWN

    def __init__(self, cause: BaseException):
        super().__init__(f"unknown request error: {cause!r}", meta={"cause": type(cause).__name__})
        self.cause = cause
