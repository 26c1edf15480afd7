"""Error taxonomy shared by the server and the runner.

Every error carries a closed ``ErrorKind`` so that the HTTP boundary and the
job queue can switch on it without inspecting messages.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Closed set of failure categories."""

    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"
    UPSTREAM_PLATFORM = "upstream_platform"
    INTERNAL = "internal"


class FailureCode(StrEnum):
    """Well-known platform outcome codes reported by agents."""

    CREDENTIALS_REJECTED = "credentials_rejected"
    REVERIFICATION_REQUIRED = "reverification_required"
    STEP_TIMEOUT = "step_timeout"
    TARGET_MISSING = "target_missing"
    UNEXPECTED_NAVIGATION = "unexpected_navigation"
    ASSERTION_FAILED = "assertion_failed"
    EXPIRED = "expired"


class MarionetteError(Exception):
    """Base exception for all Marionette errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def code(self) -> str | None:
        code = self.details.get("code")
        return str(code) if code is not None else None


class UnauthorizedError(MarionetteError):
    """Raised when credentials are missing or do not match."""

    kind = ErrorKind.UNAUTHORIZED


class TokenExpiredError(UnauthorizedError):
    """Raised when a client API token is past its expiry."""

    def __init__(self, message: str = "API token has expired") -> None:
        super().__init__(message, details={"reason": "token_expired"})


class NotFoundError(MarionetteError):
    """Raised when an entity is absent or not visible to the caller."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, identifier: object) -> None:
        super().__init__(
            f"{entity_type} not found: {identifier}",
            details={"entity_type": entity_type, "identifier": str(identifier)},
        )
        self.entity_type = entity_type


class InvalidStateError(MarionetteError):
    """Raised when an operation is not allowed in the entity's current state."""

    kind = ErrorKind.INVALID_STATE


class ValidationError(MarionetteError):
    """Raised when input validation fails."""

    kind = ErrorKind.VALIDATION


class UpstreamPlatformError(MarionetteError):
    """Raised when the target platform misbehaves or rejects an action."""

    kind = ErrorKind.UPSTREAM_PLATFORM

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        merged = dict(details or {})
        if code is not None:
            merged["code"] = code
        super().__init__(message, details=merged)


class InternalError(MarionetteError):
    """Raised on unexpected internal failures."""

    kind = ErrorKind.INTERNAL
