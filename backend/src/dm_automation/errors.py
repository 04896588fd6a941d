from __future__ import annotations


class AutomationError(Exception):
    """Base class for errors surfaced by the DM automation engine."""

    code = "automation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AutomationError):
    """Raised when caller input is malformed or out of range."""

    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class NotFoundError(AutomationError):
    """Raised when a channel, conversation or message is absent or not visible to the caller."""

    code = "not_found"


class AuthorizationError(AutomationError):
    """Raised when the caller is authenticated but lacks rights on the resource."""

    code = "forbidden"


class ProviderError(AutomationError):
    """Raised when a text-generation call fails or times out."""

    code = "provider_error"

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class ParseError(AutomationError):
    """Raised when provider output cannot be decoded into the expected structure."""

    code = "parse_error"


class InvalidStateTransition(AutomationError):
    code = "invalid_state_transition"

    def __init__(self, current: str | None, target: str) -> None:
        super().__init__(f"cannot move ai_status from {current or 'none'} to {target}")
        self.current = current
        self.target = target


class StorageError(AutomationError):
    """Raised when a durable write or read fails."""

    code = "storage_error"
