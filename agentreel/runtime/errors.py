from __future__ import annotations

from .error_codes import ErrorCode


class ConfigError(ValueError):
    code = ErrorCode.CONFIG_INVALID


class RuleStoreError(RuntimeError):
    code = ErrorCode.RULE_STORE_INVALID

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class EventLogError(RuntimeError):
    code = ErrorCode.EVENT_LOG_INVALID

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(KeyError):
    code = ErrorCode.SESSION_NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class PermissionNotPendingError(RuntimeError):
    code = ErrorCode.PERMISSION_NOT_PENDING


class PermissionTimeoutError(TimeoutError):
    code = ErrorCode.PERMISSION_TIMEOUT
