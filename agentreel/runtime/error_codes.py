from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """
    Stable error codes shared by diagnostics, validation issues and CLI output.
    """

    # Event stream
    MALFORMED_EVENT = "malformed_event"
    UNKNOWN_EVENT_KIND = "unknown_event_kind"
    UNKNOWN_CORRELATION = "unknown_correlation"
    DUPLICATE_START = "duplicate_start"
    COMPLETE_WITHOUT_START = "complete_without_start"
    START_WITHOUT_COMPLETE = "start_without_complete"
    REDUCER_FAILED = "reducer_failed"

    # Persistence / configuration
    CONFIG_INVALID = "config_invalid"
    RULE_STORE_INVALID = "rule_store_invalid"
    EVENT_LOG_INVALID = "event_log_invalid"
    SESSION_NOT_FOUND = "session_not_found"

    # Permissions
    PERMISSION_TIMEOUT = "permission_timeout"
    PERMISSION_NOT_PENDING = "permission_not_pending"
