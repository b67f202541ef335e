"""
Scan engine exceptions.

Classification problems (unknown identifiers, broken session configuration)
are raised to the caller. Persistence problems (network, timeouts, a full
offline queue) are absorbed by the ingest and sync services.
"""


class ScanEngineError(Exception):
    """Base class; carries a stable error code for API payloads."""

    error_code = "SCAN_ENGINE_ERROR"

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class ValidationError(ScanEngineError):
    """Unknown attendee, booth or session identifier. Never queued."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, field_name: str, value: str | None, reason: str | None = None):
        detail = reason or f"Unknown {field_name} '{value}'"
        super().__init__(detail)
        self.field_name = field_name
        self.value = value


class ConfigError(ScanEngineError):
    """Malformed SessionConfig; blocks scanning for that session."""

    error_code = "CONFIG_ERROR"

    def __init__(self, session_id: str | None, errors: list[str]):
        joined = "; ".join(errors) or "invalid configuration"
        target = f"session '{session_id}'" if session_id else "session config"
        super().__init__(f"Invalid {target}: {joined}")
        self.session_id = session_id
        self.errors = list(errors)


class NetworkError(ScanEngineError):
    """Transient failure talking to the authoritative store."""

    error_code = "NETWORK_ERROR"


class CommitTimeout(NetworkError):
    error_code = "COMMIT_TIMEOUT"


class ConflictError(ScanEngineError):
    """The store already holds this mutation. Callers treat it as success."""

    error_code = "ALREADY_APPLIED"


class QuotaError(ScanEngineError):
    """Offline queue is at capacity."""

    error_code = "QUEUE_FULL"

    def __init__(self, capacity: int):
        super().__init__(f"Offline scan queue is full ({capacity} records). Sync or clear the backlog.")
        self.capacity = capacity
