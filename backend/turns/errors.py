from __future__ import annotations


class TurnEngineError(Exception):
    code = "TURN_ENGINE_ERROR"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details


class ValidationError(TurnEngineError):
    code = "VALIDATION_ERROR"


class NotFoundError(TurnEngineError):
    code = "NOT_FOUND"


class ConflictError(TurnEngineError):
    code = "CONFLICT"


class UpstreamError(TurnEngineError):
    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        reason: str = "http",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.reason = reason
