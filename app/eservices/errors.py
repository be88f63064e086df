"""
Typed errors surfaced by the access-control and request-lifecycle engine.

Each class carries a machine-readable ``kind`` and the HTTP status the JSON
adapter maps it to. Catch by type, never by message.
"""
from __future__ import annotations


class EngineError(Exception):
    kind = "engine_error"
    http_status = 500

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out: dict[str, object] = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class Unauthenticated(EngineError):
    kind = "unauthenticated"
    http_status = 401


class Forbidden(EngineError):
    kind = "forbidden"
    http_status = 403


class NotFound(EngineError):
    kind = "not_found"
    http_status = 404


class ValidationFailed(EngineError):
    kind = "validation_failed"
    http_status = 400


class InvalidTransition(EngineError):
    kind = "invalid_transition"
    http_status = 409


class ReferenceCollision(EngineError):
    """Reference-number retries exhausted. Safe to retry the whole creation."""

    kind = "reference_collision"
    http_status = 503


class ConcurrentModification(EngineError):
    """Another decision committed first. Re-fetch and retry once."""

    kind = "concurrent_modification"
    http_status = 409


class StoreUnavailable(EngineError):
    kind = "store_unavailable"
    http_status = 503
