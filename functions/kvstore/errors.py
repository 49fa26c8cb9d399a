"""
Error taxonomy shared by the KV backends, service and HTTP layer.
"""

from __future__ import annotations

from typing import Optional


class KVError(Exception):
    """Base class for all KV store errors."""

    status_code = 500


class ValidationError(KVError):
    """Malformed request, rejected before any storage call."""

    status_code = 400


class NotFoundError(KVError):
    status_code = 404

    def __init__(self, key: str):
        super().__init__(f"Key not found: {key}")
        self.key = key


class BackendUnavailableError(KVError):
    """The underlying store is unreachable or rejected the query."""

    status_code = 503

    def __init__(self, operation: str, key: Optional[str] = None, detail: str = ""):
        target = f" (key={key})" if key is not None else ""
        message = f"Backend unavailable during {operation}{target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.key = key


class ConflictError(KVError):
    """Reserved for version-checked writes; not raised by the base store."""

    status_code = 409


class ConfigurationError(KVError):
    """A backend was selected without the settings it needs."""

    status_code = 500
