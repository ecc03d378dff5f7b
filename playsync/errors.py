from typing import Any


class PlaySyncError(Exception):
    pass


class ConfigValidationError(PlaySyncError):
    """A single configuration value failed validation."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"{key}: {message}")


class BackendUnavailable(PlaySyncError):
    """A backend could not be reached or returned unusable data during a pass."""

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        super().__init__(f"[{backend}] {message}")


class RequestFailure(PlaySyncError):
    """One dispatched backend mutation failed."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.context = context or {}
        super().__init__(message)


class UnmatchedEntity(PlaySyncError):
    """Entity has no identity or no backend-local id for the requested operation."""
