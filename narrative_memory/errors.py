"""Error taxonomy shared by the store, the registry and the API layer.

Every error carries a ``category`` and a ``retryable`` flag so callers can
decide whether to resubmit without inspecting the exception type.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NarrativeMemoryError(Exception):
    """Base class for all errors raised by the memory core."""

    category: str = "internal"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.message,
            "category": self.category,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(NarrativeMemoryError):
    """Raised when a candidate fact or filter is malformed. Never persisted."""

    category = "validation"
    retryable = False


class EntityResolutionError(NarrativeMemoryError):
    """Raised when an entity could not be resolved after the race retries."""

    category = "entity_resolution"
    retryable = True


class StorageError(NarrativeMemoryError):
    """Raised when the database fails. Partial writes are rolled back first."""

    category = "database"
    retryable = True


class DuplicateEntityError(StorageError):
    """An entity insert lost a uniqueness race against a concurrent writer."""
