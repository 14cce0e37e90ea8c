"""
Domain exceptions.

Raised by collaborator clients and caught at the scheduling layer, where
they feed the retry policy, or at the webhook boundary, where they are
logged and acknowledged.
"""

from __future__ import annotations


class CareCallError(Exception):
    """Base class for all service errors."""


class UserNotFoundError(CareCallError):
    """The Relational Store has no user for the given id."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class VoicePlatformError(CareCallError):
    """The Voice Platform rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BlobStoreError(CareCallError):
    """Writing to or reading from a storage bucket failed."""


class SimilarityIndexError(CareCallError):
    """The similarity index rejected a document or query."""
