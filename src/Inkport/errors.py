"""Error taxonomy for the seeding pipeline.

Only ``FatalConnectionError`` is allowed to end a run. Every other kind is
caught at the innermost layer that can handle it and turned into a counter plus
a log line.
"""

from __future__ import annotations


class SeedError(Exception):
    """Base exception for seeding errors."""

    kind = "seed_error"


class RecordValidationError(SeedError):
    """A raw record could not be coerced into its canonical shape."""

    kind = "validation"

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class RelationshipResolutionError(SeedError):
    """The store refused to create a referenced contributor, tag or category."""

    kind = "relationship"


class MediaFetchError(SeedError):
    """Downloading a remote asset failed or timed out."""

    kind = "media_fetch"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class MediaUploadError(SeedError):
    """The media storage collaborator rejected or failed an upload."""

    kind = "media_upload"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class PersistenceError(SeedError):
    """Insert or update of a single row failed."""

    kind = "persistence"


class FatalConnectionError(SeedError):
    """The store is unreachable; the whole run is aborted."""

    kind = "fatal_connection"


class ParentNotFound(Exception):
    """Skip signal: a record depends on a parent row that does not exist."""

    def __init__(self, reason: str = "parent not found", *, parent_key: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.parent_key = parent_key
