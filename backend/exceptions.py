"""
Error taxonomy for playlist ingestion and EPG mapping.

Every error that aborts a sync run derives from PlaylistSyncError so the
failure path can record a single human-readable message on the playlist.
"""
from typing import Optional


class PlaylistSyncError(Exception):
    """Base class for errors that abort a sync or mapping run."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FetchError(PlaylistSyncError):
    """Network or HTTP failure while retrieving a source. Never retried."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.body = body


class DecodeError(PlaylistSyncError):
    """Structurally malformed source (not a line-level parse warning)."""


class PersistenceError(PlaylistSyncError):
    """Store or transaction failure."""


class ConfigurationError(PlaylistSyncError):
    """Invalid request, detected before any side effect."""


class MatchNotFoundError(Exception):
    """No EPG candidate scored at or above the similarity threshold.

    Not a PlaylistSyncError: it describes a normal "unmapped" outcome.
    """

    def __init__(self, query: str, best_score: float = 0.0):
        super().__init__(f"No EPG match for '{query}' (best score {best_score:.1f})")
        self.query = query
        self.best_score = best_score


class SyncCancelledError(PlaylistSyncError):
    """The run was cancelled cooperatively (e.g. superseded by a forced re-sync)."""
