"""Application services."""

from spotify_assistant.application.services.library_sync_service import (
    LibrarySyncService,
    SyncReport,
)
from spotify_assistant.application.services.playlist_service import (
    PlaylistComparison,
    PlaylistService,
)

__all__ = [
    "LibrarySyncService",
    "PlaylistComparison",
    "PlaylistService",
    "SyncReport",
]
