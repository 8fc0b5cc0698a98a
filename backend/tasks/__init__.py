"""
Scheduled Tasks Package.

This package contains all task implementations that can be scheduled
via the task engine.
"""

from tasks.playlist_sync import PlaylistSyncTask
from tasks.epg_mapping import EpgMappingTask

__all__ = [
    "PlaylistSyncTask",
    "EpgMappingTask",
]
