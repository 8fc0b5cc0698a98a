"""Tests for the scheduled playlist sync and EPG mapping tasks."""
from datetime import datetime, timedelta

import pytest

import tasks.epg_mapping as epg_mapping_task
import tasks.playlist_sync as playlist_sync_task
from epg_mapping import MappingOutcome
from exceptions import ConfigurationError
from playlist_sync import SyncOutcome
from tasks import EpgMappingTask, PlaylistSyncTask
from tasks.playlist_sync import find_due_playlists
from tests.fixtures.factories import create_epg, create_epg_map, create_playlist

NOW = datetime(2025, 6, 1, 12, 0, 0)


class TestFindDuePlaylists:
    def test_selects_idle_auto_sync_playlists_past_interval(self, test_session):
        never = create_playlist(test_session, synced=None)
        stale = create_playlist(test_session, synced=NOW - timedelta(hours=25))
        create_playlist(test_session, synced=NOW - timedelta(hours=1))
        create_playlist(test_session, synced=None, auto_sync=False)
        create_playlist(test_session, synced=None, processing=True)

        assert find_due_playlists(now=NOW, interval_hours=24) == [never.id, stale.id]


class TestPlaylistSyncTask:
    @pytest.mark.asyncio
    async def test_syncs_due_playlists_and_counts_outcomes(self, test_session, monkeypatch):
        ok = create_playlist(test_session)
        broken = create_playlist(test_session)
        busy = create_playlist(test_session)
        outcomes = {
            ok.id: SyncOutcome(playlist_id=ok.id, status="completed"),
            broken.id: SyncOutcome(playlist_id=broken.id, status="failed", error="HTTP 500"),
            busy.id: SyncOutcome(playlist_id=busy.id, status="processing", skipped=True),
        }
        tokens = []

        async def fake_sync(playlist_id, token=None):
            tokens.append(token)
            return outcomes[playlist_id]

        monkeypatch.setattr(playlist_sync_task, "sync_playlist", fake_sync)
        task = PlaylistSyncTask()

        result = await task.run()

        assert result.success is False
        assert (result.success_count, result.failed_count, result.skipped_count) == (1, 1, 1)
        assert result.details == {"synced": [ok.id], "errors": [f"Playlist {broken.id}: HTTP 500"]}
        assert all(token is tokens[0] for token in tokens)

    @pytest.mark.asyncio
    async def test_deleted_playlist_does_not_stop_the_batch(self, test_session, monkeypatch):
        kept = create_playlist(test_session)
        monkeypatch.setattr(playlist_sync_task, "find_due_playlists", lambda: [424242, kept.id])
        synced = []

        async def fake_sync(playlist_id, token=None):
            if playlist_id == 424242:
                raise ConfigurationError(f"Playlist {playlist_id} not found")
            synced.append(playlist_id)
            return SyncOutcome(playlist_id=playlist_id, status="completed")

        monkeypatch.setattr(playlist_sync_task, "sync_playlist", fake_sync)

        result = await PlaylistSyncTask().run()

        assert synced == [kept.id]
        assert (result.success_count, result.failed_count) == (1, 1)
        assert result.details["errors"] == ["Playlist 424242: Playlist 424242 not found"]

    @pytest.mark.asyncio
    async def test_nothing_due(self, test_session, monkeypatch):
        monkeypatch.setattr(playlist_sync_task, "find_due_playlists", lambda: [])

        result = await PlaylistSyncTask().run()

        assert result.success is True
        assert result.message == "No playlists due for sync"

    def test_uses_configured_interval(self, session_factory):
        task = PlaylistSyncTask()
        assert task.schedule_config.interval_seconds == 60
        assert task.next_run is not None


class TestEpgMappingTask:
    @pytest.mark.asyncio
    async def test_reruns_recurring_maps(self, test_session, monkeypatch):
        epg = create_epg(test_session)
        recurring = create_epg_map(test_session, epg, recurring=True)
        create_epg_map(test_session, epg, recurring=False)
        create_epg_map(test_session, epg, recurring=True, processing=True)
        calls = []

        async def fake_map(epg_id, epg_map_id=None, token=None):
            calls.append((epg_id, epg_map_id))
            return MappingOutcome(map_id=epg_map_id, status="completed", mapped_count=3)

        monkeypatch.setattr(epg_mapping_task, "map_playlist_channels_to_epg", fake_map)

        result = await EpgMappingTask().run()

        assert calls == [(epg.id, recurring.id)]
        assert result.success is True
        assert result.message == "Re-ran 1 EPG maps, 3 channels linked"

    @pytest.mark.asyncio
    async def test_failed_map_is_reported(self, test_session, monkeypatch):
        epg = create_epg(test_session)
        epg_map = create_epg_map(test_session, epg, recurring=True)

        async def fake_map(epg_id, epg_map_id=None, token=None):
            return MappingOutcome(map_id=epg_map_id, status="failed", error="boom")

        monkeypatch.setattr(epg_mapping_task, "map_playlist_channels_to_epg", fake_map)

        result = await EpgMappingTask().run()

        assert result.success is False
        assert result.details == {"errors": [f"EPG map {epg_map.id}: boom"]}

    @pytest.mark.asyncio
    async def test_deleted_map_is_reported(self, test_session, monkeypatch):
        epg = create_epg(test_session)
        gone = create_epg_map(test_session, epg, recurring=True)
        kept = create_epg_map(test_session, epg, recurring=True)
        calls = []

        async def fake_map(epg_id, epg_map_id=None, token=None):
            if epg_map_id == gone.id:
                raise ConfigurationError(f"EPG map {epg_map_id} not found")
            calls.append(epg_map_id)
            return MappingOutcome(map_id=epg_map_id, status="completed", mapped_count=1)

        monkeypatch.setattr(epg_mapping_task, "map_playlist_channels_to_epg", fake_map)

        result = await EpgMappingTask().run()

        assert calls == [kept.id]
        assert result.success is False
        assert result.details == {"errors": [f"EPG map {gone.id}: EPG map {gone.id} not found"]}
