"""
Integration tests for a full playlist sync: fetch over HTTP (mocked with
respx), decode, chunk, apply and reconcile against the test database.
"""
import asyncio

import httpx
import pytest
import respx
from sqlalchemy import func, select

from batch_orchestrator import CancellationToken, count_work_items
from exceptions import ConfigurationError
from models import Channel, Group, Notification, Playlist, Series, SourceGroup, WorkItem
from playlist_sync import sync_playlist
from tests.fixtures.factories import create_group, create_playlist

PLAYLIST_URL = "http://provider.test/playlist.m3u"

M3U = """#EXTM3U
#EXTINF:-1 tvg-id="cnn.us" tvg-logo="http://logo.test/cnn.png" group-title="News",CNN
http://provider.test/live/cnn.m3u8
#EXTINF:-1 tvg-id="bbc1.uk" group-title="News;UK",BBC One
http://provider.test/live/bbc1.ts
#EXTINF:-1 group-title="Sports",ESPN
http://provider.test/live/espn.ts
"""


def channels_of(session, playlist_id):
    return session.scalars(
        select(Channel).where(Channel.playlist_id == playlist_id).order_by(Channel.id)
    ).all()


class TestM3USync:
    """Text playlists fetched from a URL."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_import_creates_channels_and_groups(self, test_session, storage, import_settings, sync_signals):
        playlist = create_playlist(test_session, url=PLAYLIST_URL, enable_channels=True)
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "completed"
        assert outcome.error is None
        channels = channels_of(test_session, playlist.id)
        # BBC One appears once per group
        assert sorted((c.title, c.group_internal) for c in channels) == [
            ("BBC One", "News"),
            ("BBC One", "UK"),
            ("CNN", "News"),
            ("ESPN", "Sports"),
        ]
        assert all(c.enabled for c in channels)
        cnn = next(c for c in channels if c.title == "CNN")
        assert cnn.stream_id == "cnn.us"
        assert cnn.format == "hls"

        groups = test_session.scalars(select(Group.name_internal).where(Group.playlist_id == playlist.id)).all()
        assert sorted(groups) == ["News", "Sports", "UK"]
        for channel in channels:
            assert test_session.get(Group, channel.group_id).name_internal == channel.group_internal

        refreshed = test_session.get(Playlist, playlist.id)
        assert refreshed.status == "completed"
        assert refreshed.progress == 100
        assert refreshed.processing is False
        assert refreshed.synced is not None
        assert count_work_items(test_session, outcome.batch_no) == 0
        assert sync_signals == [playlist.id]

    @pytest.mark.asyncio
    @respx.mock
    async def test_reimport_keeps_identity_and_removes_stale(self, test_session, storage, import_settings):
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        route = respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))
        await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()
        first = {(c.title, c.group_internal): c.id for c in channels_of(test_session, playlist.id)}
        custom = create_group(test_session, playlist, name="Favourites", custom=True)

        without_espn = M3U.split("#EXTINF:-1 group-title=\"Sports\"")[0]
        route.mock(return_value=httpx.Response(200, text=without_espn))
        await sync_playlist(playlist.id, force=True, settings=import_settings, storage=storage)
        test_session.expire_all()

        second = {(c.title, c.group_internal): c.id for c in channels_of(test_session, playlist.id)}
        assert set(second) == {("CNN", "News"), ("BBC One", "News"), ("BBC One", "UK")}
        for key, channel_id in second.items():
            assert first[key] == channel_id
        groups = test_session.scalars(select(Group.name_internal).where(Group.playlist_id == playlist.id)).all()
        assert "Sports" not in groups
        assert test_session.get(Group, custom.id) is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_fails_the_playlist(self, test_session, storage, import_settings, sync_signals):
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(500, text="Internal Error"))

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        refreshed = test_session.get(Playlist, playlist.id)
        assert refreshed.status == "failed"
        assert refreshed.progress == 100
        assert refreshed.processing is False
        assert "Internal Error" in refreshed.errors
        assert outcome.error == refreshed.errors
        assert channels_of(test_session, playlist.id) == []
        assert count_work_items(test_session, outcome.batch_no) == 0
        assert sync_signals == [playlist.id]

        notification = test_session.scalars(select(Notification).where(Notification.type == "danger")).one()
        assert "Internal Error" in notification.message

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_resync_keeps_previous_channels(self, test_session, storage, import_settings):
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        route = respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))
        await sync_playlist(playlist.id, settings=import_settings, storage=storage)

        route.mock(side_effect=httpx.ConnectError("connection refused"))
        await sync_playlist(playlist.id, force=True, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert test_session.get(Playlist, playlist.id).status == "failed"
        assert len(channels_of(test_session, playlist.id)) == 4

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancelled_run_is_failed(self, test_session, storage, import_settings, sync_signals):
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))
        token = CancellationToken()
        token.cancel("Sync was cancelled")

        outcome = await sync_playlist(playlist.id, token=token, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "failed"
        assert test_session.get(Playlist, playlist.id).errors == "Sync was cancelled"
        assert channels_of(test_session, playlist.id) == []
        assert sync_signals == [playlist.id]

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancel_while_decoding(self, test_session, storage, import_settings, sync_signals):
        import_settings.chunk_size = 50
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        lines = ["#EXTM3U"]
        for i in range(3000):
            lines += [f'#EXTINF:-1 group-title="Bulk",Channel {i}', f"http://provider.test/live/{i}.ts"]
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text="\n".join(lines) + "\n"))
        token = CancellationToken()

        sync = asyncio.create_task(
            sync_playlist(playlist.id, token=token, settings=import_settings, storage=storage)
        )
        # Cancel as soon as the first chunk of the decode has been written
        while not sync.done():
            await asyncio.sleep(0)
            if test_session.scalar(select(func.count(WorkItem.id))):
                token.cancel("Sync was cancelled")
                break
        outcome = await sync
        test_session.expire_all()

        assert token.cancelled
        assert outcome.status == "failed"
        assert test_session.get(Playlist, playlist.id).errors == "Sync was cancelled"
        assert channels_of(test_session, playlist.id) == []
        assert test_session.scalar(select(func.count(WorkItem.id))) == 0
        assert sync_signals == [playlist.id]

    @pytest.mark.asyncio
    @respx.mock
    async def test_preprocess_discovers_groups_only(self, test_session, storage, import_settings):
        playlist = create_playlist(test_session, url=PLAYLIST_URL, import_prefs={"preprocess": True})
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.preprocessed is True
        assert outcome.groups_discovered == ["News", "UK", "Sports"]
        assert channels_of(test_session, playlist.id) == []
        names = test_session.scalars(
            select(SourceGroup.name).where(SourceGroup.playlist_id == playlist.id).order_by(SourceGroup.id)
        ).all()
        assert names == ["News", "UK", "Sports"]
        assert test_session.get(Playlist, playlist.id).status == "completed"

    @pytest.mark.asyncio
    @respx.mock
    async def test_preprocess_with_selection_imports_selected_groups(self, test_session, storage, import_settings):
        playlist = create_playlist(
            test_session,
            url=PLAYLIST_URL,
            import_prefs={"preprocess": True, "selected_groups": ["Sports"]},
        )
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))

        await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert [c.title for c in channels_of(test_session, playlist.id)] == ["ESPN"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_regex_group_prefixes_only_narrow_the_import(self, test_session, storage, import_settings):
        everything = create_playlist(test_session, url=PLAYLIST_URL)
        filtered = create_playlist(
            test_session,
            url=PLAYLIST_URL,
            import_prefs={"preprocess": True, "included_group_prefixes": ["^(News|UK)$"], "use_regex": True},
        )
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))

        await sync_playlist(everything.id, settings=import_settings, storage=storage)
        await sync_playlist(filtered.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        all_keys = {(c.title, c.group_internal) for c in channels_of(test_session, everything.id)}
        kept = {(c.title, c.group_internal) for c in channels_of(test_session, filtered.id)}
        assert kept == {("CNN", "News"), ("BBC One", "News"), ("BBC One", "UK")}
        assert kept < all_keys

    @pytest.mark.asyncio
    @respx.mock
    async def test_channel_cap(self, test_session, storage, import_settings):
        import_settings.max_channels = 2
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.max_items_hit is True
        assert len(channels_of(test_session, playlist.id)) == 2
        warnings = test_session.scalars(select(Notification).where(Notification.type == "warning")).all()
        assert len(warnings) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_lines_are_reported_and_skipped(self, test_session, storage, import_settings):
        playlist = create_playlist(test_session, url=PLAYLIST_URL)
        text = M3U + "http://provider.test/orphan.ts\n"
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=text))

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "completed"
        assert outcome.warnings == 1
        assert len(channels_of(test_session, playlist.id)) == 4


class TestGate:
    @pytest.mark.asyncio
    async def test_unknown_playlist(self, session_factory, storage, import_settings):
        with pytest.raises(ConfigurationError):
            await sync_playlist(424242, settings=import_settings, storage=storage)

    @pytest.mark.asyncio
    async def test_processing_playlist_is_skipped(self, test_session, storage, import_settings, sync_signals):
        playlist = create_playlist(test_session, processing=True, status="processing")

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)

        assert outcome.skipped is True
        assert sync_signals == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_force_overrides_auto_sync_off(self, test_session, storage, import_settings):
        from datetime import datetime

        playlist = create_playlist(test_session, url=PLAYLIST_URL, auto_sync=False, synced=datetime(2024, 1, 1))
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, text=M3U))

        skipped = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        forced = await sync_playlist(playlist.id, force=True, settings=import_settings, storage=storage)

        assert skipped.skipped is True
        assert forced.status == "completed"


def xtream_api(request):
    action = request.url.params.get("action")
    payloads = {
        None: {"user_info": {"auth": 1, "status": "Active"}},
        "get_live_categories": [{"category_id": "1", "category_name": "News"}],
        "get_live_streams": [
            {"stream_id": 101, "name": "CNN", "category_id": "1", "epg_channel_id": "cnn.us", "num": 1},
            {"stream_id": 102, "name": "Unknown Cat", "category_id": "99"},
        ],
        "get_vod_categories": [{"category_id": "7", "category_name": "Movies"}],
        "get_vod_streams": [
            {"stream_id": 101, "name": "A Film", "category_id": "7", "container_extension": "mkv", "year": "1999"},
        ],
        "get_series_categories": [
            {"category_id": "3", "category_name": "Drama"},
            {"category_id": "4", "category_name": "Kids"},
        ],
        "get_series": [{"series_id": 77, "name": "The Show", "category_id": request.url.params.get("category_id")}],
    }
    return httpx.Response(200, json=payloads.get(action, []))


class TestXtreamSync:
    @pytest.mark.asyncio
    @respx.mock
    async def test_live_and_vod_import(self, test_session, storage, import_settings):
        playlist = create_playlist(
            test_session,
            url=None,
            xtream_config={"url": "http://xt.test", "username": "u", "password": "p"},
        )
        respx.get("http://xt.test/player_api.php").mock(side_effect=xtream_api)

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "completed"
        channels = channels_of(test_session, playlist.id)
        live = {c.source_id: c for c in channels if not c.is_vod}
        vod = {c.source_id: c for c in channels if c.is_vod}

        assert set(live) == {"101", "102"}
        assert live["101"].url == "http://xt.test/live/u/p/101.ts"
        assert live["101"].group_internal == "News"
        assert live["101"].stream_id == "cnn.us"
        assert live["102"].group_internal == ""

        assert set(vod) == {"101"}
        assert vod["101"].url == "http://xt.test/movie/u/p/101.mkv"
        assert vod["101"].year == "1999"

        refreshed = test_session.get(Playlist, playlist.id)
        assert "Active" in refreshed.xtream_status

    @pytest.mark.asyncio
    @respx.mock
    async def test_auth_failure(self, test_session, storage, import_settings):
        playlist = create_playlist(
            test_session,
            url=None,
            xtream_config={"url": "http://xt.test", "username": "u", "password": "wrong"},
        )
        respx.get("http://xt.test/player_api.php").mock(return_value=httpx.Response(401, text="Unauthorized"))

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "failed"
        assert "Unauthorized" in test_session.get(Playlist, playlist.id).errors

    @pytest.mark.asyncio
    @respx.mock
    async def test_series_need_a_category_selection(self, test_session, storage, import_settings):
        playlist = create_playlist(
            test_session,
            url=None,
            xtream_config={"url": "http://xt.test", "username": "u", "password": "p", "import_options": ["series"]},
        )
        route = respx.get("http://xt.test/player_api.php").mock(side_effect=xtream_api)

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "completed"
        assert test_session.scalars(select(Series)).all() == []
        actions = [call.request.url.params.get("action") for call in route.calls]
        assert "get_series_categories" in actions
        assert "get_series" not in actions

    @pytest.mark.asyncio
    @respx.mock
    async def test_selected_series_categories_are_imported(self, test_session, storage, import_settings):
        playlist = create_playlist(
            test_session,
            url=None,
            xtream_config={"url": "http://xt.test", "username": "u", "password": "p", "import_options": ["series"]},
            import_prefs={"selected_categories": ["Drama"]},
        )
        route = respx.get("http://xt.test/player_api.php").mock(side_effect=xtream_api)

        outcome = await sync_playlist(playlist.id, settings=import_settings, storage=storage)
        test_session.expire_all()

        assert outcome.status == "completed"
        (series,) = test_session.scalars(select(Series).where(Series.playlist_id == playlist.id)).all()
        assert series.name == "The Show"
        assert series.source_category_id == "3"
        requested = [
            call.request.url.params.get("category_id")
            for call in route.calls
            if call.request.url.params.get("action") == "get_series"
        ]
        assert requested == ["3"]
