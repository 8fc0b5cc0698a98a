"""Tests for import_stages: channel upserts, reconciliation and series import."""
import pytest
from sqlalchemy import select

import database
from batch_orchestrator import ChunkWriter, PipelineContext, count_work_items, iter_work_item_id_batches
from config import ImportSettings
from exceptions import PersistenceError
from import_stages import (
    ApplyChunkStage,
    BackupStage,
    ImportCompleteStage,
    SeriesChunkStage,
    SeriesCompleteStage,
    upsert_channels,
)
from models import Channel, Episode, Group, Notification, Playlist, Season, Series
from sync_state import SyncStateMachine
from tests.fixtures.factories import create_category, create_channel, create_group, create_playlist
from xtream_client import XtreamCredentials

BATCH = "batch-new"


def channel_row(playlist, source_id, title, group_id=None, **overrides):
    row = {
        "playlist_id": playlist.id,
        "user_id": playlist.user_id,
        "source_id": source_id,
        "is_vod": False,
        "enabled": False,
        "title": title,
        "name": title,
        "url": f"http://a.test/{source_id}.ts",
        "group": "News",
        "group_internal": "News",
        "group_id": group_id,
        "shift": 0,
        "format": "ts",
        "import_batch_no": BATCH,
        "new": True,
    }
    row.update(overrides)
    return row


def make_ctx(session, playlist):
    state = SyncStateMachine(session, playlist)
    state.begin(force=True)
    return PipelineContext(session=session, state=state, batch_no=BATCH, settings=ImportSettings())


class TestUpsertChannels:
    def test_insert_then_update_keeps_identity_and_admin_fields(self, test_session):
        playlist = create_playlist(test_session)
        upsert_channels(test_session, [channel_row(playlist, "s1", "CNN")])
        test_session.commit()
        channel = test_session.scalars(select(Channel)).one()
        channel.title_custom = "My CNN"
        channel.enabled = True
        test_session.commit()

        upsert_channels(test_session, [channel_row(playlist, "s1", "CNN International", enabled=False)])
        test_session.commit()
        test_session.expire_all()

        (updated,) = test_session.scalars(select(Channel)).all()
        assert updated.id == channel.id
        assert updated.title == "CNN International"
        assert updated.title_custom == "My CNN"
        assert updated.enabled is True
        assert updated.new is False

    def test_duplicate_keys_in_one_chunk(self, test_session):
        playlist = create_playlist(test_session)
        count = upsert_channels(test_session, [
            channel_row(playlist, "s1", "First"),
            channel_row(playlist, "s1", "Second"),
        ])
        test_session.commit()
        assert count == 1
        assert test_session.scalars(select(Channel.title)).all() == ["Second"]

    def test_live_and_vod_with_same_source_id(self, test_session):
        playlist = create_playlist(test_session)
        upsert_channels(test_session, [
            channel_row(playlist, "100", "Live"),
            channel_row(playlist, "100", "Movie", is_vod=True),
        ])
        test_session.commit()
        assert len(test_session.scalars(select(Channel)).all()) == 2

    def test_empty(self, test_session):
        assert upsert_channels(test_session, []) == 0


class TestApplyChunkStage:
    @pytest.mark.asyncio
    async def test_applies_and_consumes_work_items(self, test_session):
        playlist = create_playlist(test_session)
        group = create_group(test_session, playlist, name="News")
        ctx = make_ctx(test_session, playlist)
        writer = ChunkWriter(test_session, BATCH, chunk_size=2)
        for i in range(3):
            writer.add(group.id, channel_row(playlist, f"s{i}", f"C{i}"), {"group_id": group.id, "group_name": "News"})
        writer.close()
        (ids,) = list(iter_work_item_id_batches(test_session, BATCH, 10))
        await ApplyChunkStage(ids, batch_count=len(ids)).run(ctx)

        channels = test_session.scalars(select(Channel).order_by(Channel.source_id)).all()
        assert [c.title for c in channels] == ["C0", "C1", "C2"]
        assert all(c.group_id == group.id for c in channels)
        assert count_work_items(test_session, BATCH) == 0
        assert ctx.values["channels_applied"] == 3
        assert playlist.progress == 99

    @pytest.mark.asyncio
    async def test_progress_is_weighted_by_work_items(self, test_session):
        playlist = create_playlist(test_session)
        ctx = make_ctx(test_session, playlist)
        writer = ChunkWriter(test_session, BATCH, chunk_size=1)
        for i in range(4):
            writer.add(i, channel_row(playlist, f"s{i}", f"C{i}"))
        writer.close()

        first, second = list(iter_work_item_id_batches(test_session, BATCH, 2))
        await ApplyChunkStage(first, batch_count=4).run(ctx)
        assert playlist.progress == pytest.approx(15 + 84 * 2 / 4)
        await ApplyChunkStage(second, batch_count=4).run(ctx)
        assert playlist.progress == 99

    @pytest.mark.asyncio
    async def test_store_failure_raises_persistence_error(self, test_session):
        playlist = create_playlist(test_session)
        ctx = make_ctx(test_session, playlist)
        writer = ChunkWriter(test_session, BATCH, chunk_size=5)
        # group_id points at a group that does not exist
        writer.add(1, channel_row(playlist, "s1", "C1"), {"group_id": 9999})
        writer.close()

        (ids,) = list(iter_work_item_id_batches(test_session, BATCH, 10))
        with pytest.raises(PersistenceError):
            await ApplyChunkStage(ids, batch_count=1).run(ctx)


class TestImportCompleteStage:
    @pytest.mark.asyncio
    async def test_removes_stale_rows_and_completes(self, test_session, sync_signals):
        playlist = create_playlist(test_session, name="Provider")
        kept_group = create_group(test_session, playlist, name="News", import_batch_no=BATCH)
        create_group(test_session, playlist, name="Old", import_batch_no="batch-old")
        custom = create_group(test_session, playlist, name="Favourites", custom=True)
        create_channel(test_session, playlist, title="Kept", group=kept_group, import_batch_no=BATCH)
        create_channel(test_session, playlist, title="Gone", import_batch_no="batch-old")
        create_channel(test_session, playlist, title="Never stamped")
        other = create_playlist(test_session)
        create_channel(test_session, other, title="Other playlist", import_batch_no="batch-old")
        ctx = make_ctx(test_session, playlist)

        await ImportCompleteStage().run(ctx)
        test_session.expire_all()

        titles = test_session.scalars(select(Channel.title).where(Channel.playlist_id == playlist.id)).all()
        assert titles == ["Kept"]
        groups = test_session.scalars(select(Group.id).where(Group.playlist_id == playlist.id)).all()
        assert set(groups) == {kept_group.id, custom.id}
        assert len(test_session.scalars(select(Channel).where(Channel.playlist_id == other.id)).all()) == 1
        assert playlist.status == "completed"
        assert ctx.values["channels_removed"] == 2
        assert sync_signals == [playlist.id]

        titles = test_session.scalars(select(Notification.title)).all()
        assert "Playlist Synced" in titles

    @pytest.mark.asyncio
    async def test_max_items_warning(self, test_session):
        playlist = create_playlist(test_session)
        ctx = make_ctx(test_session, playlist)

        await ImportCompleteStage(max_items_hit=True).run(ctx)

        warnings = test_session.scalars(select(Notification).where(Notification.type == "warning")).all()
        assert len(warnings) == 1
        assert "maximum number of channels" in warnings[0].title


class TestBackupStage:
    @pytest.mark.asyncio
    async def test_success(self, test_session):
        playlist = create_playlist(test_session)
        calls = []
        await BackupStage(lambda: calls.append(1) or "backup.db").run(make_ctx(test_session, playlist))
        assert calls == [1]
        assert test_session.scalars(select(Notification.title)).all() == ["Backup created"]

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, test_session):
        playlist = create_playlist(test_session)

        def broken():
            raise OSError("disk full")

        await BackupStage(broken).run(make_ctx(test_session, playlist))

        notification = test_session.scalars(select(Notification)).one()
        assert notification.type == "danger"
        assert "disk full" in notification.message


class FakeXtreamClient:
    def __init__(self, series, info=None):
        self.series = series
        self.info = info or {}
        self.credentials = XtreamCredentials(base_url="http://xt.test", username="u", password="p")

    async def get_series(self, category_id):
        return self.series.get(str(category_id), [])

    async def get_series_info(self, series_id):
        return self.info.get(str(series_id), {})


class TestSeriesStages:
    @pytest.mark.asyncio
    async def test_imports_series_and_episodes(self, test_session):
        playlist = create_playlist(test_session)
        category = create_category(test_session, playlist, name="Drama", source_category_id="5")
        client = FakeXtreamClient(
            series={"5": [{"series_id": 77, "name": "The Show", "rating": 8}, {"name": "no id"}]},
            info={"77": {"episodes": {"1": [
                {"id": "701", "title": "Pilot", "episode_num": "1", "container_extension": "mkv"},
                {"id": "702", "title": "Second", "episode_num": 2},
            ]}}},
        )
        ctx = make_ctx(test_session, playlist)

        await SeriesChunkStage(client, {"category_id": "5", "category_name": "Drama"}, 1, 0, import_episodes=True).run(ctx)

        series = test_session.scalars(select(Series)).one()
        assert series.name == "The Show"
        assert series.category_id == category.id
        assert series.rating == "8"
        season = test_session.scalars(select(Season)).one()
        assert season.season_number == 1
        episodes = test_session.scalars(select(Episode).order_by(Episode.episode_num)).all()
        assert [e.title for e in episodes] == ["Pilot", "Second"]
        assert episodes[0].url == "http://xt.test/series/u/p/701.mkv"
        assert playlist.series_progress == 100
        assert ctx.values["series_imported"] == 1

    @pytest.mark.asyncio
    async def test_reimport_updates_in_place(self, test_session):
        playlist = create_playlist(test_session)
        client = FakeXtreamClient(series={"5": [{"series_id": 77, "name": "Old name"}]})
        ctx = make_ctx(test_session, playlist)
        await SeriesChunkStage(client, {"category_id": "5"}, 2, 0).run(ctx)
        client.series = {"5": [{"series_id": 77, "name": "New name"}]}
        await SeriesChunkStage(client, {"category_id": "5"}, 2, 1).run(ctx)
        test_session.expire_all()

        (series,) = test_session.scalars(select(Series)).all()
        assert series.name == "New name"
        assert series.new is False

    @pytest.mark.asyncio
    async def test_other_session_closing_during_fetch_keeps_series(self, test_session):
        playlist = create_playlist(test_session)
        create_category(test_session, playlist, name="Drama", source_category_id="5")

        class BusyClient(FakeXtreamClient):
            """Another request opens and closes a session while info is fetched."""

            async def get_series_info(self, series_id):
                other = database.get_session()
                try:
                    other.scalars(select(Playlist)).all()
                finally:
                    other.close()
                return await super().get_series_info(series_id)

        client = BusyClient(
            series={"5": [{"series_id": 77, "name": "One"}, {"series_id": 78, "name": "Two"}]},
            info={
                "77": {"episodes": {"1": [{"id": "701", "title": "Pilot"}]}},
                "78": {"episodes": {"1": [{"id": "801", "title": "Opener"}]}},
            },
        )
        ctx = make_ctx(test_session, playlist)

        await SeriesChunkStage(client, {"category_id": "5"}, 1, 0, import_episodes=True).run(ctx)
        test_session.expire_all()

        assert sorted(test_session.scalars(select(Series.name)).all()) == ["One", "Two"]
        assert sorted(test_session.scalars(select(Episode.title)).all()) == ["Opener", "Pilot"]
        assert ctx.values["series_imported"] == 2

    @pytest.mark.asyncio
    async def test_series_complete(self, test_session):
        playlist = create_playlist(test_session)
        ctx = make_ctx(test_session, playlist)
        ctx.values["series_imported"] = 3

        await SeriesCompleteStage().run(ctx)

        assert playlist.series_progress == 100
        assert test_session.scalars(select(Notification.title)).all() == ["Series Sync Completed"]
