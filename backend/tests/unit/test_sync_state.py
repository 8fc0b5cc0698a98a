"""Tests for sync_state: the status/progress/processing state machine."""
from datetime import datetime

from sqlalchemy import select

from models import Notification
from sync_state import SyncStateMachine, SyncStatus
from tests.fixtures.factories import create_playlist


class TestGate:
    def test_begin_enters_processing(self, test_session):
        playlist = create_playlist(test_session, errors="old error", progress=100)
        state = SyncStateMachine(test_session, playlist)

        assert state.begin() is True
        assert playlist.status == SyncStatus.PROCESSING.value
        assert playlist.processing is True
        assert playlist.progress == 0
        assert playlist.errors is None

    def test_processing_playlist_is_skipped(self, test_session):
        playlist = create_playlist(test_session, processing=True, status="processing", progress=40)
        state = SyncStateMachine(test_session, playlist)

        assert state.begin() is False
        assert playlist.progress == 40

    def test_auto_sync_off_and_synced_is_skipped(self, test_session):
        playlist = create_playlist(test_session, auto_sync=False, synced=datetime.utcnow())
        assert SyncStateMachine(test_session, playlist).begin() is False

    def test_auto_sync_off_never_synced_runs(self, test_session):
        playlist = create_playlist(test_session, auto_sync=False)
        assert SyncStateMachine(test_session, playlist).begin() is True

    def test_force_bypasses_gate(self, test_session):
        playlist = create_playlist(test_session, processing=True, auto_sync=False, synced=datetime.utcnow())
        assert SyncStateMachine(test_session, playlist).begin(force=True) is True


class TestProgress:
    def test_progress_is_monotonic(self, test_session):
        playlist = create_playlist(test_session)
        state = SyncStateMachine(test_session, playlist)
        state.begin()

        state.set_progress(30)
        state.set_progress(10)
        assert playlist.progress == 30
        state.advance(5)
        assert playlist.progress == 35

    def test_progress_capped_at_100(self, test_session):
        playlist = create_playlist(test_session)
        state = SyncStateMachine(test_session, playlist)
        state.begin()
        state.set_progress(250)
        assert playlist.progress == 100

    def test_series_progress(self, test_session):
        playlist = create_playlist(test_session)
        state = SyncStateMachine(test_session, playlist)
        state.begin()
        state.set_series_progress(50)
        state.set_series_progress(20)
        assert playlist.series_progress == 50


class TestTerminalStates:
    def test_complete(self, test_session, sync_signals):
        playlist = create_playlist(test_session)
        state = SyncStateMachine(test_session, playlist)
        state.begin()
        state.complete()

        assert playlist.status == SyncStatus.COMPLETED.value
        assert playlist.processing is False
        assert playlist.progress == 100
        assert playlist.synced is not None
        assert playlist.sync_time is not None
        assert sync_signals == [playlist.id]

    def test_fail_records_error_and_notifies(self, test_session, sync_signals):
        playlist = create_playlist(test_session, name="Provider")
        state = SyncStateMachine(test_session, playlist)
        state.begin()
        state.set_progress(40)
        state.fail("HTTP 500 fetching source")

        assert playlist.status == SyncStatus.FAILED.value
        assert playlist.errors == "HTTP 500 fetching source"
        assert playlist.progress == 100
        assert playlist.processing is False
        assert sync_signals == [playlist.id]

        notification = test_session.scalars(select(Notification)).one()
        assert notification.type == "danger"
        assert notification.title == 'Error processing "Provider"'
        assert notification.message == "HTTP 500 fetching source"

    def test_signal_fires_once_per_terminal_state(self, test_session, sync_signals):
        playlist = create_playlist(test_session)
        state = SyncStateMachine(test_session, playlist)
        state.begin()
        state.complete()
        state.complete()
        assert sync_signals == [playlist.id]

    def test_no_signal_when_disabled(self, test_session, sync_signals):
        playlist = create_playlist(test_session)
        state = SyncStateMachine(test_session, playlist, fire_signal=False)
        state.begin()
        state.complete()
        assert sync_signals == []

    def test_listener_error_does_not_break_completion(self, test_session):
        import notifications

        def broken(playlist_id):
            raise RuntimeError("listener failed")

        notifications.on_sync_completed(broken)
        try:
            playlist = create_playlist(test_session)
            state = SyncStateMachine(test_session, playlist)
            state.begin()
            state.complete()
            assert playlist.status == SyncStatus.COMPLETED.value
        finally:
            notifications.remove_sync_completed_listener(broken)

