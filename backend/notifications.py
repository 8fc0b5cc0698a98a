"""
Notifications and sync-completed signal.

notify() persists a Notification row on its own session. It never raises:
a failed notification must not affect the sync run that produced it.
"""
import logging
from typing import Callable, Optional

from database import get_session
from models import Notification

logger = logging.getLogger(__name__)

SUCCESS = "success"
WARNING = "warning"
DANGER = "danger"

_VALID_KINDS = (SUCCESS, WARNING, DANGER, "info")

# Listeners called with the playlist id whenever a sync run reaches a terminal state
_sync_completed_listeners: list[Callable[[int], None]] = []


def notify(
    user_id: Optional[int],
    kind: str,
    title: str,
    body: str,
    source: Optional[str] = None,
    source_id: Optional[str] = None,
) -> Optional[int]:
    """
    Record a notification for a user.

    Returns:
        The new notification id, or None if it could not be stored.
    """
    if kind not in _VALID_KINDS:
        logger.warning(f"[NOTIFY] Unknown notification kind '{kind}', using info")
        kind = "info"

    try:
        session = get_session()
        try:
            notification = Notification(
                user_id=user_id,
                type=kind,
                title=title,
                message=body,
                source=source,
                source_id=source_id,
            )
            session.add(notification)
            session.commit()
            logger.debug(f"[NOTIFY] {kind}: {title}")
            return notification.id
        finally:
            session.close()
    except Exception as e:
        logger.error(f"[NOTIFY] Failed to create notification '{title}': {e}")
        return None


def on_sync_completed(callback: Callable[[int], None]) -> None:
    """Register a listener for the sync-completed signal."""
    _sync_completed_listeners.append(callback)


def remove_sync_completed_listener(callback: Callable[[int], None]) -> None:
    if callback in _sync_completed_listeners:
        _sync_completed_listeners.remove(callback)


def fire_sync_completed(playlist_id: int) -> None:
    """Invoke every sync-completed listener. Listener errors are logged only."""
    logger.debug(f"[SYNC] Sync completed signal for playlist {playlist_id}")
    for callback in list(_sync_completed_listeners):
        try:
            callback(playlist_id)
        except Exception as e:
            logger.error(f"[SYNC] Sync completed listener {callback!r} failed: {e}")
