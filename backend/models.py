"""
SQLAlchemy ORM models for playlists, imported channels, EPG links and work items.
"""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, Index, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value else None


def _load_json(value: str | None, default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


class Playlist(Base):
    """
    An M3U+ or Xtream API source and its sync state.
    Owns every group, channel, category and series imported from it.
    """
    __tablename__ = "playlists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    user_id = Column(Integer, nullable=True)
    parent_id = Column(Integer, ForeignKey("playlists.id", ondelete="SET NULL"), nullable=True)
    # Origin
    url = Column(String(2048), nullable=True)  # HTTP(S) URL or local path
    uploads = Column(String(1024), nullable=True)  # Storage path of an uploaded file
    xtream = Column(Boolean, default=False, nullable=False)
    xtream_config = Column(Text, nullable=True)  # JSON: {url, username, password, output, import_options}
    xtream_status = Column(Text, nullable=True)  # JSON: last user info response
    user_agent = Column(String(512), nullable=True)
    disable_ssl_verification = Column(Boolean, default=False, nullable=False)
    # Import preferences (JSON): preprocess, use_regex, selected_groups, included_group_prefixes,
    # selected_categories, included_category_prefixes, ignored_file_types
    import_prefs = Column(Text, nullable=True)
    auto_sort = Column(Boolean, default=True, nullable=False)
    auto_sync = Column(Boolean, default=True, nullable=False)
    backup_before_sync = Column(Boolean, default=False, nullable=False)
    enable_channels = Column(Boolean, default=False, nullable=False)
    # Sync state
    status = Column(String(20), default="idle", nullable=False)  # idle, processing, completed, failed
    progress = Column(Float, default=0, nullable=False)
    series_progress = Column(Float, default=0, nullable=False)
    processing = Column(Boolean, default=False, nullable=False)
    errors = Column(Text, nullable=True)
    synced = Column(DateTime, nullable=True)
    sync_time = Column(Float, nullable=True)  # Seconds taken by the last sync
    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    groups = relationship("Group", back_populates="playlist", cascade="all, delete-orphan", passive_deletes=True)
    channels = relationship("Channel", back_populates="playlist", cascade="all, delete-orphan", passive_deletes=True)
    categories = relationship("Category", back_populates="playlist", cascade="all, delete-orphan", passive_deletes=True)
    series = relationship("Series", back_populates="playlist", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("idx_playlist_processing", processing),
        Index("idx_playlist_auto_sync", auto_sync),
    )

    @property
    def folder_path(self) -> str:
        return f"playlist/{self.uuid}"

    @property
    def file_path(self) -> str:
        return f"{self.folder_path}/playlist.m3u"

    def get_import_prefs(self) -> dict:
        """Parse import_prefs JSON into dictionary."""
        return _load_json(self.import_prefs, {})

    def set_import_prefs(self, prefs: dict) -> None:
        self.import_prefs = json.dumps(prefs) if prefs else None

    def get_xtream_config(self) -> dict:
        return _load_json(self.xtream_config, {})

    def set_xtream_config(self, config: dict) -> None:
        self.xtream_config = json.dumps(config) if config else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses (credentials omitted)."""
        xtream_config = self.get_xtream_config()
        return {
            "id": self.id,
            "uuid": self.uuid,
            "name": self.name,
            "parent_id": self.parent_id,
            "url": self.url,
            "xtream": self.xtream,
            "xtream_url": xtream_config.get("url") if xtream_config else None,
            "xtream_status": _load_json(self.xtream_status, None),
            "import_prefs": self.get_import_prefs(),
            "auto_sort": self.auto_sort,
            "auto_sync": self.auto_sync,
            "backup_before_sync": self.backup_before_sync,
            "status": self.status,
            "progress": self.progress,
            "series_progress": self.series_progress,
            "processing": self.processing,
            "errors": self.errors,
            "synced": _iso(self.synced),
            "sync_time": self.sync_time,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Playlist(id={self.id}, name={self.name}, status={self.status}, progress={self.progress})>"


class Epg(Base):
    """An EPG source whose channels playlist channels can be linked to."""
    __tablename__ = "epgs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    user_id = Column(Integer, nullable=True)
    url = Column(String(2048), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    channels = relationship("EpgChannel", back_populates="epg", cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "uuid": self.uuid,
            "name": self.name,
            "url": self.url,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Epg(id={self.id}, name={self.name})>"


class EpgChannel(Base):
    """A channel definition parsed from an EPG source."""
    __tablename__ = "epg_channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    epg_id = Column(Integer, ForeignKey("epgs.id", ondelete="CASCADE"), nullable=False)
    channel_id = Column(String(255), nullable=False, default="")  # XMLTV channel id
    name = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    icon = Column(String(2048), nullable=True)

    epg = relationship("Epg", back_populates="channels")

    __table_args__ = (
        Index("idx_epg_channel_epg", epg_id),
        Index("idx_epg_channel_channel_id", channel_id),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "epg_id": self.epg_id,
            "channel_id": self.channel_id,
            "name": self.name,
            "display_name": self.display_name,
            "icon": self.icon,
        }

    def __repr__(self):
        return f"<EpgChannel(id={self.id}, channel_id={self.channel_id})>"


class Group(Base):
    """
    A channel group within a playlist.
    Keyed by the group label from the source (name_internal); name may be customized.
    """
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False, default="")  # Display name (editable)
    name_internal = Column(String(255), nullable=False, default="")  # Label from the source
    custom = Column(Boolean, default=False, nullable=False)  # Created by an admin, never touched by sync
    sort_order = Column(Integer, nullable=True)
    new = Column(Boolean, default=True, nullable=False)
    import_batch_no = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    playlist = relationship("Playlist", back_populates="groups")
    channels = relationship("Channel", back_populates="group_ref")

    __table_args__ = (
        UniqueConstraint("playlist_id", "name_internal", "custom", name="uq_group_playlist_name"),
        Index("idx_group_playlist_batch", playlist_id, import_batch_no),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlist_id": self.playlist_id,
            "name": self.name,
            "name_internal": self.name_internal,
            "custom": self.custom,
            "sort_order": self.sort_order,
            "new": self.new,
            "import_batch_no": self.import_batch_no,
        }

    def __repr__(self):
        return f"<Group(id={self.id}, name={self.name}, playlist_id={self.playlist_id})>"


class SourceGroup(Base):
    """A group label seen in the source, whether or not it was imported."""
    __tablename__ = "source_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("playlist_id", "name", name="uq_source_group_playlist_name"),
    )

    def to_dict(self) -> dict:
        return {"id": self.id, "playlist_id": self.playlist_id, "name": self.name}

    def __repr__(self):
        return f"<SourceGroup(playlist_id={self.playlist_id}, name={self.name})>"


class Category(Base):
    """A series category, keyed by the provider's category id."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False, default="")
    name_internal = Column(String(255), nullable=False, default="")
    source_category_id = Column(String(64), nullable=False)
    new = Column(Boolean, default=True, nullable=False)
    import_batch_no = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    playlist = relationship("Playlist", back_populates="categories")
    series = relationship("Series", back_populates="category")

    __table_args__ = (
        UniqueConstraint("playlist_id", "source_category_id", name="uq_category_playlist_source"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlist_id": self.playlist_id,
            "name": self.name,
            "name_internal": self.name_internal,
            "source_category_id": self.source_category_id,
            "new": self.new,
        }

    def __repr__(self):
        return f"<Category(id={self.id}, name={self.name}, source_category_id={self.source_category_id})>"


class Channel(Base):
    """
    A canonical channel (live or VOD) imported from a playlist.

    source_id is the stable identity key: the provider stream id for Xtream
    sources, a content hash for M3U sources. Re-imports resolve to the same
    row through (playlist_id, source_id, is_vod).
    """
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="SET NULL"), nullable=True)
    # Source values and optional admin overrides
    title = Column(String(500), nullable=True)
    title_custom = Column(String(500), nullable=True)
    name = Column(String(500), nullable=False, default="")
    name_custom = Column(String(500), nullable=True)
    url = Column(String(2048), nullable=True)
    url_custom = Column(String(2048), nullable=True)
    stream_id = Column(String(255), nullable=True)
    stream_id_custom = Column(String(255), nullable=True)
    logo = Column(String(2048), nullable=True)
    logo_internal = Column(String(2048), nullable=True)
    group = Column(String(255), nullable=False, default="")
    group_internal = Column(String(255), nullable=False, default="")
    station_id = Column(String(64), nullable=True)
    lang = Column(String(64), nullable=True)
    country = Column(String(64), nullable=True)
    channel = Column(Integer, nullable=True)  # Channel number
    sort = Column(Integer, nullable=True)
    source_id = Column(String(64), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    # VOD details
    is_vod = Column(Boolean, default=False, nullable=False)
    container_extension = Column(String(16), nullable=True)
    format = Column(String(16), nullable=True)  # Delivery format: hls, ts, mp4, ...
    year = Column(String(16), nullable=True)
    rating = Column(String(16), nullable=True)
    rating_5based = Column(Float, nullable=True)
    # Player options (JSON lists of {key, value})
    extvlcopt = Column(Text, nullable=True)
    kodidrop = Column(Text, nullable=True)
    # Catch-up / time shift
    catchup = Column(String(32), nullable=True)
    catchup_source = Column(String(2048), nullable=True)
    shift = Column(Integer, default=0, nullable=False)
    tvg_shift = Column(String(16), nullable=True)
    # EPG link
    epg_channel_id = Column(Integer, ForeignKey("epg_channels.id", ondelete="SET NULL"), nullable=True)
    # Reconciliation markers
    new = Column(Boolean, default=True, nullable=False)
    import_batch_no = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    playlist = relationship("Playlist", back_populates="channels")
    group_ref = relationship("Group", back_populates="channels")
    failovers = relationship(
        "ChannelFailover",
        foreign_keys="ChannelFailover.channel_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChannelFailover.sort",
    )

    __table_args__ = (
        UniqueConstraint("playlist_id", "source_id", "is_vod", name="uq_channel_playlist_source"),
        Index("idx_channel_playlist_batch", playlist_id, import_batch_no),
        Index("idx_channel_group", group_id),
        Index("idx_channel_epg", epg_channel_id),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlist_id": self.playlist_id,
            "group_id": self.group_id,
            "title": self.title_custom or self.title,
            "name": self.name_custom or self.name,
            "url": self.url_custom or self.url,
            "stream_id": self.stream_id_custom or self.stream_id,
            "logo": self.logo or self.logo_internal,
            "group": self.group,
            "channel": self.channel,
            "sort": self.sort,
            "source_id": self.source_id,
            "is_vod": self.is_vod,
            "format": self.format,
            "enabled": self.enabled,
            "epg_channel_id": self.epg_channel_id,
            "new": self.new,
        }

    def __repr__(self):
        return f"<Channel(id={self.id}, title={self.title}, source_id={self.source_id})>"


class ChannelFailover(Base):
    """Ordered fallback channel for a channel."""
    __tablename__ = "channel_failovers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    channel_failover_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    sort = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ChannelFailover(channel_id={self.channel_id}, failover={self.channel_failover_id})>"


class Series(Base):
    """A VOD series, keyed by the provider's series id within the playlist."""
    __tablename__ = "series"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, nullable=True)
    source_series_id = Column(String(64), nullable=False)
    source_category_id = Column(String(64), nullable=True)
    name = Column(String(500), nullable=False, default="")
    cover = Column(String(2048), nullable=True)
    plot = Column(Text, nullable=True)
    genre = Column(String(255), nullable=True)
    release_date = Column(String(32), nullable=True)
    rating = Column(String(16), nullable=True)
    enabled = Column(Boolean, default=False, nullable=False)
    new = Column(Boolean, default=True, nullable=False)
    import_batch_no = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    playlist = relationship("Playlist", back_populates="series")
    category = relationship("Category", back_populates="series")
    seasons = relationship("Season", back_populates="series", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("playlist_id", "source_series_id", name="uq_series_playlist_source"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlist_id": self.playlist_id,
            "category_id": self.category_id,
            "source_series_id": self.source_series_id,
            "name": self.name,
            "cover": self.cover,
            "genre": self.genre,
            "release_date": self.release_date,
            "rating": self.rating,
        }

    def __repr__(self):
        return f"<Series(id={self.id}, name={self.name})>"


class Season(Base):
    """A season of a series."""
    __tablename__ = "seasons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    series_id = Column(Integer, ForeignKey("series.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    source_season_id = Column(String(64), nullable=False)
    season_number = Column(Integer, nullable=True)
    name = Column(String(255), nullable=True)
    cover = Column(String(2048), nullable=True)
    import_batch_no = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    series = relationship("Series", back_populates="seasons")
    episodes = relationship("Episode", back_populates="season", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("series_id", "source_season_id", name="uq_season_series_source"),
    )

    def __repr__(self):
        return f"<Season(id={self.id}, series_id={self.series_id}, number={self.season_number})>"


class Episode(Base):
    """A single episode within a season."""
    __tablename__ = "episodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    series_id = Column(Integer, ForeignKey("series.id", ondelete="CASCADE"), nullable=False)
    season_id = Column(Integer, ForeignKey("seasons.id", ondelete="CASCADE"), nullable=False)
    source_episode_id = Column(String(64), nullable=False)
    title = Column(String(500), nullable=True)
    episode_num = Column(Integer, nullable=True)
    url = Column(String(2048), nullable=True)
    container_extension = Column(String(16), nullable=True)
    import_batch_no = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    season = relationship("Season", back_populates="episodes")

    __table_args__ = (
        UniqueConstraint("season_id", "source_episode_id", name="uq_episode_season_source"),
    )

    def __repr__(self):
        return f"<Episode(id={self.id}, title={self.title})>"


class WorkItem(Base):
    """
    A persisted chunk of work belonging to one batch (sync or mapping run).
    Consumed and deleted by the stage that applies it.
    """
    __tablename__ = "work_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    batch_no = Column(String(36), nullable=False)
    payload = Column(Text, nullable=False)  # JSON list of entries
    variables = Column(Text, nullable=True)  # JSON context: group id, epg id, ...
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_work_item_batch", batch_no),
    )

    def get_payload(self) -> list:
        return _load_json(self.payload, [])

    def set_payload(self, entries: list) -> None:
        self.payload = json.dumps(entries)

    def get_variables(self) -> dict:
        return _load_json(self.variables, {})

    def set_variables(self, variables: dict) -> None:
        self.variables = json.dumps(variables) if variables else None

    def __repr__(self):
        return f"<WorkItem(id={self.id}, batch_no={self.batch_no})>"


class EpgMap(Base):
    """
    One channel -> EPG mapping run.
    Recurring maps are re-run by the background engine after each EPG refresh.
    """
    __tablename__ = "epg_maps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    epg_id = Column(Integer, ForeignKey("epgs.id", ondelete="CASCADE"), nullable=False)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(Integer, nullable=True)
    uuid = Column(String(36), nullable=True)  # Batch id of the latest run
    status = Column(String(20), default="idle", nullable=False)
    processing = Column(Boolean, default=False, nullable=False)
    override = Column(Boolean, default=False, nullable=False)  # Re-map channels that already have a link
    recurring = Column(Boolean, default=False, nullable=False)
    settings = Column(Text, nullable=True)  # JSON: {exclude_prefixes: [...], use_regex: bool}
    mapped_at = Column(DateTime, nullable=True)
    total_channel_count = Column(Integer, default=0, nullable=False)
    current_mapped_count = Column(Integer, default=0, nullable=False)
    channel_count = Column(Integer, default=0, nullable=False)  # Channels considered in the latest run
    mapped_count = Column(Integer, default=0, nullable=False)  # Channels linked in the latest run
    progress = Column(Float, default=0, nullable=False)
    errors = Column(Text, nullable=True)
    sync_time = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_epg_map_recurring", recurring),
    )

    def get_settings(self) -> dict:
        return _load_json(self.settings, {})

    def set_settings(self, settings: dict) -> None:
        self.settings = json.dumps(settings) if settings else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "epg_id": self.epg_id,
            "playlist_id": self.playlist_id,
            "uuid": self.uuid,
            "status": self.status,
            "processing": self.processing,
            "override": self.override,
            "recurring": self.recurring,
            "settings": self.get_settings(),
            "mapped_at": _iso(self.mapped_at),
            "total_channel_count": self.total_channel_count,
            "current_mapped_count": self.current_mapped_count,
            "channel_count": self.channel_count,
            "mapped_count": self.mapped_count,
            "progress": self.progress,
            "errors": self.errors,
            "sync_time": self.sync_time,
        }

    def __repr__(self):
        return f"<EpgMap(id={self.id}, epg_id={self.epg_id}, status={self.status})>"


class Notification(Base):
    """
    Persistent notification storage.
    Written at pipeline milestones; delivery and display are handled elsewhere.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True)
    type = Column(String(20), nullable=False, default="info")  # success, warning, danger
    title = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    # Source tracking
    source = Column(String(50), nullable=True)  # e.g. "playlist", "epg_map"
    source_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notification_read", read),
        Index("idx_notification_created_at", created_at.desc()),
        Index("idx_notification_type", type),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "source": self.source,
            "source_id": self.source_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification(id={self.id}, type={self.type}, read={self.read})>"
