"""
Playlist Decoder.

Turns a fetched source into a lazy, single-pass sequence of RawEntry:

- M3UPlaylistDecoder reads an M3U+ file through M3UParser and maps tag
  attributes to channel fields with an explicit table.
- XtreamPlaylistDecoder walks the live and VOD stream lists written by
  XtreamClient, decoding them incrementally with ijson.

Multi-valued group labels ("News;Sports") fan out into one entry per group;
every copy carries the same fields apart from group.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import ijson

from exceptions import DecodeError
from m3u_parser import M3UItem, M3UParser, ParseWarning
from xtream_client import XtreamCredentials

logger = logging.getLogger(__name__)

GROUP_DELIMITER = ";"


@dataclass
class RawEntry:
    """One decoded playlist entry, before normalization."""
    title: Optional[str]
    url: Optional[str]
    group: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    # Provider-supplied identity (Xtream stream id); None for text playlists
    source_id: Optional[str] = None
    is_vod: bool = False
    # 1-based position of the entry in the source, shared by fanned-out copies
    position: int = 0

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)


# ---------------------------------------------------------------------------
# M3U attribute table
# ---------------------------------------------------------------------------

def _clean(value: str) -> str:
    return value.strip().replace(",", "").replace('"', "").replace("'", "")


def _logo(value: str) -> str:
    return value.strip().replace(" ", "%20")


def _to_int(value: str) -> Optional[int]:
    try:
        return int(float(_clean(value)))
    except (ValueError, OverflowError):
        return None


def _to_shift(value: str) -> int:
    return _to_int(value) or 0


@dataclass(frozen=True)
class AttributeRule:
    tag: str
    target: str
    transform: Callable[[str], Any] = _clean


# Later rules win when they write the same target: timeshift overrides tvg-shift
M3U_ATTRIBUTE_TABLE: tuple[AttributeRule, ...] = (
    AttributeRule("tvg-name", "name"),
    AttributeRule("tvg-id", "stream_id"),
    AttributeRule("tvc-guide-stationid", "station_id"),
    AttributeRule("tvg-logo", "logo_internal", _logo),
    AttributeRule("group-title", "group"),
    AttributeRule("group-title", "group_internal"),
    AttributeRule("tvg-chno", "channel", _to_int),
    AttributeRule("tvg-language", "lang"),
    AttributeRule("tvg-country", "country"),
    AttributeRule("tvg-shift", "shift", _to_shift),
    AttributeRule("timeshift", "shift", _to_shift),
    AttributeRule("catchup", "catchup"),
    AttributeRule("catchup-source", "catchup_source"),
    AttributeRule("tvg-shift", "tvg_shift"),
)


def map_m3u_attributes(item: M3UItem) -> dict[str, Any]:
    """Apply M3U_ATTRIBUTE_TABLE to a parsed item."""
    fields: dict[str, Any] = {}
    for rule in M3U_ATTRIBUTE_TABLE:
        if item.has_attribute(rule.tag):
            fields[rule.target] = rule.transform(item.get_attribute(rule.tag))
    if item.vlc_options:
        fields["extvlcopt"] = json.dumps(item.vlc_options)
    if item.kodi_props:
        fields["kodidrop"] = json.dumps(item.kodi_props)
    return fields


def split_groups(label: str) -> list[str]:
    """Split a multi-valued group label. An empty label yields a single empty group."""
    parts = [part.strip() for part in (label or "").split(GROUP_DELIMITER)]
    parts = [part for part in parts if part]
    return parts or [""]


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

class PlaylistDecoder(ABC):
    """
    Base decoder. Iterating a decoder consumes it: a second pass requires a
    fresh fetch and a new decoder.
    """

    def __init__(self):
        self._consumed = False
        # Every group label seen, in first-seen order
        self.groups_seen: dict[str, None] = {}

    @property
    def warnings(self) -> list[ParseWarning]:
        return []

    def __iter__(self) -> Iterator[RawEntry]:
        if self._consumed:
            raise DecodeError("Playlist decoder can only be iterated once")
        self._consumed = True
        return self._entries()

    @abstractmethod
    def _entries(self) -> Iterator[RawEntry]:
        pass

    def _fan_out(self, entry: RawEntry) -> Iterator[RawEntry]:
        groups = split_groups(entry.group)
        for group in groups:
            self.groups_seen.setdefault(group, None)
            fields = dict(entry.fields)
            fields["group"] = group
            fields["group_internal"] = group
            yield RawEntry(
                title=entry.title,
                url=entry.url,
                group=group,
                fields=fields,
                source_id=entry.source_id,
                is_vod=entry.is_vod,
                position=entry.position,
            )


class M3UPlaylistDecoder(PlaylistDecoder):
    """Decodes an M3U+ text playlist file."""

    def __init__(self, path: str | Path, max_line_length: int = 2048):
        super().__init__()
        self.path = Path(path)
        self.parser = M3UParser(max_line_length=max_line_length)

    @property
    def warnings(self) -> list[ParseWarning]:
        return self.parser.warnings

    def _entries(self) -> Iterator[RawEntry]:
        if not self.path.exists():
            raise DecodeError(f"Playlist file not found: {self.path}")

        position = 0
        for item in self.parser.parse_file(self.path):
            position += 1
            fields = map_m3u_attributes(item)
            group = fields.get("group") or item.ext_group or ""
            entry = RawEntry(
                title=item.title or None,
                url=item.url,
                group=group,
                fields=fields,
                position=position,
            )
            yield from self._fan_out(entry)

        logger.info(f"[M3U] Decoded {position} entries from {self.path.name} ({len(self.warnings)} warnings)")


def _plain(value: Any) -> Any:
    """ijson yields Decimal for JSON floats."""
    if isinstance(value, Decimal):
        return float(value)
    return value


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(_plain(value))


class XtreamPlaylistDecoder(PlaylistDecoder):
    """
    Decodes Xtream live and VOD stream lists.

    Category lookups are passed in up front (they are small); stream lists
    are read from disk one object at a time.
    """

    def __init__(
        self,
        credentials: XtreamCredentials,
        live_streams_path: Optional[str | Path] = None,
        live_categories: Optional[list[dict]] = None,
        vod_streams_path: Optional[str | Path] = None,
        vod_categories: Optional[list[dict]] = None,
    ):
        super().__init__()
        self.credentials = credentials
        self.live_streams_path = Path(live_streams_path) if live_streams_path else None
        self.vod_streams_path = Path(vod_streams_path) if vod_streams_path else None
        self.live_categories = _category_lookup(live_categories)
        self.vod_categories = _category_lookup(vod_categories)
        # Category names are known before any stream is read
        for name in list(self.live_categories.values()) + list(self.vod_categories.values()):
            self.groups_seen.setdefault(name, None)

    def _entries(self) -> Iterator[RawEntry]:
        position = 0
        if self.live_streams_path:
            for item in _iter_json_array(self.live_streams_path):
                position += 1
                yield from self._fan_out(self._live_entry(item, position))
        if self.vod_streams_path:
            for item in _iter_json_array(self.vod_streams_path):
                position += 1
                yield from self._fan_out(self._vod_entry(item, position))
        logger.info(f"[XTREAM] Decoded {position} stream entries")

    def _live_entry(self, item: dict, position: int) -> RawEntry:
        stream_id = _text(item.get("stream_id"))
        group = self.live_categories.get(_text(item.get("category_id")), "")
        name = _text(item.get("name")) or ""
        fields = {
            "name": name,
            "logo_internal": (_text(item.get("stream_icon")) or "").replace(" ", "%20"),
            "group": group,
            "group_internal": group,
            "stream_id": _text(item.get("epg_channel_id")) or stream_id,
            "channel": _int_or_none(item.get("num")),
            "catchup": _text(item.get("tv_archive")),
            "shift": _int_or_none(item.get("tv_archive_duration")) or 0,
        }
        return RawEntry(
            title=name or None,
            url=self.credentials.live_url(stream_id),
            group=group,
            fields=fields,
            source_id=stream_id,
            position=position,
        )

    def _vod_entry(self, item: dict, position: int) -> RawEntry:
        stream_id = _text(item.get("stream_id"))
        group = self.vod_categories.get(_text(item.get("category_id")), "")
        name = _text(item.get("name")) or ""
        extension = _text(item.get("container_extension")) or "mp4"
        rating_5based = _plain(item.get("rating_5based"))
        fields = {
            "name": name,
            "logo_internal": (_text(item.get("stream_icon")) or "").replace(" ", "%20"),
            "group": group,
            "group_internal": group,
            "stream_id": stream_id,
            "channel": _int_or_none(item.get("num")),
            "container_extension": extension,
            "year": _text(item.get("year")),
            "rating": _text(item.get("rating")),
            "rating_5based": float(rating_5based) if isinstance(rating_5based, (int, float)) else None,
        }
        return RawEntry(
            title=name or None,
            url=self.credentials.movie_url(stream_id, extension),
            group=group,
            fields=fields,
            source_id=stream_id,
            is_vod=True,
            position=position,
        )


def _int_or_none(value: Any) -> Optional[int]:
    value = _plain(value)
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _category_lookup(categories: Optional[list[dict]]) -> dict[str, str]:
    lookup: dict[str, str] = {}
    for category in categories or []:
        category_id = _text(category.get("category_id"))
        if category_id is not None:
            lookup[category_id] = category.get("category_name") or ""
    return lookup


def _iter_json_array(path: Path) -> Iterator[dict]:
    """Yield the objects of a top-level JSON array without loading the file."""
    try:
        with open(path, "rb") as handle:
            for item in ijson.items(handle, "item"):
                if isinstance(item, dict):
                    yield item
    except ijson.JSONError as e:
        raise DecodeError(f"Malformed stream list {path.name}: {e}") from e
