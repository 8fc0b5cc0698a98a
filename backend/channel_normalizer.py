"""
Channel Normalizer.

Converts RawEntry objects into channel records ready to be persisted:
effective title, stable source_id, URL clean-up, delivery format, sort
position, and the exclusion rules (file-extension denylist, group
selection in preprocess mode, overall item cap).
"""
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

from playlist_decoder import RawEntry

logger = logging.getLogger(__name__)

# Fields copied from RawEntry.fields onto the channel record
CHANNEL_FIELDS = (
    "name", "stream_id", "station_id", "logo_internal", "group", "group_internal",
    "channel", "lang", "country", "shift", "catchup", "catchup_source", "tvg_shift",
    "extvlcopt", "kodidrop", "container_extension", "year", "rating", "rating_5based",
)


@dataclass
class IncludeFilter:
    """
    Group (or category) selection: exact names, then prefixes.

    With use_regex each prefix is a regular expression searched anywhere in
    the name; otherwise it must be a literal prefix.
    """
    selected: list[str] = field(default_factory=list)
    prefixes: list[str] = field(default_factory=list)
    use_regex: bool = False

    def __post_init__(self):
        self._selected = set(self.selected)
        self._patterns = []
        if self.use_regex:
            for pattern in self.prefixes:
                try:
                    self._patterns.append(re.compile(pattern))
                except re.error as e:
                    logger.warning(f"[NORMALIZE] Ignoring invalid include pattern {pattern!r}: {e}")

    @property
    def is_empty(self) -> bool:
        return not self.selected and not self.prefixes

    def matches(self, name: str) -> bool:
        name = name or ""
        if name in self._selected:
            return True
        if self.use_regex:
            return any(pattern.search(name) for pattern in self._patterns)
        return any(name.startswith(prefix) for prefix in self.prefixes)


def fix_url(url: Optional[str]) -> Optional[str]:
    """Repair scheme typos some providers emit ("http//host")."""
    if not isinstance(url, str):
        return url
    url = url.strip()
    if url.startswith("http//"):
        return "http://" + url[len("http//"):]
    if url.startswith("https//"):
        return "https://" + url[len("https//"):]
    return url


def delivery_format(url: Optional[str], container_extension: Optional[str] = None) -> str:
    """
    Pick the format a player should use for the stream.

    .m3u8 is HLS and .ts is MPEG-TS; otherwise the container extension wins.
    MKV is served as ts, the only compatible player path for it.
    """
    url = (url or "").lower()
    if url.endswith(".mkv"):
        return "ts"
    if url.endswith(".m3u8"):
        return "hls"
    if url.endswith(".ts"):
        return "ts"
    if container_extension:
        return "ts" if container_extension.lower() == "mkv" else container_extension.lower()
    return "ts"


def content_source_id(title: str, name: str, group: str, playlist_id: int) -> str:
    """Deterministic identity for a text playlist entry."""
    key = f"{title or ''}{name or ''}{group or ''}{playlist_id}"
    return hashlib.md5(key.encode("utf-8")).hexdigest()


class ChannelNormalizer:
    """
    Stateful, single-pass normalizer for one sync run.

    After the stream is consumed, groups_seen holds every group label
    encountered (for discovery) and max_items_hit tells whether the cap cut
    the import short.
    """

    def __init__(
        self,
        playlist_id: int,
        user_id: Optional[int] = None,
        batch_no: Optional[str] = None,
        auto_sort: bool = False,
        enabled: bool = False,
        ignored_file_types: Optional[Iterable[str]] = None,
        preprocess: bool = False,
        include_filter: Optional[IncludeFilter] = None,
        max_items: int = 0,
    ):
        self.playlist_id = playlist_id
        self.user_id = user_id
        self.batch_no = batch_no
        self.auto_sort = auto_sort
        self.enabled = enabled
        self.ignored_file_types = [ext for ext in (ignored_file_types or []) if ext]
        self.preprocess = preprocess
        self.include_filter = include_filter or IncludeFilter()
        self.max_items = max_items
        self.max_items_hit = False
        self.groups_seen: dict[str, None] = {}
        self.yielded = 0
        self.skipped_extension = 0
        self.skipped_filter = 0

    def is_excluded_url(self, url: Optional[str]) -> bool:
        if not url:
            return False
        return any(url.endswith(ext) for ext in self.ignored_file_types)

    def is_included(self, group: str) -> bool:
        """Group selection only applies in preprocess mode."""
        if not self.preprocess:
            return True
        return self.include_filter.matches(group)

    def normalize(self, entries: Iterable[RawEntry]) -> Iterator[dict]:
        for entry in entries:
            url = fix_url(entry.url)
            if self.is_excluded_url(url):
                self.skipped_extension += 1
                continue

            self.groups_seen.setdefault(entry.group, None)
            if not self.is_included(entry.group):
                self.skipped_filter += 1
                continue

            if self.max_items and self.yielded >= self.max_items:
                if not self.max_items_hit:
                    logger.warning(f"[NORMALIZE] Playlist {self.playlist_id} reached the {self.max_items} channel limit")
                self.max_items_hit = True
                continue

            self.yielded += 1
            yield self.to_channel(entry, url)

    def to_channel(self, entry: RawEntry, url: Optional[str] = None) -> dict:
        """Build the channel record for one entry."""
        url = fix_url(entry.url) if url is None else url
        record: dict[str, Any] = {name: entry.fields.get(name) for name in CHANNEL_FIELDS}
        record["name"] = record["name"] or ""
        record["group"] = entry.group
        record["group_internal"] = entry.group
        record["shift"] = record["shift"] or 0

        # Title falls back to the stream id, then the name; never dropped
        title = entry.title or record.get("stream_id") or record["name"]
        record["title"] = title

        if entry.source_id is not None:
            record["source_id"] = str(entry.source_id)
        else:
            record["source_id"] = content_source_id(title, record["name"], entry.group, self.playlist_id)

        record["url"] = url
        record["is_vod"] = entry.is_vod
        record["format"] = delivery_format(url, record.get("container_extension"))
        record["playlist_id"] = self.playlist_id
        record["user_id"] = self.user_id
        record["enabled"] = self.enabled
        record["import_batch_no"] = self.batch_no
        if self.auto_sort:
            record["sort"] = entry.position
        return record
