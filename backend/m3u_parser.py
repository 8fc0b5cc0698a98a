"""
M3U/M3U+ line parser.

Reads a playlist file line by line and yields one M3UItem per URL line,
carrying the #EXTINF attributes, title and any #EXTVLCOPT / #KODIPROP
options that preceded it. Malformed lines are recorded as ParseWarning and
skipped; they never abort parsing. Lines longer than max_line_length are
skipped without being read into memory in full.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_LENGTH = 2048
EXCERPT_LENGTH = 80

EXTINF = "#EXTINF:"
EXTVLCOPT = "#EXTVLCOPT:"
KODIPROP = "#KODIPROP:"
EXTGRP = "#EXTGRP:"


@dataclass
class ParseWarning:
    """A non-fatal problem with a single line."""
    line_number: int
    message: str
    excerpt: str = ""

    def __str__(self) -> str:
        if self.excerpt:
            return f"line {self.line_number}: {self.message} ({self.excerpt})"
        return f"line {self.line_number}: {self.message}"


@dataclass
class M3UItem:
    """One playlist entry as written in the file."""
    url: str
    title: Optional[str] = None
    duration: Optional[str] = None
    attributes: dict[str, str] = field(default_factory=dict)
    vlc_options: list[dict] = field(default_factory=list)
    kodi_props: list[dict] = field(default_factory=list)
    ext_group: Optional[str] = None
    line_number: int = 0

    def has_attribute(self, name: str) -> bool:
        return name.lower() in self.attributes

    def get_attribute(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(name.lower(), default)


class M3UParseError(ValueError):
    """Raised internally for a malformed #EXTINF line."""


def parse_extinf(line: str) -> tuple[Optional[str], dict[str, str], Optional[str]]:
    """
    Split an #EXTINF line into (duration, attributes, title).

    The title is everything after the first comma outside a quoted value.
    Attribute names are lower-cased; values keep their original text.
    """
    body = line[len(EXTINF):]
    in_quotes = False
    split_at = -1
    for index, char in enumerate(body):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            split_at = index
            break
    if in_quotes:
        raise M3UParseError("unbalanced quotes in #EXTINF attributes")

    if split_at == -1:
        head, title = body, None
    else:
        head, title = body[:split_at], body[split_at + 1:].strip()

    head = head.strip()
    duration, _, attr_text = head.partition(" ")
    attributes = _parse_attributes(attr_text)
    return duration.strip() or None, attributes, title


def _parse_attributes(text: str) -> dict[str, str]:
    attributes: dict[str, str] = {}
    pos = 0
    length = len(text)
    while pos < length:
        while pos < length and text[pos].isspace():
            pos += 1
        if pos >= length:
            break
        eq = text.find("=", pos)
        if eq == -1:
            raise M3UParseError(f"attribute without value: {text[pos:pos + 20]!r}")
        key = text[pos:eq].strip().lower()
        if not key or any(c.isspace() for c in key):
            raise M3UParseError(f"invalid attribute name: {text[pos:eq]!r}")
        pos = eq + 1
        if pos < length and text[pos] == '"':
            end = text.find('"', pos + 1)
            if end == -1:
                raise M3UParseError(f"unterminated value for {key}")
            value = text[pos + 1:end]
            pos = end + 1
        else:
            end = pos
            while end < length and not text[end].isspace():
                end += 1
            value = text[pos:end]
            pos = end
        attributes[key] = value
    return attributes


def _parse_option(line: str, prefix: str) -> Optional[dict]:
    key, sep, value = line[len(prefix):].partition("=")
    if not sep or not key.strip():
        return None
    return {"key": key.strip(), "value": value.strip()}


class M3UParser:
    """Streaming parser; warnings accumulate on the instance."""

    def __init__(self, max_line_length: int = DEFAULT_MAX_LINE_LENGTH):
        self.max_line_length = max_line_length
        self.warnings: list[ParseWarning] = []

    def _warn(self, line_number: int, message: str, line: str = "") -> None:
        warning = ParseWarning(line_number, message, line[:EXCERPT_LENGTH])
        self.warnings.append(warning)
        logger.debug(f"[M3U] Parse warning: {warning}")

    def parse_file(self, path: str | Path) -> Iterator[M3UItem]:
        with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
            yield from self.parse_lines(self._read_lines(handle))

    def _read_lines(self, handle) -> Iterator[tuple[int, Optional[str]]]:
        """Yield (line_number, text); text is None for a line over the length limit."""
        line_number = 0
        limit = self.max_line_length
        while True:
            line = handle.readline(limit + 2)
            if not line:
                return
            line_number += 1
            if len(line) > limit and not line.endswith("\n"):
                # Drain the rest of the oversized line
                while True:
                    rest = handle.readline(64 * 1024)
                    if not rest or rest.endswith("\n"):
                        break
                yield line_number, None
                continue
            stripped = line.rstrip("\r\n")
            if len(stripped) > limit:
                yield line_number, None
                continue
            yield line_number, stripped

    def parse_lines(self, lines: Iterable[tuple[int, Optional[str]] | str]) -> Iterator[M3UItem]:
        """
        Parse pre-split lines. Accepts plain strings or (line_number, text)
        pairs as produced by parse_file.
        """
        pending: Optional[M3UItem] = None
        invalid_block = False
        vlc_options: list[dict] = []
        kodi_props: list[dict] = []
        ext_group: Optional[str] = None

        for position, raw in enumerate(lines, start=1):
            if isinstance(raw, tuple):
                line_number, text = raw
            else:
                line_number, text = position, raw

            if text is None:
                self._warn(line_number, f"line exceeds {self.max_line_length} characters")
                continue

            line = text.strip().lstrip("\ufeff")
            if not line:
                continue

            if line.upper().startswith(EXTINF):
                try:
                    duration, attributes, title = parse_extinf(line)
                except M3UParseError as e:
                    self._warn(line_number, str(e), line)
                    pending = None
                    invalid_block = True
                    continue
                pending = M3UItem(
                    url="",
                    title=title,
                    duration=duration,
                    attributes=attributes,
                    line_number=line_number,
                )
                invalid_block = False
            elif line.upper().startswith(EXTVLCOPT):
                option = _parse_option(line, EXTVLCOPT)
                if option is None:
                    self._warn(line_number, "malformed #EXTVLCOPT", line)
                else:
                    vlc_options.append(option)
            elif line.upper().startswith(KODIPROP):
                option = _parse_option(line, KODIPROP)
                if option is None:
                    self._warn(line_number, "malformed #KODIPROP", line)
                else:
                    kodi_props.append(option)
            elif line.upper().startswith(EXTGRP):
                ext_group = line[len(EXTGRP):].strip() or None
            elif line.startswith("#"):
                # #EXTM3U header and unsupported directives
                continue
            else:
                if pending is not None:
                    pending.url = line
                    pending.vlc_options = vlc_options
                    pending.kodi_props = kodi_props
                    pending.ext_group = ext_group
                    yield pending
                elif not invalid_block:
                    self._warn(line_number, "URL without a preceding #EXTINF", line)
                pending = None
                invalid_block = False
                vlc_options = []
                kodi_props = []
                ext_group = None

        if pending is not None:
            self._warn(pending.line_number, "#EXTINF without a URL")
