"""
EPG channel matching.

Finds the EPG channel a playlist channel should be linked to:

1. Exact: the channel's stream id, name or title equals an EPG channel_id,
   case-insensitively. Exact matches always win.
2. Similarity: rapidfuzz ratio of the normalized comparison strings against
   every candidate's channel_id, name and display name. The best candidate
   is accepted only at or above the configured threshold.

Exclude patterns (literal prefixes or regular expressions) are stripped from
each comparison string before either step.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from rapidfuzz import fuzz
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from exceptions import MatchNotFoundError
from models import Channel, EpgChannel

logger = logging.getLogger(__name__)

EXACT = "exact"
SIMILARITY = "similarity"


class EpgNameResolver(Protocol):
    """Source of human-readable EPG channel names."""

    def resolve_channel_name(self, epg_id: int, channel_id: str) -> Optional[str]:
        ...


class DatabaseEpgNameResolver:
    """Resolves display names from the epg_channels table."""

    def __init__(self, session: Session):
        self._session = session

    def resolve_channel_name(self, epg_id: int, channel_id: str) -> Optional[str]:
        row = self._session.execute(
            select(EpgChannel.display_name, EpgChannel.name).where(
                EpgChannel.epg_id == epg_id,
                EpgChannel.channel_id == channel_id,
            )
        ).first()
        if row is None:
            return None
        return row.display_name or row.name


@dataclass
class MatchResult:
    epg_channel_id: int
    channel_id: str
    score: float
    method: str


@dataclass
class _Candidate:
    id: int
    channel_id: str
    names: tuple[str, ...]  # normalized strings scored against


def normalize_for_match(value: Optional[str]) -> str:
    """Lowercase, drop bracketed text and punctuation, collapse whitespace."""
    if not value:
        return ""
    norm = value.lower()
    norm = re.sub(r"\[.*?\]", "", norm)
    norm = re.sub(r"\(.*?\)", "", norm)
    norm = re.sub(r"[^\w\s]", " ", norm)
    return " ".join(norm.split())


def strip_patterns(value: str, patterns: Iterable[str], use_regex: bool = False) -> str:
    """Remove exclude patterns from one comparison string."""
    for pattern in patterns:
        if not pattern:
            continue
        if use_regex:
            try:
                value = re.sub(pattern, "", value)
            except re.error as e:
                logger.warning(f"[EPG] Ignoring invalid exclude pattern {pattern!r}: {e}")
        elif value.startswith(pattern):
            value = value[len(pattern):]
    return value.strip()


def clean_comparison_strings(channel: Channel, patterns: Iterable[str] = (), use_regex: bool = False) -> list[str]:
    """
    The (stream id, name, title) triple used for matching.

    Custom values take precedence over source values. Patterns are applied
    to each field on its own.
    """
    patterns = list(patterns or [])
    raw = (
        channel.stream_id_custom or channel.stream_id or "",
        channel.name_custom or channel.name or "",
        channel.title_custom or channel.title or "",
    )
    return [strip_patterns(value.strip(), patterns, use_regex) for value in raw]


def best_similarity(queries: list[str], candidates: list[_Candidate], threshold: float) -> tuple[_Candidate, float]:
    """
    Score queries against every candidate and return the best one.

    Raises:
        MatchNotFoundError: no candidate reaches the threshold.
    """
    best: Optional[_Candidate] = None
    best_score = 0.0
    for candidate in candidates:
        for query in queries:
            for name in candidate.names:
                score = fuzz.ratio(query, name)
                if score > best_score:
                    best_score = score
                    best = candidate
    if best is None or best_score < threshold:
        raise MatchNotFoundError(queries[0] if queries else "", best_score)
    return best, best_score


class EpgMatcher:
    """Matches playlist channels against the channels of one EPG."""

    def __init__(
        self,
        session: Session,
        epg_id: int,
        exclude_prefixes: Optional[list[str]] = None,
        use_regex: bool = False,
        threshold: float = 80,
        name_resolver: Optional[EpgNameResolver] = None,
    ):
        self._session = session
        self.epg_id = epg_id
        self.exclude_prefixes = [p for p in (exclude_prefixes or []) if p]
        self.use_regex = use_regex
        self.threshold = threshold
        self.name_resolver = name_resolver or DatabaseEpgNameResolver(session)
        self._candidates: Optional[list[_Candidate]] = None

    def _load_candidates(self) -> list[_Candidate]:
        if self._candidates is None:
            rows = self._session.execute(
                select(EpgChannel.id, EpgChannel.channel_id, EpgChannel.name).where(EpgChannel.epg_id == self.epg_id)
            ).all()
            candidates = []
            for row in rows:
                display_name = self.name_resolver.resolve_channel_name(self.epg_id, row.channel_id) if row.channel_id else None
                names = tuple(
                    dict.fromkeys(
                        n for n in (normalize_for_match(row.channel_id), normalize_for_match(row.name),
                                    normalize_for_match(display_name)) if n
                    )
                )
                if names:
                    candidates.append(_Candidate(id=row.id, channel_id=row.channel_id, names=names))
            self._candidates = candidates
            logger.debug(f"[EPG] Loaded {len(candidates)} match candidates for EPG {self.epg_id}")
        return self._candidates

    def exact_match(self, strings: list[str]) -> Optional[EpgChannel]:
        lowered = [s.lower() for s in strings if s]
        if not lowered:
            return None
        return self._session.scalars(
            select(EpgChannel)
            .where(
                EpgChannel.epg_id == self.epg_id,
                EpgChannel.channel_id != "",
                func.lower(EpgChannel.channel_id).in_(lowered),
            )
            .order_by(EpgChannel.id)
        ).first()

    def find_match(self, channel: Channel) -> Optional[MatchResult]:
        """Best match for a channel, or None when it should stay unmapped."""
        strings = clean_comparison_strings(channel, self.exclude_prefixes, self.use_regex)

        exact = self.exact_match(strings)
        if exact is not None:
            return MatchResult(exact.id, exact.channel_id, 100.0, EXACT)

        # Title first: it is usually the most descriptive
        queries = list(dict.fromkeys(q for q in map(normalize_for_match, reversed(strings)) if q))
        if not queries:
            return None
        try:
            candidate, score = best_similarity(queries, self._load_candidates(), self.threshold)
        except MatchNotFoundError as e:
            logger.debug(f"[EPG] Channel {channel.id} left unmapped: {e}")
            return None
        return MatchResult(candidate.id, candidate.channel_id, score, SIMILARITY)

    def match(self, channel: Channel) -> Optional[EpgChannel]:
        result = self.find_match(channel)
        if result is None:
            return None
        return self._session.get(EpgChannel, result.epg_channel_id)
