"""
Xtream Codes API client.

All endpoints live under {base}/player_api.php and authenticate through the
username/password query string. Category lists and account info are small
and fetched as JSON; stream lists can hold tens of thousands of entries and
are sunk to files for incremental decoding.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from batch_orchestrator import CancellationToken
from config import ImportSettings
from exceptions import ConfigurationError
from models import Playlist
from source_fetcher import SourceFetcher, normalize_url

logger = logging.getLogger(__name__)

LIVE = "live"
VOD = "vod"
SERIES = "series"

DEFAULT_OUTPUT = "ts"
DEFAULT_VOD_EXTENSION = "mp4"


@dataclass
class XtreamCredentials:
    """Connection details for one Xtream source."""
    base_url: str
    username: str
    password: str
    output: str = DEFAULT_OUTPUT
    import_options: list[str] = field(default_factory=list)

    @classmethod
    def from_playlist(cls, playlist: Playlist) -> "XtreamCredentials":
        config = playlist.get_xtream_config()
        url = (config.get("url") or "").strip()
        username = config.get("username") or ""
        password = config.get("password") or ""
        if not url or not username or not password:
            raise ConfigurationError(
                f"Playlist \"{playlist.name}\" is missing its Xtream URL, username or password"
            )
        return cls(
            base_url=normalize_url(url).rstrip("/"),
            username=username,
            password=password,
            output=config.get("output") or DEFAULT_OUTPUT,
            import_options=list(config.get("import_options") or [LIVE, VOD]),
        )

    def wants(self, option: str) -> bool:
        return option in self.import_options

    def api_url(self, action: Optional[str] = None, **params: Any) -> str:
        url = (
            f"{self.base_url}/player_api.php"
            f"?username={quote(self.username)}&password={quote(self.password)}"
        )
        if action:
            url += f"&action={action}"
        for key, value in params.items():
            url += f"&{key}={quote(str(value))}"
        return url

    def live_url(self, stream_id: Any) -> str:
        return f"{self.base_url}/live/{self.username}/{self.password}/{stream_id}.{self.output}"

    def movie_url(self, stream_id: Any, extension: Optional[str]) -> str:
        return f"{self.base_url}/movie/{self.username}/{self.password}/{stream_id}.{extension or DEFAULT_VOD_EXTENSION}"

    def episode_url(self, episode_id: Any, extension: Optional[str]) -> str:
        return f"{self.base_url}/series/{self.username}/{self.password}/{episode_id}.{extension or DEFAULT_VOD_EXTENSION}"


class XtreamClient:
    """Calls the Xtream player API through a SourceFetcher."""

    def __init__(self, fetcher: SourceFetcher, credentials: XtreamCredentials, settings: ImportSettings):
        self.fetcher = fetcher
        self.credentials = credentials
        self.settings = settings

    async def get_user_info(self) -> Any:
        return await self.fetcher.get_json(
            self.credentials.api_url(), timeout=self.settings.user_info_timeout
        )

    async def _get_list(self, action: str, timeout: Optional[float] = None, **params: Any) -> list:
        data = await self.fetcher.get_json(
            self.credentials.api_url(action, **params),
            timeout=timeout or self.settings.metadata_timeout,
        )
        if not isinstance(data, list):
            # Providers answer with an object (or null) when the list is empty
            logger.debug(f"[XTREAM] {action} returned {type(data).__name__}, treating as empty")
            return []
        return data

    async def get_live_categories(self) -> list[dict]:
        return await self._get_list("get_live_categories")

    async def get_vod_categories(self) -> list[dict]:
        return await self._get_list("get_vod_categories")

    async def get_series_categories(self) -> list[dict]:
        return await self._get_list("get_series_categories")

    async def get_series(self, category_id: Any) -> list[dict]:
        return await self._get_list("get_series", category_id=category_id)

    async def get_series_info(self, series_id: Any) -> dict:
        data = await self.fetcher.get_json(
            self.credentials.api_url("get_series_info", series_id=series_id),
            timeout=self.settings.metadata_timeout,
        )
        return data if isinstance(data, dict) else {}

    async def download_live_streams(self, destination: str, token: Optional[CancellationToken] = None) -> Path:
        return await self._download("get_live_streams", destination, token)

    async def download_vod_streams(self, destination: str, token: Optional[CancellationToken] = None) -> Path:
        return await self._download("get_vod_streams", destination, token)

    async def _download(self, action: str, destination: str, token: Optional[CancellationToken]) -> Path:
        storage = self.fetcher.storage
        # Start fresh so a failed download never leaves the previous list behind
        storage.delete(destination)
        return await self.fetcher.download(
            self.credentials.api_url(action),
            destination,
            timeout=self.settings.fetch_timeout,
            token=token,
        )
