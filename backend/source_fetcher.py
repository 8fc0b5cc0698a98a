"""
Source Fetcher.

Retrieves playlist sources over HTTP(S) or from local uploads. Response
bodies are streamed straight into storage; playlists can be hundreds of MB
and are never held in memory. A failed fetch is never retried here: the
run fails and the next scheduled sync starts over.
"""
import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from batch_orchestrator import CancellationToken
from config import ImportSettings
from exceptions import FetchError
from models import Playlist
from storage import LocalStorage

logger = logging.getLogger(__name__)

# Error bodies are kept for the user; cap them so a HTML error page doesn't flood the record
MAX_ERROR_BODY = 2000

INVALID_SOURCE_MESSAGE = (
    "Invalid playlist file. Unable to read or download your playlist file. "
    "Please check the URL or uploaded file and try again."
)


def normalize_url(url: str) -> str:
    """Escape spaces, which some providers leave in playlist URLs."""
    return url.strip().replace(" ", "%20")


class SourceFetcher:
    """HTTP client wrapper that sinks responses into storage."""

    def __init__(
        self,
        storage: LocalStorage,
        user_agent: str,
        verify_ssl: bool = True,
        timeout: float = 300,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage = storage
        self.user_agent = user_agent
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def for_playlist(cls, playlist: Playlist, settings: ImportSettings, storage: LocalStorage) -> "SourceFetcher":
        """Build a fetcher honouring the playlist's own user agent and SSL setting."""
        return cls(
            storage=storage,
            user_agent=playlist.user_agent or settings.user_agent,
            verify_ssl=settings.verify_ssl and not playlist.disable_ssl_verification,
            timeout=settings.fetch_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self.user_agent},
                verify=self.verify_ssl,
                timeout=self.timeout,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "SourceFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def download(
        self,
        url: str,
        destination: str | Path,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Path:
        """
        Stream a URL into storage.

        Raises:
            FetchError: on a non-success status or any transport error. The
                error carries the response body (or transport error text).
        """
        url = normalize_url(url)
        client = self._get_client()
        logger.info(f"[FETCH] Downloading {_redact(url)} -> {destination}")
        try:
            async with client.stream("GET", url, timeout=timeout or self.timeout) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise FetchError(
                        f"HTTP {response.status_code} fetching source: {body[:MAX_ERROR_BODY]}",
                        url=url,
                        status_code=response.status_code,
                        body=body[:MAX_ERROR_BODY],
                    )
                total = 0
                with self.storage.sink(destination) as sink:
                    async for chunk in response.aiter_bytes():
                        if token is not None:
                            token.raise_if_cancelled()
                        sink.write(chunk)
                        total += len(chunk)
        except httpx.HTTPError as e:
            raise FetchError(f"Error fetching source: {e}", url=url, body=str(e)) from e

        logger.info(f"[FETCH] Downloaded {total} bytes to {destination}")
        return self.storage.path(destination)

    async def get_json(self, url: str, timeout: Optional[float] = None) -> Any:
        """GET a small JSON document (category lists, account info)."""
        url = normalize_url(url)
        client = self._get_client()
        try:
            response = await client.get(url, timeout=timeout or self.timeout)
        except httpx.HTTPError as e:
            raise FetchError(f"Error fetching source: {e}", url=url, body=str(e)) from e
        if not response.is_success:
            body = response.text[:MAX_ERROR_BODY]
            raise FetchError(
                f"HTTP {response.status_code} fetching source: {body}",
                url=url,
                status_code=response.status_code,
                body=body,
            )
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON response: {e}", url=url, body=response.text[:MAX_ERROR_BODY]) from e

    async def fetch_playlist_file(self, playlist: Playlist, token: Optional[CancellationToken] = None) -> Path:
        """
        Produce a local path for a text playlist.

        URL sources are downloaded fresh (previous files removed first);
        uploads are read in place; any other url value is treated as a local path.
        """
        if playlist.url and playlist.url.startswith("http"):
            self.storage.delete_directory(playlist.folder_path)
            return await self.download(playlist.url, playlist.file_path, token=token)

        if playlist.uploads and self.storage.exists(playlist.uploads):
            return self.storage.path(playlist.uploads)

        if playlist.url:
            local = Path(playlist.url)
            if local.exists():
                return local

        raise FetchError(INVALID_SOURCE_MESSAGE)


def _redact(url: str) -> str:
    """Hide Xtream credentials in log output."""
    if "password=" not in url:
        return url
    head, _, tail = url.partition("password=")
    _, amp, rest = tail.partition("&")
    return f"{head}password=***{amp}{rest}"
