"""
Local file storage for fetched playlists, uploads and stream lists.

Paths given to LocalStorage are relative to its root directory; absolute
paths are accepted as-is so uploads outside the root can still be read.
"""
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, BinaryIO, Optional

from config import get_settings

logger = logging.getLogger(__name__)


class LocalStorage:
    """Key/value blob store backed by a directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def path(self, relative: str | Path) -> Path:
        """Resolve a storage path to an absolute filesystem path."""
        candidate = Path(relative)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate

    def exists(self, relative: str | Path) -> bool:
        return self.path(relative).exists()

    def put(self, relative: str | Path, data: bytes | str) -> Path:
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        target.write_bytes(data)
        return target

    def get(self, relative: str | Path) -> bytes:
        return self.path(relative).read_bytes()

    def delete(self, relative: str | Path) -> bool:
        target = self.path(relative)
        if target.is_file():
            target.unlink()
            return True
        return False

    def make_directory(self, relative: str | Path) -> Path:
        target = self.path(relative)
        target.mkdir(parents=True, exist_ok=True)
        return target

    def delete_directory(self, relative: str | Path) -> bool:
        target = self.path(relative)
        if target.is_dir():
            shutil.rmtree(target)
            return True
        return False

    def copy(self, source: str | Path, destination: str | Path) -> bool:
        src = self.path(source)
        if not src.is_file():
            return False
        dst = self.path(destination)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        return True

    @contextmanager
    def sink(self, relative: str | Path) -> Iterator[BinaryIO]:
        """
        Open a binary file for streaming writes.

        Data goes to a .part file that replaces the target only when the
        block exits cleanly; on error the partial file is removed.
        """
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        handle = partial.open("wb")
        try:
            yield handle
        except BaseException:
            handle.close()
            partial.unlink(missing_ok=True)
            raise
        handle.close()
        partial.replace(target)
        logger.debug(f"[STORAGE] Wrote {target}")


_storage: Optional[LocalStorage] = None


def get_storage() -> LocalStorage:
    """Get the shared storage rooted at the configured storage directory."""
    global _storage
    if _storage is None:
        _storage = LocalStorage(get_settings().get_storage_dir())
    return _storage


def reset_storage() -> None:
    """Drop the shared storage instance (settings changed or tests)."""
    global _storage
    _storage = None
