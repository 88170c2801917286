"""Local cache of cloud images, downloaded once and reused."""

import fcntl
import logging
import os
import shutil
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import requests

from pvecloud.config import Config
from pvecloud.exceptions import ResolutionError

logger = logging.getLogger(__name__)

QCOW2_MAGIC = b"QFI\xfb"
CHUNK_SIZE = 1024 * 1024


def image_virtual_size_gb(path: Union[str, Path]) -> float:
    """Virtual disk size of an image in GiB (qcow2 header, else raw file size)."""
    try:
        with open(path, "rb") as f:
            header = f.read(32)
        if header[:4] == QCOW2_MAGIC and len(header) >= 32:
            (size,) = struct.unpack(">Q", header[24:32])
            return size / 1024**3
        return os.path.getsize(path) / 1024**3
    except OSError as e:
        raise ResolutionError(f"Cannot read image {path}: {e}") from e


class ImageCache:
    """Handles cloud image download into a cache directory."""

    def __init__(
        self,
        cache_dir: Optional[Union[str, Path]] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.cache_dir = Path(cache_dir or Config.IMAGE_CACHE_DIR)
        self.session = session or requests.Session()
        self.timeout = timeout or Config.DOWNLOAD_TIMEOUT

    def path_for(self, file_name: str) -> Path:
        return self.cache_dir / file_name

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        """Exclusive lock so concurrent runs never race on the same cache entry."""
        lock_path = path.with_name(path.name + ".lock")
        try:
            lock_file = open(lock_path, "w")
        except OSError as e:
            raise ResolutionError(f"Image cache {path} unusable: {e}") from e
        with lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    @staticmethod
    def _clear_invalid(path: Path) -> None:
        """Remove anything at path that is not a usable regular file."""
        if path.is_symlink() and not path.exists():
            logger.warning(f"⚠️  Removing broken symlink {path}")
            path.unlink()
        elif path.is_dir():
            logger.warning(f"⚠️  Removing directory in place of image {path}")
            shutil.rmtree(path)
        elif path.exists() and not path.is_file():
            logger.warning(f"⚠️  Removing non-regular file {path}")
            path.unlink()
        elif path.is_file() and path.stat().st_size == 0:
            logger.warning(f"⚠️  Removing empty image {path}")
            path.unlink()

    def ensure(self, url: str, file_name: str) -> Path:
        """Return the cached image for url, downloading it if absent.

        Args:
            url: Source URL of the cloud image
            file_name: Cache file name (usually the URL basename)

        Returns:
            Path to the local image

        Raises:
            ResolutionError: If the cache is unusable or the download fails
        """
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResolutionError(f"Cannot create image cache {self.cache_dir}: {e}") from e

        path = self.path_for(file_name)
        with self._locked(path):
            try:
                self._clear_invalid(path)
            except OSError as e:
                raise ResolutionError(f"Image cache {path} unusable: {e}") from e
            if path.is_file():
                logger.info(f"ℹ️  Image {path} already cached, reusing")
                return path
            self._download(url, path)
        return path

    def _download(self, url: str, path: Path) -> None:
        """Single streamed attempt; the file only appears at path once complete."""
        partial = path.with_name(path.name + ".part")
        logger.info(f"⬇️  Downloading {url} → {path}")
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            os.replace(partial, path)
        except (requests.RequestException, OSError) as e:
            partial.unlink(missing_ok=True)
            raise ResolutionError(f"Failed to download image {url}: {e}") from e
        logger.info(f"✅ Downloaded {path.name} ({path.stat().st_size // (1024 * 1024)} MiB)")
