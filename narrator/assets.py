"""Asset stores for offline narration audio and images."""

import hashlib
import os
from typing import Optional
from urllib.parse import urlparse

import requests

from .config import CONFIG
from .errors import PreloadFetchError
from .logger import Logger

CACHED = "cached"
STORED = "stored"
FAILED = "failed"


class AssetStore:
    """Bytes keyed by their source URL"""

    def get(self, url: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, url: str, data: bytes):
        raise NotImplementedError

    def has(self, url: str) -> bool:
        raise NotImplementedError

    def delete(self, url: str):
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError

    def path_for(self, url: str) -> Optional[str]:
        """Local file for a cached URL, if the store keeps files"""
        return None


class DiskAssetStore(AssetStore):
    """One file per URL under a cache directory, named by URL hash"""

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = cache_dir or CONFIG["asset_cache_dir"]

    def _file_path(self, url: str) -> str:
        h = hashlib.md5(url.encode()).hexdigest()[:16]
        # Keep the extension so external players can sniff the format
        ext = os.path.splitext(urlparse(url).path)[1][:8]
        return os.path.join(self.cache_dir, f"asset_{h}{ext}")

    def get(self, url: str) -> Optional[bytes]:
        path = self._file_path(url)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def put(self, url: str, data: bytes):
        os.makedirs(self.cache_dir, exist_ok=True)
        path = self._file_path(url)
        tmp_path = path + ".part"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    def has(self, url: str) -> bool:
        return os.path.isfile(self._file_path(url))

    def delete(self, url: str):
        try:
            os.remove(self._file_path(url))
        except FileNotFoundError:
            pass

    def clear(self):
        if not os.path.isdir(self.cache_dir):
            return
        for fname in os.listdir(self.cache_dir):
            if fname.startswith("asset_"):
                os.remove(os.path.join(self.cache_dir, fname))

    def path_for(self, url: str) -> Optional[str]:
        path = self._file_path(url)
        return path if os.path.isfile(path) else None


class MemoryAssetStore(AssetStore):
    """Dict-backed store for tests and session-only caching"""

    def __init__(self, initial: Optional[dict[str, bytes]] = None):
        self.data: dict[str, bytes] = dict(initial or {})

    def get(self, url: str) -> Optional[bytes]:
        return self.data.get(url)

    def put(self, url: str, data: bytes):
        self.data[url] = data

    def has(self, url: str) -> bool:
        return url in self.data

    def delete(self, url: str):
        self.data.pop(url, None)

    def clear(self):
        self.data.clear()


def download(url: str, session=None, timeout: Optional[float] = None) -> bytes:
    """GET a URL and return its body, raising PreloadFetchError on failure"""
    http = session or requests
    try:
        response = http.get(url, timeout=timeout or CONFIG["asset_fetch_timeout"])
        response.raise_for_status()
        return response.content
    except requests.RequestException as e:
        raise PreloadFetchError(f"{url}: {e}")


def fetch_and_store(url: str, store: AssetStore, session=None, timeout: Optional[float] = None,
                    logger: Optional[Logger] = None) -> str:
    """Make sure url is in the store. Returns CACHED, STORED or FAILED."""
    if store.has(url):
        return CACHED
    try:
        store.put(url, download(url, session, timeout))
    except (PreloadFetchError, OSError) as e:
        if logger:
            logger.log("Asset fetch failed", {"url": url, "error": str(e)})
        return FAILED
    return STORED
