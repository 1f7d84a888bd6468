"""POI directory loading: local JSON files or an HTTP endpoint with a disk cache."""

import json
import os
import time
from typing import Iterable, Optional

import requests

from .config import CONFIG
from .geo import retry_with_backoff
from .logger import Logger
from .models import POI


def parse_pois(records: Iterable[dict], logger: Optional[Logger] = None) -> list[POI]:
    """Validate records into POIs, skipping (and logging) bad ones"""
    pois = []
    seen = set()
    for record in records:
        try:
            if not isinstance(record, dict):
                raise ValueError(f"record is {type(record).__name__}, not an object")
            poi = POI.from_dict(record)
        except ValueError as e:
            if logger:
                logger.log("Skipping invalid POI record", {"error": str(e)})
            continue
        if poi.id in seen:
            if logger:
                logger.log("Skipping duplicate POI", {"poi": poi.id})
            continue
        seen.add(poi.id)
        pois.append(poi)
    return pois


def _records(data) -> list:
    # Accept a bare list or {"pois": [...]} / {"data": [...]}
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("pois", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    raise ValueError("POI data must be a list or an object with a 'pois' list")


class POIDirectory:
    """Read-only POI list, fetched over HTTP or read from a file"""

    def __init__(self, cache_path: Optional[str] = None, session=None,
                 timeout: Optional[float] = None, retry_time: float = 30.0,
                 logger: Optional[Logger] = None):
        self.cache_path = cache_path or CONFIG["poi_cache_path"]
        self.session = session or requests.Session()
        self.timeout = timeout or CONFIG["poi_fetch_timeout"]
        self.retry_time = retry_time
        self.logger = logger or Logger()
        self.pois: list[POI] = []
        self.source: Optional[str] = None

    def load(self, source: str) -> list[POI]:
        """Load POIs from a path or http(s) URL.

        A URL that cannot be fetched falls back to the last cached copy.
        Raises ValueError when nothing usable is available.
        """
        if source.startswith(("http://", "https://")):
            records = self._load_remote(source)
        else:
            with open(source) as f:
                records = _records(json.load(f))
        self.pois = parse_pois(records, self.logger)
        self.source = source
        self.logger.log("POIs loaded", {"source": source, "count": len(self.pois),
                                        "skipped": len(records) - len(self.pois)})
        return self.pois

    def _fetch(self, url: str) -> Optional[tuple[list]]:
        # Wrapped so an empty POI list still counts as a successful fetch
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return (_records(response.json()),)
        except (requests.RequestException, ValueError) as e:
            self.logger.log("POI fetch error", {"url": url, "error": str(e)})
            return None

    def _load_remote(self, url: str) -> list:
        fetched = retry_with_backoff(lambda: self._fetch(url), max_time=self.retry_time,
                                     description="POI fetch", logger=self.logger)
        if fetched is not None:
            records = fetched[0]
            self._write_cache(url, records)
            return records

        cached = self._read_cache()
        if cached is None:
            raise ValueError(f"Could not fetch POIs from {url} and no cached copy exists")
        self.logger.log("Using cached POIs", {"path": self.cache_path, "count": len(cached)})
        return cached

    def _write_cache(self, url: str, records: list):
        try:
            cache_dir = os.path.dirname(self.cache_path)
            if cache_dir:
                os.makedirs(cache_dir, exist_ok=True)
            with open(self.cache_path, "w") as f:
                json.dump({"_cache_meta": {"url": url, "fetched_at": time.time()},
                           "pois": records}, f)
        except OSError as e:
            self.logger.log("Could not write POI cache", {"path": self.cache_path, "error": str(e)})

    def _read_cache(self) -> Optional[list]:
        try:
            with open(self.cache_path) as f:
                return _records(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValueError, OSError) as e:
            self.logger.log("Ignoring unreadable POI cache", {"path": self.cache_path, "error": str(e)})
            return None

    def get(self, poi_id: str) -> Optional[POI]:
        for poi in self.pois:
            if poi.id == poi_id:
                return poi
        return None
