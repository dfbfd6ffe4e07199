"""
StreamRelay - Channel resolver service.
Resolves YouTube channel handles to channel ids with caching and request coalescing.
"""

import json
import logging
import os
import re
from concurrent.futures import Future
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

YOUTUBE_HANDLE_URL = "https://www.youtube.com/@{handle}"

CHANNEL_ID_PATTERNS = [
    re.compile(r'"channelId"\s*:\s*"(UC[\w-]{22})"'),
    re.compile(r'"externalId"\s*:\s*"(UC[\w-]{22})"'),
    re.compile(r'<meta itemprop="(?:identifier|channelId)" content="(UC[\w-]{22})"'),
    re.compile(r'youtube\.com/channel/(UC[\w-]{22})'),
]


def normalize_handle(handle) -> str:
    """Lowercase a handle and strip a leading @."""
    if not isinstance(handle, str):
        return ""
    handle = handle.strip()
    if handle.startswith("@"):
        handle = handle[1:]
    return handle.strip().lower()


class YouTubeHandleLookup:
    """Fetches a channel page and extracts its UC channel id."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def __call__(self, handle: str) -> Optional[str]:
        response = httpx.get(
            YOUTUBE_HANDLE_URL.format(handle=handle),
            headers={"Accept-Language": "en-US,en;q=0.9"},
            follow_redirects=True,
            timeout=self.timeout,
        )
        if response.status_code == 404:
            logger.warning(f"YouTube handle not found: @{handle}")
            return None
        response.raise_for_status()

        for pattern in CHANNEL_ID_PATTERNS:
            match = pattern.search(response.text)
            if match:
                return match.group(1)
        logger.warning(f"No channel id found on page for @{handle}")
        return None


@dataclass
class PendingResolve:
    """An upstream resolve shared by every caller asking for the same handle."""
    owner: object
    future: Future = field(default_factory=Future)


class ChannelResolver:
    """
    Handle to channel id resolution.

    Successful lookups are kept in memory and, when CHANNEL_CACHE_ENABLED,
    written through to a JSON file. Failures are never cached. Concurrent
    resolves of one handle share a single upstream call.
    """

    def __init__(self, config, lookup: Optional[Callable[[str], Optional[str]]] = None):
        self.cache_enabled = bool(getattr(config, "CHANNEL_CACHE_ENABLED", False))
        self.cache_path = getattr(config, "CHANNEL_CACHE_FILE_PATH", "") or ""
        self.lookup = lookup or YouTubeHandleLookup()

        self._cache: Dict[str, str] = {}
        self.ongoing_requests: Dict[str, PendingResolve] = {}
        self._lock = Lock()
        self._file_lock = Lock()

    def resolve(self, handle: str, owner: object = None) -> Optional[str]:
        """
        Resolve a handle to a channel id.

        Returns:
            The channel id, or None if it could not be resolved
        """
        key = normalize_handle(handle)
        if not key:
            logger.warning(f"Cannot resolve empty channel handle: {handle!r}")
            return None

        with self._lock:
            cached = self._cache.get(key)
        if cached:
            return cached

        if self.cache_enabled:
            cached = self._load_file().get(key)
            if cached:
                logger.debug(f"Channel cache hit for @{key}")
                return cached

        with self._lock:
            cached = self._cache.get(key)
            if cached:
                return cached
            pending = self.ongoing_requests.get(key)
            leader = pending is None
            if leader:
                pending = self.ongoing_requests[key] = PendingResolve(owner=owner)

        if not leader:
            logger.debug(f"Waiting on in-flight resolve for @{key}")
            return pending.future.result()

        channel_id = None
        try:
            channel_id = self.lookup(key)
        except Exception as e:
            logger.error(f"Failed to resolve channel handle @{key}: {e}")
            channel_id = None

        with self._lock:
            if self.ongoing_requests.get(key) is pending:
                del self.ongoing_requests[key]
            if channel_id:
                self._cache[key] = channel_id
            if not pending.future.done():
                pending.future.set_result(channel_id)

        if channel_id:
            logger.info(f"Resolved @{key} to {channel_id}")
            if self.cache_enabled:
                self._save_file()
        return pending.future.result()

    def cancel_owner(self, owner: object) -> int:
        """Release every caller waiting on a resolve started by ``owner``."""
        released = 0
        with self._lock:
            for key, pending in list(self.ongoing_requests.items()):
                if pending.owner is not owner:
                    continue
                del self.ongoing_requests[key]
                if not pending.future.done():
                    pending.future.set_result(None)
                released += 1
        if released:
            logger.debug(f"Released {released} in-flight channel resolve(s)")
        return released

    def cached(self, handle: str) -> Optional[str]:
        with self._lock:
            return self._cache.get(normalize_handle(handle))

    def clear(self):
        with self._lock:
            self._cache.clear()

    # --- file cache ---------------------------------------------------------

    def _load_file(self) -> Dict[str, str]:
        if not self.cache_path or not os.path.exists(self.cache_path):
            return {}
        try:
            with self._file_lock, open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable channel cache {self.cache_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed channel cache {self.cache_path}")
            return {}

        entries = {
            normalize_handle(k): v for k, v in data.items()
            if isinstance(k, str) and isinstance(v, str) and v
        }
        with self._lock:
            for key, value in entries.items():
                self._cache.setdefault(key, value)
        return entries

    def _save_file(self):
        with self._lock:
            snapshot = dict(self._cache)
        try:
            with self._file_lock:
                directory = os.path.dirname(self.cache_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                tmp_path = f"{self.cache_path}.tmp"
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(snapshot, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.cache_path)
        except OSError as e:
            logger.error(f"Failed to write channel cache {self.cache_path}: {e}")
