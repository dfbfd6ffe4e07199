"""
StreamRelay - Raw data log service.
Appends raw platform payloads to per-platform NDJSON files in the background.
"""

import json
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Optional, Set

from streamrelay.errors import DataLoggingError
from streamrelay.models.events import iso_from_ms

logger = logging.getLogger(__name__)


class DataLogger:
    """Fire-and-forget NDJSON writer. Failures never reach the caller."""

    def __init__(self, config):
        self.enabled = bool(getattr(config, "DATA_LOGGING_ENABLED", False))
        self.path = getattr(config, "DATA_LOGGING_PATH", "") or ""
        self._executor: Optional[ThreadPoolExecutor] = None
        self._failed_platforms: Set[str] = set()
        self._lock = Lock()

        if self.enabled:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="streamrelay-datalog")
            logger.info(f"Raw data logging enabled at {self.path}")

    def file_for(self, platform: str) -> str:
        return os.path.join(self.path, f"{platform}-data-log.ndjson")

    def log(self, platform: str, event_type: str, payload, ingest_ms: float) -> Optional[Future]:
        """Queue one record; returns the write future, or None when disabled."""
        if not self.enabled or self._executor is None:
            return None
        record = {
            "ingestTimestamp": iso_from_ms(ingest_ms),
            "platform": platform,
            "eventType": event_type,
            "payload": payload,
        }
        try:
            return self._executor.submit(self._write, platform, record)
        except RuntimeError as e:
            # Executor already shut down
            logger.debug(f"Data log write dropped: {e}")
            return None

    def _write(self, platform: str, record: dict):
        try:
            try:
                line = json.dumps(record, default=str, ensure_ascii=False)
            except (TypeError, ValueError) as e:
                raise DataLoggingError(f"unserializable payload: {e}")
            try:
                os.makedirs(self.path, exist_ok=True)
                with open(self.file_for(platform), "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise DataLoggingError(str(e))
        except DataLoggingError as e:
            self._report(platform, e)

    def _report(self, platform: str, error: DataLoggingError):
        with self._lock:
            first = platform not in self._failed_platforms
            self._failed_platforms.add(platform)
        if first:
            logger.error(f"Data logging failed for {platform}: {error}")
        else:
            logger.debug(f"Data logging failed again for {platform}: {error}")

    def shutdown(self, wait: bool = True):
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None
