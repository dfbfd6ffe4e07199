"""
StreamRelay - Configuration loader.
Loads and validates settings from SETTINGS.py.
"""

import importlib.util
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "STREAMRELAY_SETTINGS"


@dataclass
class Config:
    """Application configuration loaded from SETTINGS.py."""

    # General
    MESSAGES_ENABLED: bool = True
    FILTER_OLD_MESSAGES: bool = True
    COMMAND_PREFIX: str = "!"
    PROFANITY_FILTER: bool = False

    # Notification categories
    GIFTS_ENABLED: bool = True
    FOLLOWS_ENABLED: bool = True
    MEMBERSHIPS_ENABLED: bool = True
    VIEWER_COUNT_ENABLED: bool = True

    # YouTube
    YOUTUBE_ENABLED: bool = True
    YOUTUBE_MESSAGES_ENABLED: bool = True
    YOUTUBE_STREAM_IDS: List[str] = field(default_factory=list)
    YOUTUBE_CHANNEL_HANDLE: str = ""
    YOUTUBE_CHANNEL_ID: str = ""
    YOUTUBE_ADAPTER_URL: str = "ws://localhost:3001/livechat?videoId={video_id}&channelId={channel_id}"

    # TikTok
    TIKTOK_ENABLED: bool = True
    TIKTOK_MESSAGES_ENABLED: bool = True
    TIKTOK_USERNAME: str = ""
    TIKTOK_API_KEY: str = ""
    TIKTOK_WEBSOCKET_URL: str = "wss://ws.eulerstream.com"

    # Twitch
    TWITCH_ENABLED: bool = True
    TWITCH_MESSAGES_ENABLED: bool = True
    TWITCH_CLIENT_ID: str = ""
    TWITCH_ACCESS_TOKEN: str = ""
    TWITCH_BROADCASTER_ID: str = ""
    TWITCH_EVENTSUB_WEBSOCKET_URL: str = "wss://eventsub.wss.twitch.tv/ws?keepalive_timeout_seconds=30"

    # StreamElements follow feed
    STREAMELEMENTS_ENABLED: bool = False
    STREAMELEMENTS_MESSAGES_ENABLED: bool = True
    STREAMELEMENTS_JWT_TOKEN: str = ""
    STREAMELEMENTS_YOUTUBE_CHANNEL_ID: str = ""
    STREAMELEMENTS_TWITCH_CHANNEL_ID: str = ""
    STREAMELEMENTS_WEBSOCKET_URL: str = "wss://astro.streamelements.com"

    # Gift aggregation
    GIFT_AGGREGATION_ENABLED: bool = True
    GIFT_AGGREGATION_WINDOW_MS: int = 2000

    # Command cooldowns (seconds)
    COOLDOWN_DEFAULT: float = 5
    COOLDOWN_HEAVY_THRESHOLD: int = 3
    COOLDOWN_HEAVY_WINDOW: float = 60
    COOLDOWN_HEAVY: float = 30
    COOLDOWN_GLOBAL: float = 60
    COOLDOWN_MAX_ENTRIES: int = 1000

    # Spam detection
    SPAM_ENABLED: bool = True
    SPAM_LOW_VALUE_THRESHOLD: float = 10
    SPAM_DETECTION_WINDOW: float = 5
    SPAM_MAX_INDIVIDUAL_NOTIFICATIONS: int = 2

    # Raw data logging
    DATA_LOGGING_ENABLED: bool = False
    DATA_LOGGING_PATH: str = ""

    # Channel handle cache
    CHANNEL_CACHE_ENABLED: bool = False
    CHANNEL_CACHE_FILE_PATH: str = ""

    # Goals
    GOAL_DEDUP_WINDOW: int = 3600

    # Web Server Configuration
    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = 5000
    WEB_DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Advanced Settings
    HEALTH_CHECK_ENABLED: bool = True
    WEBSOCKET_PING_INTERVAL: int = 25
    WEBSOCKET_PING_TIMEOUT: int = 120
    CONNECT_TIMEOUT_MS: int = 15000
    KEEPALIVE_INTERVAL_MS: int = 30000
    KEEPALIVE_MAX_MISSED: int = 2
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_BACKOFF_BASE: float = 2
    RETRY_BACKOFF_MAX: float = 300
    RETRY_JITTER: float = 0.2
    RETRY_MAX_ATTEMPTS: int = 0
    EVENT_BUS_DEBUG: bool = False
    EVENT_BUS_MAX_LISTENERS: int = 50

    def __post_init__(self):
        """Load settings from SETTINGS.py file."""
        self._load_settings()
        self._validate()

    def _settings_paths(self) -> List[str]:
        paths = []
        if os.environ.get(SETTINGS_ENV_VAR):
            paths.append(os.environ[SETTINGS_ENV_VAR])
        paths.append("/app/SETTINGS.py")  # Docker mount path
        paths.append(os.path.join(os.path.dirname(os.path.dirname(__file__)), "SETTINGS.py"))  # Local path
        return paths

    def _load_settings(self):
        """Load settings from SETTINGS.py."""
        settings_module = None
        for path in self._settings_paths():
            if os.path.exists(path):
                logger.info(f"Loading settings from {path}")
                spec = importlib.util.spec_from_file_location("settings", path)
                settings_module = importlib.util.module_from_spec(spec)
                spec.loader.exec_module(settings_module)
                break

        if settings_module is None:
            logger.warning("SETTINGS.py not found, using defaults")
            return

        # Load all settings from the module
        for attr in dir(self):
            if attr.isupper() and not attr.startswith('_'):
                if hasattr(settings_module, attr):
                    value = getattr(settings_module, attr)
                    setattr(self, attr, value)
                    logger.debug(f"Loaded setting: {attr}")

    def _validate(self):
        """Validate configuration values."""
        errors = []

        # Platforms without their secrets are disabled, not fatal
        if self.YOUTUBE_ENABLED and not (self.YOUTUBE_STREAM_IDS or self.YOUTUBE_CHANNEL_HANDLE or self.YOUTUBE_CHANNEL_ID):
            logger.warning("YouTube enabled but no YOUTUBE_STREAM_IDS or channel set, disabling")
            self.YOUTUBE_ENABLED = False
        if self.TIKTOK_ENABLED and not self.TIKTOK_USERNAME:
            logger.warning("TikTok enabled but TIKTOK_USERNAME not set, disabling")
            self.TIKTOK_ENABLED = False
        if self.TWITCH_ENABLED:
            missing = [name for name in ("TWITCH_CLIENT_ID", "TWITCH_ACCESS_TOKEN", "TWITCH_BROADCASTER_ID")
                       if not getattr(self, name)]
            if missing:
                logger.warning(f"Twitch enabled but {', '.join(missing)} not set, disabling")
                self.TWITCH_ENABLED = False
        if self.STREAMELEMENTS_ENABLED and not self.STREAMELEMENTS_JWT_TOKEN:
            logger.warning("StreamElements enabled but STREAMELEMENTS_JWT_TOKEN not set, disabling")
            self.STREAMELEMENTS_ENABLED = False

        if isinstance(self.YOUTUBE_STREAM_IDS, str):
            self.YOUTUBE_STREAM_IDS = [s.strip() for s in self.YOUTUBE_STREAM_IDS.split(",") if s.strip()]

        # Required paths
        if self.DATA_LOGGING_ENABLED and not self.DATA_LOGGING_PATH:
            errors.append("DATA_LOGGING_PATH is required when DATA_LOGGING_ENABLED is set")
        if self.CHANNEL_CACHE_ENABLED and not self.CHANNEL_CACHE_FILE_PATH:
            errors.append("CHANNEL_CACHE_FILE_PATH is required when CHANNEL_CACHE_ENABLED is set")

        # Windows and counts
        positive = [
            "GIFT_AGGREGATION_WINDOW_MS",
            "COOLDOWN_HEAVY_WINDOW",
            "COOLDOWN_HEAVY_THRESHOLD",
            "COOLDOWN_MAX_ENTRIES",
            "SPAM_DETECTION_WINDOW",
            "CONNECT_TIMEOUT_MS",
            "KEEPALIVE_INTERVAL_MS",
            "RETRY_INITIAL_DELAY",
            "RETRY_BACKOFF_MAX",
        ]
        for name in positive:
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive, got {getattr(self, name)}")

        for name in ("COOLDOWN_DEFAULT", "COOLDOWN_HEAVY", "COOLDOWN_GLOBAL",
                     "SPAM_MAX_INDIVIDUAL_NOTIFICATIONS", "RETRY_MAX_ATTEMPTS", "KEEPALIVE_MAX_MISSED"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative, got {getattr(self, name)}")

        # Backoff
        if not 0.0 <= self.RETRY_JITTER <= 1.0:
            errors.append(f"RETRY_JITTER must be between 0.0 and 1.0, got {self.RETRY_JITTER}")
        if self.RETRY_BACKOFF_BASE < 1:
            errors.append(f"RETRY_BACKOFF_BASE must be at least 1, got {self.RETRY_BACKOFF_BASE}")

        if not self.COMMAND_PREFIX:
            errors.append("COMMAND_PREFIX must not be empty")

        # Log errors
        for error in errors:
            logger.error(f"Configuration error: {error}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def enabled_platforms(self) -> List[str]:
        flags = {
            "youtube": self.YOUTUBE_ENABLED,
            "tiktok": self.TIKTOK_ENABLED,
            "twitch": self.TWITCH_ENABLED,
            "se": self.STREAMELEMENTS_ENABLED,
        }
        return [name for name, enabled in flags.items() if enabled]

    def to_public_dict(self) -> Dict:
        """Return non-sensitive settings for the API."""
        return {
            "platforms": {
                "youtube": {
                    "enabled": self.YOUTUBE_ENABLED,
                    "messages_enabled": self.YOUTUBE_MESSAGES_ENABLED,
                    "stream_ids": list(self.YOUTUBE_STREAM_IDS),
                    "channel_handle": self.YOUTUBE_CHANNEL_HANDLE,
                },
                "tiktok": {
                    "enabled": self.TIKTOK_ENABLED,
                    "messages_enabled": self.TIKTOK_MESSAGES_ENABLED,
                    "username": self.TIKTOK_USERNAME,
                },
                "twitch": {
                    "enabled": self.TWITCH_ENABLED,
                    "messages_enabled": self.TWITCH_MESSAGES_ENABLED,
                    "broadcaster_id": self.TWITCH_BROADCASTER_ID,
                },
                "se": {
                    "enabled": self.STREAMELEMENTS_ENABLED,
                },
            },
            "general": {
                "messages_enabled": self.MESSAGES_ENABLED,
                "filter_old_messages": self.FILTER_OLD_MESSAGES,
                "command_prefix": self.COMMAND_PREFIX,
                "profanity_filter": self.PROFANITY_FILTER,
            },
            "gifts": {
                "enabled": self.GIFTS_ENABLED,
                "aggregation_enabled": self.GIFT_AGGREGATION_ENABLED,
                "aggregation_window_ms": self.GIFT_AGGREGATION_WINDOW_MS,
            },
            "cooldowns": {
                "default": self.COOLDOWN_DEFAULT,
                "heavy_threshold": self.COOLDOWN_HEAVY_THRESHOLD,
                "heavy_window": self.COOLDOWN_HEAVY_WINDOW,
                "heavy": self.COOLDOWN_HEAVY,
                "global": self.COOLDOWN_GLOBAL,
                "max_entries": self.COOLDOWN_MAX_ENTRIES,
            },
            "spam": {
                "enabled": self.SPAM_ENABLED,
                "low_value_threshold": self.SPAM_LOW_VALUE_THRESHOLD,
                "detection_window": self.SPAM_DETECTION_WINDOW,
                "max_individual_notifications": self.SPAM_MAX_INDIVIDUAL_NOTIFICATIONS,
            },
            "data_logging_enabled": self.DATA_LOGGING_ENABLED,
            "channel_cache_enabled": self.CHANNEL_CACHE_ENABLED,
        }
