# =============================================================================
# STREAMRELAY CONFIGURATION
# =============================================================================
# Copy this file to SETTINGS.py and fill in your values.
# SETTINGS.py is gitignored and will not be committed to version control.
# Set STREAMRELAY_SETTINGS to load the file from another location.
# =============================================================================

# -----------------------------------------------------------------------------
# GENERAL
# -----------------------------------------------------------------------------
MESSAGES_ENABLED = True         # Master switch for chat messages on all platforms
FILTER_OLD_MESSAGES = True      # Drop messages sent before the connection opened
COMMAND_PREFIX = "!"            # Chat messages starting with this are commands
PROFANITY_FILTER = False        # Censor chat and gift messages

# Notification categories (apply to every platform)
GIFTS_ENABLED = True
FOLLOWS_ENABLED = True
MEMBERSHIPS_ENABLED = True
VIEWER_COUNT_ENABLED = True

# -----------------------------------------------------------------------------
# YOUTUBE
# -----------------------------------------------------------------------------
# Live chat is read from a LiveChat relay socket, one connection per stream.
YOUTUBE_ENABLED = True
YOUTUBE_MESSAGES_ENABLED = True
YOUTUBE_STREAM_IDS = []         # Video ids of the live streams, e.g. ["dQw4w9WgXcQ"]
YOUTUBE_CHANNEL_HANDLE = ""     # e.g. "@mychannel", resolved to a channel id at connect
YOUTUBE_CHANNEL_ID = ""         # Skips handle resolution when set
YOUTUBE_ADAPTER_URL = "ws://localhost:3001/livechat?videoId={video_id}&channelId={channel_id}"

# -----------------------------------------------------------------------------
# TIKTOK
# -----------------------------------------------------------------------------
TIKTOK_ENABLED = True
TIKTOK_MESSAGES_ENABLED = True
TIKTOK_USERNAME = ""            # Streamer's unique id, with or without the @
TIKTOK_API_KEY = ""             # Relay API key, if your relay requires one
TIKTOK_WEBSOCKET_URL = "wss://ws.eulerstream.com"

# -----------------------------------------------------------------------------
# TWITCH
# -----------------------------------------------------------------------------
# Create an app at: https://dev.twitch.tv/console
# The access token needs the scopes for every subscription below:
# user:read:chat, moderator:read:followers, bits:read, channel:read:subscriptions
TWITCH_ENABLED = True
TWITCH_MESSAGES_ENABLED = True
TWITCH_CLIENT_ID = ""
TWITCH_ACCESS_TOKEN = ""
TWITCH_BROADCASTER_ID = ""      # Your numeric broadcaster ID
TWITCH_EVENTSUB_WEBSOCKET_URL = "wss://eventsub.wss.twitch.tv/ws?keepalive_timeout_seconds=30"

# -----------------------------------------------------------------------------
# STREAMELEMENTS
# -----------------------------------------------------------------------------
# Auxiliary follow feed for YouTube and Twitch.
STREAMELEMENTS_ENABLED = False
STREAMELEMENTS_MESSAGES_ENABLED = True
STREAMELEMENTS_JWT_TOKEN = ""   # Dashboard > Account > Channels > Show secrets
STREAMELEMENTS_YOUTUBE_CHANNEL_ID = ""
STREAMELEMENTS_TWITCH_CHANNEL_ID = ""
STREAMELEMENTS_WEBSOCKET_URL = "wss://astro.streamelements.com"

# -----------------------------------------------------------------------------
# GIFT AGGREGATION
# -----------------------------------------------------------------------------
GIFT_AGGREGATION_ENABLED = True     # Merge combo gifts into one notification
GIFT_AGGREGATION_WINDOW_MS = 2000   # Quiet time before a combo is delivered

# -----------------------------------------------------------------------------
# COMMAND COOLDOWNS (seconds)
# -----------------------------------------------------------------------------
COOLDOWN_DEFAULT = 5                # Per user, between two commands
COOLDOWN_HEAVY_THRESHOLD = 3        # Commands inside the window that trigger heavy limiting
COOLDOWN_HEAVY_WINDOW = 60
COOLDOWN_HEAVY = 30                 # Per user cooldown once heavy limited
COOLDOWN_GLOBAL = 60                # Per command, across all users (0 = off)
COOLDOWN_MAX_ENTRIES = 1000         # Users and commands remembered

# -----------------------------------------------------------------------------
# SPAM DETECTION
# -----------------------------------------------------------------------------
SPAM_ENABLED = True
SPAM_LOW_VALUE_THRESHOLD = 10           # Gifts worth this much or less count as low value
SPAM_DETECTION_WINDOW = 5               # Seconds
SPAM_MAX_INDIVIDUAL_NOTIFICATIONS = 2   # Shown before the rest are summarized

# -----------------------------------------------------------------------------
# STORAGE
# -----------------------------------------------------------------------------
DATA_LOGGING_ENABLED = False    # Append raw payloads to <platform>-data-log.ndjson
DATA_LOGGING_PATH = ""          # Required when enabled
CHANNEL_CACHE_ENABLED = False   # Persist resolved channel handles
CHANNEL_CACHE_FILE_PATH = ""    # Required when enabled
GOAL_DEDUP_WINDOW = 3600        # Seconds a counted gift is remembered

# -----------------------------------------------------------------------------
# WEB SERVER
# -----------------------------------------------------------------------------
WEB_HOST = "0.0.0.0"
WEB_PORT = 5000
WEB_DEBUG = False               # Also enables POST /api/test

# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
LOG_LEVEL = "INFO"              # DEBUG, INFO, WARNING, ERROR
LOG_FILE = ""                   # Empty = console only
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# -----------------------------------------------------------------------------
# ADVANCED
# -----------------------------------------------------------------------------
HEALTH_CHECK_ENABLED = True
WEBSOCKET_PING_INTERVAL = 25    # Browser Socket.IO ping, seconds
WEBSOCKET_PING_TIMEOUT = 120

CONNECT_TIMEOUT_MS = 15000      # Upstream socket must open within this
KEEPALIVE_INTERVAL_MS = 30000
KEEPALIVE_MAX_MISSED = 2        # Missed pongs before the connection is recycled

RETRY_INITIAL_DELAY = 1.0       # Seconds
RETRY_BACKOFF_BASE = 2
RETRY_BACKOFF_MAX = 300         # Seconds
RETRY_JITTER = 0.2              # Fraction each delay may be shortened by
RETRY_MAX_ATTEMPTS = 0          # 0 = retry forever

EVENT_BUS_DEBUG = False
EVENT_BUS_MAX_LISTENERS = 50
