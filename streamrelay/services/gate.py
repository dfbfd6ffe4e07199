"""
StreamRelay - Cooldown and filter gate.
Decides whether a normalized event may reach the output stage.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import List, Optional

from streamrelay.errors import CooldownBlock
from streamrelay.models.events import (
    CanonicalEvent,
    ChatEvent,
    EventType,
    GiftEvent,
    Platform,
)
from streamrelay.services.clock import Clock

logger = logging.getLogger(__name__)

REASON_EMPTY = "empty message"
REASON_OLD = "old message (sent before connection)"
REASON_USER_COOLDOWN = "user command cooldown"
REASON_HEAVY_COOLDOWN = "heavy command cooldown"
REASON_GLOBAL_COOLDOWN = "global command cooldown"
REASON_SPAM = "low value gift spam"

PLATFORM_SETTING_PREFIX = {
    Platform.YOUTUBE: "YOUTUBE",
    Platform.TIKTOK: "TIKTOK",
    Platform.TWITCH: "TWITCH",
    Platform.STREAMELEMENTS: "STREAMELEMENTS",
}

CATEGORY_FLAGS = {
    EventType.GIFT: "GIFTS_ENABLED",
    EventType.FOLLOW: "FOLLOWS_ENABLED",
    EventType.MEMBERSHIP: "MEMBERSHIPS_ENABLED",
    EventType.VIEWER: "VIEWER_COUNT_ENABLED",
}


@dataclass
class UserCooldown:
    """Command history for one user."""
    last_command: float = 0.0
    timestamps: List[float] = field(default_factory=list)
    heavy: bool = False


class CooldownGate:
    """
    Applies the admission rules in order and raises CooldownBlock with
    the reason of the first rule that rejects an event.

    All durations in config are seconds; internally everything is ms on
    the injected clock.
    """

    def __init__(self, config, clock: Clock, bus=None, spam_detector=None):
        self.config = config
        self.clock = clock
        self.bus = bus
        self.spam_detector = spam_detector

        self.command_prefix = getattr(config, "COMMAND_PREFIX", "!") or "!"
        self.default_cooldown_ms = float(config.COOLDOWN_DEFAULT) * 1000
        self.heavy_cooldown_ms = float(config.COOLDOWN_HEAVY) * 1000
        self.heavy_threshold = int(config.COOLDOWN_HEAVY_THRESHOLD)
        self.heavy_window_ms = float(config.COOLDOWN_HEAVY_WINDOW) * 1000
        self.global_cooldown_ms = float(config.COOLDOWN_GLOBAL) * 1000
        self.max_entries = int(config.COOLDOWN_MAX_ENTRIES)

        self._users: "OrderedDict[str, UserCooldown]" = OrderedDict()
        self._commands: "OrderedDict[str, float]" = OrderedDict()
        self._lock = Lock()

    # --- admission ----------------------------------------------------------

    def admit(self, event: CanonicalEvent, opened_at: Optional[float] = None):
        """
        Check an event against every rule.

        Raises:
            CooldownBlock: with the reason of the first failing rule
        """
        reason = self._disabled_reason(event)
        if reason:
            raise CooldownBlock(reason)

        if isinstance(event, ChatEvent) and not event.sanitized_message.strip():
            raise CooldownBlock(REASON_EMPTY)

        if self.is_stale(event, opened_at):
            raise CooldownBlock(REASON_OLD)

        if isinstance(event, ChatEvent):
            command = self.command_name(event.sanitized_message)
            if command:
                self._check_command(event, command)

        if isinstance(event, GiftEvent) and self.spam_detector is not None:
            if self.spam_detector.is_suppressed(event):
                raise CooldownBlock(REASON_SPAM)

    def _disabled_reason(self, event: CanonicalEvent) -> Optional[str]:
        prefix = PLATFORM_SETTING_PREFIX[event.platform]
        if not getattr(self.config, f"{prefix}_ENABLED", True):
            return f"{event.platform.value} disabled"

        event_type = event.event_type
        if event_type == EventType.CHAT:
            if not getattr(self.config, "MESSAGES_ENABLED", True):
                return "messages disabled"
            if not getattr(self.config, f"{prefix}_MESSAGES_ENABLED", True):
                return f"{event.platform.value} messages disabled"
            return None

        flag = CATEGORY_FLAGS.get(event_type)
        if flag and not getattr(self.config, flag, True):
            return f"{event_type.value} notifications disabled"
        return None

    def is_stale(self, event: CanonicalEvent, opened_at: Optional[float]) -> bool:
        """True when the event was sent before its connection opened."""
        if opened_at is None or not getattr(self.config, "FILTER_OLD_MESSAGES", True):
            return False
        origin = event.origin_ms
        return origin is not None and origin < opened_at

    def command_name(self, text: str) -> Optional[str]:
        text = (text or "").strip()
        if not text.startswith(self.command_prefix):
            return None
        name = text.split()[0].lower()
        return name if len(name) > len(self.command_prefix) else None

    def _check_command(self, event: ChatEvent, command: str):
        user_key = f"{event.platform.value}:{event.user.id}"
        now = self.clock.now()
        signal = None
        reason = None
        detected = None

        # Check and record atomically
        with self._lock:
            state = self._users.get(user_key)
            if state is not None:
                elapsed = now - state.last_command
                if state.heavy and elapsed >= self.heavy_cooldown_ms:
                    state.heavy = False
                    state.timestamps.clear()
                    logger.debug(f"Heavy command limit lifted for {user_key}")

                cooldown = self.heavy_cooldown_ms if state.heavy else self.default_cooldown_ms
                if elapsed < cooldown:
                    reason = REASON_HEAVY_COOLDOWN if state.heavy else REASON_USER_COOLDOWN
                    signal = ("cooldown:blocked", {
                        "user_id": event.user.id,
                        "platform": event.platform.value,
                        "command": command,
                        "type": "heavy" if state.heavy else "user",
                        "remaining_ms": cooldown - elapsed,
                    })

            if reason is None and self.global_cooldown_ms > 0:
                last_use = self._commands.get(command)
                if last_use is not None and now - last_use < self.global_cooldown_ms:
                    reason = REASON_GLOBAL_COOLDOWN
                    signal = ("cooldown:global-blocked", {
                        "command": command,
                        "platform": event.platform.value,
                        "user_id": event.user.id,
                        "remaining_ms": self.global_cooldown_ms - (now - last_use),
                    })

            if reason is None:
                detected = self._record_user(user_key, now)
                self._record_command(command, now)

        if reason:
            logger.debug(f"Command {command} from {user_key} blocked: {reason}")
            self._signal(*signal)
            raise CooldownBlock(reason)
        self._heavy_detected(user_key, detected)

    # --- updates ------------------------------------------------------------

    def update_user_cooldown(self, user_key: str):
        """Record an admitted command for a user."""
        with self._lock:
            detected = self._record_user(user_key, self.clock.now())
        self._heavy_detected(user_key, detected)

    def update_global_cooldown(self, command: str):
        with self._lock:
            self._record_command(command, self.clock.now())

    def _record_user(self, user_key: str, now: float) -> Optional[dict]:
        # Caller holds self._lock
        state = self._users.get(user_key)
        if state is None:
            state = self._users[user_key] = UserCooldown()
        self._users.move_to_end(user_key)

        state.last_command = now
        state.timestamps.append(now)
        window_start = now - self.heavy_window_ms
        state.timestamps = [t for t in state.timestamps if t > window_start]

        detected = None
        if not state.heavy and len(state.timestamps) >= self.heavy_threshold:
            state.heavy = True
            detected = {
                "user_id": user_key,
                "command_count": len(state.timestamps),
                "window_ms": self.heavy_window_ms,
            }

        while len(self._users) > self.max_entries:
            self._users.popitem(last=False)
        return detected

    def _record_command(self, command: str, now: float):
        # Caller holds self._lock
        self._commands[command] = now
        self._commands.move_to_end(command)
        while len(self._commands) > self.max_entries:
            self._commands.popitem(last=False)

    def _heavy_detected(self, user_key: str, detected: Optional[dict]):
        if detected:
            logger.info(f"Heavy command usage detected for {user_key} ({detected['command_count']} commands)")
            self._signal("cooldown:heavy-detected", detected)

    def _signal(self, name: str, payload: dict):
        if self.bus is not None:
            self.bus.emit(name, payload)

    # --- status -------------------------------------------------------------

    def user_status(self, user_key: str) -> dict:
        with self._lock:
            state = self._users.get(user_key)
            if state is None:
                return {"is_heavy_limit": False, "command_count": 0, "last_command": None}
            heavy = state.heavy and (self.clock.now() - state.last_command) < self.heavy_cooldown_ms
            return {
                "is_heavy_limit": heavy,
                "command_count": len(state.timestamps),
                "last_command": state.last_command,
            }

    def clear_user(self, user_key: str):
        with self._lock:
            self._users.pop(user_key, None)

    def reset(self):
        with self._lock:
            self._users.clear()
            self._commands.clear()

    def status(self) -> dict:
        with self._lock:
            return {
                "tracked_users": len(self._users),
                "heavy_users": sum(1 for s in self._users.values() if s.heavy),
                "tracked_commands": len(self._commands),
                "config": {
                    "default_cooldown_ms": self.default_cooldown_ms,
                    "heavy_cooldown_ms": self.heavy_cooldown_ms,
                    "heavy_threshold": self.heavy_threshold,
                    "heavy_window_ms": self.heavy_window_ms,
                    "global_cooldown_ms": self.global_cooldown_ms,
                    "max_entries": self.max_entries,
                },
            }
