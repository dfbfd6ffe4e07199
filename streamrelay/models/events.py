"""
StreamRelay - Event data models.
Canonical event records shared by every stage of the pipeline.
"""

import hashlib
import math
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional


class Platform(str, Enum):
    """Supported upstream platforms."""
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    TWITCH = "twitch"
    STREAMELEMENTS = "se"


class EventType(str, Enum):
    """Canonical event categories."""
    CHAT = "chat"
    GIFT = "gift"
    FOLLOW = "follow"
    MEMBERSHIP = "membership"
    VIEWER = "viewer"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


def iso_from_ms(ms: float) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def ms_from_iso(value: str) -> Optional[float]:
    """Parse an ISO-8601 string into epoch milliseconds, or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Twitch sends nanosecond precision which fromisoformat rejects
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp() * 1000


def fingerprint(platform: str, user_id: str, event_type: str, message_id: str,
                origin_timestamp: str) -> str:
    """Stable id used for deduplication and goal idempotence."""
    key = "|".join([str(platform), str(user_id), str(event_type), str(message_id), str(origin_timestamp)])
    return hashlib.sha256(key.encode()).hexdigest()[:32]


CURRENCY_SYMBOLS = {
    "USD": "$",
    "CAD": "CA$",
    "AUD": "A$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "BRL": "R$",
}

WHOLE_UNIT_CURRENCIES = {"coins", "bits", "subs", "diamonds"}


def format_amount(amount, currency: str = "") -> str:
    """Human readable amount; empty for missing, non-finite or non-positive amounts."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return ""
    if not math.isfinite(amount) or amount <= 0:
        return ""

    unit = (currency or "").strip()
    if unit.lower() in WHOLE_UNIT_CURRENCIES:
        value = int(amount) if float(amount).is_integer() else amount
        return f"{value} {unit.lower()}"
    symbol = CURRENCY_SYMBOLS.get(unit.upper())
    if symbol:
        return f"{symbol}{amount:.2f}"
    if unit:
        return f"{amount:.2f} {unit}"
    return f"{amount:.2f}"


@dataclass(frozen=True)
class UserInfo:
    """Author of an event."""
    id: str = ""
    display_name: str = ""
    is_moderator: bool = False
    is_subscriber: bool = False
    is_broadcaster: bool = False
    is_member: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "is_moderator": self.is_moderator,
            "is_subscriber": self.is_subscriber,
            "is_broadcaster": self.is_broadcaster,
            "is_member": self.is_member,
        }


SYSTEM_USER = UserInfo(id="system", display_name="StreamRelay")


@dataclass(frozen=True)
class CanonicalEvent:
    """Base class for all normalized events. Instances are read-only."""
    platform: Platform = Platform.YOUTUBE
    user: UserInfo = SYSTEM_USER
    origin_timestamp: str = ""
    ingest_timestamp: str = ""
    message_id: str = ""
    id: str = ""
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    event_type: ClassVar[EventType] = EventType.ERROR

    def __post_init__(self):
        if not self.id:
            object.__setattr__(self, "id", fingerprint(
                self.platform.value,
                self.user.id,
                self.event_type.value,
                self.message_id,
                self.origin_timestamp,
            ))

    @property
    def username(self) -> str:
        return self.user.display_name

    @property
    def origin_ms(self) -> Optional[float]:
        return ms_from_iso(self.origin_timestamp)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {}
        for f in fields(self):
            if f.name == "raw":
                continue
            value = getattr(self, f.name)
            if isinstance(value, UserInfo):
                value = value.to_dict()
            elif isinstance(value, Enum):
                value = value.value
            data[f.name] = value
        data["username"] = self.username
        return data

    def to_payload(self) -> dict:
        """Typed payload for output sinks."""
        return {
            "platform": self.platform.value,
            "type": self.event_type.value,
            "data": self.to_dict(),
        }


@dataclass(frozen=True)
class ChatEvent(CanonicalEvent):
    """Chat message."""
    event_type: ClassVar[EventType] = EventType.CHAT
    message: str = ""
    sanitized_message: str = ""


@dataclass(frozen=True)
class GiftEvent(CanonicalEvent):
    """Gift, donation or other monetized event."""
    event_type: ClassVar[EventType] = EventType.GIFT
    gift_type: str = ""
    unit_amount: float = 0.0
    count: int = 1
    amount: float = 0.0
    currency: str = ""
    message: str = ""
    aggregated: bool = False
    aggregated_count: int = 0
    aggregation_window_id: str = ""
    repeat_end: bool = False
    is_error: bool = False
    combo: bool = False
    cumulative: bool = False  # count is a running total within a combo streak

    @property
    def total(self) -> float:
        return self.amount

    @property
    def formatted_amount(self) -> str:
        return format_amount(self.amount, self.currency)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["total"] = self.total
        data["formatted_amount"] = self.formatted_amount
        return data


@dataclass(frozen=True)
class SuperChatEvent(GiftEvent):
    """YouTube Super Chat or Super Sticker, delivered as a gift."""
    paid_tier: str = ""


@dataclass(frozen=True)
class FollowEvent(CanonicalEvent):
    """Follow or raid."""
    event_type: ClassVar[EventType] = EventType.FOLLOW
    source: str = ""
    viewers: int = 0


@dataclass(frozen=True)
class MembershipEvent(CanonicalEvent):
    """Membership or subscription."""
    event_type: ClassVar[EventType] = EventType.MEMBERSHIP
    months: int = 1
    level: str = ""
    is_milestone: bool = False
    message: str = ""


@dataclass(frozen=True)
class ViewerCountEvent(CanonicalEvent):
    """Current viewer count for a stream."""
    event_type: ClassVar[EventType] = EventType.VIEWER
    count: int = 0


@dataclass(frozen=True)
class ConnectionStateEvent(CanonicalEvent):
    """Connection state transition."""
    connection: str = ""
    state: str = ""
    reason: str = ""

    @property
    def event_type(self) -> EventType:
        return EventType.CONNECTED if self.state == "ready" else EventType.DISCONNECTED


@dataclass(frozen=True)
class ErrorEvent(CanonicalEvent):
    """Error surfaced from a connector or the pipeline."""
    event_type: ClassVar[EventType] = EventType.ERROR
    category: str = ""
    message: str = ""


@dataclass
class RawEvent:
    """Raw platform payload emitted by a connector."""
    connection: str
    platform: Platform
    kind: str
    payload: dict
    received_at: float
    opened_at: Optional[float] = None
    stream_id: Optional[str] = None
