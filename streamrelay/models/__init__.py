"""
StreamRelay - Models package.
"""

from streamrelay.models.events import (
    EventType,
    Platform,
    UserInfo,
    CanonicalEvent,
    ChatEvent,
    GiftEvent,
    SuperChatEvent,
    FollowEvent,
    MembershipEvent,
    ViewerCountEvent,
    ConnectionStateEvent,
    ErrorEvent,
    RawEvent,
    fingerprint,
    format_amount,
)

__all__ = [
    "EventType",
    "Platform",
    "UserInfo",
    "CanonicalEvent",
    "ChatEvent",
    "GiftEvent",
    "SuperChatEvent",
    "FollowEvent",
    "MembershipEvent",
    "ViewerCountEvent",
    "ConnectionStateEvent",
    "ErrorEvent",
    "RawEvent",
    "fingerprint",
    "format_amount",
]
