"""
StreamRelay - Event normalizer service.
Converts raw platform payloads into canonical event records.
"""

import html
import logging
import math
import re
from typing import Callable, Dict, Optional

from better_profanity import profanity

from streamrelay.errors import ParseError, ValidationError
from streamrelay.models.events import (
    CanonicalEvent,
    ChatEvent,
    FollowEvent,
    GiftEvent,
    MembershipEvent,
    Platform,
    RawEvent,
    SuperChatEvent,
    SYSTEM_USER,
    UserInfo,
    ViewerCountEvent,
    iso_from_ms,
    ms_from_iso,
)

logger = logging.getLogger(__name__)

HTML_TAG_RE = re.compile(r"<[^>]*>")
WHITESPACE_RE = re.compile(r"\s+")

INVALID_USERNAMES = {"n/a"}

TWITCH_TIERS = {"1000": "Tier 1", "2000": "Tier 2", "3000": "Tier 3", "prime": "Prime"}


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------

def _to_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def sanitize_message(text) -> str:
    """Strip HTML tags and entities, and collapse whitespace."""
    if not isinstance(text, str):
        return ""
    text = HTML_TAG_RE.sub("", text)
    text = html.unescape(text)
    return WHITESPACE_RE.sub(" ", text).strip()


def normalize_youtube_username(name) -> Optional[str]:
    """Strip a leading @ and reject placeholder names."""
    if not isinstance(name, str):
        return None
    name = name.strip()
    if name.startswith("@"):
        name = name[1:].strip()
    if not name or name.lower() in INVALID_USERNAMES:
        return None
    return name


# -----------------------------------------------------------------------------
# Timestamp extraction (epoch milliseconds)
# -----------------------------------------------------------------------------

def _ms_or_iso(value) -> Optional[float]:
    number = _to_number(value)
    if number is not None:
        return number if number > 0 else None
    return ms_from_iso(value) if isinstance(value, str) else None


def extract_youtube_timestamp(data: dict) -> Optional[float]:
    source = data.get("item") if isinstance(data.get("item"), dict) else data
    usec = _to_number(source.get("timestamp_usec"))
    if usec is not None:
        return usec / 1000 if usec > 0 else None
    value = source.get("timestamp")
    number = _to_number(value)
    if number is not None:
        return number if number > 0 else None
    return ms_from_iso(value) if isinstance(value, str) else None


def extract_tiktok_timestamp(data: dict) -> Optional[float]:
    common = data.get("common") if isinstance(data.get("common"), dict) else {}
    for key in ("createTime", "clientSendTime"):
        number = _to_number(common.get(key))
        if number is not None and number > 0:
            # Older relays send seconds
            return number * 1000 if number < 1e11 else number
    return ms_from_iso(data.get("timestamp")) if isinstance(data.get("timestamp"), str) else None


def extract_twitch_timestamp(data: dict) -> Optional[float]:
    for key in ("timestamp", "followed_at", "started_at"):
        if data.get(key) is not None:
            value = _ms_or_iso(data.get(key))
            if value is not None:
                return value
    return None


def extract_streamelements_timestamp(data: dict) -> Optional[float]:
    value = data.get("timestamp", data.get("createdAt"))
    return _ms_or_iso(value) if value is not None else None


TIMESTAMP_EXTRACTORS: Dict[Platform, Callable[[dict], Optional[float]]] = {
    Platform.YOUTUBE: extract_youtube_timestamp,
    Platform.TIKTOK: extract_tiktok_timestamp,
    Platform.TWITCH: extract_twitch_timestamp,
    Platform.STREAMELEMENTS: extract_streamelements_timestamp,
}


def extract_timestamp(platform: Platform, data) -> Optional[float]:
    """Origin timestamp in epoch ms, or None when the payload carries none."""
    if not isinstance(data, dict):
        return None
    return TIMESTAMP_EXTRACTORS[platform](data)


# -----------------------------------------------------------------------------
# Normalizer
# -----------------------------------------------------------------------------

class EventNormalizer:
    """
    Maps raw platform payloads to canonical events.

    ``normalize`` returns None for frames that carry nothing to notify
    about, and raises ValidationError for payloads that must be dropped.
    """

    def __init__(self, config):
        self.profanity_filter = bool(getattr(config, "PROFANITY_FILTER", False))
        if self.profanity_filter:
            profanity.load_censor_words()

        self._handlers = {
            Platform.YOUTUBE: {
                "chat": self._youtube_chat,
            },
            Platform.TIKTOK: {
                "chat": self._tiktok_chat,
                "gift": self._tiktok_gift,
                "follow": self._tiktok_follow,
                "subscribe": self._tiktok_subscribe,
                "roomUser": self._tiktok_viewers,
            },
            Platform.TWITCH: {
                "channel.chat.message": self._twitch_chat,
                "channel.follow": self._twitch_follow,
                "channel.cheer": self._twitch_cheer,
                "channel.subscribe": self._twitch_subscribe,
                "channel.subscription.message": self._twitch_resubscribe,
                "channel.subscription.gift": self._twitch_gift_subs,
                "channel.raid": self._twitch_raid,
            },
            Platform.STREAMELEMENTS: {
                "follow": self._se_follow,
            },
        }

    def normalize(self, raw: RawEvent) -> Optional[CanonicalEvent]:
        if not isinstance(raw.payload, dict):
            raise ParseError(f"{raw.platform.value} {raw.kind} payload is not an object")

        handler = self._handlers.get(raw.platform, {}).get(raw.kind)
        if handler is None:
            logger.debug(f"No normalizer for {raw.platform.value} '{raw.kind}'")
            return None
        return handler(raw, raw.payload)

    # --- common -------------------------------------------------------------

    def _timestamps(self, raw: RawEvent, data: dict) -> Dict[str, str]:
        origin = extract_timestamp(raw.platform, data)
        if origin is None:
            origin = raw.received_at
        return {
            "origin_timestamp": iso_from_ms(origin),
            "ingest_timestamp": iso_from_ms(raw.received_at),
        }

    def _sanitize(self, text: str) -> str:
        clean = sanitize_message(text)
        if clean and self.profanity_filter:
            clean = profanity.censor(clean)
        return clean

    def _require_user(self, user_id, name, **flags) -> UserInfo:
        user_id = str(user_id).strip() if user_id is not None else ""
        name = _text(name)
        if not user_id:
            raise ValidationError("missing user id", reason="missing user")
        if not name:
            raise ValidationError("missing display name", reason="missing user")
        return UserInfo(id=user_id, display_name=name, **flags)

    def _chat(self, raw: RawEvent, data: dict, user: UserInfo, text: str, message_id: str) -> ChatEvent:
        clean = self._sanitize(text)
        if not clean:
            raise ValidationError("chat message is empty after sanitation", reason="empty message")
        return ChatEvent(
            platform=raw.platform,
            user=user,
            message=text.strip(),
            sanitized_message=clean,
            message_id=message_id,
            raw=data,
            **self._timestamps(raw, data),
        )

    # --- YouTube ------------------------------------------------------------

    @staticmethod
    def _youtube_text(message) -> str:
        if isinstance(message, str):
            return message
        if isinstance(message, list):
            parts = []
            for part in message:
                if not isinstance(part, dict):
                    continue
                shortcuts = (part.get("emoji") or {}).get("shortcuts") or []
                parts.append(shortcuts[0] if shortcuts else part.get("text", ""))
            return "".join(parts)
        if isinstance(message, dict):
            if isinstance(message.get("text"), str):
                return message["text"]
            if isinstance(message.get("runs"), list):
                return EventNormalizer._youtube_text(message["runs"])
            if isinstance(message.get("simpleText"), str):
                return message["simpleText"]
        return ""

    def _youtube_chat(self, raw: RawEvent, data: dict) -> CanonicalEvent:
        item = data.get("item") if isinstance(data.get("item"), dict) else data
        author = item.get("author") if isinstance(item.get("author"), dict) else {}

        name = normalize_youtube_username(author.get("name"))
        if name is None:
            raise ValidationError("invalid YouTube username", reason="invalid username")

        badges = author.get("badges") if isinstance(author.get("badges"), list) else []
        is_member = any(
            isinstance(b, dict) and "member" in str(b.get("tooltip", "")).lower() for b in badges
        )
        user = self._require_user(
            author.get("id") or author.get("channelId"),
            name,
            is_moderator=author.get("is_moderator") is True,
            is_broadcaster=any(isinstance(b, dict) and b.get("icon_type") == "OWNER" for b in badges),
            is_member=is_member,
            is_subscriber=is_member,
        )
        message_id = str(item.get("id") or "")
        text = self._youtube_text(item.get("message", item.get("text")))

        superchat = item.get("superchat") or data.get("superchat")
        supersticker = item.get("supersticker") or data.get("supersticker")
        if superchat or supersticker:
            paid = superchat or supersticker
            return self._youtube_paid(
                raw, data, user, paid, text, message_id,
                "Super Chat" if superchat else "Super Sticker",
            )

        if item.get("isMembership") or data.get("isMembership"):
            if extract_youtube_timestamp(data) is None:
                raise ValidationError("membership requires a timestamp", reason="missing timestamp")
            membership = item.get("membership") if isinstance(item.get("membership"), dict) else {}
            months = _to_number(membership.get("months", item.get("memberMonth")))
            return MembershipEvent(
                platform=raw.platform,
                user=user,
                months=int(months) if months else 1,
                level=_text(membership.get("level", item.get("memberLevelName"))),
                is_milestone=bool(months and months > 1),
                message=sanitize_message(text),
                message_id=message_id,
                raw=data,
                **self._timestamps(raw, data),
            )

        return self._chat(raw, data, user, text, message_id)

    def _youtube_paid(self, raw: RawEvent, data: dict, user: UserInfo, paid, text: str,
                      message_id: str, gift_type: str) -> SuperChatEvent:
        if not isinstance(paid, dict):
            raise ValidationError(f"{gift_type} payload is not an object", reason="invalid amount")
        amount = _to_number(paid.get("amount"))
        currency = _text(paid.get("currency"))
        if amount is None:
            raise ValidationError(f"{gift_type} requires an amount", reason="missing amount")
        if not currency:
            raise ValidationError(f"{gift_type} requires a currency", reason="missing currency")

        message = self._youtube_text(paid.get("message")) if paid.get("message") else text
        return SuperChatEvent(
            platform=raw.platform,
            user=user,
            gift_type=gift_type,
            unit_amount=amount,
            count=1,
            amount=amount,
            currency=currency,
            message=sanitize_message(message),
            paid_tier=_text(str(paid.get("tier", paid.get("color", "")) or "")),
            message_id=message_id,
            raw=data,
            **self._timestamps(raw, data),
        )

    # --- TikTok -------------------------------------------------------------

    def _tiktok_user(self, data: dict) -> UserInfo:
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        return self._require_user(
            user.get("uniqueId") or data.get("uniqueId"),
            user.get("nickname") or data.get("nickname"),
            is_moderator=bool(data.get("isModerator")),
            is_subscriber=bool(data.get("isSubscriber")),
            is_broadcaster=bool(data.get("isOwner")),
        )

    @staticmethod
    def _tiktok_message_id(data: dict) -> str:
        common = data.get("common") if isinstance(data.get("common"), dict) else {}
        return str(data.get("msgId") or common.get("msgId") or "")

    def _tiktok_chat(self, raw: RawEvent, data: dict) -> ChatEvent:
        return self._chat(raw, data, self._tiktok_user(data), _text(data.get("comment")),
                          self._tiktok_message_id(data))

    def _tiktok_gift(self, raw: RawEvent, data: dict) -> GiftEvent:
        user = self._tiktok_user(data)
        details = data.get("giftDetails") if isinstance(data.get("giftDetails"), dict) else {}

        gift_type = _text(details.get("giftName") or data.get("giftName") or data.get("giftType"))
        if not gift_type:
            raise ValidationError("TikTok gift requires a gift name", reason="missing gift type")

        # repeatCount is the only accepted count field
        repeat_count = _to_number(data.get("repeatCount"))
        if repeat_count is None or repeat_count <= 0 or not float(repeat_count).is_integer():
            raise ValidationError("TikTok gift requires a positive repeatCount", reason="invalid count")
        count = int(repeat_count)

        diamonds = _to_number(details.get("diamondCount", data.get("diamondCount")))
        if diamonds is None or diamonds < 0:
            raise ValidationError("TikTok gift requires diamondCount", reason="missing amount")

        return GiftEvent(
            platform=raw.platform,
            user=user,
            gift_type=gift_type,
            unit_amount=diamonds,
            count=count,
            amount=diamonds * count,
            currency="coins",
            repeat_end=data.get("repeatEnd") is True,
            combo=details.get("giftType") == 1,
            cumulative=True,
            message_id=self._tiktok_message_id(data),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _tiktok_follow(self, raw: RawEvent, data: dict) -> FollowEvent:
        return FollowEvent(
            platform=raw.platform,
            user=self._tiktok_user(data),
            source="tiktok",
            message_id=self._tiktok_message_id(data),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _tiktok_subscribe(self, raw: RawEvent, data: dict) -> MembershipEvent:
        months = _to_number(data.get("subMonth"))
        return MembershipEvent(
            platform=raw.platform,
            user=self._tiktok_user(data),
            months=int(months) if months else 1,
            is_milestone=bool(months and months > 1),
            message_id=self._tiktok_message_id(data),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _tiktok_viewers(self, raw: RawEvent, data: dict) -> ViewerCountEvent:
        count = _to_number(data.get("viewerCount"))
        if count is None or count < 0:
            raise ValidationError("roomUser requires viewerCount", reason="missing viewer count")
        return ViewerCountEvent(
            platform=raw.platform,
            user=SYSTEM_USER,
            count=int(count),
            message_id=f"viewers:{raw.connection}:{raw.received_at}",
            raw=data,
            **self._timestamps(raw, data),
        )

    # --- Twitch -------------------------------------------------------------

    @staticmethod
    def _twitch_text(message) -> str:
        if isinstance(message, str):
            return message
        if not isinstance(message, dict):
            return ""
        fragments = message.get("fragments")
        if isinstance(fragments, list) and fragments:
            return "".join(
                f.get("text", "") for f in fragments
                if isinstance(f, dict) and f.get("type", "text") in ("text", "emote", "mention")
            )
        return message.get("text", "") if isinstance(message.get("text"), str) else ""

    def _twitch_user(self, data: dict, prefix: str = "user", allow_anonymous: bool = False) -> UserInfo:
        if allow_anonymous and data.get("is_anonymous"):
            return UserInfo(id="anonymous", display_name="Anonymous")
        return self._require_user(data.get(f"{prefix}_id"), data.get(f"{prefix}_name") or data.get(f"{prefix}_login"))

    def _twitch_chat(self, raw: RawEvent, data: dict) -> ChatEvent:
        badges = data.get("badges") if isinstance(data.get("badges"), list) else []
        sets = {b.get("set_id") for b in badges if isinstance(b, dict)}
        user = self._require_user(
            data.get("chatter_user_id"),
            data.get("chatter_user_name") or data.get("chatter_user_login"),
            is_moderator="moderator" in sets,
            is_subscriber="subscriber" in sets,
            is_broadcaster="broadcaster" in sets,
        )
        return self._chat(raw, data, user, self._twitch_text(data.get("message")),
                          str(data.get("message_id") or ""))

    def _twitch_follow(self, raw: RawEvent, data: dict) -> FollowEvent:
        return FollowEvent(
            platform=raw.platform,
            user=self._twitch_user(data),
            source="twitch",
            message_id=str(data.get("message_id") or ""),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _twitch_cheer(self, raw: RawEvent, data: dict) -> GiftEvent:
        bits = _to_number(data.get("bits"))
        if bits is None or bits <= 0:
            raise ValidationError("cheer requires bits", reason="missing amount")
        return GiftEvent(
            platform=raw.platform,
            user=self._twitch_user(data, allow_anonymous=True),
            gift_type="bits",
            unit_amount=1,
            count=int(bits),
            amount=bits,
            currency="bits",
            message=sanitize_message(self._twitch_text(data.get("message"))),
            message_id=str(data.get("message_id") or data.get("id") or ""),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _twitch_subscribe(self, raw: RawEvent, data: dict) -> Optional[MembershipEvent]:
        if data.get("is_gift") is True:
            # Reported once by channel.subscription.gift
            return None
        return MembershipEvent(
            platform=raw.platform,
            user=self._twitch_user(data),
            months=1,
            level=TWITCH_TIERS.get(str(data.get("tier", "")), str(data.get("tier", ""))),
            message_id=str(data.get("message_id") or ""),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _twitch_resubscribe(self, raw: RawEvent, data: dict) -> MembershipEvent:
        months = _to_number(data.get("cumulative_months"))
        return MembershipEvent(
            platform=raw.platform,
            user=self._twitch_user(data),
            months=int(months) if months else 1,
            level=TWITCH_TIERS.get(str(data.get("tier", "")), str(data.get("tier", ""))),
            is_milestone=True,
            message=sanitize_message(self._twitch_text(data.get("message"))),
            message_id=str(data.get("message_id") or ""),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _twitch_gift_subs(self, raw: RawEvent, data: dict) -> GiftEvent:
        total = _to_number(data.get("total"))
        if total is None or total <= 0:
            raise ValidationError("subscription gift requires total", reason="invalid count")
        return GiftEvent(
            platform=raw.platform,
            user=self._twitch_user(data, allow_anonymous=True),
            gift_type="subscription gift",
            unit_amount=1,
            count=int(total),
            amount=total,
            currency="subs",
            message=TWITCH_TIERS.get(str(data.get("tier", "")), ""),
            message_id=str(data.get("message_id") or data.get("id") or ""),
            raw=data,
            **self._timestamps(raw, data),
        )

    def _twitch_raid(self, raw: RawEvent, data: dict) -> FollowEvent:
        viewers = _to_number(data.get("viewers"))
        return FollowEvent(
            platform=raw.platform,
            user=self._twitch_user(data, prefix="from_broadcaster_user"),
            source="raid",
            viewers=int(viewers) if viewers else 0,
            message_id=str(data.get("message_id") or ""),
            raw=data,
            **self._timestamps(raw, data),
        )

    # --- StreamElements -----------------------------------------------------

    def _se_follow(self, raw: RawEvent, data: dict) -> FollowEvent:
        source = _text(data.get("platform")).lower()
        if source not in ("youtube", "twitch"):
            raise ValidationError(f"unsupported follow platform '{source}'", reason="invalid platform")
        user = self._require_user(data.get("userId"), data.get("displayName"))
        return FollowEvent(
            platform=raw.platform,
            user=user,
            source=source,
            message_id=f"{source}:{user.id}",
            raw=data,
            **self._timestamps(raw, data),
        )
