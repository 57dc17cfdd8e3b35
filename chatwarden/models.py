from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# Audit-log action names
ACTION_DELETE = "delete_message"
ACTION_WARN = "warn"
ACTION_MUTE = "mute"
ACTION_BAN = "ban"
ACTION_BAN_FALLBACK = "ban_fallback"
ACTION_KICK = "kick"
ACTION_KICK_FAILED = "kick_failed"
ACTION_KICK_TEMP = "kick_temp"
ACTION_KICK_TEMP_FAILED = "kick_temp_failed"
ACTION_KICK_AUTO = "kick_auto"
ACTION_KICK_AUTO_FAILED = "kick_auto_failed"
ACTION_RESTRICTION_ENFORCED = "restriction_enforced"
ACTION_REMOVE_BOT = "remove_bot"
ACTION_REJOIN = "rejoin"
ACTION_CONFIG_UPDATE = "config_update"

# Audit-log reasons
REASON_LINK = "link"
REASON_LINK_FAIL_CLOSED = "link_fail_closed"
REASON_DUPLICATE = "duplicate"
REASON_ANTI_BOT = "anti_bot"
REASON_SPAM = "spam"
REASON_QUOTA = "quota"
REASON_PHOTO_QUOTA = "photo_quota"
REASON_TEXT_LENGTH = "text_length"
REASON_ACTIVE_MUTE = "active_mute"
REASON_ACTIVE_RESTRICTION = "active_restriction"
REASON_MUTE_REPEAT = "mute_repeat_24h"
REASON_GLOBAL_SPAMMER = "global_spammer"
REASON_NIGHT_QUIET_HOURS = "night_quiet_hours"
REASON_BOT_GUARD = "auto_bot_guard"
REASON_ADMIN_COMMAND = "admin_command"
REASON_SCHEDULED_REJOIN = "scheduled_rejoin"

SEVERE_ACTIONS = (ACTION_BAN, ACTION_BAN_FALLBACK, ACTION_KICK, ACTION_KICK_AUTO)
KICK_OR_BAN_ACTIONS = (ACTION_KICK_TEMP, ACTION_KICK, ACTION_KICK_AUTO, ACTION_BAN, ACTION_BAN_FALLBACK)

RESTRICTION_MUTE = "mute"
RESTRICTION_BAN_FALLBACK = "ban_fallback"


@dataclass
class LinkedMessage:
    """Forwarded, quoted or externally replied content attached to a message."""
    text: Optional[str] = None
    attachments: List[Any] = field(default_factory=list)
    markup: List[Any] = field(default_factory=list)


@dataclass
class IncomingMessage:
    chat_id: int
    chat_type: str  # "chat" | "channel" | "dialog"
    message_id: int
    sender_id: Optional[int]
    sender_is_bot: bool = False
    sender_name: Optional[str] = None
    text: Optional[str] = None
    attachments: List[Any] = field(default_factory=list)
    markup: List[Any] = field(default_factory=list)
    url: Optional[str] = None
    linked: Optional[LinkedMessage] = None


@dataclass
class ChatSetting:
    chat_id: int
    enabled: bool
    daily_limit: int
    photo_limit_per_hour: int
    max_text_length: int
    spam_threshold: int
    spam_window_sec: int


@dataclass
class ActiveRestriction:
    chat_id: int
    user_id: int
    restriction_type: str
    until_ts: float
    created_at_ts: float


@dataclass
class PendingRejoin:
    chat_id: int
    user_id: int
    rejoin_at_ts: float


@dataclass
class PendingBotMessageDelete:
    chat_id: int
    message_id: int
    delete_at_ts: float
    created_at_ts: float


@dataclass
class ModerationActionRecord:
    chat_id: int
    user_id: int
    action: str
    reason: str
    meta: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[float] = None


@dataclass
class DetectedLink:
    raw: str
    domain: Optional[str]
    source: str  # "text" | "attachment" | "message_url"

    def as_meta(self) -> Dict[str, Any]:
        return {"raw": self.raw, "domain": self.domain, "source": self.source}


@dataclass
class AntiBotSignal:
    type: str  # "behavior" | "content" | "reputation"
    key: str
    score: int
    value: Any


@dataclass
class AntiBotAssessment:
    total_score: int
    should_act: bool
    should_mute: bool
    signals: List[AntiBotSignal] = field(default_factory=list)

    def as_meta(self) -> Dict[str, Any]:
        return {
            "totalScore": self.total_score,
            "signals": [
                {"type": s.type, "key": s.key, "score": s.score, "value": s.value}
                for s in self.signals
            ],
        }


@dataclass
class DuplicateSignal:
    window_hours: int
    previous_ts: float
    seconds_since_previous: int
    signature_length: int

    def as_meta(self) -> Dict[str, Any]:
        return {
            "windowHours": self.window_hours,
            "previousTs": self.previous_ts,
            "secondsSincePrevious": self.seconds_since_previous,
            "signatureLength": self.signature_length,
        }


@dataclass
class GlobalSpammerSignal:
    window_hours: int
    severe_actions: int
    warns: int
    mutes: int
    spam_events: int
    link_events: int
    anti_bot_events: int

    def as_meta(self) -> Dict[str, Any]:
        return {
            "windowHours": self.window_hours,
            "severeActions": self.severe_actions,
            "warns": self.warns,
            "mutes": self.mutes,
            "spamEvents": self.spam_events,
            "linkEvents": self.link_events,
            "antiBotEvents": self.anti_bot_events,
        }


@dataclass
class QuietHoursWindow:
    timezone: str
    local_hour: int
    window_start_ts: float
    window_end_ts: float


@dataclass
class ViolationContext:
    """Who and what an enforcement action targets."""
    chat_id: int
    user_id: int
    message_id: int
    user_name: Optional[str] = None
