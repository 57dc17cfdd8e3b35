"""
Anti-bot risk scoring.

The score is a weighted sum of independently thresholded signals:

* behavior: message bursts over 10s/60s and repeated near-identical text
* content: link count, suspicious phrase categories, character repetition,
  low token diversity
* reputation: prior warns/deletes/mutes/kicks for the user in this chat
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List

import moderation_db
from chatwarden.detectors.links import extract_links
from chatwarden.detectors.text import combined_text, normalized_signature
from chatwarden.models import (
    ACTION_DELETE,
    ACTION_MUTE,
    ACTION_WARN,
    KICK_OR_BAN_ACTIONS,
    AntiBotAssessment,
    AntiBotSignal,
    IncomingMessage,
)
from chatwarden.utils.dates import DAY, HOUR

BURST_WINDOW_SHORT_SECONDS = 10
BURST_WINDOW_MEDIUM_SECONDS = 60
REPEATED_TEXT_WINDOW_SECONDS = 10 * 60
REPEATED_TEXT_RETENTION_SECONDS = 2 * HOUR
REPUTATION_DAY_SECONDS = DAY
REPUTATION_WEEK_SECONDS = 7 * DAY

ACT_THRESHOLD = 45
MUTE_THRESHOLD = 70
MUTE_WITH_HISTORY_THRESHOLD = 55

SUSPICIOUS_CONTENT_PATTERNS = [
    ("money_offer", re.compile(
        r"(заработок|доход|прибыль|инвест|крипт|трейд|арбитраж"
        r"|\b(earn(ing)?s?\s+(money|\$)|passive\s+income|invest\w*|crypto\w*|trading\s+signals))",
        re.IGNORECASE,
    )),
    ("casino_or_adult", re.compile(
        r"(казино|ставк|18\+|интим"
        r"|\b(bet(s|ting)?|xxx|onlyfans|casino|escorts?)\b)",
        re.IGNORECASE,
    )),
    ("external_contact", re.compile(
        r"(пиши(те)?\s*(в|на)?\s*(лс|личк|директ)"
        r"|\b(write\s+(me\s+)?(in\s+)?(dm|pm|private)|whatsapp|wa\.me)\b)",
        re.IGNORECASE,
    )),
]

REPEATING_CHARS_RES = (re.compile(r"([!?])\1{5,}"), re.compile(r"(.)\1{10,}"))
TOKEN_RE = re.compile(r"[^\W_]+")


@dataclass
class _TextEvent:
    ts: float
    signature: str


class AntiBotRiskScorer:
    """Scores one message at a time; keeps only a per-user text history in memory."""

    def __init__(self):
        self._recent_text: Dict[str, List[_TextEvent]] = {}

    def assess(self, chat_id: int, user_id: int, message: IncomingMessage, now: float) -> AntiBotAssessment:
        signals: List[AntiBotSignal] = []

        self._collect_behavior(chat_id, user_id, message, now, signals)
        self._collect_content(message, signals)
        self._collect_reputation(chat_id, user_id, now, signals)

        total = sum(signal.score for signal in signals)
        has_mute_history = any(s.type == "reputation" and s.key == "mutes_7d" for s in signals)

        return AntiBotAssessment(
            total_score=total,
            should_act=total >= ACT_THRESHOLD,
            should_mute=total >= MUTE_THRESHOLD or (has_mute_history and total >= MUTE_WITH_HISTORY_THRESHOLD),
            signals=signals,
        )

    # ------------------------------------------------------------------
    # behavior
    # ------------------------------------------------------------------

    def _collect_behavior(self, chat_id: int, user_id: int, message: IncomingMessage, now: float,
                          signals: List[AntiBotSignal]) -> None:
        # +1 for the current message, which is not logged yet.
        short_burst = moderation_db.count_message_events_since(
            chat_id, user_id, now - BURST_WINDOW_SHORT_SECONDS) + 1
        if short_burst >= 6:
            signals.append(AntiBotSignal("behavior", "burst_10s", 45, short_burst))
        elif short_burst >= 4:
            signals.append(AntiBotSignal("behavior", "burst_10s", 25, short_burst))

        medium_burst = moderation_db.count_message_events_since(
            chat_id, user_id, now - BURST_WINDOW_MEDIUM_SECONDS) + 1
        if medium_burst >= 12:
            signals.append(AntiBotSignal("behavior", "burst_60s", 30, medium_burst))
        elif medium_burst >= 8:
            signals.append(AntiBotSignal("behavior", "burst_60s", 18, medium_burst))

        repeated = self.track_repeated_text(chat_id, user_id, message, now)
        if repeated >= 5:
            signals.append(AntiBotSignal("behavior", "repeat_text", 35, repeated))
        elif repeated >= 3:
            signals.append(AntiBotSignal("behavior", "repeat_text", 20, repeated))

    def track_repeated_text(self, chat_id: int, user_id: int, message: IncomingMessage, now: float) -> int:
        """Record the message signature and return how often it was seen in the last 10 minutes."""
        key = f"{chat_id}:{user_id}"
        retained = [e for e in self._recent_text.get(key, []) if e.ts >= now - REPEATED_TEXT_RETENTION_SECONDS]

        signature = normalized_signature(message, 6, 180)
        if not signature:
            if retained:
                self._recent_text[key] = retained
            else:
                self._recent_text.pop(key, None)
            return 0

        since = now - REPEATED_TEXT_WINDOW_SECONDS
        count = sum(1 for e in retained if e.signature == signature and e.ts >= since) + 1
        retained.append(_TextEvent(now, signature))
        self._recent_text[key] = retained
        return count

    def sweep(self, now: float) -> None:
        """Drop per-user histories with nothing inside the retention window."""
        min_ts = now - REPEATED_TEXT_RETENTION_SECONDS
        for key in list(self._recent_text):
            events = [e for e in self._recent_text[key] if e.ts >= min_ts]
            if events:
                self._recent_text[key] = events
            else:
                del self._recent_text[key]

    # ------------------------------------------------------------------
    # content
    # ------------------------------------------------------------------

    def _collect_content(self, message: IncomingMessage, signals: List[AntiBotSignal]) -> None:
        links_count = len(extract_links(message))
        if links_count >= 4:
            signals.append(AntiBotSignal("content", "links_count", 30, links_count))
        elif links_count >= 2:
            signals.append(AntiBotSignal("content", "links_count", 18, links_count))

        text = combined_text(message)
        if not text:
            return

        matched = [key for key, regex in SUSPICIOUS_CONTENT_PATTERNS if regex.search(text)]
        if len(matched) >= 2:
            signals.append(AntiBotSignal("content", "suspicious_patterns", 30, ",".join(matched)))
        elif len(matched) == 1:
            signals.append(AntiBotSignal("content", "suspicious_patterns", 18, matched[0]))

        if any(regex.search(text) for regex in REPEATING_CHARS_RES):
            signals.append(AntiBotSignal("content", "repeating_chars", 8, True))

        tokens = TOKEN_RE.findall(text.lower())
        if len(tokens) >= 10:
            unique_ratio = len(set(tokens)) / len(tokens)
            if unique_ratio < 0.45:
                signals.append(AntiBotSignal("content", "low_token_diversity", 12, round(unique_ratio, 2)))

    # ------------------------------------------------------------------
    # reputation
    # ------------------------------------------------------------------

    def _collect_reputation(self, chat_id: int, user_id: int, now: float, signals: List[AntiBotSignal]) -> None:
        day_since = now - REPUTATION_DAY_SECONDS
        week_since = now - REPUTATION_WEEK_SECONDS

        warns = moderation_db.count_actions_since(chat_id, user_id, ACTION_WARN, day_since)
        if warns >= 2:
            signals.append(AntiBotSignal("reputation", "warns_24h", min(24, warns * 6), warns))
        elif warns == 1:
            signals.append(AntiBotSignal("reputation", "warns_24h", 6, warns))

        deletes = moderation_db.count_actions_since(chat_id, user_id, ACTION_DELETE, day_since)
        if deletes >= 3:
            signals.append(AntiBotSignal("reputation", "deletes_24h", min(20, deletes * 3), deletes))

        mutes = moderation_db.count_actions_since(chat_id, user_id, ACTION_MUTE, week_since)
        if mutes >= 1:
            signals.append(AntiBotSignal("reputation", "mutes_7d", min(40, mutes * 20), mutes))

        kicks = sum(
            moderation_db.count_actions_since(chat_id, user_id, action, week_since)
            for action in KICK_OR_BAN_ACTIONS
        )
        if kicks > 0:
            signals.append(AntiBotSignal("reputation", "kicks_or_bans_7d", 30, kicks))
