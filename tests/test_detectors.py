import sys
import os
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import moderation_db
from chatwarden.detectors.antibot import AntiBotRiskScorer
from chatwarden.detectors.duplicates import DuplicateDetector
from chatwarden.detectors.global_spammer import resolve_global_spammer_signal
from chatwarden.detectors.night_hours import resolve_quiet_hours_window
from chatwarden.detectors.text import normalized_signature, text_length
from chatwarden.models import IncomingMessage, LinkedMessage, ModerationActionRecord

CHAT_ID = -3001
USER_ID = 555


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc).timestamp()


def make_message(text, **kwargs):
    return IncomingMessage(chat_id=CHAT_ID, chat_type="chat", message_id=1, sender_id=USER_ID, text=text, **kwargs)


# ----------------------------------------------------------------------
# text helpers
# ----------------------------------------------------------------------

def test_text_length_includes_linked_text():
    message = make_message("abcd", linked=LinkedMessage(text="efg"))
    assert text_length(message) == 7


def test_signature_normalizes_case_and_punctuation():
    a = normalized_signature(make_message("Hello,   WORLD!!! again"), 8, 240)
    b = normalized_signature(make_message("hello world again"), 8, 240)
    assert a == b == "hello world again"
    assert normalized_signature(make_message("hi"), 8, 240) is None


# ----------------------------------------------------------------------
# duplicates
# ----------------------------------------------------------------------

def test_duplicate_detected_within_window_only():
    detector = DuplicateDetector()
    message = make_message("Selling a bicycle in good condition")

    assert detector.check(USER_ID, message, 1000.0) is None
    signal = detector.check(USER_ID, message, 1000.4)
    assert signal.seconds_since_previous == 1
    assert signal.window_hours == 24

    assert detector.check(USER_ID, message, 1000.4 + 25 * 3600) is None


def test_duplicate_is_per_user():
    detector = DuplicateDetector()
    message = make_message("Selling a bicycle in good condition")

    detector.check(1, message, 1000.0)
    assert detector.check(2, message, 1010.0) is None


def test_duplicate_purge_drops_stale_entries():
    detector = DuplicateDetector()
    detector.check(USER_ID, make_message("first long message here"), 1000.0)
    assert len(detector) == 1

    assert detector.purge(1000.0 + 25 * 3600, force=True) == 1
    assert len(detector) == 0


# ----------------------------------------------------------------------
# anti-bot
# ----------------------------------------------------------------------

def test_anti_bot_ignores_ordinary_message(temp_db):
    scorer = AntiBotRiskScorer()
    assessment = scorer.assess(CHAT_ID, USER_ID, make_message("see you at the meeting tomorrow"), 5000.0)
    assert assessment.total_score == 0
    assert not assessment.should_act


def test_anti_bot_acts_on_suspicious_content_with_links(temp_db):
    scorer = AntiBotRiskScorer()
    text = "Passive income! Write me in DM, crypto trading signals a.example b.example c.example d.example"

    assessment = scorer.assess(CHAT_ID, USER_ID, make_message(text), 5000.0)

    keys = {s.key for s in assessment.signals}
    assert {"suspicious_patterns", "links_count"} <= keys
    assert assessment.total_score == 60
    assert assessment.should_act
    assert not assessment.should_mute


def test_anti_bot_ignores_word_fragments_and_telegram_mentions(temp_db):
    scorer = AntiBotRiskScorer()
    text = "Better meet between lessons, the telegram channel is t.me/school_news"

    assessment = scorer.assess(CHAT_ID, USER_ID, make_message(text), 5000.0)

    assert "suspicious_patterns" not in {s.key for s in assessment.signals}


def test_anti_bot_flags_betting_offer(temp_db):
    scorer = AntiBotRiskScorer()
    assessment = scorer.assess(CHAT_ID, USER_ID, make_message("Best bets tonight, casino bonus"), 5000.0)

    assert ("suspicious_patterns", 18) in [(s.key, s.score) for s in assessment.signals]


def test_anti_bot_burst_alone_is_enough_to_act(temp_db):
    scorer = AntiBotRiskScorer()
    now = 5000.0
    for i in range(1, 6):
        moderation_db.add_message_event(CHAT_ID, USER_ID, now - i)

    assessment = scorer.assess(CHAT_ID, USER_ID, make_message("ok"), now)

    assert ("burst_10s", 45) in [(s.key, s.score) for s in assessment.signals]
    assert assessment.should_act


def test_anti_bot_mute_history_lowers_mute_threshold(temp_db):
    scorer = AntiBotRiskScorer()
    now = 10_000.0
    moderation_db.record_moderation_action(
        ModerationActionRecord(CHAT_ID, USER_ID, "mute", "spam", {}, created_at=now - 3600))
    for i in range(1, 4):
        moderation_db.add_message_event(CHAT_ID, USER_ID, now - i)

    # burst_10s (25) + mutes_7d (20) + suspicious pattern (18) = 63
    assessment = scorer.assess(CHAT_ID, USER_ID, make_message("crypto for everyone"), now)

    assert assessment.total_score == 63
    assert assessment.should_mute


def test_repeated_text_tracking():
    scorer = AntiBotRiskScorer()
    message = make_message("same text again")
    counts = [scorer.track_repeated_text(CHAT_ID, USER_ID, message, 100.0 + i) for i in range(3)]
    assert counts == [1, 2, 3]

    scorer.sweep(100.0 + 3 * 3600)
    assert scorer.track_repeated_text(CHAT_ID, USER_ID, message, 100.0 + 3 * 3600) == 1


# ----------------------------------------------------------------------
# night quiet hours
# ----------------------------------------------------------------------

def test_quiet_hours_moscow_after_midnight():
    window = resolve_quiet_hours_window(-71313986483690, utc(2026, 2, 27, 21, 30))
    assert window.timezone == "Europe/Moscow"
    assert window.local_hour == 0
    assert window.window_start_ts == utc(2026, 2, 27, 20, 0)
    assert window.window_end_ts == utc(2026, 2, 28, 4, 0)


def test_quiet_hours_chita_before_midnight():
    window = resolve_quiet_hours_window(-71489818560519, utc(2026, 2, 27, 14, 10))
    assert window.local_hour == 23
    assert window.window_start_ts == utc(2026, 2, 27, 14, 0)
    assert window.window_end_ts == utc(2026, 2, 27, 22, 0)


def test_quiet_hours_daytime_and_unmapped_chats():
    assert resolve_quiet_hours_window(-71313986483690, utc(2026, 2, 27, 10, 0)) is None
    assert resolve_quiet_hours_window(-1, utc(2026, 2, 27, 21, 30)) is None


def test_quiet_hours_window_spanning_dst_switch():
    timezones = {CHAT_ID: "Europe/Berlin"}
    # 04:00 CEST, after clocks moved forward at 02:00 CET
    window = resolve_quiet_hours_window(CHAT_ID, utc(2026, 3, 29, 2, 0), timezones)

    assert window.window_start_ts == utc(2026, 3, 28, 22, 0)
    assert window.window_end_ts == utc(2026, 3, 29, 5, 0)
    assert window.window_end_ts - window.window_start_ts == 7 * 3600


def test_quiet_hours_unknown_timezone_is_ignored():
    assert resolve_quiet_hours_window(CHAT_ID, utc(2026, 3, 29, 2, 0), {CHAT_ID: "Mars/Olympus"}) is None


# ----------------------------------------------------------------------
# global spammer
# ----------------------------------------------------------------------

def _record(chat_id, action, reason, ts):
    moderation_db.record_moderation_action(ModerationActionRecord(chat_id, USER_ID, action, reason, {}, created_at=ts))


def test_global_spammer_needs_a_severe_action(temp_db):
    now = 1_000_000.0
    for i in range(3):
        _record(-10 - i, "mute", "spam", now - 3600)
    assert resolve_global_spammer_signal(USER_ID, now) is None


def test_global_spammer_flags_cross_chat_history(temp_db):
    now = 1_000_000.0
    _record(-10, "ban", "link", now - 7200)
    _record(-11, "mute", "spam", now - 3600)
    _record(-12, "mute", "anti_bot", now - 1800)

    signal = resolve_global_spammer_signal(USER_ID, now)

    assert signal.severe_actions == 1
    assert signal.mutes == 2
    assert signal.window_hours == 72


def test_global_spammer_ignores_history_outside_window(temp_db):
    now = 1_000_000.0
    _record(-10, "ban", "link", now - 73 * 3600)
    _record(-11, "mute", "spam", now - 3600)
    _record(-12, "mute", "spam", now - 1800)
    assert resolve_global_spammer_signal(USER_ID, now) is None
