"""
Moderation Database Module
SQLite persistence for counters, rolling event logs, restrictions, delayed
action queues and the append-only moderation audit log.

Functions raise on storage errors; the moderation pipeline decides per check
whether a failure is fail-open or fail-closed.
"""
import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from chatwarden.errors import ConfigurationError
from chatwarden.models import (
    ActiveRestriction,
    ChatSetting,
    ModerationActionRecord,
    PendingBotMessageDelete,
    PendingRejoin,
)
from chatwarden.utils.domain import normalize_domain

logger = logging.getLogger(__name__)

DB_PATH = os.path.join("data", "moderation.sqlite")

MAX_STRIKES = 3
LOG_CHAT_SETTING_KEY = "log_chat_id"


def get_db_connection():
    """Get a database connection with WAL mode and concurrent access optimizations."""
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")  # 5 second timeout for locked DB
    return conn


@contextmanager
def db_session():
    """Connection that commits on success and always closes."""
    conn = get_db_connection()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db():
    """Create all tables and indexes (idempotent)."""
    with db_session() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_settings (
                chat_id INTEGER PRIMARY KEY,
                enabled INTEGER NOT NULL DEFAULT 1,
                daily_limit INTEGER NOT NULL,
                photo_limit_per_hour INTEGER NOT NULL DEFAULT 1,
                max_text_length INTEGER NOT NULL DEFAULT 1200,
                spam_threshold INTEGER NOT NULL,
                spam_window_sec INTEGER NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS domain_whitelist (
                chat_id INTEGER NOT NULL,
                domain TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (chat_id, domain)
            );

            CREATE TABLE IF NOT EXISTS user_daily_count (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                day_key TEXT NOT NULL,
                count INTEGER NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (chat_id, user_id, day_key)
            );

            CREATE TABLE IF NOT EXISTS message_events (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                ts REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_message_events_lookup
                ON message_events(chat_id, user_id, ts);

            CREATE TABLE IF NOT EXISTS photo_events (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                ts REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_photo_events_lookup
                ON photo_events(chat_id, user_id, ts);

            CREATE TABLE IF NOT EXISTS user_strikes (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                strike_count INTEGER NOT NULL,
                first_violation_ts REAL NOT NULL,
                last_violation_ts REAL NOT NULL,
                PRIMARY KEY (chat_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS user_restrictions (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                restriction_type TEXT NOT NULL,
                until_ts REAL NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (chat_id, user_id, restriction_type)
            );

            CREATE TABLE IF NOT EXISTS pending_rejoins (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                rejoin_at_ts REAL NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (chat_id, user_id)
            );
            CREATE INDEX IF NOT EXISTS idx_pending_rejoins_due
                ON pending_rejoins(rejoin_at_ts);

            CREATE TABLE IF NOT EXISTS pending_bot_message_deletes (
                chat_id INTEGER NOT NULL,
                message_id INTEGER NOT NULL,
                delete_at_ts REAL NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (chat_id, message_id)
            );
            CREATE INDEX IF NOT EXISTS idx_pending_bot_message_deletes_due
                ON pending_bot_message_deletes(delete_at_ts);

            CREATE TABLE IF NOT EXISTS moderation_actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                reason TEXT NOT NULL,
                meta_json TEXT,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_moderation_actions_chat_user
                ON moderation_actions(chat_id, user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_moderation_actions_user
                ON moderation_actions(user_id, created_at);

            CREATE TABLE IF NOT EXISTS processed_messages (
                chat_id INTEGER NOT NULL,
                message_id INTEGER NOT NULL,
                processed_at REAL NOT NULL,
                PRIMARY KEY (chat_id, message_id)
            );
            """
        )
    logger.info(f"Moderation database initialized at {DB_PATH}")


# ============================================================================
# APP SETTINGS
# ============================================================================

def get_app_setting(key: str) -> Optional[str]:
    with db_session() as conn:
        row = conn.execute("SELECT value FROM app_settings WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def set_app_setting(key: str, value: str, now: Optional[float] = None) -> None:
    now = time.time() if now is None else now
    with db_session() as conn:
        conn.execute(
            """
            INSERT INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, now),
        )


def delete_app_setting(key: str) -> None:
    with db_session() as conn:
        conn.execute("DELETE FROM app_settings WHERE key = ?", (key,))


def get_log_chat_id() -> Optional[int]:
    raw = get_app_setting(LOG_CHAT_SETTING_KEY)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring malformed {LOG_CHAT_SETTING_KEY} app setting: {raw!r}")
        return None


def set_log_chat_id(chat_id: Optional[int]) -> None:
    if chat_id is None:
        delete_app_setting(LOG_CHAT_SETTING_KEY)
    else:
        set_app_setting(LOG_CHAT_SETTING_KEY, str(chat_id))


# ============================================================================
# CHAT SETTINGS
# ============================================================================

def _row_to_chat_setting(row) -> ChatSetting:
    return ChatSetting(
        chat_id=row[0],
        enabled=bool(row[1]),
        daily_limit=row[2],
        photo_limit_per_hour=row[3],
        max_text_length=row[4],
        spam_threshold=row[5],
        spam_window_sec=row[6],
    )


def default_chat_setting(chat_id: int, defaults) -> ChatSetting:
    """Process-wide defaults for a chat, taken from a BotConfig."""
    return ChatSetting(
        chat_id=chat_id,
        enabled=True,
        daily_limit=defaults.daily_message_limit,
        photo_limit_per_hour=defaults.photo_limit_per_hour,
        max_text_length=defaults.max_text_length,
        spam_threshold=defaults.spam_threshold,
        spam_window_sec=defaults.spam_window_sec,
    )


def get_chat_settings(chat_id: int, defaults) -> ChatSetting:
    """Return the chat's settings, creating the row with defaults on first access."""
    fallback = default_chat_setting(chat_id, defaults)
    with db_session() as conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO chat_settings
                (chat_id, enabled, daily_limit, photo_limit_per_hour, max_text_length,
                 spam_threshold, spam_window_sec, updated_at)
            VALUES (?, 1, ?, ?, ?, ?, ?, ?)
            """,
            (
                chat_id,
                fallback.daily_limit,
                fallback.photo_limit_per_hour,
                fallback.max_text_length,
                fallback.spam_threshold,
                fallback.spam_window_sec,
                time.time(),
            ),
        )
        row = conn.execute(
            """
            SELECT chat_id, enabled, daily_limit, photo_limit_per_hour, max_text_length,
                   spam_threshold, spam_window_sec
            FROM chat_settings WHERE chat_id = ?
            """,
            (chat_id,),
        ).fetchone()
    return _row_to_chat_setting(row)


def _update_chat_settings(chat_id: int, defaults, **columns) -> ChatSetting:
    get_chat_settings(chat_id, defaults)
    assignments = ", ".join(f"{name} = ?" for name in columns)
    with db_session() as conn:
        conn.execute(
            f"UPDATE chat_settings SET {assignments}, updated_at = ? WHERE chat_id = ?",
            (*columns.values(), time.time(), chat_id),
        )
    return get_chat_settings(chat_id, defaults)


def set_chat_enabled(chat_id: int, enabled: bool, defaults) -> ChatSetting:
    return _update_chat_settings(chat_id, defaults, enabled=1 if enabled else 0)


def set_daily_limit(chat_id: int, limit: int, defaults) -> ChatSetting:
    return _update_chat_settings(chat_id, defaults, daily_limit=limit)


def set_photo_limit(chat_id: int, limit: int, defaults) -> ChatSetting:
    return _update_chat_settings(chat_id, defaults, photo_limit_per_hour=limit)


def set_max_text_length(chat_id: int, limit: int, defaults) -> ChatSetting:
    return _update_chat_settings(chat_id, defaults, max_text_length=limit)


def set_spam_settings(chat_id: int, threshold: int, window_sec: int, defaults) -> ChatSetting:
    return _update_chat_settings(chat_id, defaults, spam_threshold=threshold, spam_window_sec=window_sec)


# ============================================================================
# DOMAIN WHITELIST
# ============================================================================

def _require_domain(domain: str) -> str:
    normalized = normalize_domain(domain or "")
    if not normalized or "." not in normalized:
        raise ConfigurationError(f"Invalid domain: {domain!r}")
    return normalized


def list_whitelisted_domains(chat_id: int) -> List[str]:
    with db_session() as conn:
        rows = conn.execute(
            "SELECT domain FROM domain_whitelist WHERE chat_id = ? ORDER BY domain", (chat_id,)
        ).fetchall()
    return [row[0] for row in rows]


def add_whitelisted_domain(chat_id: int, domain: str) -> str:
    """Allow a domain (and its subdomains) in a chat. Returns the normalized domain."""
    normalized = _require_domain(domain)
    with db_session() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO domain_whitelist (chat_id, domain, created_at) VALUES (?, ?, ?)",
            (chat_id, normalized, time.time()),
        )
    return normalized


def remove_whitelisted_domain(chat_id: int, domain: str) -> bool:
    normalized = _require_domain(domain)
    with db_session() as conn:
        cursor = conn.execute(
            "DELETE FROM domain_whitelist WHERE chat_id = ? AND domain = ?", (chat_id, normalized)
        )
        return cursor.rowcount > 0


# ============================================================================
# DAILY COUNT
# ============================================================================

def increment_daily_count(chat_id: int, user_id: int, day_key: str, now: Optional[float] = None) -> int:
    """Atomically increment the (chat, user, day) counter and return the new value."""
    now = time.time() if now is None else now
    with db_session() as conn:
        conn.execute(
            """
            INSERT INTO user_daily_count (chat_id, user_id, day_key, count, updated_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(chat_id, user_id, day_key)
            DO UPDATE SET count = count + 1, updated_at = excluded.updated_at
            """,
            (chat_id, user_id, day_key, now),
        )
        row = conn.execute(
            "SELECT count FROM user_daily_count WHERE chat_id = ? AND user_id = ? AND day_key = ?",
            (chat_id, user_id, day_key),
        ).fetchone()
    return row[0] if row else 1


def purge_daily_counts_before(day_key: str) -> int:
    with db_session() as conn:
        return conn.execute("DELETE FROM user_daily_count WHERE day_key < ?", (day_key,)).rowcount


# ============================================================================
# ROLLING EVENT LOGS (messages, photos)
# ============================================================================


def _add_event(table: str, chat_id: int, user_id: int, ts: float) -> None:
    with db_session() as conn:
        conn.execute(f"INSERT INTO {table} (chat_id, user_id, ts) VALUES (?, ?, ?)", (chat_id, user_id, ts))


def _count_events_since(table: str, chat_id: int, user_id: int, since_ts: float) -> int:
    with db_session() as conn:
        row = conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE chat_id = ? AND user_id = ? AND ts >= ?",
            (chat_id, user_id, since_ts),
        ).fetchone()
    return row[0]


def _purge_events_before(table: str, before_ts: float) -> int:
    with db_session() as conn:
        return conn.execute(f"DELETE FROM {table} WHERE ts < ?", (before_ts,)).rowcount


def add_message_event(chat_id: int, user_id: int, ts: float) -> None:
    _add_event("message_events", chat_id, user_id, ts)


def count_message_events_since(chat_id: int, user_id: int, since_ts: float) -> int:
    return _count_events_since("message_events", chat_id, user_id, since_ts)


def purge_message_events_before(before_ts: float) -> int:
    return _purge_events_before("message_events", before_ts)


def add_photo_event(chat_id: int, user_id: int, ts: float) -> None:
    _add_event("photo_events", chat_id, user_id, ts)


def count_photo_events_since(chat_id: int, user_id: int, since_ts: float) -> int:
    return _count_events_since("photo_events", chat_id, user_id, since_ts)


def purge_photo_events_before(before_ts: float) -> int:
    return _purge_events_before("photo_events", before_ts)


# ============================================================================
# STRIKES
# ============================================================================

def register_strike(chat_id: int, user_id: int, now: float, decay_seconds: float) -> int:
    """
    Register a flood/spam strike and return the resulting level (1..3).

    The ladder resets to 1 when the previous violation is older than the decay
    window; otherwise it increments, capped at MAX_STRIKES.
    """
    with db_session() as conn:
        row = conn.execute(
            "SELECT strike_count, last_violation_ts FROM user_strikes WHERE chat_id = ? AND user_id = ?",
            (chat_id, user_id),
        ).fetchone()

        if not row:
            conn.execute(
                """
                INSERT INTO user_strikes (chat_id, user_id, strike_count, first_violation_ts, last_violation_ts)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(chat_id, user_id) DO UPDATE SET
                    strike_count = MIN(?, strike_count + 1),
                    last_violation_ts = excluded.last_violation_ts
                """,
                (chat_id, user_id, now, now, MAX_STRIKES),
            )
        elif now - row[1] > decay_seconds:
            conn.execute(
                """
                UPDATE user_strikes
                SET strike_count = 1, first_violation_ts = ?, last_violation_ts = ?
                WHERE chat_id = ? AND user_id = ?
                """,
                (now, now, chat_id, user_id),
            )
        else:
            conn.execute(
                """
                UPDATE user_strikes
                SET strike_count = MIN(?, strike_count + 1), last_violation_ts = ?
                WHERE chat_id = ? AND user_id = ?
                """,
                (MAX_STRIKES, now, chat_id, user_id),
            )

        level = conn.execute(
            "SELECT strike_count FROM user_strikes WHERE chat_id = ? AND user_id = ?",
            (chat_id, user_id),
        ).fetchone()[0]
    return level


def purge_strikes_before(before_ts: float) -> int:
    with db_session() as conn:
        return conn.execute("DELETE FROM user_strikes WHERE last_violation_ts < ?", (before_ts,)).rowcount


# ============================================================================
# RESTRICTIONS
# ============================================================================

def upsert_restriction(chat_id: int, user_id: int, restriction_type: str, until_ts: float,
                       now: Optional[float] = None) -> None:
    """Create or extend a restriction. created_at is kept when the row exists."""
    now = time.time() if now is None else now
    with db_session() as conn:
        conn.execute(
            """
            INSERT INTO user_restrictions (chat_id, user_id, restriction_type, until_ts, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(chat_id, user_id, restriction_type) DO UPDATE SET
                until_ts = excluded.until_ts,
                created_at = CASE
                    WHEN user_restrictions.until_ts <= excluded.created_at THEN excluded.created_at
                    ELSE user_restrictions.created_at
                END
            """,
            (chat_id, user_id, restriction_type, until_ts, now),
        )


def get_active_restriction(chat_id: int, user_id: int, now: float) -> Optional[ActiveRestriction]:
    with db_session() as conn:
        row = conn.execute(
            """
            SELECT chat_id, user_id, restriction_type, until_ts, created_at
            FROM user_restrictions
            WHERE chat_id = ? AND user_id = ? AND until_ts > ?
            ORDER BY until_ts DESC
            LIMIT 1
            """,
            (chat_id, user_id, now),
        ).fetchone()
    return ActiveRestriction(*row) if row else None


def purge_expired_restrictions(now: float) -> int:
    with db_session() as conn:
        return conn.execute("DELETE FROM user_restrictions WHERE until_ts <= ?", (now,)).rowcount


# ============================================================================
# PENDING REJOINS
# ============================================================================

def upsert_pending_rejoin(chat_id: int, user_id: int, rejoin_at_ts: float, now: Optional[float] = None) -> None:
    now = time.time() if now is None else now
    with db_session() as conn:
        conn.execute(
            """
            INSERT INTO pending_rejoins (chat_id, user_id, rejoin_at_ts, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chat_id, user_id) DO UPDATE SET rejoin_at_ts = excluded.rejoin_at_ts
            """,
            (chat_id, user_id, rejoin_at_ts, now),
        )


def list_due_rejoins(now: float, limit: int = 100) -> List[PendingRejoin]:
    with db_session() as conn:
        rows = conn.execute(
            """
            SELECT chat_id, user_id, rejoin_at_ts FROM pending_rejoins
            WHERE rejoin_at_ts <= ? ORDER BY rejoin_at_ts LIMIT ?
            """,
            (now, limit),
        ).fetchall()
    return [PendingRejoin(*row) for row in rows]


def list_pending_rejoins(chat_id: Optional[int] = None) -> List[PendingRejoin]:
    query = "SELECT chat_id, user_id, rejoin_at_ts FROM pending_rejoins"
    params: tuple = ()
    if chat_id is not None:
        query += " WHERE chat_id = ?"
        params = (chat_id,)
    with db_session() as conn:
        rows = conn.execute(query + " ORDER BY rejoin_at_ts", params).fetchall()
    return [PendingRejoin(*row) for row in rows]


def remove_pending_rejoin(chat_id: int, user_id: int) -> None:
    with db_session() as conn:
        conn.execute("DELETE FROM pending_rejoins WHERE chat_id = ? AND user_id = ?", (chat_id, user_id))


def postpone_pending_rejoin(chat_id: int, user_id: int, rejoin_at_ts: float) -> None:
    with db_session() as conn:
        conn.execute(
            "UPDATE pending_rejoins SET rejoin_at_ts = ? WHERE chat_id = ? AND user_id = ?",
            (rejoin_at_ts, chat_id, user_id),
        )


def purge_pending_rejoins_before(created_before_ts: float) -> int:
    with db_session() as conn:
        return conn.execute("DELETE FROM pending_rejoins WHERE created_at < ?", (created_before_ts,)).rowcount


# ============================================================================
# PENDING BOT MESSAGE DELETES
# ============================================================================

def schedule_bot_message_delete(chat_id: int, message_id: int, delete_at_ts: float,
                                now: Optional[float] = None) -> None:
    now = time.time() if now is None else now
    with db_session() as conn:
        conn.execute(
            """
            INSERT INTO pending_bot_message_deletes (chat_id, message_id, delete_at_ts, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chat_id, message_id) DO UPDATE SET delete_at_ts = excluded.delete_at_ts
            """,
            (chat_id, message_id, delete_at_ts, now),
        )


def list_due_bot_message_deletes(now: float, limit: int = 100) -> List[PendingBotMessageDelete]:
    with db_session() as conn:
        rows = conn.execute(
            """
            SELECT chat_id, message_id, delete_at_ts, created_at FROM pending_bot_message_deletes
            WHERE delete_at_ts <= ? ORDER BY delete_at_ts LIMIT ?
            """,
            (now, limit),
        ).fetchall()
    return [PendingBotMessageDelete(*row) for row in rows]


def remove_bot_message_delete(chat_id: int, message_id: int) -> None:
    with db_session() as conn:
        conn.execute(
            "DELETE FROM pending_bot_message_deletes WHERE chat_id = ? AND message_id = ?",
            (chat_id, message_id),
        )


def postpone_bot_message_delete(chat_id: int, message_id: int, delete_at_ts: float) -> None:
    with db_session() as conn:
        conn.execute(
            "UPDATE pending_bot_message_deletes SET delete_at_ts = ? WHERE chat_id = ? AND message_id = ?",
            (delete_at_ts, chat_id, message_id),
        )


def purge_bot_message_deletes_before(created_before_ts: float) -> int:
    with db_session() as conn:
        return conn.execute(
            "DELETE FROM pending_bot_message_deletes WHERE created_at < ?", (created_before_ts,)
        ).rowcount


# ============================================================================
# MODERATION ACTIONS (append-only audit log)
# ============================================================================

def record_moderation_action(record: ModerationActionRecord) -> int:
    """Append an audit row and return its id."""
    created_at = time.time() if record.created_at is None else record.created_at
    with db_session() as conn:
        cursor = conn.execute(
            """
            INSERT INTO moderation_actions (chat_id, user_id, action, reason, meta_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.chat_id,
                record.user_id,
                record.action,
                record.reason,
                json.dumps(record.meta or {}, ensure_ascii=False, default=str),
                created_at,
            ),
        )
        return cursor.lastrowid


def _count(where: str, params: tuple) -> int:
    with db_session() as conn:
        row = conn.execute(f"SELECT COUNT(*) FROM moderation_actions WHERE {where}", params).fetchone()
    return row[0]


def count_actions_by_reason_since(chat_id: int, user_id: int, reason: str, since_ts: float) -> int:
    return _count("chat_id = ? AND user_id = ? AND reason = ? AND created_at >= ?",
                  (chat_id, user_id, reason, since_ts))


def count_actions_since(chat_id: int, user_id: int, action: str, since_ts: float) -> int:
    return _count("chat_id = ? AND user_id = ? AND action = ? AND created_at >= ?",
                  (chat_id, user_id, action, since_ts))


def count_actions_by_action_and_reason_since(chat_id: int, user_id: int, action: str, reason: str,
                                             since_ts: float) -> int:
    return _count("chat_id = ? AND user_id = ? AND action = ? AND reason = ? AND created_at >= ?",
                  (chat_id, user_id, action, reason, since_ts))


def count_user_actions_since(user_id: int, action: str, since_ts: float) -> int:
    """Across all chats."""
    return _count("user_id = ? AND action = ? AND created_at >= ?", (user_id, action, since_ts))


def count_user_reasons_since(user_id: int, reason: str, since_ts: float) -> int:
    """Across all chats."""
    return _count("user_id = ? AND reason = ? AND created_at >= ?", (user_id, reason, since_ts))


def count_user_action_and_reason_since(user_id: int, action: str, reason: str, since_ts: float) -> int:
    """Across all chats."""
    return _count("user_id = ? AND action = ? AND reason = ? AND created_at >= ?",
                  (user_id, action, reason, since_ts))


def get_recent_actions(chat_id: int, user_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
    query = "SELECT chat_id, user_id, action, reason, meta_json, created_at FROM moderation_actions WHERE chat_id = ?"
    params: tuple = (chat_id,)
    if user_id is not None:
        query += " AND user_id = ?"
        params += (user_id,)
    query += " ORDER BY id DESC LIMIT ?"
    params += (limit,)

    with db_session() as conn:
        rows = conn.execute(query, params).fetchall()

    actions = []
    for row in rows:
        actions.append({
            "chat_id": row[0],
            "user_id": row[1],
            "action": row[2],
            "reason": row[3],
            "meta": json.loads(row[4]) if row[4] else {},
            "created_at": row[5],
        })
    return actions


# ============================================================================
# PROCESSED MESSAGES (idempotency)
# ============================================================================

def try_mark_processed(chat_id: int, message_id: int, now: Optional[float] = None) -> bool:
    """Insert-if-absent. True when this call was the first to see the message."""
    now = time.time() if now is None else now
    with db_session() as conn:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO processed_messages (chat_id, message_id, processed_at) VALUES (?, ?, ?)",
            (chat_id, message_id, now),
        )
        return cursor.rowcount > 0


def purge_processed_messages_before(before_ts: float) -> int:
    with db_session() as conn:
        return conn.execute("DELETE FROM processed_messages WHERE processed_at < ?", (before_ts,)).rowcount
