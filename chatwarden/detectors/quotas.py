from __future__ import annotations

from typing import Any, Iterable

from chatwarden.models import IncomingMessage

PHOTO_LIMIT_WINDOW_SECONDS = 60 * 60


def _has_image(attachments: Iterable[Any]) -> bool:
    return any(isinstance(a, dict) and a.get("type") == "image" for a in attachments or [])


def is_photo_message(message: IncomingMessage) -> bool:
    """True when the message or its linked sub-message carries an image attachment."""
    if _has_image(message.attachments):
        return True
    return bool(message.linked and _has_image(message.linked.attachments))


def is_quota_exceeded(current_count: int, limit: int) -> bool:
    return limit > 0 and current_count > limit


def is_spam_triggered(count_in_window: int, threshold: int) -> bool:
    return count_in_window >= threshold


def is_text_too_long(length: int, max_length: int) -> bool:
    return max_length > 0 and length > max_length
