from __future__ import annotations

import re
from typing import Optional

from chatwarden.models import IncomingMessage

_NON_WORD_RE = re.compile(r"[\W_]+")
_WHITESPACE_RE = re.compile(r"\s+")


def combined_text(message: IncomingMessage) -> str:
    """Direct text and linked (forwarded/quoted) text joined by a space."""
    linked_text = message.linked.text if message.linked else None
    parts = [value.strip() for value in (message.text, linked_text) if isinstance(value, str) and value.strip()]
    return " ".join(parts).strip()


def text_length(message: IncomingMessage) -> int:
    direct = len(message.text) if isinstance(message.text, str) else 0
    linked = message.linked.text if message.linked else None
    return direct + (len(linked) if isinstance(linked, str) else 0)


def normalized_signature(message: IncomingMessage, min_length: int, max_length: int) -> Optional[str]:
    """Lowercased text with punctuation stripped and whitespace collapsed, or None if too short."""
    text = combined_text(message)
    if not text:
        return None
    normalized = _WHITESPACE_RE.sub(" ", _NON_WORD_RE.sub(" ", text.lower())).strip()
    if len(normalized) < min_length:
        return None
    return normalized[:max_length]
