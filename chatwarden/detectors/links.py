"""
Link extraction for incoming messages.

Text is scanned with several passes (scheme/www URLs, bare domains including
IDN and punycode labels, IPv4 hosts with a path, HTML href attributes).
Structured attachments and markup are walked recursively: free-text fields
(caption, description, title) are scanned like message text, and technical
URL fields are skipped on media attachments, where they point at the
platform's own hosting rather than at something the user chose to share.
"""
from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional, Set

from chatwarden.models import DetectedLink, IncomingMessage
from chatwarden.utils.domain import canonical_link_key, clean_url_candidate, is_domain_allowed, normalize_domain

TEXT_URL_RE = re.compile(
    r"\b((?:https?://|www\.)[^\s<>()\"']+"
    r"|(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}(?:/[^\s<>()\"']*)?)",
    re.IGNORECASE,
)
# Unicode domains (e.g. пример.рф) and explicit punycode labels.
IDN_URL_RE = re.compile(
    r"(?<![\w.@-])((?:[^\W_](?:[\w-]{0,61}[^\W_])?\.)+(?:xn--[a-z0-9-]{2,59}|[^\W\d_]{2,63})(?:/[^\s<>()]*)?)",
    re.IGNORECASE,
)
IPV4_URL_RE = re.compile(
    r"(?<![\w.])((?:\d{1,3}\.){3}\d{1,3}(?::\d{2,5})?/[^\s<>()]*)",
)
HTML_HREF_RE = re.compile(r"""href\s*=\s*["']([^"']+)["']""", re.IGNORECASE)

MEDIA_ATTACHMENT_TYPES = frozenset({"image", "video", "audio", "file", "sticker"})
URL_FIELDS = frozenset({"url", "image_url", "link"})
MEDIA_TECHNICAL_FIELDS = frozenset({"url", "image_url", "preview_url", "thumbnail_url", "file_url"})
FREE_TEXT_FIELDS = frozenset({"caption", "description", "title", "text"})


def _valid_ipv4(candidate: str) -> bool:
    host = candidate.split("/", 1)[0].split(":", 1)[0]
    return all(0 <= int(part) <= 255 for part in host.split("."))


def detect_from_text(text: Optional[str]) -> List[str]:
    """Return cleaned URL candidates found in free text, in first-seen order."""
    if not text:
        return []
    normalized = text.strip()
    found: List[str] = []
    seen: Set[str] = set()

    def _push(raw: str) -> None:
        candidate = clean_url_candidate(raw)
        if candidate and candidate not in seen:
            seen.add(candidate)
            found.append(candidate)

    for match in TEXT_URL_RE.finditer(normalized):
        _push(match.group(1))

    for match in IDN_URL_RE.finditer(normalized):
        raw = match.group(1)
        # ASCII-only hits are already covered by the main pass.
        if raw.isascii() and "xn--" not in raw.lower():
            continue
        _push(raw)

    for match in IPV4_URL_RE.finditer(normalized):
        if _valid_ipv4(match.group(1)):
            _push(match.group(1))

    for match in HTML_HREF_RE.finditer(normalized):
        _push(match.group(1))

    # Drop partial hits (e.g. "xn--abc.xn" from "xn--abc.xn--p1ai") already covered by a longer match.
    return [c for c in found if not any(o != c and o.startswith(c) for o in found)]


def _walk(value: Any, out: List[str], parent_type: Optional[str] = None) -> None:
    if isinstance(value, (list, tuple)):
        for item in value:
            _walk(item, out, parent_type)
        return
    if not isinstance(value, dict):
        return

    current_type = value.get("type") if isinstance(value.get("type"), str) else parent_type
    is_media = current_type in MEDIA_ATTACHMENT_TYPES

    for key, nested in value.items():
        if isinstance(nested, str):
            if key in URL_FIELDS or key in MEDIA_TECHNICAL_FIELDS:
                if is_media and key in MEDIA_TECHNICAL_FIELDS:
                    continue
                if key in URL_FIELDS:
                    candidate = clean_url_candidate(nested)
                    if candidate:
                        out.append(candidate)
                continue
            if key in FREE_TEXT_FIELDS:
                out.extend(detect_from_text(nested))
            continue
        _walk(nested, out, current_type)


def detect_from_payloads(payloads: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for payload in payloads or []:
        _walk(payload, out)
    return out


def _to_link(raw: str, source: str) -> DetectedLink:
    return DetectedLink(raw=raw, domain=normalize_domain(raw), source=source)


def extract_links(message: IncomingMessage) -> List[DetectedLink]:
    """All links in a message and its linked sub-message, deduplicated by domain+path."""
    links: List[DetectedLink] = []
    seen: Set[str] = set()

    def _add(raw: str, source: str) -> None:
        key = canonical_link_key(raw)
        if key in seen:
            return
        seen.add(key)
        links.append(_to_link(raw, source))

    for candidate in detect_from_text(message.text):
        _add(candidate, "text")

    if message.url:
        candidate = clean_url_candidate(message.url)
        if candidate:
            _add(candidate, "message_url")

    linked = message.linked
    if linked:
        for candidate in detect_from_text(linked.text):
            _add(candidate, "text")

    attachment_candidates = detect_from_payloads(message.attachments) + detect_from_payloads(message.markup)
    if linked:
        attachment_candidates += detect_from_payloads(linked.attachments)
        attachment_candidates += detect_from_payloads(linked.markup)

    for candidate in attachment_candidates:
        _add(candidate, "attachment")

    return links


def get_forbidden_links(message: IncomingMessage, whitelist: Iterable[str]) -> List[DetectedLink]:
    """Links whose domain is not allow-listed. A link without a parseable domain is forbidden."""
    whitelist = list(whitelist)
    return [
        link for link in extract_links(message)
        if not link.domain or not is_domain_allowed(link.domain, whitelist)
    ]
