from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

_TRAILING_PUNCTUATION = re.compile(r"[,.!?;:]+$")
_WRAPPING = {"(": ")", "[": "]", "<": ">", '"': '"', "'": "'", "«": "»"}


def strip_trailing_punctuation(value: str) -> str:
    return _TRAILING_PUNCTUATION.sub("", value)


def balance_parentheses(value: str) -> str:
    """Drop unmatched closing parens at the end, keep ones opened inside the URL."""
    while value.endswith(")") and value.count(")") > value.count("("):
        value = value[:-1]
    return value


def clean_url_candidate(raw: str) -> str:
    """Strip wrapping quotes/brackets and trailing sentence punctuation."""
    value = raw.strip()
    while len(value) >= 2 and value[0] in _WRAPPING and value[-1] == _WRAPPING[value[0]]:
        value = value[1:-1].strip()
    if value and value[0] in _WRAPPING:
        value = value[1:]

    previous = None
    while previous != value:
        previous = value
        value = strip_trailing_punctuation(value)
        value = balance_parentheses(value)
        value = value.rstrip("]>\"'»")
    return value


def _to_ascii(hostname: str) -> str:
    try:
        return hostname.encode("idna").decode("ascii")
    except UnicodeError:
        return hostname


def normalize_domain(value: str) -> Optional[str]:
    """Return the lowercased hostname of a URL or bare domain, or None if unparseable.

    Unicode (IDN) hostnames are converted to their punycode form so that
    whitelists can be written either way.
    """
    raw = value.strip().lower().rstrip(".")
    if not raw:
        return None

    with_scheme = raw if "://" in raw else f"http://{raw}"
    try:
        hostname = urlsplit(with_scheme).hostname
    except ValueError:
        return None
    if not hostname:
        return None

    hostname = hostname.rstrip(".")
    if not hostname or any(ch.isspace() for ch in hostname):
        return None
    return _to_ascii(hostname)


def canonical_link_key(raw: str) -> str:
    """domain + path key used to deduplicate link candidates."""
    candidate = raw.strip()
    with_scheme = candidate if "://" in candidate else f"http://{candidate}"
    try:
        parts = urlsplit(with_scheme)
        domain = normalize_domain(candidate) or ""
        path = parts.path.rstrip("/")
    except ValueError:
        return candidate.lower()
    return f"{domain}{path}"


def is_domain_allowed(domain: str, whitelist: Iterable[str]) -> bool:
    normalized = domain.lower()
    for allowed in whitelist:
        allowed = allowed.lower()
        if normalized == allowed or normalized.endswith(f".{allowed}"):
            return True
    return False
