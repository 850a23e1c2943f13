"""
URL normalization and compaction for archived tabs.

A compact URL is a two-character protocol tag followed by the rest of
the URL with a leading ``www.``, tracking parameters and a single
trailing path slash removed. Query parameters that are not tracking
noise and fragments are kept byte-for-byte.

    https://www.example.com/docs/?utm_source=x&page=2#top
    -> s:example.com/docs?page=2#top

URLs without a recognised scheme keep their full text behind the raw
tag. Scheme-less URLs get https:// prepended rather than being rejected.
"""

from __future__ import annotations

import re
from typing import Optional

PROTOCOL_TAGS = {
    "https://": "s:",
    "http://": "h:",
    "file://": "f:",
    "ftp://": "t:",
    "chrome://": "c:",
    "chrome-extension://": "e:",
}
TAG_PROTOCOLS = {tag: proto for proto, tag in PROTOCOL_TAGS.items()}
RAW_TAG = "r:"
DEFAULT_TAG = PROTOCOL_TAGS["https://"]

TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "fbclid",
    "gclid",
    "dclid",
    "msclkid",
    "mc_cid",
    "mc_eid",
    "_ga",
    "_gl",
    "igshid",
    "yclid",
    "ref_src",
})

# A scheme is "name:" not followed by a digit, so host:port is not one.
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:(?!\d)")
_WWW_RE = re.compile(r"^(?:www\.)+", re.IGNORECASE)
_NETLOC_END = re.compile(r"[/?#]")


def _split_netloc(rest: str) -> tuple[str, str]:
    match = _NETLOC_END.search(rest)
    if match is None:
        return rest, ""
    return rest[: match.start()], rest[match.start():]


def _strip_tracking(query: str) -> str:
    kept = [
        part
        for part in query.split("&")
        if part and part.split("=", 1)[0].lower() not in TRACKING_PARAMS
    ]
    return "&".join(kept)


def _normalize_tail(tail: str) -> str:
    """Normalize the path+query+fragment part of a URL."""
    head, hash_mark, fragment = tail.partition("#")
    path, question, query = head.partition("?")

    # Only a lone trailing slash goes; "//" endings stay as they are.
    if path.endswith("/") and not path.endswith("//"):
        path = path[:-1]

    if question:
        query = _strip_tracking(query)

    out = path
    if query:
        out += "?" + query
    if hash_mark:
        out += "#" + fragment
    return out


def compact_url(url: str) -> str:
    """Normalize a URL and replace its scheme with a protocol tag.

    Args:
        url: Any URL string, including malformed ones.

    Returns:
        str: Compact form. Empty input gives an empty string.
    """
    url = url.strip()
    if not url:
        return ""

    lowered = url.lower()
    for proto, tag in PROTOCOL_TAGS.items():
        if lowered.startswith(proto):
            rest = url[len(proto):]
            break
    else:
        if _SCHEME_RE.match(url):
            return RAW_TAG + url
        tag, rest = DEFAULT_TAG, url.lstrip("/")

    netloc, tail = _split_netloc(rest)
    netloc = _WWW_RE.sub("", netloc)
    return tag + netloc + _normalize_tail(tail)


def expand_url(compact: str) -> str:
    """Inverse of compact_url. Unknown tags pass through untouched."""
    if not compact:
        return ""
    tag, rest = compact[:2], compact[2:]
    if tag == RAW_TAG:
        return rest
    proto = TAG_PROTOCOLS.get(tag)
    if proto is None:
        return compact
    return proto + rest


def normalize_url(url: str) -> str:
    """Canonical URL as it reads back after a save/load round trip."""
    return expand_url(compact_url(url))


def split_domain(compact: str) -> Optional[tuple[str, str]]:
    """Split a compact URL into (tag + host, path+query+fragment).

    Returns None for raw URLs and URLs without a host, which are never
    domain-deduplicated.
    """
    tag = compact[:2]
    if tag == RAW_TAG or tag not in TAG_PROTOCOLS:
        return None
    netloc, tail = _split_netloc(compact[2:])
    if not netloc:
        return None
    return tag + netloc, tail
