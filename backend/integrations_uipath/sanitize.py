"""
Payload sanitization for queue item SpecificContent.

Orchestrator rejects keys containing `@`, `.`, `$` or whitespace, values
carrying HTML and nested objects. Everything here is idempotent: sanitizing
already-sanitized content returns it unchanged. Quotes and backslashes are
left for the JSON encoder to escape.
"""

from __future__ import annotations

import html
import json
import logging
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

logger = logging.getLogger(__name__)

UNDEFINED = "undefined"
JSON_SUFFIX = "_json"

# Nested mappings deeper than this, or with more leaves than MAX_NESTED_KEYS,
# are stored whole under `<key>_json` instead of one key per leaf.
MAX_FLATTEN_DEPTH = 3
MAX_NESTED_KEYS = 25

_MARKUP_RE = re.compile(r"</?[a-zA-Z][\w:-]*(?:\s[^<>]*)?/?>")
_HREF_RE = re.compile(r"""<a\b[^>]*?\bhref\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")
_KEY_ILLEGAL_RE = re.compile(r"[^A-Za-z0-9_\-]")
_UNDERSCORES_RE = re.compile(r"_+")
_ENCODED_URL_CHARS = (("%3A", ":"), ("%3a", ":"), ("%2F", "/"), ("%2f", "/"))


def looks_like_markup(value: str) -> bool:
    return bool(_MARKUP_RE.search(value))


def _decode_link(target: str, site_base_url: str) -> str:
    target = html.unescape(target).strip()
    for encoded, plain in _ENCODED_URL_CHARS:
        target = target.replace(encoded, plain)
    if target.startswith("/sites/") and site_base_url:
        target = site_base_url.rstrip("/") + target
    return target


def _clean_once(value: str, site_base_url: str) -> str:
    if looks_like_markup(value):
        link = _HREF_RE.search(value)
        if link and link.group(2).strip():
            value = _decode_link(link.group(2), site_base_url)
        else:
            value = html.unescape(_MARKUP_RE.sub(" ", value))
            value = _WHITESPACE_RE.sub(" ", value)
    value = _CONTROL_RE.sub("", value)
    return value.strip()


def clean_value(value: str, *, site_base_url: str = "") -> str:
    """
    Strip markup from a field value.

    An embedded link yields its target (entity-decoded, `/sites/...` made
    absolute against `site_base_url`); other markup yields its text.
    """
    # Decoding entities can surface new markup; repeat until stable.
    for _ in range(5):
        cleaned = _clean_once(value, site_base_url)
        if cleaned == value:
            break
        value = cleaned
    return value


def sanitize_key(key: object) -> str:
    text = str(key).strip()
    text = text.replace("@", "_at_").replace(".", "_dot_").replace("$", "_dollar_")
    text = _WHITESPACE_RE.sub("_", text)
    text = _KEY_ILLEGAL_RE.sub("_", text)
    text = _UNDERSCORES_RE.sub("_", text)
    return text.strip("_")


def _is_dropped(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip().lower() == UNDEFINED


def _scalar(value: Any, site_base_url: str) -> Any:
    if isinstance(value, bool) or isinstance(value, (int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return clean_value(str(value), site_base_url=site_base_url)


def _clean_structure(value: Any, site_base_url: str) -> Any:
    if isinstance(value, Mapping):
        return {
            str(k): _clean_structure(v, site_base_url)
            for k, v in value.items()
            if not _is_dropped(v)
        }
    if isinstance(value, (list, tuple)):
        return [_clean_structure(v, site_base_url) for v in value if not _is_dropped(v)]
    return _scalar(value, site_base_url)


def _count_leaves(value: Any) -> int:
    if isinstance(value, Mapping):
        return sum(_count_leaves(v) for v in value.values())
    return 1


def _is_structure(value: Any) -> bool:
    return isinstance(value, (Mapping, list, tuple))


def _dump(value: Any, site_base_url: str) -> str:
    return json.dumps(_clean_structure(value, site_base_url), sort_keys=True, default=str)


def _assign(out: dict[str, Any], key: str, value: Any) -> None:
    # Distinct source keys can rewrite to the same safe key; keep both.
    target = key
    suffix = 2
    while target in out:
        target = f"{key}_{suffix}"
        suffix += 1
    if target != key:
        logger.warning("SpecificContent key %r already present; storing value under %r", key, target)
    out[target] = value


def _flatten_into(out: dict[str, Any], key: str, value: Any, depth: int, site_base_url: str) -> None:
    if not key or key.lower() == UNDEFINED or _is_dropped(value):
        return

    if isinstance(value, Mapping):
        if depth > MAX_FLATTEN_DEPTH or _count_leaves(value) > MAX_NESTED_KEYS:
            _assign(out, f"{key}{JSON_SUFFIX}", _dump(value, site_base_url))
            return
        for child_key, child_value in value.items():
            child = sanitize_key(child_key)
            if not child:
                continue
            _flatten_into(out, sanitize_key(f"{key}_{child}"), child_value, depth + 1, site_base_url)
        return

    if isinstance(value, (list, tuple)):
        if any(_is_structure(item) for item in value):
            _assign(out, f"{key}{JSON_SUFFIX}", _dump(value, site_base_url))
            return
        parts = [str(_scalar(item, site_base_url)) for item in value if not _is_dropped(item)]
        _assign(out, key, ",".join(p for p in parts if p))
        return

    _assign(out, key, _scalar(value, site_base_url))


def sanitize_content(content: Mapping[str, Any] | None, *, site_base_url: str = "") -> dict[str, Any]:
    """
    Produce a flat, Orchestrator-safe SpecificContent mapping.

    Keys are rewritten to `[A-Za-z0-9_-]`, nested mappings flattened with `_`
    joined keys, scalar lists comma-joined, and `None`/`"undefined"` values
    dropped.
    """
    out: dict[str, Any] = {}
    if not content:
        return out
    for key, value in content.items():
        _flatten_into(out, sanitize_key(key), value, 1, site_base_url)
    return out
