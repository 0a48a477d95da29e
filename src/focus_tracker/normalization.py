"""Utilities to normalize browser domains and page titles."""

from __future__ import annotations

import re
from typing import Optional

_BROWSER_SUFFIXES: tuple[str, ...] = (
    " - Microsoft Edge",
    " - Google Chrome",
    " - Mozilla Firefox",
    " - Brave",
    " - Opera",
    " - Safari",
    " - Arc",
)

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_PORT_PATTERN = re.compile(r":\d+$")


def normalize_domain(domain: Optional[str]) -> Optional[str]:
    """Reduce a URL or host to a bare lowercase host (``www.`` stripped)."""
    if not domain:
        return None
    normalized = _SCHEME_PATTERN.sub("", domain.strip().lower())
    normalized = normalized.split("/", 1)[0].split("?", 1)[0]
    normalized = _PORT_PATTERN.sub("", normalized)
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return normalized or None


def normalize_page_title(title: Optional[str]) -> Optional[str]:
    """Remove common browser suffixes and tab counters from a page title."""
    if not title:
        return None
    normalized = title.strip()
    for suffix in _BROWSER_SUFFIXES:
        if normalized.endswith(suffix):
            normalized = normalized[: -len(suffix)].rstrip(" -")
            break

    normalized = _strip_tab_count(normalized)
    normalized = re.sub(r"\s{2,}", " ", normalized).strip()
    return normalized or None


_EXTRA_TAB_COUNT_PATTERN = re.compile(r"\s+and\s+\d+\s+more\s+pages?", re.IGNORECASE)


def _strip_tab_count(value: str) -> str:
    cleaned = _EXTRA_TAB_COUNT_PATTERN.sub("", value)
    return cleaned.strip(" -|")
