"""Fuzzy pairing of inventoried devices with installed-driver catalog rows.

``TieredDeviceMatcher.match`` walks four tiers and returns the first catalog row
(in catalog order) that satisfies the first tier with any hit:

1. exact name, case-insensitive;
2. name containment in either direction;
3. keyword/manufacturer evidence adding up to at least two hits;
4. for display devices only, a display-looking row from the same manufacturer.

``rank_candidates`` is a separate additive score used for troubleshooting output.
It never feeds back into ``match``.
"""
from __future__ import annotations

import re
from typing import Protocol, Sequence

from driverwatch_config.constants import IMMUTABLE_CONFIG, MatchingKeywords
from services.models import CatalogEntry, MatchCandidate

KEYWORD_MATCH_THRESHOLD = 2

MANUFACTURER_SCORE = 50
NAME_SCORE = 100
KEYWORD_SCORE = 20
DISPLAY_KEYWORD_SCORE = 10


class DeviceMatcher(Protocol):
    def match(
        self, name: str, manufacturer: str, catalog: Sequence[CatalogEntry]
    ) -> CatalogEntry | None:  # pragma: no cover - protocol
        ...


def _normalize_name(value: str) -> str:
    text = value.lower()
    text = text.replace("wi-fi", "wifi").replace("wi fi", "wifi")
    text = re.sub(r"[^a-z0-9]+", " ", text)
    return text.strip()


def _cross_contains(left: str, right: str) -> bool:
    # Blank never matches; a bare substring test would find "" inside everything.
    if not left or not right:
        return False
    return left in right or right in left


def extract_keywords(name: str, keywords: MatchingKeywords | None = None) -> list[str]:
    """Split a device name into lower-case tokens longer than two characters.

    Trademark markers such as ``(R)`` are removed before punctuation is folded to
    whitespace, so ``"Intel(R) UHD Graphics 630"`` yields
    ``["intel", "uhd", "graphics", "630"]``.
    """
    tables = keywords or IMMUTABLE_CONFIG.matching
    text = name.lower()
    for marker in tables.trademark_markers:
        text = text.replace(marker, " ")
    return [token for token in _normalize_name(text).split() if len(token) > 2]


def is_virtual_display_adapter(name: str, keywords: MatchingKeywords | None = None) -> bool:
    tables = keywords or IMMUTABLE_CONFIG.matching
    lowered = name.lower()
    return any(marker in lowered for marker in tables.virtual_adapter)


class TieredDeviceMatcher:
    def __init__(self, keywords: MatchingKeywords | None = None) -> None:
        self._keywords = keywords or IMMUTABLE_CONFIG.matching

    def match(self, name: str, manufacturer: str, catalog: Sequence[CatalogEntry]) -> CatalogEntry | None:
        if not name.strip():
            return None
        name_lower = name.lower()
        mfg_lower = manufacturer.strip().lower()

        for entry in catalog:
            if entry.device_name.lower() == name_lower or entry.device_name == name:
                return entry

        for entry in catalog:
            if _cross_contains(entry.device_name.lower(), name_lower):
                return entry

        name_keywords = extract_keywords(name, self._keywords)
        for entry in catalog:
            hits = 0
            if mfg_lower and mfg_lower in entry.manufacturer.lower():
                hits += 1
            entry_name = _normalize_name(entry.device_name)
            hits += sum(1 for keyword in name_keywords if keyword in entry_name)
            if hits >= KEYWORD_MATCH_THRESHOLD:
                return entry

        if any(word in name_lower for word in self._keywords.display_device):
            for entry in catalog:
                entry_name = entry.device_name.lower()
                if _cross_contains(entry.manufacturer.lower(), mfg_lower) and any(
                    word in entry_name for word in self._keywords.display_catalog
                ):
                    return entry

        return None

    def score(self, name: str, manufacturer: str, entry: CatalogEntry) -> int:
        name_lower = name.lower()
        entry_name = entry.device_name.lower()
        score = 0
        if _cross_contains(entry.manufacturer.lower(), manufacturer.strip().lower()):
            score += MANUFACTURER_SCORE
        if _cross_contains(entry_name, name_lower):
            score += NAME_SCORE
        normalized_entry = _normalize_name(entry.device_name)
        for keyword in extract_keywords(name, self._keywords):
            if keyword in normalized_entry:
                score += KEYWORD_SCORE
        for keyword in self._keywords.display_scoring:
            if keyword in name_lower and keyword in entry_name:
                score += DISPLAY_KEYWORD_SCORE
        return score

    def rank_candidates(
        self,
        name: str,
        manufacturer: str,
        catalog: Sequence[CatalogEntry],
        *,
        limit: int = 5,
    ) -> list[MatchCandidate]:
        scored = [MatchCandidate(entry=entry, score=self.score(name, manufacturer, entry)) for entry in catalog]
        ranked = sorted((c for c in scored if c.score > 0), key=lambda c: c.score, reverse=True)
        return ranked[:limit]
