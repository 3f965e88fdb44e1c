"""Key-name tables that drive record extraction and counting.

The tables are ordered: earlier rows win when several keys are present in the
same document. Bump ``HEURISTICS_VERSION`` whenever a row is added, removed or
reordered so stored metadata can be traced back to the rules that produced it.
"""

from enum import IntEnum
from typing import Any, NamedTuple, Tuple

HEURISTICS_VERSION = 1


class KeyTier(IntEnum):
    CONTAINER = 1  # top-level keys of known export formats
    GENERIC = 2  # collection-like names found in arbitrary documents


class KeyRule(NamedTuple):
    name: str
    tier: KeyTier


KEY_TABLE: Tuple[KeyRule, ...] = (
    KeyRule("Browser History", KeyTier.CONTAINER),
    KeyRule("Device Info", KeyTier.CONTAINER),
    KeyRule("Extensions", KeyTier.CONTAINER),
    KeyRule("Search Engines", KeyTier.CONTAINER),
    KeyRule("timelineObjects", KeyTier.CONTAINER),
    KeyRule("locations", KeyTier.CONTAINER),
    KeyRule("features", KeyTier.CONTAINER),
    KeyRule("visits", KeyTier.GENERIC),
    KeyRule("data", KeyTier.GENERIC),
    KeyRule("history", KeyTier.GENERIC),
    KeyRule("History", KeyTier.GENERIC),
    KeyRule("entries", KeyTier.GENERIC),
    KeyRule("items", KeyTier.GENERIC),
    KeyRule("records", KeyTier.GENERIC),
    KeyRule("events", KeyTier.GENERIC),
    KeyRule("results", KeyTier.GENERIC),
    KeyRule("devices", KeyTier.GENERIC),
)

URL_FIELDS = frozenset({"url", "uri", "link", "href", "titleurl", "website"})

TIMESTAMP_FIELDS = frozenset(
    {
        "time_usec",
        "timestamp",
        "timestampms",
        "time",
        "date",
        "visit_time",
        "visittime",
        "last_visit_time",
        "lastvisittime",
        "access_time",
        "last_updated_timestamp",
        "starttime",
        "endtime",
        "creationtime",
    }
)

TIMESTAMP_SUFFIXES = ("_time", "_timestamp", "_usec", "_date", "_at")
URL_PREFIXES = ("http://", "https://")


def keys_for(tier: KeyTier) -> Tuple[str, ...]:
    return tuple(rule.name for rule in KEY_TABLE if rule.tier == tier)


CONTAINER_KEYS = keys_for(KeyTier.CONTAINER)
GENERIC_KEYS = keys_for(KeyTier.GENERIC)


def is_url_like(key: str, value: Any) -> bool:
    if key.lower() in URL_FIELDS:
        return True
    return isinstance(value, str) and value.startswith(URL_PREFIXES)


def is_timestamp_like(key: str) -> bool:
    lowered = key.lower()
    return lowered in TIMESTAMP_FIELDS or lowered.endswith(TIMESTAMP_SUFFIXES)


def looks_like_event(element: Any) -> bool:
    """True when a dict element carries a URL-like or timestamp-like field."""
    if not isinstance(element, dict):
        return False
    return any(
        is_url_like(key, value) or is_timestamp_like(key)
        for key, value in element.items()
    )
