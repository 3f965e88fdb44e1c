"""Locate the primary record collection inside an arbitrary JSON document."""

import logging
from typing import Any, Dict, Iterator, List, Optional

from .heuristics import CONTAINER_KEYS, GENERIC_KEYS, looks_like_event
from .models import NormalizedRecord, RecordKind

logger = logging.getLogger(__name__)


def _first_non_empty_array(obj: Dict[str, Any], keys=None) -> Optional[list]:
    names = obj.keys() if keys is None else keys
    for name in names:
        value = obj.get(name)
        if isinstance(value, list) and value:
            return value
    return None


def _from_container_keys(doc: Dict[str, Any]) -> Optional[list]:
    for key in CONTAINER_KEYS:
        if key not in doc:
            continue
        value = doc[key]
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            found = _first_non_empty_array(value)
            if found is not None:
                return found
    return None


def _from_generic_keys(doc: Dict[str, Any]) -> Optional[list]:
    found = _first_non_empty_array(doc, GENERIC_KEYS)
    if found is not None:
        return found
    for value in doc.values():
        if isinstance(value, dict):
            found = _first_non_empty_array(value, GENERIC_KEYS)
            if found is not None:
                return found
    return None


def iter_arrays(value: Any) -> Iterator[list]:
    """Yield every list reachable from ``value`` in depth-first pre-order."""
    stack = [value]
    while stack:
        node = stack.pop()
        if isinstance(node, list):
            yield node
            stack.extend(reversed(node))
        elif isinstance(node, dict):
            stack.extend(reversed(list(node.values())))


def _qualifies(array: list, min_length: int, sample_size: int) -> bool:
    if not array:
        return False
    if len(array) > min_length:
        return True
    return any(looks_like_event(element) for element in array[:sample_size])


def _deep_search(doc: Any, min_length: int, sample_size: int) -> Optional[list]:
    for array in iter_arrays(doc):
        if _qualifies(array, min_length, sample_size):
            return array
    return None


def extract_records(value: Any, min_length: int = 10, sample_size: int = 5) -> Any:
    """Return the array most likely to hold the document's records.

    The returned object is always ``value`` itself or a list reachable from it;
    nothing is copied. When no array qualifies the whole document is returned
    and callers count it as a single record.
    """
    if isinstance(value, list):
        return value
    if not isinstance(value, dict):
        return value

    found = _from_container_keys(value)
    if found is None:
        found = _from_generic_keys(value)
    if found is None:
        found = _deep_search(value, min_length, sample_size)
    if found is None:
        logger.debug("No qualifying record array found; using whole document")
        return value
    return found


def flatten_payload(record: NormalizedRecord) -> List[Any]:
    """Flatten a record payload into one list for record-by-record viewing."""
    payload = record.payload
    if record.kind == RecordKind.SINGLE_DOCUMENT_IMPORT:
        return payload if isinstance(payload, list) else [payload]

    flattened: List[Any] = []
    for entry_name, content in payload.items():
        items = content if isinstance(content, list) else [content]
        for item in items:
            if isinstance(item, dict):
                flattened.append({"_fileName": entry_name, **item})
            else:
                flattened.append({"_fileName": entry_name, "value": item})
    return flattened
