"""Record counts and structural summaries for parsed documents."""

from typing import Any, Dict, List

from .extractor import iter_arrays
from .heuristics import CONTAINER_KEYS
from .models import RecordMetadata


def _container_total(doc: Dict[str, Any]) -> int:
    total = 0
    for key in CONTAINER_KEYS:
        value = doc.get(key)
        if isinstance(value, list):
            total += len(value)
        elif isinstance(value, dict):
            total += sum(len(v) for v in value.values() if isinstance(v, list))
    return total


def count_records(value: Any) -> int:
    """Count records in a parsed document.

    Arrays count their elements. Objects prefer the known container keys,
    then fall back to the summed length of every reachable array. A document
    without any elements still counts as one record; only an empty object
    counts as zero.
    """
    if isinstance(value, list):
        return len(value)
    if not isinstance(value, dict):
        return 1
    if not value:
        return 0

    total = _container_total(value)
    if total == 0:
        total = sum(len(array) for array in iter_arrays(value))
    return total if total > 0 else 1


def build_structure_outline(value: Any) -> List[str]:
    """List the key paths and array lengths of a document in traversal order.

    Arrays are described by their length and the shape of their first
    element only, so the outline grows with the schema, not with the data.
    """
    outline: List[str] = []
    # (path, node, emit) where emit is False for sampled array elements
    stack = [("", value, False)]
    while stack:
        path, node, emit = stack.pop()
        if isinstance(node, list):
            outline.append(f"{path}[{len(node)}]")
            if node and isinstance(node[0], (dict, list)):
                stack.append((f"{path}[0]", node[0], False))
            continue
        if emit:
            outline.append(path)
        if isinstance(node, dict):
            children = [
                (f"{path}.{key}" if path else str(key), child, True)
                for key, child in node.items()
            ]
            stack.extend(reversed(children))
    return outline


def coarse_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return f"array[{len(value)}]"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def infer_field_types(value: Any) -> Dict[str, str]:
    sample = value
    if isinstance(value, list):
        sample = value[0] if value else None
    if not isinstance(sample, dict):
        return {}
    return {str(key): coarse_type(field) for key, field in sample.items()}


def count_extracted(document: Any, extracted: Any) -> int:
    """Count the extracted view, flooring at the whole document's count.

    An empty container array can be the extracted view of a non-empty
    document; that document still counts as at least one record.
    """
    total = count_records(extracted)
    if total == 0 and extracted is not document:
        return count_records(document)
    return total


def build_metadata(document: Any, extracted: Any) -> RecordMetadata:
    return RecordMetadata(
        total_records=count_extracted(document, extracted),
        structure_outline=build_structure_outline(document),
        field_type_summary=infer_field_types(extracted),
    )
