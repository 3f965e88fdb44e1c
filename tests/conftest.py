"""Shared fixtures: temporary two-tier stores, zip builders and sample records."""

import io
import json
import os
import zipfile

import pytest

os.environ.setdefault("TAKEOUT_PAYLOAD_BACKEND", "memory")

from takeout_explorer.models import NormalizedRecord, RecordKind, RecordMetadata
from takeout_explorer.storage import InMemoryPayloadStore, MetadataStore, SQLitePayloadStore
from takeout_explorer.store import PageDataStore

PAGE_IDS = ["browserHistory", "deviceInfo", "youtubeHistory"]

BROWSER_HISTORY = {
    "Browser History": [
        {"url": "http://a.com", "time_usec": 1},
        {"url": "http://b.com", "time_usec": 2},
    ]
}


def build_zip(entries, compression=zipfile.ZIP_DEFLATED) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, content in entries.items():
            if not isinstance(content, (bytes, str)):
                content = json.dumps(content)
            archive.writestr(name, content)
    return buffer.getvalue()


def corrupt_entry(archive: bytes, original: bytes, replacement: bytes) -> bytes:
    """Swap stored entry bytes in place so the entry fails its CRC check."""
    assert len(original) == len(replacement)
    assert archive.count(original) == 1
    return archive.replace(original, replacement)


@pytest.fixture
def write_file(tmp_path):
    def _write(name, content):
        path = tmp_path / name
        if isinstance(content, bytes):
            path.write_bytes(content)
        elif isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_text(json.dumps(content), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def store_paths(tmp_path):
    return str(tmp_path / "meta" / "page_metadata.json"), str(tmp_path / "db" / "payloads.db")


@pytest.fixture
def sqlite_store(store_paths):
    metadata_path, payload_path = store_paths
    payloads = SQLitePayloadStore(payload_path)
    yield PageDataStore(MetadataStore(metadata_path), payloads, PAGE_IDS)
    payloads.close()


@pytest.fixture
def memory_store():
    return PageDataStore(MetadataStore(None), InMemoryPayloadStore(), PAGE_IDS)


@pytest.fixture
def make_record():
    counter = {"n": 0}

    def _make(payload=None, file_name="history.json", total_records=None):
        counter["n"] += 1
        if payload is None:
            payload = BROWSER_HISTORY["Browser History"]
        if total_records is None:
            total_records = len(payload) if isinstance(payload, list) else 1
        return NormalizedRecord(
            id=f"{file_name}-{counter['n']}",
            kind=RecordKind.SINGLE_DOCUMENT_IMPORT,
            file_name=file_name,
            byte_size=128 * counter["n"],
            payload=payload,
            metadata=RecordMetadata(
                total_records=total_records,
                structure_outline=["[2]", "[0].url", "[0].time_usec"],
                field_type_summary={"url": "string", "time_usec": "number"},
            ),
        )

    return _make
