import json
import threading
import zipfile

import pytest

from takeout_explorer.archive import ArchiveDecoder
from takeout_explorer.errors import DecodeError, ImportCancelled, ParseError
from takeout_explorer.models import ImportJob, ImportStatus, JobState, RecordKind
from takeout_explorer.orchestrator import ParsingOrchestrator, resolve_kind

from tests.conftest import BROWSER_HISTORY, build_zip, corrupt_entry


def _job(path, chunk_size=1000, content_type=None, file_name=None):
    return ImportJob(
        job_id="job-1",
        page_id="browserHistory",
        file_path=str(path),
        file_name=file_name or path.name,
        content_type=content_type,
        chunk_size=chunk_size,
    )


def _run(job, cancel_flag=None):
    events = []
    orchestrator = ParsingOrchestrator(job, events.append, cancel_flag)
    return orchestrator, events


def test_resolve_kind_by_extension_and_content_type():
    assert resolve_kind("takeout.ZIP") == RecordKind.ARCHIVE_IMPORT
    assert resolve_kind("history.json") == RecordKind.SINGLE_DOCUMENT_IMPORT
    assert resolve_kind("blob", "application/zip") == RecordKind.ARCHIVE_IMPORT
    assert resolve_kind("blob", "application/json; charset=utf-8") == RecordKind.SINGLE_DOCUMENT_IMPORT
    with pytest.raises(ParseError):
        resolve_kind("notes.txt", "text/plain")


def test_single_document_import(write_file):
    path = write_file("history.json", BROWSER_HISTORY)
    orchestrator, events = _run(_job(path))

    record = orchestrator.run()

    assert orchestrator.state == JobState.COMPLETE
    assert record.kind == RecordKind.SINGLE_DOCUMENT_IMPORT
    assert record.payload == BROWSER_HISTORY["Browser History"]
    assert record.metadata.total_records == 2
    assert record.file_name == "history.json"
    assert record.byte_size == path.stat().st_size
    assert record.id.startswith("history.json-")
    assert all(event.status == ImportStatus.PARSING for event in events)


def test_document_without_arrays_counts_as_one(write_file):
    doc = {"a": {"b": {"c": 5}}}
    orchestrator, _ = _run(_job(write_file("profile.json", doc)))
    record = orchestrator.run()
    assert record.payload == doc
    assert record.metadata.total_records == 1


def test_progress_is_chunked_and_non_decreasing(write_file):
    path = write_file("big.json", [{"n": i} for i in range(2500)])
    orchestrator, events = _run(_job(path, chunk_size=1000))

    orchestrator.run()

    assert [round(event.progress) for event in events] == [0, 40, 80, 100]
    assert [event.records_processed for event in events] == [0, 1000, 2000, 2500]
    assert all(event.total_size == path.stat().st_size for event in events)


def test_each_import_gets_a_new_id(write_file):
    path = write_file("history.json", BROWSER_HISTORY)
    first = ParsingOrchestrator(_job(path), lambda event: None).run()
    second = ParsingOrchestrator(_job(path), lambda event: None).run()
    assert first.id != second.id


def test_content_type_overrides_extension(write_file):
    path = write_file("export.bin", json.dumps([1, 2, 3]))
    orchestrator, _ = _run(_job(path, content_type="application/json"))
    assert orchestrator.run().metadata.total_records == 3


def test_unsupported_type_fails_before_reading(tmp_path):
    orchestrator, events = _run(_job(tmp_path / "missing.txt"))
    with pytest.raises(ParseError, match="Unsupported file type"):
        orchestrator.run()
    assert orchestrator.state == JobState.IDLE
    assert events == []


def test_malformed_json_is_fatal(write_file):
    orchestrator, _ = _run(_job(write_file("broken.json", '{"a": [1, 2')))
    with pytest.raises(ParseError):
        orchestrator.run()
    assert orchestrator.state == JobState.ERROR


def test_invalid_archive_is_fatal(write_file):
    orchestrator, _ = _run(_job(write_file("takeout.zip", b"definitely not a zip")))
    with pytest.raises(DecodeError):
        orchestrator.run()
    assert orchestrator.state == JobState.ERROR


def test_archive_import_with_corrupt_entry(write_file, caplog):
    data = build_zip(
        {
            "Takeout/Chrome/History.json": BROWSER_HISTORY,
            "Takeout/Chrome/Broken.json": '[{"corrupt": 1}]',
            "Takeout/YouTube/watch-history.json": [{"titleUrl": "https://y.com", "time": "t"}],
        },
        compression=zipfile.ZIP_STORED,
    )
    data = corrupt_entry(data, b'[{"corrupt": 1}]', b'[{"corrupt": 2}]')
    orchestrator, events = _run(_job(write_file("takeout.zip", data)))

    record = orchestrator.run()

    assert orchestrator.state == JobState.COMPLETE
    assert record.kind == RecordKind.ARCHIVE_IMPORT
    assert sorted(record.payload) == [
        "Takeout/Chrome/History.json",
        "Takeout/YouTube/watch-history.json",
    ]
    assert record.payload["Takeout/Chrome/History.json"] == BROWSER_HISTORY
    assert record.metadata.total_records == 3
    assert record.metadata.skipped_entries == ["Takeout/Chrome/Broken.json"]
    assert "Takeout/Chrome/Broken.json" in caplog.text
    percents = [event.progress for event in events]
    assert percents == sorted(percents)


def test_archive_skips_non_json_and_unparseable_entries(write_file, caplog):
    data = build_zip(
        {
            "a.json": [1, 2],
            "photo.jpg": b"\xff\xd8\xff",
            "b.json": "{not json",
            "c.json": {"name": "only one"},
        }
    )
    orchestrator, _ = _run(_job(write_file("takeout.zip", data)))

    record = orchestrator.run()

    assert list(record.payload) == ["a.json", "c.json"]
    assert record.metadata.total_records == 3
    assert record.metadata.skipped_entries == ["photo.jpg", "b.json"]
    assert record.metadata.structure_outline[:4] == ["a.json", "photo.jpg", "b.json", "c.json"]
    assert "a.json:[2]" in record.metadata.structure_outline
    assert "c.json:name" in record.metadata.structure_outline
    assert record.metadata.field_type_summary == {"a.json": "array[2]", "c.json": "object"}
    assert "photo.jpg" in caplog.text


def test_empty_archive_has_no_records(write_file):
    orchestrator, _ = _run(_job(write_file("empty.zip", build_zip({}))))
    record = orchestrator.run()
    assert record.payload == {}
    assert record.metadata.total_records == 0


def test_cancellation_mid_document(write_file):
    path = write_file("big.json", [{"url": f"http://x/{i}"} for i in range(10_000)])
    cancel = threading.Event()
    events = []

    def emit(event):
        events.append(event)
        if event.progress >= 20:
            cancel.set()

    orchestrator = ParsingOrchestrator(_job(path, chunk_size=1000), emit, cancel)

    with pytest.raises(ImportCancelled):
        orchestrator.run()

    assert orchestrator.state == JobState.CANCELLED
    assert events[-1].progress == 20
    assert len(events) == 3


def test_cancellation_between_archive_entries(write_file):
    data = build_zip({f"{i}.json": [i] for i in range(5)})
    cancel = threading.Event()
    events = []

    def emit(event):
        events.append(event)
        if event.progress > 0:
            cancel.set()

    orchestrator = ParsingOrchestrator(_job(write_file("takeout.zip", data)), emit, cancel)

    with pytest.raises(ImportCancelled):
        orchestrator.run()

    assert orchestrator.state == JobState.CANCELLED
    assert [event.progress for event in events] == [0, 20]


def test_cancel_before_start_reports_nothing_after_read(write_file):
    cancel = threading.Event()
    cancel.set()
    orchestrator, events = _run(_job(write_file("history.json", BROWSER_HISTORY)), cancel)
    with pytest.raises(ImportCancelled):
        orchestrator.run()
    assert [event.progress for event in events] == [0]


def test_empty_container_array_keeps_count_floor(write_file):
    doc = {"Browser History": [], "profile": {"name": "x"}}
    orchestrator, _ = _run(_job(write_file("history.json", doc)))

    record = orchestrator.run()

    assert record.payload == []
    assert record.metadata.total_records == 1


def test_archive_entry_with_empty_container_array_counts_one(write_file):
    data = build_zip({"History.json": {"Browser History": [], "profile": {"name": "x"}}})
    orchestrator, _ = _run(_job(write_file("takeout.zip", data)))
    assert orchestrator.run().metadata.total_records == 1


def test_non_json_entries_are_never_decompressed(write_file, monkeypatch):
    data = build_zip({"a.json": [1], "video.mp4": b"\x00" * 4096, "b.json": [2]})
    read_names = []
    original_read = ArchiveDecoder.read

    def recording_read(self, name):
        read_names.append(name)
        return original_read(self, name)

    monkeypatch.setattr(ArchiveDecoder, "read", recording_read)
    orchestrator, _ = _run(_job(write_file("takeout.zip", data)))

    record = orchestrator.run()

    assert read_names == ["a.json", "b.json"]
    assert record.metadata.skipped_entries == ["video.mp4"]
