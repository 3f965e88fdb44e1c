"""Single import job: read, decode, extract and count one uploaded file."""

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .archive import ArchiveDecoder
from .errors import ImportCancelled, ParseError
from .extractor import extract_records
from .metadata import build_metadata, build_structure_outline, count_extracted, infer_field_types
from .models import (
    ImportJob,
    ImportStatus,
    JobState,
    NormalizedRecord,
    ParseProgress,
    RecordKind,
    RecordMetadata,
)

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPES = {"application/zip", "application/x-zip-compressed"}
JSON_CONTENT_TYPES = {"application/json"}


class CancelFlag(Protocol):
    def is_set(self) -> bool:
        ...


def resolve_kind(file_name: str, content_type: Optional[str] = None) -> RecordKind:
    """Pick the import path from the content type, falling back to the extension."""
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type in ARCHIVE_CONTENT_TYPES:
        return RecordKind.ARCHIVE_IMPORT
    if media_type in JSON_CONTENT_TYPES:
        return RecordKind.SINGLE_DOCUMENT_IMPORT
    lowered = file_name.lower()
    if lowered.endswith(".zip"):
        return RecordKind.ARCHIVE_IMPORT
    if lowered.endswith(".json"):
        return RecordKind.SINGLE_DOCUMENT_IMPORT
    raise ParseError(f"Unsupported file type: {file_name}")


def make_record_id(file_name: str) -> str:
    return f"{file_name}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def parse_json(content: bytes, source: str) -> Any:
    try:
        return json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as exc:
        raise ParseError(f"Failed to parse JSON in {source}: {exc}") from exc


class ParsingOrchestrator:
    """Drive one import job through its states, reporting coarse progress.

    ``emit`` receives ``ParseProgress`` events with non-decreasing
    percentages. ``cancel_flag`` is polled at chunk and archive-entry
    boundaries; once it is seen set, no further progress is emitted and
    ``ImportCancelled`` is raised.
    """

    def __init__(
        self,
        job: ImportJob,
        emit: Callable[[ParseProgress], None],
        cancel_flag: Optional[CancelFlag] = None,
    ):
        self.job = job
        self._emit = emit
        self._cancel_flag = cancel_flag
        self.state = JobState.IDLE
        self.byte_size = 0
        self._percent = 0.0
        self._records_processed = 0
        self._cancelled = False

    def run(self) -> NormalizedRecord:
        kind = resolve_kind(self.job.file_name, self.job.content_type)
        try:
            if kind == RecordKind.ARCHIVE_IMPORT:
                payload, metadata = self._parse_archive(self._read())
            else:
                payload, metadata = self._parse_document(self._read())
        except ImportCancelled:
            self.state = JobState.CANCELLED
            raise
        except Exception:
            self.state = JobState.ERROR
            raise

        record = NormalizedRecord(
            id=make_record_id(self.job.file_name),
            kind=kind,
            file_name=self.job.file_name,
            byte_size=self.byte_size,
            payload=payload,
            metadata=metadata,
        )
        self.state = JobState.COMPLETE
        return record

    def _read(self) -> bytes:
        self.state = JobState.READING
        try:
            data = Path(self.job.file_path).read_bytes()
        except OSError as exc:
            raise ParseError(f"Failed to read file {self.job.file_name}: {exc}") from exc
        self.byte_size = len(data)
        self._report(0.0)
        self._check_cancel()
        return data

    def _parse_document(self, data: bytes) -> Tuple[Any, RecordMetadata]:
        self.state = JobState.EXTRACTING
        document = parse_json(data, self.job.file_name)
        del data
        self._check_cancel()
        extracted = extract_records(
            document,
            min_length=self.job.deep_search_min_length,
            sample_size=self.job.sample_size,
        )

        # Counting a list is len(); the chunks only pace progress and cancel checks.
        self.state = JobState.COUNTING
        if isinstance(extracted, list) and extracted:
            total = len(extracted)
            chunk_size = max(1, self.job.chunk_size)
            for start in range(0, total, chunk_size):
                self._check_cancel()
                processed = min(start + chunk_size, total)
                self._records_processed = processed
                self._report(processed / total * 100)
        self._check_cancel()
        return extracted, build_metadata(document, extracted)

    def _parse_archive(self, data: bytes) -> Tuple[Dict[str, Any], RecordMetadata]:
        self.state = JobState.DECODING
        payload: Dict[str, Any] = {}
        outlines: List[str] = []
        skipped: List[str] = []
        total_records = 0

        with ArchiveDecoder(data) as decoder:
            del data
            names = list(decoder.names)
            for index, name in enumerate(names, start=1):
                self._check_cancel()
                if not name.lower().endswith(".json"):
                    logger.warning("Skipping non-JSON archive entry %s", name)
                    skipped.append(name)
                    self._report(index / len(names) * 100)
                    continue

                self.state = JobState.DECODING
                content = decoder.read(name)
                if content is not None:
                    self.state = JobState.EXTRACTING
                    try:
                        document = parse_json(content, name)
                    except ParseError as exc:
                        logger.warning("Skipping unparseable archive entry %s: %s", name, exc)
                        skipped.append(name)
                    else:
                        extracted = extract_records(
                            document,
                            min_length=self.job.deep_search_min_length,
                            sample_size=self.job.sample_size,
                        )
                        self.state = JobState.COUNTING
                        payload[name] = document
                        total_records += count_extracted(document, extracted)
                        outlines.extend(f"{name}:{path}" for path in build_structure_outline(document))
                        self._records_processed = total_records
                self._report(index / len(names) * 100)
            self._check_cancel()

            order = {name: index for index, name in enumerate(names)}
            skipped = sorted(skipped + decoder.failed, key=order.__getitem__)

        metadata = RecordMetadata(
            total_records=total_records,
            structure_outline=names + outlines,
            field_type_summary=infer_field_types(payload),
            skipped_entries=skipped,
        )
        return payload, metadata

    def _check_cancel(self) -> None:
        if self._cancel_flag is not None and self._cancel_flag.is_set():
            self._cancelled = True
            raise ImportCancelled(f"Import of {self.job.file_name} was cancelled")

    def _report(self, percent: float) -> None:
        if self._cancelled:
            return
        self._percent = min(100.0, max(self._percent, percent))
        self._emit(
            ParseProgress(
                file_name=self.job.file_name,
                progress=self._percent,
                status=ImportStatus.PARSING,
                records_processed=self._records_processed,
                total_size=self.byte_size,
            )
        )
