from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .heuristics import HEURISTICS_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordKind(str, Enum):
    ARCHIVE_IMPORT = "archive_import"
    SINGLE_DOCUMENT_IMPORT = "single_document_import"


class ImportStatus(str, Enum):
    PARSING = "parsing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class JobState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    DECODING = "decoding"
    EXTRACTING = "extracting"
    COUNTING = "counting"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class PayloadElsewhere(BaseModel):
    """Marks a record whose payload lives only in the bulk store."""

    model_config = ConfigDict(frozen=True)

    storage_key: str


class RecordMetadata(BaseModel):
    total_records: int = Field(ge=0)
    structure_outline: List[str] = Field(default_factory=list)
    field_type_summary: Dict[str, str] = Field(default_factory=dict)
    skipped_entries: List[str] = Field(default_factory=list)
    heuristics_version: int = HEURISTICS_VERSION


class NormalizedRecord(BaseModel):
    """Parsed and normalized import handed to the page store."""

    id: str
    kind: RecordKind
    file_name: str
    byte_size: int = Field(ge=0)
    ingested_at: datetime = Field(default_factory=utcnow)
    payload: Any = None
    metadata: RecordMetadata

    @property
    def is_hydrated(self) -> bool:
        return not isinstance(self.payload, PayloadElsewhere)

    def without_payload(self, storage_key: str) -> "NormalizedRecord":
        return self.model_copy(update={"payload": PayloadElsewhere(storage_key=storage_key)})


class StoredEntry(BaseModel):
    """Physical row of the bulk payload store."""

    storage_key: str
    page_id: str
    record: NormalizedRecord
    created_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def key_for(page_id: str, record_id: str) -> str:
        return f"{page_id}-{record_id}"


class ParseProgress(BaseModel):
    file_name: str
    progress: float = Field(ge=0, le=100)
    status: ImportStatus
    records_processed: int = 0
    total_size: int = 0
    error: Optional[str] = None


class ImportJob(BaseModel):
    """Job descriptor sent to the worker process."""

    job_id: str
    page_id: str
    file_path: str
    file_name: str
    content_type: Optional[str] = None
    chunk_size: int = 1000
    sample_size: int = 5
    deep_search_min_length: int = 10
    log_level: str = "INFO"


class ImportOutcome(BaseModel):
    status: ImportStatus
    page_id: str
    progress: ParseProgress
    record: Optional[NormalizedRecord] = None
    error: Optional[str] = None
