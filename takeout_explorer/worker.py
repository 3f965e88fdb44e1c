"""Run import jobs in a separate process and relay their messages.

The worker and the controller share nothing but two channels: a queue of
``{"type": ..., "payload": ...}`` messages flowing back from the worker and an
event the controller sets to request cancellation.
"""

import asyncio
import logging
import multiprocessing
import os
import queue
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from .config import settings
from .errors import ImportCancelled, IngestError
from .models import ImportJob, ImportOutcome, ImportStatus, NormalizedRecord, ParseProgress
from .orchestrator import ParsingOrchestrator, resolve_kind
from .store import PageDataStore

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ParseProgress], None]


def run_job(job_data: dict, channel, cancel_event) -> None:
    """Process entry point: parse one file and post the terminal message."""
    job = ImportJob.model_validate(job_data)
    logging.basicConfig(level=job.log_level)

    def emit(progress: ParseProgress) -> None:
        channel.put({"type": "progress", "payload": progress})

    orchestrator = ParsingOrchestrator(job, emit, cancel_event)
    try:
        record = orchestrator.run()
    except ImportCancelled:
        channel.put({"type": "cancelled", "payload": None})
        return
    except IngestError as exc:
        channel.put({"type": "error", "payload": str(exc)})
        return
    except Exception as exc:
        logger.exception("Import job %s crashed", job.job_id)
        channel.put({"type": "error", "payload": f"Unexpected error: {exc}"})
        return
    channel.put({"type": "complete", "payload": record})


class ImportSession:
    """Controller side of an import: one worker process at a time.

    Progress listeners run on the executor thread that drains the worker
    channel; they should only record the event.
    """

    def __init__(
        self,
        store: PageDataStore,
        start_method: Optional[str] = None,
        poll_interval: Optional[float] = None,
    ):
        self.store = store
        self._ctx = multiprocessing.get_context(start_method or settings.worker_start_method)
        self._poll_interval = poll_interval or settings.worker_poll_interval
        self._listeners: List[ProgressListener] = []
        self._lock = threading.Lock()
        self._latest: Optional[ParseProgress] = None
        self._job: Optional[ImportJob] = None
        self._process = None
        self._channel = None
        self._cancel_event = None
        self._total_size = 0
        self._cancel_requested = False

    @property
    def active(self) -> bool:
        return self._job is not None

    @property
    def latest_progress(self) -> Optional[ParseProgress]:
        with self._lock:
            return self._latest

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, progress: ParseProgress) -> None:
        with self._lock:
            self._latest = progress
        for listener in list(self._listeners):
            listener(progress)

    def start(
        self,
        file_path: str,
        page_id: str,
        file_name: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> ImportJob:
        if self.active:
            raise RuntimeError("An import job is already running")
        file_name = file_name or Path(file_path).name
        resolve_kind(file_name, content_type)

        job = ImportJob(
            job_id=uuid.uuid4().hex,
            page_id=page_id,
            file_path=str(file_path),
            file_name=file_name,
            content_type=content_type,
            chunk_size=settings.chunk_size,
            sample_size=settings.sample_size,
            deep_search_min_length=settings.deep_search_min_length,
            log_level=settings.log_level,
        )
        try:
            self._total_size = os.path.getsize(file_path)
        except OSError:
            self._total_size = 0
        self._channel = self._ctx.Queue()
        self._cancel_event = self._ctx.Event()
        self._process = self._ctx.Process(
            target=run_job,
            args=(job.model_dump(), self._channel, self._cancel_event),
            daemon=True,
        )
        self._job = job
        self._cancel_requested = False
        self._publish(
            ParseProgress(
                file_name=file_name,
                progress=0,
                status=ImportStatus.PARSING,
                total_size=self._total_size,
            )
        )
        self._process.start()
        logger.info("Started import %s of %s for page %s", job.job_id, file_name, page_id)
        return job

    def cancel(self) -> None:
        if self._cancel_event is not None:
            self._cancel_requested = True
            self._cancel_event.set()

    def terminate(self) -> None:
        """Kill the worker; the pending ``wait`` then reports an error."""
        if self._process is not None and self._process.is_alive():
            self._process.terminate()

    def _drain(self) -> Tuple[str, Any]:
        while True:
            try:
                message = self._channel.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._process.is_alive():
                    continue
                try:
                    message = self._channel.get(timeout=self._poll_interval)
                except queue.Empty:
                    return "error", "Worker exited unexpectedly"
            if message["type"] == "progress":
                if not self._cancel_requested:
                    self._publish(message["payload"])
                continue
            return message["type"], message["payload"]

    async def wait(self) -> ImportOutcome:
        """Suspend until the worker finishes, then persist a successful result."""
        if self._job is None:
            raise RuntimeError("No import job has been started")
        job = self._job
        loop = asyncio.get_running_loop()
        try:
            kind, payload = await loop.run_in_executor(None, self._drain)
        finally:
            self._process.join(timeout=5)
            self._channel.close()
            self._job = None
            self._process = None

        last = self.latest_progress
        percent = last.progress if last is not None else 0.0
        processed = last.records_processed if last is not None else 0
        record: Optional[NormalizedRecord] = None
        error: Optional[str] = None

        if kind == "complete":
            record = payload
            if await self.store.set_page_data(job.page_id, record):
                status = ImportStatus.COMPLETE
                percent = 100.0
                processed = record.metadata.total_records
            else:
                status = ImportStatus.ERROR
                error = f"Failed to persist import of {job.file_name}"
                record = None
        elif kind == "cancelled":
            status = ImportStatus.CANCELLED
            logger.info("Import %s of %s was cancelled", job.job_id, job.file_name)
        else:
            status = ImportStatus.ERROR
            error = str(payload)
            logger.error("Import %s of %s failed: %s", job.job_id, job.file_name, error)

        final = ParseProgress(
            file_name=job.file_name,
            progress=percent,
            status=status,
            records_processed=processed,
            total_size=self._total_size,
            error=error,
        )
        self._publish(final)
        return ImportOutcome(
            status=status,
            page_id=job.page_id,
            progress=final,
            record=record,
            error=error,
        )
