import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile

from .config import settings
from .errors import ParseError
from .extractor import flatten_payload
from .models import ImportOutcome
from .orchestrator import resolve_kind
from .storage import MetadataStore, create_payload_store
from .store import PageDataStore
from .worker import ImportSession

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024

store = PageDataStore(
    metadata=MetadataStore(settings.metadata_path),
    payloads=create_payload_store(settings.payload_backend, settings.payload_path),
    page_ids=settings.known_page_ids,
)
session = ImportSession(store)
_background_tasks: set = set()


def get_store() -> PageDataStore:
    return store


def get_session() -> ImportSession:
    return session


def _schedule(coro) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _schedule(store.initialize_from_db())
    yield


app = FastAPI(
    title="Takeout Explorer",
    version="0.1.0",
    description="Local ingestion service for personal-data export archives.",
    lifespan=lifespan,
)


async def _stage_upload(file: UploadFile) -> str:
    os.makedirs(settings.upload_dir, exist_ok=True)
    path = os.path.join(settings.upload_dir, f"{uuid.uuid4().hex}-{os.path.basename(file.filename)}")
    written = 0
    try:
        with open(path, "wb") as handle:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > settings.max_upload_bytes:
                    raise HTTPException(status_code=413, detail="File too large")
                handle.write(chunk)
    except Exception:
        os.remove(path)
        raise
    return path


async def _finish_import(import_session: ImportSession, path: str) -> ImportOutcome:
    try:
        return await import_session.wait()
    finally:
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning("Could not remove staged upload %s: %s", path, exc)


def _outcome_view(outcome: ImportOutcome) -> dict:
    return outcome.model_dump(mode="json", exclude={"record": {"payload"}})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.post("/imports/{page_id}")
async def start_import(
    page_id: str,
    file: UploadFile = File(...),
    async_mode: bool = False,
    import_session: ImportSession = Depends(get_session),
) -> dict:
    file_name = file.filename or ""
    try:
        resolve_kind(file_name, file.content_type)
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if import_session.active:
        raise HTTPException(status_code=409, detail="An import is already running")

    path = await _stage_upload(file)
    try:
        import_session.start(path, page_id, file_name=file_name, content_type=file.content_type)
    except RuntimeError as exc:
        os.remove(path)
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    if async_mode:
        _schedule(_finish_import(import_session, path))
        return {"status": "scheduled"}
    outcome = await _finish_import(import_session, path)
    return {"status": outcome.status.value, "outcome": _outcome_view(outcome)}


@app.get("/imports/progress")
async def import_progress(import_session: ImportSession = Depends(get_session)) -> dict:
    progress = import_session.latest_progress
    return {"progress": progress.model_dump(mode="json") if progress else None}


@app.post("/imports/cancel")
async def cancel_import(import_session: ImportSession = Depends(get_session)) -> dict:
    if not import_session.active:
        return {"status": "idle"}
    import_session.cancel()
    return {"status": "cancelling"}


@app.get("/pages/{page_id}")
async def page_data(page_id: str, page_store: PageDataStore = Depends(get_store)) -> dict:
    record = page_store.get_page_data(page_id)
    if record is None:
        return {"page_id": page_id, "hydrated": False, "record": None}
    return {
        "page_id": page_id,
        "hydrated": record.is_hydrated,
        "record": record.model_dump(mode="json", exclude={"payload"}),
    }


@app.get("/pages/{page_id}/records")
async def page_records(
    page_id: str,
    offset: int = 0,
    limit: int = 50,
    search: Optional[str] = None,
    page_store: PageDataStore = Depends(get_store),
) -> dict:
    record = page_store.get_page_data(page_id)
    if record is not None and not record.is_hydrated:
        record = await page_store.load_page_data_from_db(page_id)
    if record is None or not record.is_hydrated:
        raise HTTPException(status_code=404, detail=f"No data loaded for page {page_id}")

    items = flatten_payload(record)
    if search:
        needle = search.lower()
        items = [item for item in items if needle in json.dumps(item).lower()]
    offset = max(offset, 0)
    return {
        "page_id": page_id,
        "total": len(items),
        "items": items[offset : offset + max(limit, 0)],
    }


@app.delete("/pages/{page_id}")
async def clear_page(page_id: str, page_store: PageDataStore = Depends(get_store)) -> dict:
    if not await page_store.clear_page_data(page_id):
        raise HTTPException(status_code=500, detail=f"Failed to clear page {page_id}")
    return {"cleared": page_id}


@app.delete("/pages")
async def clear_all(page_store: PageDataStore = Depends(get_store)) -> dict:
    if not await page_store.clear_all_data():
        raise HTTPException(status_code=500, detail="Failed to clear stored data")
    return {"cleared": "all"}


@app.get("/storage/info")
async def storage_info(page_store: PageDataStore = Depends(get_store)) -> dict:
    return {
        "pages": page_store.get_all_stored_pages(),
        **page_store.get_storage_info(),
        "metrics": page_store.payloads.metrics(),
    }
