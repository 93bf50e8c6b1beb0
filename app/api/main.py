# api/main.py
from __future__ import annotations
import os
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import requests
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from api.models import JobRequest, OrchestratorStatus, SaveRequest, SavedItem
from artifacts.download import artifact_filename, fetch_artifact
from storage.jsonbin import JsonBin
from worker.client import JobClient
from worker.errors import JobError, ValidationError
from worker.orchestrator import JobOrchestrator

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

# --- ENV ---
PREDICTIONS_API_URL = os.environ.get("PREDICTIONS_API_URL", "http://localhost:3000/api")
PREDICTIONS_API_TOKEN = os.environ.get("PREDICTIONS_API_TOKEN", "")
HTTP_TIMEOUT_SEC = float(os.environ.get("HTTP_TIMEOUT_SEC", "30"))
POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "2"))
POLL_MAX_FAILURES = int(os.environ.get("POLL_MAX_FAILURES", "3"))
JOB_TIMEOUT_SEC = float(os.environ.get("JOB_TIMEOUT_SEC", "300"))  # 0 disables
JSONBIN_API_KEY = os.environ.get("JSONBIN_API_KEY", "")
JSONBIN_SAVED_BIN_ID = os.environ.get("JSONBIN_SAVED_BIN_ID", "")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

router = APIRouter()

def _orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator

def _store(request: Request) -> JsonBin:
    return request.app.state.store

def _status(orch: JobOrchestrator) -> OrchestratorStatus:
    return OrchestratorStatus(phase=orch.phase, job_id=orch.job_id, state=orch.state)

@router.get("/health")
def health():
    return {"ok": True}

@router.post("/generate", response_model=OrchestratorStatus, status_code=202)
async def generate(body: JobRequest, orch: JobOrchestrator = Depends(_orchestrator)):
    try:
        orch.submit(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _status(orch)

@router.post("/cancel")
async def cancel(orch: JobOrchestrator = Depends(_orchestrator)):
    return {"cancelled": orch.cancel()}

@router.get("/state", response_model=OrchestratorStatus)
async def state(orch: JobOrchestrator = Depends(_orchestrator)):
    return _status(orch)

@router.get("/events")
async def events(orch: JobOrchestrator = Depends(_orchestrator)):
    stream = orch.subscribe()
    current = orch.state

    async def sse():
        try:
            if current is not None:
                yield f"data: {current.model_dump_json()}\n\n"
            async for snapshot in stream:
                yield f"data: {snapshot.model_dump_json()}\n\n"
        finally:
            stream.close()

    return StreamingResponse(sse(), media_type="text/event-stream")

# --- saved items / gallery ---

@router.post("/saved", response_model=SavedItem, status_code=201)
def save_item(body: SaveRequest, orch: JobOrchestrator = Depends(_orchestrator), store: JsonBin = Depends(_store)):
    outputs = body.outputs
    if outputs is None:
        # default to the artifacts of the last finished job for the same prompt
        last = orch.last_result
        outputs = orch.artifact_urls() if last and last.request.prompt == body.prompt else []

    item = SavedItem(
        id=str(uuid.uuid4()),
        prompt=body.prompt,
        settings=body.settings,
        notes=body.notes,
        tags=body.tags,
        outputs=outputs,
        created_at=utc_now_iso(),
    )
    try:
        store.put_saved(item.id, item.model_dump())
    except requests.RequestException as e:
        logger.warning("Saving item failed: %s", e)
        raise HTTPException(status_code=502, detail="Saved-item store unavailable")
    return item

@router.get("/saved", response_model=List[SavedItem])
def list_saved(store: JsonBin = Depends(_store)):
    try:
        return [SavedItem(**v) for v in store.list_saved()]
    except requests.RequestException as e:
        logger.warning("Listing saved items failed: %s", e)
        raise HTTPException(status_code=502, detail="Saved-item store unavailable")

@router.get("/saved/{item_id}", response_model=SavedItem)
def get_saved(item_id: str, store: JsonBin = Depends(_store)):
    item = store.get_saved(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Saved item not found")
    return SavedItem(**item)

@router.delete("/saved/{item_id}", status_code=204)
def delete_saved(item_id: str, store: JsonBin = Depends(_store)):
    if not store.delete_saved(item_id):
        raise HTTPException(status_code=404, detail="Saved item not found")
    return Response(status_code=204)

# --- download ---

@router.get("/download/{index}")
def download(index: int, orch: JobOrchestrator = Depends(_orchestrator)):
    urls = orch.artifact_urls()
    if not 0 <= index < len(urls):
        raise HTTPException(status_code=404, detail="No such artifact (job not succeeded?)")

    fmt = orch.last_result.request.settings.output_format
    try:
        content, media_type = fetch_artifact(urls[index], output_format=fmt)
    except JobError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact_filename(fmt)}"'},
    )

def create_app(orchestrator: Optional[JobOrchestrator] = None, store: Optional[JsonBin] = None) -> FastAPI:
    if orchestrator is None:
        client = JobClient(PREDICTIONS_API_URL, PREDICTIONS_API_TOKEN, timeout=HTTP_TIMEOUT_SEC)
        orchestrator = JobOrchestrator(
            client,
            poll_interval=POLL_INTERVAL_SEC,
            max_poll_failures=POLL_MAX_FAILURES,
            job_timeout=JOB_TIMEOUT_SEC or None,
        )
    if store is None:
        store = JsonBin(JSONBIN_API_KEY, JSONBIN_SAVED_BIN_ID)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.orchestrator.aclose()

    app = FastAPI(title="Image Generator API", version="1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.store = store
    app.include_router(router)
    return app

app = create_app()
