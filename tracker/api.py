"""FastAPI trigger and status server for Chapterbell.

Exposes:
- GET  /health
- POST /runs     (body: {"title_ids": [...]} optional; omitted = full scan)
- GET  /jobs     (queue counts, optionally a list filtered by status)
- GET  /events   (dead letters and permanent delivery failures)

`run_server` also starts a background Worker so queued runs get processed.
"""

from __future__ import annotations

import asyncio
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from .config import ChapterbellConfig, get_config
from .database import get_session
from .errors import FatalPipelineError
from .logging_config import get_logger
from .models import JobStatus
from .orchestrator import enqueue_checks
from .queue import JobQueue
from .repository import Repository
from .worker import Worker

logger = get_logger(__name__)


class RunRequest(BaseModel):
    title_ids: Optional[List[int]] = None


def _start_worker(app: FastAPI) -> None:
    worker: Optional[Worker] = getattr(app.state, "worker", None)
    if worker is None:
        return
    thread = threading.Thread(target=worker.run_forever, name="worker", daemon=True)
    thread.start()
    app.state.worker_thread = thread


def _stop_worker(app: FastAPI) -> None:
    worker: Optional[Worker] = getattr(app.state, "worker", None)
    thread: Optional[threading.Thread] = getattr(app.state, "worker_thread", None)
    if worker is None:
        return
    worker.stop()
    if thread is not None:
        thread.join(timeout=30)
    worker.close()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    async def _print_startup_messages():
        await asyncio.sleep(0.1)
        logger.info(f"Started server process [{os.getpid()}]")
        url = getattr(app.state, "public_url", None)
        if url:
            logger.info(f"API available at: {url}")
        if getattr(app.state, "worker", None) is not None:
            logger.info("Background worker running")

    _start_worker(app)
    asyncio.create_task(_print_startup_messages())
    try:
        yield
    finally:
        _stop_worker(app)


app = FastAPI(title="Chapterbell", lifespan=_lifespan)


def _config() -> ChapterbellConfig:
    try:
        return get_config()
    except FileNotFoundError as exc:
        raise FatalPipelineError(str(exc)) from exc


@app.exception_handler(FatalPipelineError)
async def _fatal_handler(request: Request, exc: FatalPipelineError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/health")
def health() -> Dict[str, Any]:
    worker = getattr(app.state, "worker", None)
    return {"status": "ok", "worker": worker is not None and not worker.stopped}


@app.post("/runs", status_code=202)
def trigger_run(
    body: Optional[RunRequest] = None,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Queue a run. Processing happens in the background worker."""
    title_ids = body.title_ids if body else None
    return enqueue_checks(session, _config(), title_ids)


@app.get("/jobs")
def list_jobs(
    status: Optional[JobStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    queue = JobQueue(session, _config().retry)
    body: Dict[str, Any] = {"counts": queue.counts()}
    if status is not None:
        body["jobs"] = [
            {
                "id": job.id,
                "job_type": job.job_type.value,
                "status": job.status.value,
                "attempt": job.attempt,
                "next_eligible_at": job.next_eligible_at.isoformat(),
                "last_error": job.last_error,
                "payload": job.payload,
            }
            for job in queue.list_jobs(status, limit)
        ]
    return body


@app.get("/events")
def list_events(
    kind: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    return [
        {
            "id": event.id,
            "kind": event.kind,
            "job_id": event.job_id,
            "title_id": event.title_id,
            "user_id": event.user_id,
            "channel": event.channel,
            "detail": event.detail,
            "created_at": event.created_at.isoformat(),
        }
        for event in Repository(session).list_events(kind, limit)
    ]


def run_server(
    config: ChapterbellConfig,
    host: Optional[str] = None,
    port: Optional[int] = None,
    worker: Optional[Worker] = None,
) -> None:
    """Run the FastAPI app with Uvicorn, plus `worker` in a background thread."""
    import uvicorn

    effective_host = host or config.server.host
    effective_port = port or config.server.port
    app.state.public_url = f"http://{effective_host}:{effective_port}/"
    app.state.worker = worker

    uvicorn.run(
        app,
        host=effective_host,
        port=effective_port,
        log_level="info",
        log_config=None,
    )
