from __future__ import annotations

import argparse
import base64
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.datastructures import UploadFile

from tacklebox.config import configure_logging, get_settings
from tacklebox.engine import JobEngine
from tacklebox.errors import NotFoundError, ValidationError
from tacklebox.models import (
    Job,
    JobCancelResponse,
    JobStatusResponse,
    JobSubmitResponse,
    ResultFileResponse,
)
from tacklebox.progress import ProgressChannel, Subscription
from tacklebox.store import create_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    store = create_store(settings.database_url)
    engine = JobEngine(store, ProgressChannel(queue_size=settings.event_queue_size), settings)
    app.state.engine = engine
    await engine.recover()
    logger.info("Tacklebox API started (%s)", settings.environment)
    yield
    await engine.aclose()
    await store.aclose()


app = FastAPI(title="Tacklebox", lifespan=lifespan)


def get_engine(request: Request) -> JobEngine:
    return request.app.state.engine


# -----------------------
# Error mapping
# -----------------------

@app.exception_handler(ValidationError)
async def _validation_error(_request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(NotFoundError)
async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# -----------------------
# Helpers
# -----------------------

async def _read_params(request: Request) -> Dict[str, Any]:
    """
    JSON bodies are passed through. Multipart forms become a flat dict; uploaded
    files are base64-encoded under their field name.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data") or content_type.startswith(
        "application/x-www-form-urlencoded"
    ):
        form = await request.form()
        params: Dict[str, Any] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                params[key] = base64.b64encode(await value.read()).decode("ascii")
            elif key.endswith("[]") or key in params:
                name = key[:-2] if key.endswith("[]") else key
                existing = params.get(name)
                if existing is None:
                    params[name] = [value]
                elif isinstance(existing, list):
                    existing.append(value)
                else:
                    params[name] = [existing, value]
            else:
                params[key] = _coerce_form_value(value)
        return params

    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Malformed JSON body: {e.msg}") from e
    if not isinstance(data, dict):
        raise ValidationError("Job parameters must be a JSON object.")
    return data


def _coerce_form_value(value: str) -> Any:
    # form fields carry JSON-encoded lists and booleans from the UI
    stripped = value.strip()
    if stripped[:1] in ("[", "{") or stripped in ("true", "false"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return value
    return value


def _file_responses(request: Request, job: Job, files) -> List[ResultFileResponse]:
    return [
        ResultFileResponse(
            name=f.name,
            media_type=f.media_type,
            size=f.size,
            url=str(request.url_for("job_file", job_id=job.id, name=f.name)),
        )
        for f in files
    ]


def _sse(event: str, data: Dict[str, Any], event_id: Any = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data)}")
    return "\n".join(lines) + "\n\n"


# -----------------------
# Endpoints
# -----------------------

@app.get("/")
def home() -> Dict[str, str]:
    return {"status": "ok", "message": "Tacklebox API running"}


@app.post("/api/jobs/{job_type}", response_model=JobSubmitResponse, status_code=201)
async def create_job(job_type: str, request: Request, engine: JobEngine = Depends(get_engine)) -> JobSubmitResponse:
    """Submit a job and return its id immediately; follow it via /updates or /status."""
    params = await _read_params(request)
    job = await engine.create_job(job_type, params)
    return JobSubmitResponse(job_id=job.id, status=job.status)


@app.get("/api/jobs/{job_id}/status", response_model=JobStatusResponse)
async def job_status(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)) -> JobStatusResponse:
    job = await engine.get_job_status(job_id)
    files = await engine.get_job_files(job_id)
    return JobStatusResponse.from_job(job, _file_responses(request, job, files))


@app.get("/api/jobs/{job_id}/updates")
async def job_updates(job_id: str, engine: JobEngine = Depends(get_engine)) -> StreamingResponse:
    sub = await engine.watch_job(job_id)

    async def stream(sub: Subscription) -> AsyncIterator[str]:
        try:
            if sub.closed:
                job = await engine.get_job_status(job_id)
                yield _sse("status", {
                    "job_id": job.id,
                    "status": job.status.value,
                    "message": job.message,
                    "final": True,
                })
                return
            async for evt in sub:
                yield _sse("progress", evt.to_dict(), evt.sequence)
        finally:
            sub.close()

    return StreamingResponse(
        stream(sub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/jobs/{job_id}/files", response_model=List[ResultFileResponse])
async def job_files(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)) -> List[ResultFileResponse]:
    job = await engine.get_job_status(job_id)
    return _file_responses(request, job, await engine.get_job_files(job_id))


@app.get("/api/jobs/{job_id}/files/{name}", name="job_file")
async def job_file(job_id: str, name: str, engine: JobEngine = Depends(get_engine)) -> FileResponse:
    f = await engine.get_job_file(job_id, name)
    if f is None or not Path(f.path).is_file():
        raise HTTPException(status_code=404, detail="file not found")
    return FileResponse(f.path, media_type=f.media_type, filename=f.name)


@app.post("/api/jobs/{job_id}/cancel", response_model=JobCancelResponse, status_code=202)
async def job_cancel(job_id: str, engine: JobEngine = Depends(get_engine)) -> JobCancelResponse:
    before = await engine.get_job_status(job_id)
    job = await engine.cancel_job(job_id)
    return JobCancelResponse(job_id=job.id, status=job.status, cancelled=not before.status.is_terminal)


# -----------------------
# Entry point
# -----------------------

def serve(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the tacklebox API server.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    args = parser.parse_args(argv)
    uvicorn.run("tacklebox.main:app", host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(serve())
