from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from thumbforge.errors import NotFoundError, ValidationError
from thumbforge.models import ApiConfig
from thumbforge.queue.events import Subscription
from thumbforge.queue.worker import ThumbnailWorkerPool
from thumbforge.service import ThumbnailService

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Relay-facing side of one websocket.

    send() is called from the event poller thread; messages are handed to
    the event loop and written by pump(), so a slow client never blocks the
    relay.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue()

    def send(self, message: Dict[str, Any]) -> None:
        self.post({"type": "jobUpdate", "job": message})

    def post(self, frame: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("websocket closed")
        self.loop.call_soon_threadsafe(self._outbox.put_nowait, frame)

    async def pump(self, websocket: WebSocket) -> None:
        try:
            while True:
                frame = await self._outbox.get()
                await websocket.send_json(frame)
        except Exception as e:
            logger.debug("Websocket writer stopped: %s", e)
        finally:
            self.closed = True


# Read size for streaming uploads to disk
UPLOAD_CHUNK_BYTES = 1024 * 1024


def save_upload(upload: UploadFile, destination: Path, max_bytes: int) -> Optional[int]:
    """Stream an upload to destination; None as soon as it exceeds max_bytes."""
    written = 0
    with open(destination, "wb") as buffer:
        while True:
            chunk = upload.file.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                return written
            written += len(chunk)
            if written > max_bytes:
                return None
            buffer.write(chunk)


def _job_response(job) -> dict:
    return job.to_message()


def create_app(
    service: ThumbnailService,
    upload_dir: Optional[str] = None,
    pool: Optional[ThumbnailWorkerPool] = None,
    api_config: Optional[ApiConfig] = None,
) -> FastAPI:
    """Build the HTTP/WebSocket adapter around an already wired service.

    The lifespan starts the queue-event poller (and the embedded worker pool,
    when one is given) and stops them on shutdown.
    """
    api_config = api_config or ApiConfig()
    upload_root = Path(upload_dir or "data/uploads")
    upload_root.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.start()
        if pool is not None:
            pool.start()
        yield
        if pool is not None:
            await asyncio.to_thread(pool.shutdown, True, 30)
        service.stop()

    app = FastAPI(title="thumbforge", lifespan=lifespan)
    app.state.service = service

    if api_config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=api_config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    # --- API ENDPOINTS ---

    @app.get("/health")
    def health_check():
        return {"status": "ok", "queue": service.queue.counts()}

    @app.get("/owners/{owner_id}/jobs")
    def list_jobs(owner_id: str):
        return [_job_response(job) for job in service.list_by_owner(owner_id)]

    @app.post("/owners/{owner_id}/jobs")
    def upload_files(owner_id: str, files: List[UploadFile] = File(...)):
        if len(files) > api_config.max_files_per_upload:
            raise HTTPException(
                status_code=400,
                detail=f"Too many files. Maximum is {api_config.max_files_per_upload} files.",
            )

        # Every file is stored and checked before any job exists
        staged: List[Path] = []
        accepted = []
        try:
            for upload in files:
                original_name = upload.filename or "upload"
                ext = os.path.splitext(original_name)[1]
                stored = upload_root / f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}{ext}"
                staged.append(stored)

                size = save_upload(upload, stored, api_config.max_upload_bytes)
                if size is None:
                    raise HTTPException(status_code=400, detail=f"File too large: {original_name}")

                mime_type = upload.content_type or "application/octet-stream"
                service.check_media(mime_type, original_name)
                accepted.append((stored, original_name, mime_type, size))
        except Exception:
            for path in staged:
                path.unlink(missing_ok=True)
            raise

        jobs = [
            _job_response(service.submit(owner_id, str(stored), original_name, mime_type, size))
            for stored, original_name, mime_type, size in accepted
        ]
        return {"message": f"{len(jobs)} file(s) uploaded successfully", "jobs": jobs}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        return _job_response(service.get_job(job_id))

    @app.get("/jobs/{job_id}/thumbnail")
    def download_thumbnail(job_id: str):
        job = service.get_job(job_id)
        path = service.resolve_thumbnail_path(job)
        return FileResponse(path, media_type="image/jpeg", filename=path.name)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        connection = WebSocketConnection(asyncio.get_running_loop())
        writer = asyncio.create_task(connection.pump(websocket))
        subscriptions: List[Subscription] = []

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    message = None

                if not isinstance(message, dict):
                    message = {}
                owner_id = message.get("ownerId")
                if message.get("type") == "join" and owner_id:
                    subscriptions.append(service.subscribe(str(owner_id), connection))
                    connection.post({"type": "joined", "ownerId": str(owner_id)})
                    logger.debug("Websocket joined owner %s", owner_id)
                else:
                    connection.post({"type": "error", "error": "expected a join message with ownerId"})
        except WebSocketDisconnect:
            pass
        finally:
            connection.closed = True
            for subscription in subscriptions:
                subscription.cancel()
            writer.cancel()

    return app
