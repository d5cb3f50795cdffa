from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.config import Settings, get_settings
from common.logging_config import configure_logging
from common.projects import ProjectStore
from common.storage import UPLOAD_PREFIX, make_blob_store
from worker.worker import WorkerPool

LOGGER = structlog.get_logger(__name__)

READ_CHUNK = 1024 * 1024


async def _read_limited(file: UploadFile, limit: int) -> bytes:
    chunks = []
    total = 0
    while True:
        chunk = await file.read(READ_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if total > limit:
            raise HTTPException(status_code=413, detail="File too large")
        chunks.append(chunk)
    return b"".join(chunks)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)
    store = ProjectStore(
        make_blob_store(settings),
        max_attempts=settings.max_attempts,
        lease_seconds=settings.lease_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = None
        if settings.embedded_workers > 0:
            pool = WorkerPool(store, settings, concurrency=settings.embedded_workers)
            pool.start()
        yield
        if pool:
            pool.stop()

    app = FastAPI(title="Studio Upload Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Errors go out as {"error": "..."}
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        # A "file" field that is not a file part means no file was uploaded.
        if any(tuple(err.get("loc", ()))[-1:] == ("file",) for err in exc.errors()):
            return JSONResponse(status_code=400, content={"error": "No file uploaded"})
        return JSONResponse(status_code=422, content={"error": "Invalid request"})

    # ---------- API endpoints ----------

    @app.post("/api/upload")
    async def upload(file: Optional[UploadFile] = File(None)):
        if file is None or not file.filename:
            raise HTTPException(status_code=400, detail="No file uploaded")

        content = await _read_limited(file, settings.max_upload_bytes)
        try:
            project = await run_in_threadpool(store.create, file.filename, content)
        except Exception:
            LOGGER.exception("upload_error", filename=file.filename)
            raise HTTPException(status_code=500, detail="Upload failed")
        return {"projectId": project.id}

    @app.get("/api/projects/{project_id}")
    def read_project(project_id: str):
        project = store.get(project_id)
        if not project:
            raise HTTPException(status_code=404, detail="Project not found")
        return project.public()

    @app.get("/api/health")
    def health():
        return {"ok": True}

    # ---------- Downloads (uploads and rendered outputs) ----------

    @app.get("/downloads/{name:path}")
    def download(name: str):
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise HTTPException(status_code=404, detail="File not found")
        try:
            path = store.blobs.fetch(f"{UPLOAD_PREFIX}{name}")
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(path, background=BackgroundTask(store.blobs.release, path))

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
