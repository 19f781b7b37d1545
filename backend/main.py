import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from backend.app.config import Settings
from backend.app.context import AppContext, build_context
from backend.app.errors import (
    NotFoundError,
    PersistenceError,
    QueueUnavailableError,
    ValidationError,
)
from backend.app.jobs import get_job, list_gallery, submit_job
from backend.app.models import CreateJobResponse, JobOut

logger = logging.getLogger("dynwall-backend")


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


async def _read_upload(upload: Optional[UploadFile]):
    if upload is None:
        return None, None
    return upload.filename, await upload.read()


def create_app(ctx: Optional[AppContext] = None) -> FastAPI:
    if ctx is None:
        ctx = build_context(Settings.from_env())
    settings = ctx.settings

    app = FastAPI()
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_origin, "http://127.0.0.1:3000", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"error": "Wallpaper not found"}, status_code=404)

    @app.exception_handler(QueueUnavailableError)
    async def _queue_unavailable(request: Request, exc: QueueUnavailableError):
        logger.error("Queue unavailable: %s", exc)
        return JSONResponse({"error": "Job could not be queued."}, status_code=500)

    @app.exception_handler(PersistenceError)
    async def _persistence_error(request: Request, exc: PersistenceError):
        logger.error("Database error: %s", exc)
        return JSONResponse({"error": "Database error"}, status_code=500)

    @app.get("/healthz")
    def healthz(ctx: AppContext = Depends(get_context)):
        try:
            ctx.queue.ping()
            queue_status = "ok"
        except QueueUnavailableError as e:
            queue_status = f"error:{type(e.__cause__ or e).__name__}"
        return {
            "ok": True,
            "queue": queue_status,
            "storage": getattr(ctx.publisher, "backend", "unknown"),
        }

    @app.post("/api/create", response_model=CreateJobResponse)
    async def create_wallpaper(
        light: Optional[UploadFile] = File(default=None),
        dark: Optional[UploadFile] = File(default=None),
        ctx: AppContext = Depends(get_context),
    ):
        light_name, light_data = await _read_upload(light)
        dark_name, dark_data = await _read_upload(dark)
        try:
            job = submit_job(ctx, light_name, light_data, dark_name, dark_data)
        except OSError as e:
            logger.error("Could not store uploaded images: %s", e)
            return JSONResponse({"error": "Could not save uploaded images"}, status_code=500)
        return CreateJobResponse(id=job.id)

    @app.get("/api/status/{job_id}", response_model=JobOut)
    def get_status(job_id: str, ctx: AppContext = Depends(get_context)):
        return JobOut.from_job(get_job(ctx, job_id))

    @app.get("/api/gallery", response_model=List[JobOut])
    def get_gallery(ctx: AppContext = Depends(get_context)):
        return [JobOut.from_job(j) for j in list_gallery(ctx)]

    if getattr(ctx.publisher, "backend", None) == "local":
        os.makedirs(settings.data_dir, exist_ok=True)
        app.mount("/assets", StaticFiles(directory=settings.data_dir), name="assets")

    static_dir = settings.static_dir
    if static_dir and os.path.isdir(static_dir):
        index = os.path.join(static_dir, "index.html")

        @app.get("/", include_in_schema=False)
        def index_page():
            return FileResponse(index)

        app.mount("/static", StaticFiles(directory=static_dir), name="static")

    return app
