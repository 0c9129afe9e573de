import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cloner import build_options
from .config import Settings, settings as global_settings
from .errors import EgressDenied, InvalidInput, NotFound, NotReady
from .jobs import Job, JobManager, JobStatus, now_ms
from .schemas import CreateJobRequest, CreateJobResponse, JobStatusResponse, ProgressModel

logger = logging.getLogger(__name__)


def get_manager(request: Request) -> JobManager:
    return request.app.state.manager


def require_api_key(request: Request, x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = request.app.state.settings.api_key
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


router = APIRouter(prefix="/api/jobs", tags=["jobs"], dependencies=[Depends(require_api_key)])


def _status_payload(job: Job, request: Request) -> JobStatusResponse:
    download_url = None
    if job.status is JobStatus.DONE:
        download_url = str(request.url_for("download_job", job_id=job.id))
    return JobStatusResponse(
        job_id=job.id,
        status=job.status.value,
        url=job.url,
        created_at=job.created_at,
        updated_at=job.updated_at,
        progress=ProgressModel(**job.progress.as_dict()),
        error=job.error,
        download_url=download_url,
    )


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(payload: CreateJobRequest, manager: JobManager = Depends(get_manager)):
    url = payload.url.strip()
    if not url:
        raise HTTPException(status_code=400, detail="Missing url")
    opts = payload.options
    try:
        options = build_options(
            url,
            manager.settings,
            routes=opts.routes,
            wait_until=opts.wait_until,
            extra_wait_ms=opts.extra_wait_ms,
            max_wait_ms=opts.max_wait_ms,
            download_external=opts.download_external,
            auto_scroll=opts.auto_scroll,
            block_trackers=opts.block_trackers,
        )
        job_id = await manager.submit(url, options)
    except (InvalidInput, EgressDenied) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CreateJobResponse(job_id=job_id)


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, request: Request, manager: JobManager = Depends(get_manager)):
    try:
        job = manager.status(job_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _status_payload(job, request)


@router.get("/{job_id}/download", name="download_job")
def download_job(job_id: str, manager: JobManager = Depends(get_manager)):
    try:
        archive_path, filename = manager.download(job_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotReady as e:
        raise HTTPException(status_code=400, detail=str(e))
    return FileResponse(archive_path, media_type="application/zip", filename=filename)


def create_app(settings: Optional[Settings] = None, manager: Optional[JobManager] = None) -> FastAPI:
    settings = settings or global_settings
    manager = manager or JobManager(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.api_key:
            logger.warning("⚠️ API_KEY is not set: job endpoints accept unauthenticated requests (insecure, local development only)")
        if not settings.allowed_hosts:
            logger.info("No ALLOWED_HOSTS configured; any public host may be cloned")
        yield
        await manager.shutdown()

    app = FastAPI(title="Site Cloner", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            first = errors[0]
            location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{location}: {first.get('msg')}" if location else first.get("msg", message)
        return JSONResponse(status_code=400, content={"error": message})

    @app.get("/", include_in_schema=False)
    def index():
        return PlainTextResponse("ok")

    @app.get("/health")
    def health():
        return {"ok": True, "ts": now_ms()}

    @app.head("/health", include_in_schema=False)
    def health_head():
        return Response(status_code=200)

    app.include_router(router)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app
