import os, io, json, math, re, secrets, asyncio, atexit
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import logging
import sys

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .billing import BillingService
from .captions import CaptionOptions, PreviewContext, build_preview
from .errors import CaptionDeskError, InvalidTransition, NotFound, UnknownAccount, UpgradeRequired
from .lifecycle import JobLifecycle, JobOutputs, parse_duration
from .metering import admit_for, usage_snapshot
from .models import Account, Job, JobStatus
from .pipeline import DispatchError, PipelineClient
from .storage import RecordStore, build_store


@asynccontextmanager
async def lifespan(app):
    """Lifespan event handler for FastAPI application startup and shutdown."""
    logger.info("CaptionDesk is ready to accept requests (storage=%s)", STORE.name)
    _flush_logs()
    yield
    logger.info("CaptionDesk shutting down")
    try:
        STORE.close()
    except Exception as exc:
        logger.warning("Closing record store failed: %s", exc)
    _flush_logs()


app = FastAPI(title="CaptionDesk", lifespan=lifespan)


@dataclass
class Settings:
    STORAGE_BACKEND: str
    DATABASE_URL: str
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    PUBLIC_DIR: Path
    LOGS_DIR: Path
    PUBLIC_BASE_URL: Optional[str]
    MAX_UPLOAD_MB: int
    UPLOAD_CHUNK_SIZE: int
    PIPELINE_WEBHOOK_URL: Optional[str]
    USAGE_WEBHOOK_URL: Optional[str]
    ACCOUNT_WEBHOOK_URL: Optional[str]
    STRIPE_SECRET_KEY: Optional[str]
    STRIPE_WEBHOOK_SECRET: Optional[str]
    STORE_RETRY_ATTEMPTS: int

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_str(name: str) -> Optional[str]:
            value = os.getenv(name, "").strip()
            return value or None

        backend = os.getenv("STORAGE_BACKEND", "memory").strip().lower()
        if backend not in {"memory", "sql", "airtable"}:
            raise ValueError("STORAGE_BACKEND must be memory, sql or airtable")

        max_upload = env_int("MAX_UPLOAD_MB", 100)
        if max_upload < 1:
            raise ValueError("MAX_UPLOAD_MB must be >= 1")

        attempts = env_int("STORE_RETRY_ATTEMPTS", 3)
        if not (1 <= attempts <= 10):
            raise ValueError("STORE_RETRY_ATTEMPTS must be 1-10")

        return cls(
            STORAGE_BACKEND=backend,
            DATABASE_URL=os.getenv("DATABASE_URL", "sqlite:////data/captiondesk.db"),
            AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
            AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
            PUBLIC_DIR=env_path("PUBLIC_DIR", "/data/public"),
            LOGS_DIR=env_path("LOGS_DIR", "/data/logs"),
            PUBLIC_BASE_URL=env_str("PUBLIC_BASE_URL"),
            MAX_UPLOAD_MB=max_upload,
            UPLOAD_CHUNK_SIZE=env_int("UPLOAD_CHUNK_SIZE", 1024 * 1024),
            PIPELINE_WEBHOOK_URL=env_str("PIPELINE_WEBHOOK_URL"),
            USAGE_WEBHOOK_URL=env_str("USAGE_WEBHOOK_URL"),
            ACCOUNT_WEBHOOK_URL=env_str("ACCOUNT_WEBHOOK_URL"),
            STRIPE_SECRET_KEY=env_str("STRIPE_SECRET_KEY"),
            STRIPE_WEBHOOK_SECRET=env_str("STRIPE_WEBHOOK_SECRET"),
            STORE_RETRY_ATTEMPTS=attempts,
        )


settings = Settings.load()

# --------- config ---------
PUBLIC_DIR = settings.PUBLIC_DIR.resolve()
PUBLIC_DIR.mkdir(parents=True, exist_ok=True)

LOGS_DIR = settings.LOGS_DIR.resolve()
LOGS_DIR.mkdir(parents=True, exist_ok=True)

APP_LOG_FILE = LOGS_DIR / "application.log"

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

PUBLIC_BASE_URL = settings.PUBLIC_BASE_URL
MAX_UPLOAD_BYTES = settings.MAX_UPLOAD_MB * 1024 * 1024
UPLOAD_CHUNK_SIZE = settings.UPLOAD_CHUNK_SIZE
UPLOAD_SUBDIR = "videos"

REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


# Force unbuffered output when supported
try:
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)
except (AttributeError, io.UnsupportedOperation):
    pass

file_stream = open(APP_LOG_FILE, "a", encoding="utf-8", buffering=1)
atexit.register(file_stream.close)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging infrastructure
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


log_format = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'
request_id_filter = RequestIdFilter()

file_handler = logging.StreamHandler(file_stream)
file_handler.setLevel(logging.INFO)
file_handler.addFilter(request_id_filter)
file_handler.setFormatter(logging.Formatter(log_format))

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.addFilter(request_id_filter)
console_handler.setFormatter(logging.Formatter(log_format))

logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler]
)

logger = logging.getLogger("captiondesk")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)
struct_logger = structlog.get_logger("captiondesk")

uvicorn_logger = logging.getLogger("uvicorn")
uvicorn_logger.addHandler(file_handler)

logger.info("="*60)
logger.info("CaptionDesk starting...")
logger.info(f"STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
logger.info(f"PUBLIC_DIR: {PUBLIC_DIR}")
logger.info(f"LOGS_DIR: {LOGS_DIR}")
logger.info(f"PUBLIC_BASE_URL: {PUBLIC_BASE_URL or 'Not set'}")
logger.info(f"PIPELINE_WEBHOOK_URL: {'set' if settings.PIPELINE_WEBHOOK_URL else 'Not set'}")
logger.info("="*60)


def _flush_logs():
    for handler in (file_handler, console_handler):
        handler.flush()


STORE: RecordStore = build_store(
    settings.STORAGE_BACKEND,
    database_url=settings.DATABASE_URL,
    airtable_api_key=settings.AIRTABLE_API_KEY or "",
    airtable_base_id=settings.AIRTABLE_BASE_ID or "",
)
LIFECYCLE = JobLifecycle(STORE, max_attempts=settings.STORE_RETRY_ATTEMPTS)
PIPELINE = PipelineClient(
    settings.PIPELINE_WEBHOOK_URL,
    usage_url=settings.USAGE_WEBHOOK_URL,
    account_url=settings.ACCOUNT_WEBHOOK_URL,
)
BILLING = BillingService(
    STORE,
    secret_key=settings.STRIPE_SECRET_KEY,
    webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
)

app.mount("/files", StaticFiles(directory=str(PUBLIC_DIR)), name="files")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    token = REQUEST_ID_CTX.set(request_id)
    bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", request_id)
        return response
    except HTTPException as exc:
        headers = dict(exc.headers or {})
        headers.setdefault("X-Request-ID", request_id)
        exc.headers = headers
        raise
    finally:
        clear_contextvars()
        REQUEST_ID_CTX.reset(token)


@app.middleware("http")
async def security_headers_middleware(request, call_next):
    response = await call_next(request)
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data:",
    )
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.exception_handler(CaptionDeskError)
async def captiondesk_error_handler(request: Request, exc: CaptionDeskError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    response = JSONResponse(exc.to_payload(), status_code=exc.status_code)
    request_id = REQUEST_ID_CTX.get(None)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AccountProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")


class StatusCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: int = Field(..., alias="jobId")
    status: str
    output_caption_file: Optional[str] = Field(None, alias="outputCaptionFile")
    output_video_file: Optional[str] = Field(None, alias="outputVideoFile")
    error_log: Optional[str] = Field(None, alias="errorLog")


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1)
    plan: Literal["monthly", "yearly"] = "monthly"


class PaymentConfirmation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _rand(n: int = 8) -> str:
    return secrets.token_hex(n // 2)


def estimate_wait(duration: Decimal) -> str:
    """Rough turnaround quoted back to the uploader."""
    factor = max(1, math.ceil(duration))
    low, high = 30 * factor, 60 * factor
    if high < 120:
        return f"{low}-{high} seconds"
    return f"{low // 60}-{math.ceil(high / 60)} minutes"


def ensure_upload_type(upload: UploadFile, expected_prefix: str, field: str) -> None:
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith(expected_prefix):
        logger.warning(
            "%s upload rejected due to invalid content-type: %s",
            field,
            content_type or "unknown",
        )
        raise HTTPException(
            status_code=400,
            detail=f"{field} must be {expected_prefix}*, got {content_type or 'unknown'}",
        )


def parse_caption_options(raw: Optional[str]) -> CaptionOptions:
    try:
        data = json.loads(raw or "{}")
        if not isinstance(data, dict):
            raise ValueError("caption options must be an object")
        return CaptionOptions.model_validate(data)
    except (ValueError, ValidationError) as exc:
        logger.info("Invalid caption options: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid caption options") from exc


async def stream_upload_to_path(upload: UploadFile, dest: Path) -> int:
    await upload.seek(0)
    total = 0
    temp_dest = dest.with_name(dest.name + ".partial")
    try:
        with temp_dest.open("wb") as buffer:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                if total + len(chunk) > MAX_UPLOAD_BYTES:
                    logger.warning("Upload exceeded max size: %s", upload.filename)
                    raise HTTPException(status_code=413, detail="File too large")
                buffer.write(chunk)
                total += len(chunk)
    except HTTPException:
        temp_dest.unlink(missing_ok=True)
        raise
    except OSError as exc:
        temp_dest.unlink(missing_ok=True)
        logger.error("Failed to persist upload %s: %s", upload.filename, exc)
        _flush_logs()
        raise HTTPException(status_code=500, detail="Failed to save upload") from exc
    temp_dest.replace(dest)
    return total


async def publish_upload(upload: UploadFile) -> Dict[str, str]:
    """Store an uploaded video under PUBLIC_DIR/videos/YYYYMMDD/ and return its URLs."""
    ext = Path(upload.filename or "").suffix.lower() or ".mp4"
    if not re.fullmatch(r"\.[a-z0-9]+", ext):
        ext = ".mp4"
    now = datetime.now(timezone.utc)
    day = now.strftime("%Y%m%d")
    folder = PUBLIC_DIR / UPLOAD_SUBDIR / day
    folder.mkdir(parents=True, exist_ok=True)
    name = now.strftime("%Y%m%d_%H%M%S_") + _rand() + ext
    dst = folder / name
    size = await stream_upload_to_path(upload, dst)

    rel = f"/files/{UPLOAD_SUBDIR}/{day}/{name}"
    url = f"{PUBLIC_BASE_URL.rstrip('/')}{rel}" if PUBLIC_BASE_URL else rel
    struct_logger.info("file_published", filename=name, size_mb=round(size / (1024 * 1024), 4))
    return {"dst": str(dst), "url": url, "rel": rel}


def _require_account(account_id: str) -> Account:
    account = STORE.get_account(account_id)
    if account is None:
        raise UnknownAccount(account_id)
    return account


async def dispatch_job(job: Job, account: Account) -> Job:
    """Hand a pending job to the pipeline and record the outcome."""
    try:
        sent = await PIPELINE.dispatch(job, account)
    except DispatchError as exc:
        try:
            result = await asyncio.to_thread(
                LIFECYCLE.report_status, job.id, JobStatus.FAILED, None, f"Dispatch error: {exc}"
            )
        except InvalidTransition:
            logger.info("Job %s finished before its dispatch failure was recorded", job.id)
            return await asyncio.to_thread(STORE.get_job, job.id) or job
        return result.job
    if not sent:
        return job
    try:
        return await asyncio.to_thread(LIFECYCLE.mark_dispatched, job.id)
    except InvalidTransition:
        # The pipeline already reported back before we could mark it.
        logger.info("Job %s advanced before dispatch was recorded", job.id)
        return await asyncio.to_thread(STORE.get_job, job.id) or job


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
def health():
    storage_ok = STORE.ping()
    return {
        "ok": storage_ok,
        "storage": STORE.name,
        "pipeline_configured": PIPELINE.configured,
        "billing_configured": BILLING.configured,
    }


@app.put("/api/accounts/{account_id}")
async def upsert_account(account_id: str, profile: AccountProfile):
    account, created = await asyncio.to_thread(
        STORE.upsert_account,
        account_id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
    )
    if created:
        struct_logger.info("account_created", account_id=account.id)
        asyncio.create_task(PIPELINE.notify_account_created(account))
    return {"account": account.to_dict(), "created": created}


@app.get("/api/accounts/{account_id}")
def get_account(account_id: str):
    return _require_account(account_id).to_dict()


@app.get("/api/usage")
def get_usage(account_id: str = Query(..., min_length=1)):
    return usage_snapshot(_require_account(account_id))


@app.post("/api/upload")
async def upload_video(
    video: UploadFile = File(...),
    account_id: str = Form(...),
    video_duration: str = Form(...),
    caption_options: str = Form("{}"),
):
    ensure_upload_type(video, "video/", "video")
    options = parse_caption_options(caption_options)
    duration = parse_duration(video_duration)

    account = await asyncio.to_thread(_require_account, account_id)
    if not admit_for(account, duration).allowed:
        raise UpgradeRequired()

    published = await publish_upload(video)
    try:
        job, admission = await asyncio.to_thread(
            LIFECYCLE.submit,
            account_id,
            duration,
            filename=video.filename or Path(published["dst"]).name,
            video_url=published["url"],
            caption_options=options.to_payload(),
        )
    except CaptionDeskError:
        Path(published["dst"]).unlink(missing_ok=True)
        raise
    job = await dispatch_job(job, account)

    return {
        "job_id": job.id,
        "status": job.status.value,
        "estimated_wait_time": estimate_wait(duration),
        "watermarked": admission.watermarked,
    }


@app.get("/api/jobs")
def list_jobs(account_id: str = Query(..., min_length=1)) -> List[Dict[str, Any]]:
    _require_account(account_id)
    return [job.to_dict() for job in STORE.list_jobs(account_id)]


@app.get("/api/jobs/{job_id}")
def job_status(job_id: int):
    job = STORE.get_job(job_id)
    if job is None:
        raise NotFound(job_id)
    return job.to_dict()


@app.post("/api/webhooks/job-status")
async def job_status_webhook(callback: StatusCallback):
    struct_logger.info("status_callback", job_id=callback.job_id, status=callback.status)
    outputs = JobOutputs(
        caption_file=callback.output_caption_file,
        video_file=callback.output_video_file,
    )
    result = await asyncio.to_thread(
        LIFECYCLE.report_status,
        callback.job_id,
        callback.status,
        outputs,
        callback.error_log,
    )
    if result.credited:
        asyncio.create_task(PIPELINE.notify_usage(result.job, result.account))
    return {"success": True, "job": result.job.to_dict()}


@app.post("/api/create-subscription")
def create_subscription(body: SubscriptionRequest):
    try:
        return BILLING.create_subscription(body.account_id, body.plan)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/complete-payment")
def complete_payment(body: PaymentConfirmation):
    try:
        account = BILLING.confirm_payment(body.account_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Plan updated to %s for account %s", account.plan_tier.value, account.id)
    return {"success": True, "account": account.to_dict()}


@app.get("/api/billing")
def list_billing(account_id: str = Query(..., min_length=1)):
    _require_account(account_id)
    return [record.to_dict() for record in STORE.list_billing(account_id)]


@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        return await asyncio.to_thread(BILLING.handle_webhook, payload, signature)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook error") from exc


def _preview_options(data: Dict[str, Any]) -> CaptionOptions:
    try:
        return CaptionOptions.model_validate(data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid caption options") from exc


@app.get("/preview", response_class=HTMLResponse)
def caption_preview(request: Request):
    options = _preview_options(dict(request.query_params))
    preview = build_preview(PreviewContext(options))
    context = {
        "request": request,
        "title": "Caption Preview",
        "options": options,
        "preview": preview,
    }
    return templates.TemplateResponse(request, "caption_preview.html", context)


@app.post("/api/preview")
def caption_preview_json(options: Dict[str, Any]):
    preview = build_preview(PreviewContext(_preview_options(options)))
    return {
        "style": preview.style,
        "lines": preview.lines,
        "segments": [{"text": segment.text, "focus": segment.focus} for segment in preview.segments],
        "focus_class": preview.focus_class,
    }
