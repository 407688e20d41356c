from typing import Annotated
from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from .config import settings
from .issues import Issues
from .models import DocumentRequest, HookRequest, StartTrigger, StatusResponse, TaskResultCallback
from .observability.events import EventBus, sse_endpoint
from .observability.logger import setup_json_logging
from .observability.metrics import init_metrics
from .service import DocumentService

# Configure logging early
setup_json_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

app = FastAPI(
    title="RelayDigest",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Expose /metrics (must be before startup)
init_metrics(app)

bus = EventBus()
service = DocumentService.from_settings(settings, bus=bus)


@app.exception_handler(Exception)
async def unhandled(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = StatusResponse(status="error", message=repr(exc))
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


@app.get("/healthz")
def healthz():
    return {
        "status": "ok",
        "service": "relaydigest",
        "version": VERSION,
        "dispatcher": service.engine.dispatcher.name,
        "storage_backend": settings.STORAGE_BACKEND,
        "event_subscribers": bus.subscriber_count,
    }


@app.get("/")
def root():
    return {"message": "RelayDigest is running. See /healthz and /docs."}


# ---------- SSE events ----------
@app.get("/events")
async def events(request: Request, document_id: str | None = None):
    """
    Server-Sent Events stream of workflow progress.
    Optional ?document_id=<id> to follow a single document.
    """
    return await sse_endpoint(bus, request, document_id=document_id)


# ---------- documents ----------
@app.post("/documents", response_model=StatusResponse)
async def submit_document(req: DocumentRequest):
    """Start processing a document and its related items."""
    return await service.submit(req, Issues())


@app.get("/documents/{document_id}", response_model=StatusResponse)
def get_document(document_id: str):
    return service.status(document_id)


@app.get("/documents/{document_id}/result", response_model=StatusResponse)
def get_result(document_id: str):
    return service.result(document_id)


@app.get("/documents/{document_id}/result/blocks", response_model=StatusResponse)
def get_result_blocks(document_id: str):
    return service.result_blocks(document_id)


@app.post("/documents/{document_id}/notify", response_model=StatusResponse)
async def notify_document(document_id: str):
    """Finalize a completed document or resend its notification."""
    return await service.notify(document_id, Issues())


@app.post("/documents/{document_id}/items/{item_id}/replay", response_model=StatusResponse)
async def replay_item(document_id: str, item_id: str):
    return await service.replay(document_id, item_id, Issues())


# ---------- task results ----------
@app.post("/callbacks/task", response_model=StatusResponse)
async def task_callback(cb: TaskResultCallback):
    """Result of one dispatched chunk, pushed by the text service."""
    return await service.handle_callback(cb, Issues())


@app.post("/tasks/{task_id}/poll", response_model=StatusResponse)
async def poll_task(task_id: str):
    return await service.poll(task_id, Issues())


@app.post("/hooks", response_model=StatusResponse)
async def hooks(req: Annotated[HookRequest, Body(discriminator="type")]):
    """Single inbound entry point; `type` selects start or task_result."""
    issues = Issues()
    if isinstance(req, StartTrigger):
        return await service.submit(req, issues)
    return await service.handle_callback(req, issues)


@app.get("/storage/stats", response_model=StatusResponse)
def storage_stats():
    return service.stats()
