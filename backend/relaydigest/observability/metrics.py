from prometheus_fastapi_instrumentator import Instrumentator
from prometheus_client import Counter

# HTTP instrumentation
def init_metrics(app) -> None:
    if getattr(app.state, "metrics_initialized", False):
        return
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    app.state.metrics_initialized = True

# Dispatch / callback flow
_dispatch_requests = Counter("dispatch_requests_total", "Chunk dispatches", ["dispatcher", "mode"])
_dispatch_errors   = Counter("dispatch_errors_total", "Failed chunk dispatch attempts", ["dispatcher"])
_callbacks         = Counter("callbacks_total", "Inbound task callbacks", ["outcome"])
_finalizations     = Counter("finalizations_total", "Documents finalized", ["notified"])

def record_dispatch(dispatcher: str, immediate: bool) -> None:
    _dispatch_requests.labels(dispatcher=dispatcher, mode="immediate" if immediate else "pending").inc()

def record_dispatch_error(dispatcher: str) -> None:
    _dispatch_errors.labels(dispatcher=dispatcher).inc()

def record_callback(outcome: str) -> None:
    _callbacks.labels(outcome=outcome).inc()

def record_finalization(notified: bool) -> None:
    _finalizations.labels(notified=str(bool(notified)).lower()).inc()

# Storage
_kv_writes         = Counter("kv_writes_total", "Key-value writes", ["layout"])
_kv_evictions      = Counter("kv_evictions_total", "Entries removed by eviction")
_manifest_conflict = Counter("manifest_conflicts_total", "Manifest compare-and-set retries")

def record_kv_write(chunked: bool) -> None:
    _kv_writes.labels(layout="chunked" if chunked else "single").inc()

def record_kv_eviction(count: int) -> None:
    _kv_evictions.inc(count)

def record_manifest_conflict() -> None:
    _manifest_conflict.inc()

# Groq
_groq_requests = Counter("groq_requests_total", "Total Groq requests", ["model", "agent"])
_groq_tokens   = Counter("groq_tokens_total", "Groq tokens used", ["type", "model", "agent"])
_groq_errors   = Counter("groq_errors_total", "Groq errors", ["model", "agent"])

def record_groq_usage(model: str, agent: str, prompt_tokens: int, completion_tokens: int) -> None:
    _groq_requests.labels(model=model, agent=agent).inc()
    if prompt_tokens:
        _groq_tokens.labels(type="prompt", model=model, agent=agent).inc(prompt_tokens)
    if completion_tokens:
        _groq_tokens.labels(type="completion", model=model, agent=agent).inc(completion_tokens)

def record_groq_error(model: str, agent: str) -> None:
    _groq_errors.labels(model=model, agent=agent).inc()

_webhook_requests = Counter("webhook_requests_total", "Webhook requests", ["service"])
_webhook_errors   = Counter("webhook_errors_total", "Webhook errors",   ["service"])

def record_webhook_request(service: str) -> None:
    _webhook_requests.labels(service=service).inc()

def record_webhook_error(service: str) -> None:
    _webhook_errors.labels(service=service).inc()
