"""
Clients for the external text-processing service.

A dispatch either returns an opaque task id (the result arrives later on the
callback route) or an immediate result string.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Protocol
import httpx
from pydantic import BaseModel

from ..config import Settings, settings
from ..errors import DispatchFailure
from ..llm.groq_client import chat, summary_messages
from ..observability.metrics import record_groq_error, record_groq_usage

logger = logging.getLogger(__name__)

_DONE_STATES = ("completed", "complete", "done", "succeeded", "success")


class DispatchOutcome(BaseModel):
    task_id: Optional[str] = None
    result: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.result is None


class Dispatcher(Protocol):
    name: str

    async def dispatch(self, prompt: str, raw_text: str, metadata: Dict[str, Any]) -> DispatchOutcome: ...
    async def fetch_result(self, task_id: str) -> Optional[str]: ...


def _chunk_label(metadata: Dict[str, Any]) -> str:
    total = int(metadata.get("total_chunks") or 1)
    if total <= 1:
        return ""
    return f"part {int(metadata.get('chunk_index', 0)) + 1} of {total}"


class HttpTaskDispatcher:
    """Asynchronous service: POST returns a task id, the result is pushed to `callback_url`."""

    name = "http"

    def __init__(self, url: str, *, api_key: Optional[str] = None,
                 callback_url: Optional[str] = None, timeout: float = 30,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.url = url
        self.callback_url = callback_url
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def dispatch(self, prompt: str, raw_text: str, metadata: Dict[str, Any]) -> DispatchOutcome:
        payload = {
            "prompt": prompt,
            "text": raw_text,
            "metadata": metadata,
            "callback_url": self.callback_url,
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                r = await client.post(self.url, json=payload, headers=self._headers)
            except httpx.HTTPError as e:
                raise DispatchFailure(f"text service unreachable: {e!r}") from e

        if r.status_code >= 400:
            raise DispatchFailure(f"text service rejected the request: HTTP {r.status_code}", status_code=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise DispatchFailure("text service answered with non-JSON body", status_code=r.status_code) from e

        if isinstance(data.get("result"), str):
            return DispatchOutcome(result=data["result"])
        task_id = data.get("task_id") or data.get("id")
        if not task_id:
            raise DispatchFailure("text service answered without a task id", status_code=r.status_code)
        return DispatchOutcome(task_id=str(task_id))

    async def fetch_result(self, task_id: str) -> Optional[str]:
        url = f"{self.url.rstrip('/')}/{task_id}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                r = await client.get(url, headers=self._headers)
            except httpx.HTTPError as e:
                raise DispatchFailure(f"text service unreachable: {e!r}") from e
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise DispatchFailure(f"result lookup failed: HTTP {r.status_code}", status_code=r.status_code)
        data = r.json()
        if str(data.get("status", "")).lower() in _DONE_STATES:
            return data.get("result") or ""
        return None


class GroqDispatcher:
    """Synchronous LLM call; every dispatch is an immediate result."""

    name = "groq"

    def __init__(self, model: str, api_key: Optional[str] = None, max_tokens: int = 900) -> None:
        self.model = model
        self._api_key = api_key
        self._max_tokens = max_tokens

    async def dispatch(self, prompt: str, raw_text: str, metadata: Dict[str, Any]) -> DispatchOutcome:
        try:
            text, pt, ct = await chat(
                summary_messages(prompt, raw_text, _chunk_label(metadata)),
                model=self.model,
                max_tokens=self._max_tokens,
                api_key=self._api_key,
            )
        except Exception as e:
            record_groq_error(self.model, "summarizer")
            raise DispatchFailure(f"groq call failed: {e!r}") from e
        record_groq_usage(self.model, "summarizer", pt, ct)
        return DispatchOutcome(result=text.strip())

    async def fetch_result(self, task_id: str) -> Optional[str]:
        return None


def _shorten(s: str, n: int = 500) -> str:
    s = " ".join(s.split())
    return s[: n - 3] + "..." if len(s) > n else s


class StubDispatcher:
    """Offline stand-in used when no service is configured: an extractive lead summary."""

    name = "stub"

    def __init__(self, max_chars: int = 600) -> None:
        self._max_chars = max_chars

    async def dispatch(self, prompt: str, raw_text: str, metadata: Dict[str, Any]) -> DispatchOutcome:
        return DispatchOutcome(result=_shorten(raw_text, self._max_chars))

    async def fetch_result(self, task_id: str) -> Optional[str]:
        return None


def get_dispatcher(cfg: Settings = settings) -> Dispatcher:
    if cfg.DISPATCH_URL:
        callback = None
        if cfg.CALLBACK_BASE_URL:
            callback = cfg.CALLBACK_BASE_URL.rstrip("/") + "/callbacks/task"
        return HttpTaskDispatcher(cfg.DISPATCH_URL, api_key=cfg.DISPATCH_API_KEY, callback_url=callback)
    if cfg.GROQ_API_KEY:
        return GroqDispatcher(cfg.GROQ_MODEL, api_key=cfg.GROQ_API_KEY)
    logger.info("No DISPATCH_URL or GROQ_API_KEY; using the offline stub dispatcher")
    return StubDispatcher()
