from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from relaydigest.config import Settings
from relaydigest.errors import DispatchFailure
from relaydigest.integration.dispatch import DispatchOutcome
from relaydigest.integration.webhook import NotifyResult
from relaydigest.service import DocumentService
from relaydigest.storage.backends import MemorySlotBackend
from relaydigest.storage.kv import BoundedKVStore
from relaydigest.tools.fetcher import FetchedDocument


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


class TaskDispatcher:
    """Hands out task ids; the test delivers results through callbacks."""

    name = "fake"

    def __init__(self, fail_times: int = 0):
        self.calls: List[Dict[str, Any]] = []
        self.fail_times = fail_times
        self.ready: Dict[str, str] = {}

    async def dispatch(self, prompt, raw_text, metadata):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DispatchFailure("service unavailable", status_code=503)
        task_id = f"task-{len(self.calls) + 1}"
        self.calls.append({"task_id": task_id, "text": raw_text, **metadata})
        return DispatchOutcome(task_id=task_id)

    async def fetch_result(self, task_id):
        return self.ready.get(task_id)

    def task_for(self, item_id: str) -> str:
        return [c for c in self.calls if c["item_id"] == item_id][-1]["task_id"]


class EchoDispatcher:
    """Answers every dispatch immediately."""

    name = "echo"

    def __init__(self):
        self.calls = 0

    async def dispatch(self, prompt, raw_text, metadata):
        self.calls += 1
        return DispatchOutcome(result=f"summary of {metadata['item_id']}: {raw_text[:20]}")

    async def fetch_result(self, task_id):
        return None


class NotifySpy:
    def __init__(self, status_code: int = 200):
        self.payloads: List[Dict[str, Any]] = []
        self.status_code = status_code

    async def __call__(self, payload):
        self.payloads.append(payload)
        ok = 200 <= self.status_code < 300
        return NotifyResult(attempted=True, status_code=self.status_code,
                            error=None if ok else f"HTTP {self.status_code}")


class SleepSpy:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeFetch:
    def __init__(self, pages: Optional[Dict[str, FetchedDocument]] = None):
        self.pages = pages or {}
        self.urls: List[str] = []

    async def __call__(self, url, timeout=None):
        self.urls.append(url)
        return self.pages.get(url)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return BoundedKVStore(
        MemorySlotBackend(450_000),
        total_budget_bytes=50_000_000,
        max_entries=2_000,
        max_age_s=3600,
        clock=clock,
    )


@pytest.fixture
def cfg():
    return Settings(
        _env_file=None,
        CHUNK_MAX_CHARS=1_000,
        DISPATCH_MAX_RETRIES=2,
        DISPATCH_BACKOFF_BASE_S=0.5,
        DISPATCH_BACKOFF_FACTOR=2.0,
        NOTIFY_WEBHOOK_URL=None,
        MAX_RELATED_ITEMS=5,
    )


@pytest.fixture
def notify():
    return NotifySpy()


@pytest.fixture
def sleep():
    return SleepSpy()


@pytest.fixture
def make_service(store, cfg, notify, sleep):
    def _make(dispatcher, fetch=None) -> DocumentService:
        return DocumentService(store, dispatcher, cfg=cfg, notify=notify,
                               fetch=fetch or FakeFetch(), sleep=sleep)
    return _make


def snapshot(store: BoundedKVStore) -> Dict[str, int]:
    return {k: store.get(k).version for k in store.keys()}
