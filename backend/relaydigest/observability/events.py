from __future__ import annotations
import asyncio, json, uuid
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional
from fastapi import Request
from starlette.responses import StreamingResponse
from ..models import WorkflowEvent

def _format_sse(data: str, event: Optional[str] = None, id: Optional[str] = None) -> str:
    lines = []
    if event: lines.append(f"event: {event}")
    if id: lines.append(f"id: {id}")
    for chunk in data.splitlines():
        lines.append(f"data: {chunk}")
    lines.append("")
    return "\n".join(lines)

def progress_ref(document_id: str) -> str:
    """Where a document's progress can be watched."""
    return f"/events?document_id={document_id}"

class EventBus:
    """Fan-out of workflow events to SSE subscribers in this process."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._subscribers: Dict[int, asyncio.Queue] = {}
        self._lock = asyncio.Lock()
        self._maxsize = maxsize

    async def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        async with self._lock:
            self._subscribers[id(q)] = q
        return q

    async def unsubscribe(self, q: asyncio.Queue) -> None:
        async with self._lock:
            self._subscribers.pop(id(q), None)

    async def publish(self, event: WorkflowEvent) -> None:
        async with self._lock:
            subs = list(self._subscribers.values())
        for q in subs:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # slow consumer; it misses this event
                pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

async def sse_endpoint(bus: EventBus, request: Request, document_id: Optional[str] = None) -> StreamingResponse:
    q = await bus.subscribe()

    async def event_stream() -> AsyncIterator[bytes]:
        try:
            hello = {"ts": datetime.now(timezone.utc).isoformat(), "message": "connected", "document_id": document_id}
            yield _format_sse(json.dumps(hello), event="hello").encode("utf-8")

            while True:
                if await request.is_disconnected():
                    break
                try:
                    event: WorkflowEvent = await asyncio.wait_for(q.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield b": keep-alive\n\n"
                    continue
                if document_id and event.document_id != document_id:
                    continue
                payload = event.model_dump(mode="json")
                msg = _format_sse(json.dumps(payload), event="workflow_event", id=event.event_id)
                yield msg.encode("utf-8")
        finally:
            await bus.unsubscribe(q)

    return StreamingResponse(event_stream(), media_type="text/event-stream")

def make_event(document_id: str, step: str, status: str,
               item_id: Optional[str] = None, message: Optional[str] = None,
               data: Optional[dict] = None) -> WorkflowEvent:
    return WorkflowEvent(
        event_id=str(uuid.uuid4()),
        document_id=document_id,
        step=step,
        item_id=item_id,
        status=status,
        message=message,
        data=data,
    )
