"""
Document-level operations behind the HTTP routes.

`DocumentService` wires the store, tracker, finalizer and engine together and
turns every outcome into a `StatusResponse`. Workflow errors are converted to
structured statuses here; they never reach the web layer as exceptions.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .aggregate.finalizer import FinalizeResult, Finalizer, Notify, final_key
from .config import Settings, settings
from .errors import InvalidTransition, RelayDigestError, UnknownItem, UnknownTask
from .integration.dispatch import Dispatcher, get_dispatcher
from .integration.webhook import notify_webhook
from .issues import Issues
from .models import DocumentRequest, RelatedItemIn, StatusResponse, TaskResultCallback
from .observability.events import EventBus, make_event, progress_ref
from .observability.metrics import record_callback
from .storage.backends import FileSlotBackend, MemorySlotBackend, SlotBackend
from .storage.kv import BoundedKVStore
from .text.chunker import chunk_code_safe
from .tools.fetcher import FetchedDocument, discover_related, fetch_document
from .tracking.manifest import CompletionTracker, ItemKind, ItemRecord, ItemStatus
from .workflow.engine import Advance, WorkflowEngine
from .workflow.state import WorkflowRepository

logger = logging.getLogger(__name__)

Fetch = Callable[[str, Optional[int]], Awaitable[Optional[FetchedDocument]]]

MAIN_ITEM_ID = "main"


def build_store(cfg: Settings = settings) -> BoundedKVStore:
    backend: SlotBackend
    if cfg.STORAGE_BACKEND == "file":
        backend = FileSlotBackend(Path(cfg.STORAGE_DIR), cfg.KV_SLOT_MAX_BYTES)
    elif cfg.STORAGE_BACKEND == "memory":
        backend = MemorySlotBackend(cfg.KV_SLOT_MAX_BYTES)
    else:
        raise ValueError(f"unknown STORAGE_BACKEND {cfg.STORAGE_BACKEND!r}")
    return BoundedKVStore(
        backend,
        total_budget_bytes=cfg.KV_TOTAL_BUDGET_BYTES,
        max_entries=cfg.KV_MAX_ENTRIES,
        max_age_s=cfg.KV_MAX_AGE_S,
    )


def _error_status(e: RelayDigestError) -> str:
    if isinstance(e, (UnknownTask, UnknownItem)):
        return "not_found"
    if isinstance(e, InvalidTransition):
        return "conflict"
    return "failed"


class DocumentService:
    def __init__(
        self,
        store: BoundedKVStore,
        dispatcher: Dispatcher,
        *,
        cfg: Settings = settings,
        notify: Notify = notify_webhook,
        fetch: Fetch = fetch_document,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.bus = bus
        self._fetch = fetch
        self.tracker = CompletionTracker(store, cas_retries=cfg.MANIFEST_CAS_RETRIES)
        self.finalizer = Finalizer(store, self.tracker, notify=notify, bus=bus)
        self.repo = WorkflowRepository(store)
        self.engine = WorkflowEngine(
            store,
            dispatcher,
            self.tracker,
            self.finalizer,
            prompt=cfg.SUMMARY_PROMPT,
            chunk_max_chars=cfg.CHUNK_MAX_CHARS,
            max_retries=cfg.DISPATCH_MAX_RETRIES,
            backoff_base_s=cfg.DISPATCH_BACKOFF_BASE_S,
            backoff_factor=cfg.DISPATCH_BACKOFF_FACTOR,
            min_interval_ms=cfg.DISPATCH_MIN_INTERVAL_MS,
            task_timeout_s=cfg.TASK_TIMEOUT_S,
            bus=bus,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, cfg: Settings = settings, bus: Optional[EventBus] = None) -> "DocumentService":
        return cls(build_store(cfg), get_dispatcher(cfg), cfg=cfg, bus=bus)

    # ---------- start ----------
    async def submit(self, req: DocumentRequest, issues: Issues) -> StatusResponse:
        """Register a document with its related items and start every item workflow."""
        document_id = req.document_id or uuid.uuid4().hex
        try:
            return await self._submit(document_id, req, issues)
        except RelayDigestError as e:
            return self._failure(e, issues, document_id=document_id)

    async def _submit(self, document_id: str, req: DocumentRequest, issues: Issues) -> StatusResponse:
        existing = self.tracker.get(document_id)
        if existing is not None and existing.finalized_at is None:
            return StatusResponse(
                status="duplicate", document_id=document_id,
                message="document is already being processed", issues=issues.as_list(),
            )

        text, title, html = req.text, req.title or "", ""
        if text is None:
            doc = await self._fetch(req.url, self.cfg.FETCH_TIMEOUT_S)
            if doc is None:
                issues.add("fetch_failed", "could not fetch document text", document_id=document_id, url=req.url)
                return StatusResponse(status="failed", document_id=document_id,
                                      message=f"could not fetch {req.url}", issues=issues.as_list())
            text, html = doc.text, doc.html
            title = title or doc.title

        related = self._related_items(req, html)
        texts = await self._related_texts(document_id, related, issues)

        if existing is not None:
            logger.info("Document %s submitted again; previous result is replaced", document_id)
            self.store.delete(final_key(document_id))
        main = ItemRecord(item_id=MAIN_ITEM_ID, content_id=document_id, kind=ItemKind.MAIN,
                          title=title, source_kind="document", url=req.url)
        subs = [
            ItemRecord(item_id=r.item_id, content_id=r.url or r.item_id, kind=ItemKind.SUB,
                       title=r.title, source_kind=r.source_kind, url=r.url)
            for r in related
        ]
        self.tracker.init_manifest(document_id, main, subs, title=title)
        await self._publish(document_id, "start", "started", f"{len(subs) + 1} item(s)")

        results: Dict[str, Any] = {}
        finalized: Optional[FinalizeResult] = None
        work = [(MAIN_ITEM_ID, text)] + [(r.item_id, texts[r.item_id]) for r in related]
        for item_id, item_text in work:
            try:
                adv = await self.engine.start(document_id, item_id, item_text, issues, req.chunk_max_chars)
            except RelayDigestError as e:
                logger.error("Item %s/%s could not start: %s", document_id, item_id, e)
                issues.add(e.code, str(e), document_id=document_id, item_id=item_id)
                results[item_id] = "failed"
                continue
            results[item_id] = adv.state.step.value
            finalized = adv.finalized or finalized

        data: Dict[str, Any] = {"items": results, "progress_ref": progress_ref(document_id)}
        failed = [i for i, step in results.items() if step == "failed"]
        status, message = "accepted", ""
        if finalized is not None and finalized.final_ref and not finalized.skipped:
            status = "finalized"
            data.update(final_ref=finalized.final_ref, notified=finalized.notified)
        elif len(failed) == len(results):
            status, message = "failed", "no item could be started"
        elif failed:
            status, message = "partial", f"{len(failed)} of {len(results)} item(s) failed to start"
        logger.info("Document %s started with %d item(s): %s", document_id, len(work), results)
        return StatusResponse(status=status, document_id=document_id, message=message,
                              data=data, issues=issues.as_list())

    def _related_items(self, req: DocumentRequest, html: str) -> List[RelatedItemIn]:
        limit = self.cfg.MAX_RELATED_ITEMS
        out: List[RelatedItemIn] = []
        taken = {MAIN_ITEM_ID}
        for r in req.related[:limit]:
            item_id = r.item_id or f"sub-{len(out) + 1}"
            while item_id in taken:
                item_id = f"{item_id}-{len(out) + 1}"
            taken.add(item_id)
            out.append(r.model_copy(update={"item_id": item_id}))

        if req.discover_related and html and req.url and len(out) < limit:
            known = {r.url for r in out if r.url}
            for d in discover_related(html, req.url, limit=limit):
                if len(out) >= limit:
                    break
                if d.url in known:
                    continue
                item_id = d.item_id
                while item_id in taken:
                    item_id = f"link-{len(out) + 1}"
                taken.add(item_id)
                out.append(RelatedItemIn(item_id=item_id, source_kind=d.source_kind, url=d.url, title=d.title))
        return out

    async def _related_texts(self, document_id: str, related: List[RelatedItemIn], issues: Issues) -> Dict[str, str]:
        sem = asyncio.Semaphore(5)
        texts: Dict[str, str] = {}

        async def _one(r: RelatedItemIn) -> None:
            if r.text is not None:
                texts[r.item_id] = r.text
                return
            doc = None
            if r.url:
                async with sem:
                    doc = await self._fetch(r.url, self.cfg.FETCH_TIMEOUT_S)
            if doc is None:
                issues.add("partial_item_failure", "related item has no text", document_id=document_id,
                           item_id=r.item_id, url=r.url)
                texts[r.item_id] = ""
            else:
                texts[r.item_id] = doc.text

        await asyncio.gather(*[_one(r) for r in related])
        return texts

    # ---------- resume ----------
    async def handle_callback(self, cb: TaskResultCallback, issues: Issues) -> StatusResponse:
        try:
            adv = await self.engine.on_callback(cb.task_id, cb.result_text, issues)
        except UnknownTask as e:
            if self._already_completed(cb):
                record_callback("duplicate")
                logger.info("Duplicate callback for completed item %s/%s", cb.document_id, cb.item_id)
                return StatusResponse(status="duplicate", document_id=cb.document_id, item_id=cb.item_id,
                                      task_id=cb.task_id, message="item already completed",
                                      issues=issues.as_list())
            record_callback("not_found")
            logger.warning("Callback for unknown task %s dropped", cb.task_id)
            return self._failure(e, issues, task_id=cb.task_id)
        except RelayDigestError as e:
            return self._failure(e, issues, task_id=cb.task_id)
        return self._advance_response(adv, issues, task_id=cb.task_id)

    def _already_completed(self, cb: TaskResultCallback) -> bool:
        if not cb.document_id or not cb.item_id:
            return False
        manifest = self.tracker.get(cb.document_id)
        rec = manifest.find(cb.item_id) if manifest else None
        return rec is not None and rec.status == ItemStatus.COMPLETED

    async def poll(self, task_id: str, issues: Issues) -> StatusResponse:
        try:
            adv = await self.engine.poll(task_id, issues)
        except RelayDigestError as e:
            return self._failure(e, issues, task_id=task_id)
        return self._advance_response(adv, issues, task_id=task_id)

    async def replay(self, document_id: str, item_id: str, issues: Issues) -> StatusResponse:
        try:
            adv = await self.engine.replay(document_id, item_id, issues)
        except RelayDigestError as e:
            return self._failure(e, issues, document_id=document_id, item_id=item_id)
        return self._advance_response(adv, issues)

    # ---------- read side ----------
    def status(self, document_id: str) -> StatusResponse:
        manifest = self.tracker.get(document_id)
        if manifest is None:
            return StatusResponse(status="not_found", document_id=document_id, message="unknown document")
        workflows = [
            {
                "item_id": s.item_id,
                "step": s.step.value,
                "chunk": s.chunking.current_index,
                "total_chunks": s.chunking.total_chunks,
                "active_task_id": s.active_task_id,
                "attempts": s.attempts,
                "error": s.error,
            }
            for s in self.repo.list_for_document(document_id)
        ]
        state = "finalized" if manifest.finalized_at else "processing"
        return StatusResponse(
            status="ok",
            document_id=document_id,
            message=f"{manifest.completed_count}/{manifest.total_count} items completed",
            data={"state": state, "manifest": manifest.model_dump(mode="json"), "workflows": workflows},
        )

    def result(self, document_id: str) -> StatusResponse:
        text = self._final_text(document_id)
        if text is None:
            return StatusResponse(status="not_found", document_id=document_id, message="no final result yet")
        return StatusResponse(status="ok", document_id=document_id,
                              data={"final_ref": final_key(document_id), "final_text": text})

    def result_blocks(self, document_id: str) -> StatusResponse:
        """Final text cut into rich-text blocks that fit the block limit."""
        text = self._final_text(document_id)
        if text is None:
            return StatusResponse(status="not_found", document_id=document_id, message="no final result yet")
        blocks = chunk_code_safe(text, self.cfg.BLOCK_MAX_CHARS)
        return StatusResponse(status="ok", document_id=document_id,
                              data={"final_ref": final_key(document_id), "count": len(blocks), "blocks": blocks})

    def _final_text(self, document_id: str) -> Optional[str]:
        try:
            return self.store.get_text(final_key(document_id))
        except RelayDigestError as e:
            logger.error("Final result of %s unreadable: %s", document_id, e)
            return None

    async def notify(self, document_id: str, issues: Issues) -> StatusResponse:
        """Finalize a complete document that has not been finalized, else resend its notification."""
        manifest = self.tracker.get(document_id)
        if manifest is None:
            return StatusResponse(status="not_found", document_id=document_id, message="unknown document")
        try:
            if manifest.finalized_at is not None:
                res = await self.finalizer.resend(document_id)
            elif manifest.completed_count == manifest.total_count:
                res = await self.finalizer.finalize(document_id, manifest, issues)
            else:
                return StatusResponse(
                    status="pending", document_id=document_id,
                    message=f"{manifest.completed_count}/{manifest.total_count} items completed",
                    issues=issues.as_list(),
                )
        except RelayDigestError as e:
            return self._failure(e, issues, document_id=document_id)
        return StatusResponse(
            status="ok" if res.notified else "failed",
            document_id=document_id,
            message=res.error or "notification sent",
            data={"final_ref": res.final_ref, "notified": res.notified, "notify_status": res.notify_status},
            issues=issues.as_list(),
        )

    def stats(self) -> StatusResponse:
        s = self.store.stats()
        return StatusResponse(status="ok", data={
            **s.model_dump(),
            "total_budget_bytes": self.store.total_budget_bytes,
            "max_entries": self.store.max_entries,
            "slot_max_bytes": self.store.max_slot_bytes,
        })

    # ---------- internals ----------
    def _advance_response(self, adv: Advance, issues: Issues, task_id: Optional[str] = None) -> StatusResponse:
        s = adv.state
        data: Dict[str, Any] = {
            "step": s.step.value,
            "chunk": s.chunking.current_index,
            "total_chunks": s.chunking.total_chunks,
            "progress_ref": s.progress_ref,
        }
        if adv.waiting:
            data["waiting"] = True
        if adv.finalized is not None:
            data.update(final_ref=adv.finalized.final_ref, notified=adv.finalized.notified)
        return StatusResponse(
            status=adv.status,
            message=s.error or "",
            document_id=s.document_id,
            item_id=s.item_id,
            task_id=s.active_task_id or task_id,
            data=data,
            issues=issues.as_list(),
        )

    def _failure(self, e: RelayDigestError, issues: Issues, **ids: Optional[str]) -> StatusResponse:
        issues.add(e.code, str(e), **ids)
        return StatusResponse(status=_error_status(e), message=str(e), issues=issues.as_list(), **ids)

    async def _publish(self, document_id: str, step: str, status: str, message: Optional[str] = None) -> None:
        if self.bus is not None:
            await self.bus.publish(make_event(document_id, step, status, message=message))
