"""
Runs item workflows across short-lived invocations.

Each public method handles one invocation: it loads what it needs from the
store, feeds events through `transition`, carries out the resulting effects
and returns. Waiting for the text service is never done in-process; after a
pending dispatch the state is persisted and the method returns.
"""
from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from ..aggregate.finalizer import FinalizeResult, Finalizer
from ..errors import DispatchFailure, InvalidTransition, StorageQuotaExceeded, UnknownItem, UnknownTask
from ..integration.dispatch import Dispatcher
from ..integration.retry import with_retry
from ..issues import Issues
from ..observability.events import EventBus, make_event, progress_ref
from ..observability.metrics import record_callback, record_dispatch, record_dispatch_error
from ..storage.kv import BoundedKVStore
from ..text.chunker import chunk_text
from ..tracking.manifest import CompletionTracker
from .machine import (
    Abort, Begin, ChunkResult, CompleteItem, Discard, DispatchChunk, Dispatched,
    Event, Persist, ResultStored, StoreItemResult, transition,
)
from .state import ChunkingState, Step, WorkflowRepository, WorkflowState, item_result_key, task_key

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Advance(BaseModel):
    """What one invocation did to an item workflow."""

    state: WorkflowState
    finalized: Optional[FinalizeResult] = None
    waiting: bool = False

    @property
    def status(self) -> str:
        if self.state.step == Step.FAILED:
            return "failed"
        if self.finalized is not None and self.finalized.final_ref and not self.finalized.skipped:
            return "finalized"
        if self.state.step == Step.DONE:
            return "completed"
        return "dispatched"


class WorkflowEngine:
    def __init__(
        self,
        store: BoundedKVStore,
        dispatcher: Dispatcher,
        tracker: CompletionTracker,
        finalizer: Finalizer,
        *,
        prompt: str,
        chunk_max_chars: int = 15_000,
        max_retries: int = 3,
        backoff_base_s: float = 1.0,
        backoff_factor: float = 2.0,
        min_interval_ms: int = 0,
        task_timeout_s: int = 900,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.repo = WorkflowRepository(store)
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.finalizer = finalizer
        self.prompt = prompt
        self.chunk_max_chars = chunk_max_chars
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.backoff_factor = backoff_factor
        self.min_interval_s = min_interval_ms / 1000
        self.task_timeout = timedelta(seconds=task_timeout_s)
        self._bus = bus
        self._sleep = sleep
        self._clock = clock

    # ---------- invocations ----------
    async def start(self, document_id: str, item_id: str, text: str, issues: Issues,
                    chunk_max_chars: Optional[int] = None) -> Advance:
        chunks = chunk_text(text, chunk_max_chars or self.chunk_max_chars) if text.strip() else []
        return await self._begin(document_id, item_id, chunks, issues)

    async def on_callback(self, task_id: str, result_text: Optional[str], issues: Issues) -> Advance:
        state = self.repo.find_by_task(task_id)
        if state is None:
            logger.warning("Callback for unknown task %s dropped", task_id)
            raise UnknownTask(task_id)

        text = result_text or ""
        if not text.strip():
            issues.add("partial_item_failure", "empty result for chunk",
                       document_id=state.document_id, item_id=state.item_id,
                       chunk=state.chunking.current_index + 1)
        record_callback("accepted")
        await self._publish(state, "resume", "progress",
                            f"chunk {state.chunking.current_index + 1}/{state.chunking.total_chunks} returned")
        return await self._run(state, ChunkResult(task_id=task_id, text=text), issues, task_id)

    async def poll(self, task_id: str, issues: Issues) -> Advance:
        """Ask the service for a result the callback never delivered; time out stale tasks."""
        state = self.repo.find_by_task(task_id)
        if state is None:
            raise UnknownTask(task_id)

        try:
            result = await self.dispatcher.fetch_result(task_id)
        except DispatchFailure as e:
            issues.add(e.code, str(e), task_id=task_id)
            result = None
        if result is not None:
            return await self._run(state, ChunkResult(task_id=task_id, text=result), issues, task_id)

        if state.dispatched_at and self._clock() - state.dispatched_at > self.task_timeout:
            logger.error("Task %s for %s/%s timed out", task_id, state.document_id, state.item_id)
            issues.add("timeout", "no result within the task timeout", task_id=task_id,
                       document_id=state.document_id, item_id=state.item_id)
            return await self._run(state, Abort(error=f"timeout waiting for task {task_id}"), issues, task_id)
        return Advance(state=state, waiting=True)

    async def replay(self, document_id: str, item_id: str, issues: Issues) -> Advance:
        """Restart a failed item from the chunks kept in its state."""
        state = self.repo.load(document_id, item_id)
        if state is None:
            raise UnknownItem(document_id, item_id)
        if state.step != Step.FAILED:
            raise InvalidTransition(state.step.value, "replay")
        logger.info("Replaying %s/%s after failure: %s", document_id, item_id, state.error)
        return await self._begin(document_id, item_id, state.chunking.chunks, issues)

    # ---------- internals ----------
    async def _begin(self, document_id: str, item_id: str, chunks: List[str], issues: Issues) -> Advance:
        existing = self.repo.load(document_id, item_id)
        if existing is not None and existing.step != Step.FAILED:
            raise InvalidTransition(existing.step.value, "begin")
        if existing is not None:
            # replay path: the old failed state is replaced wholesale
            self.repo.delete(existing)

        self.tracker.mark_processing(document_id, item_id)
        state = WorkflowState(
            document_id=document_id,
            item_id=item_id,
            progress_ref=progress_ref(document_id),
            created_at=self._clock(),
        )
        await self._publish(state, "start", "started", f"{len(chunks)} chunk(s)")
        return await self._run(state, Begin(chunks=list(chunks)), issues, None)

    async def _run(self, state: WorkflowState, event: Event, issues: Issues,
                   previous_task_id: Optional[str]) -> Advance:
        pending: List[Event] = [event]
        finalized: Optional[FinalizeResult] = None
        dispatches = 0

        while pending:
            state, effects = transition(state, pending.pop(0))
            for eff in effects:
                if isinstance(eff, DispatchChunk):
                    if dispatches and self.min_interval_s > 0:
                        await self._sleep(self.min_interval_s)
                    pending.append(await self._dispatch(state, eff, issues))
                    dispatches += 1
                elif isinstance(eff, Persist):
                    error = self._persist(state, previous_task_id, issues)
                    if error is not None:
                        pending.append(Abort(error=error))
                        continue
                    previous_task_id = state.active_task_id
                    if state.step == Step.DISPATCHED:
                        self.tracker.mark_processing(state.document_id, state.item_id, state.active_task_id)
                elif isinstance(eff, StoreItemResult):
                    pending.append(self._store_result(state, eff.text, issues))
                elif isinstance(eff, CompleteItem):
                    finalized = await self._complete_item(state, eff.result_ref, issues)
                elif isinstance(eff, Discard):
                    if previous_task_id:
                        self.store.delete(task_key(previous_task_id))
                    self.repo.delete(state)

        if state.step == Step.FAILED:
            await self._publish(state, "item", "error", state.error)
        elif state.step == Step.DISPATCHED:
            await self._publish(state, "dispatch", "progress",
                                f"waiting on chunk {state.chunking.current_index + 1}/{state.chunking.total_chunks}")
        return Advance(state=state, finalized=finalized)

    async def _dispatch(self, state: WorkflowState, eff: DispatchChunk, issues: Issues) -> Event:
        name = self.dispatcher.name
        metadata = {
            "document_id": state.document_id,
            "item_id": state.item_id,
            "chunk_index": eff.index,
            "total_chunks": eff.total,
        }
        try:
            outcome, attempts = await with_retry(
                lambda: self.dispatcher.dispatch(self.prompt, eff.text, metadata),
                max_retries=self.max_retries,
                base_delay_s=self.backoff_base_s,
                backoff_factor=self.backoff_factor,
                retry_on=(DispatchFailure,),
                sleep=self._sleep,
                label=f"dispatch {state.document_id}/{state.item_id} chunk {eff.index + 1}",
            )
        except DispatchFailure as e:
            record_dispatch_error(name)
            logger.error("Dispatch of %s/%s chunk %d/%d failed for good: %s",
                         state.document_id, state.item_id, eff.index + 1, eff.total, e)
            issues.add(e.code, str(e), document_id=state.document_id, item_id=state.item_id)
            return Abort(error=f"dispatch of chunk {eff.index + 1}/{eff.total} failed "
                               f"after {self.max_retries + 1} attempts: {e}")

        record_dispatch(name, immediate=not outcome.pending)
        return Dispatched(at=self._clock(), task_id=outcome.task_id, result=outcome.result, attempts=attempts)

    def _persist(self, state: WorkflowState, previous_task_id: Optional[str], issues: Issues) -> Optional[str]:
        """
        Save the state; on a full store return the error the item should fail with.

        A failed state that does not fit is saved again with its chunk results
        dropped, then with its chunks dropped, so `replay` can still find it.
        """
        try:
            self.repo.save(state, previous_task_id)
            return None
        except StorageQuotaExceeded as e:
            logger.error("Could not save workflow state of %s/%s: %s", state.document_id, state.item_id, e)
            issues.add(e.code, str(e), document_id=state.document_id, item_id=state.item_id)
            if state.step != Step.FAILED:
                return f"could not save workflow state: {e}"
            last = e

        chunking = state.chunking
        for kept_chunks, note in ((chunking.chunks, "chunk results dropped"), ([], "chunks dropped")):
            compact = state.model_copy(update={
                "chunking": ChunkingState(chunks=list(kept_chunks), total_chunks=chunking.total_chunks,
                                          current_index=chunking.current_index),
                "error": f"{state.error} ({note}: store full)",
            })
            try:
                self.repo.save(compact, previous_task_id)
                logger.warning("Saved compact failed state of %s/%s (%s)", state.document_id, state.item_id, note)
                return None
            except StorageQuotaExceeded as e:
                last = e
        raise last

    def _store_result(self, state: WorkflowState, text: str, issues: Issues) -> Event:
        ref = item_result_key(state.document_id, state.item_id)
        try:
            self.store.put_text(ref, text, tags={"document_id": state.document_id, "item_id": state.item_id})
        except StorageQuotaExceeded as e:
            logger.error("Could not store result of %s/%s: %s", state.document_id, state.item_id, e)
            issues.add(e.code, str(e), document_id=state.document_id, item_id=state.item_id)
            return Abort(error=str(e))
        return ResultStored(result_ref=ref)

    async def _complete_item(self, state: WorkflowState, result_ref: str, issues: Issues) -> Optional[FinalizeResult]:
        mark = self.tracker.mark_completed(state.document_id, state.item_id, result_ref)
        await self._publish(state, "item", "completed",
                            f"{mark.manifest.completed_count}/{mark.manifest.total_count} items done")
        if not mark.all_completed:
            return None
        try:
            return await self.finalizer.finalize(state.document_id, mark.manifest, issues)
        except StorageQuotaExceeded as e:
            # items stay completed; POST /documents/{id}/notify finalizes later
            logger.error("Could not store final result of %s: %s", state.document_id, e)
            issues.add(e.code, str(e), document_id=state.document_id)
            return FinalizeResult(document_id=state.document_id, error=str(e))

    async def _publish(self, state: WorkflowState, step: str, status: str, message: Optional[str] = None) -> None:
        if self._bus is None:
            return
        await self._bus.publish(make_event(
            state.document_id, step, status, item_id=state.item_id, message=message,
            data={"step": state.step.value, "chunk": state.chunking.current_index,
                  "total_chunks": state.chunking.total_chunks},
        ))
