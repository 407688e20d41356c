"""
Item workflow as an explicit state machine.

`transition(state, event)` returns the next state and the effects the engine
must carry out. It does no I/O; the engine executes effects and feeds their
outcomes back in as new events.

    started --Begin--> started (DispatchChunk 0)
    started|resuming --Dispatched(task)--> dispatched (Persist)
    started|resuming --Dispatched(result)--> resuming (DispatchChunk i+1) | finalizing
    dispatched --ChunkResult--> resuming (DispatchChunk i+1) | finalizing (StoreItemResult)
    finalizing --ResultStored--> done (CompleteItem, Discard)
    any but done --Abort--> failed (Persist)
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union

from ..errors import InvalidTransition, UnknownTask
from .state import ChunkingState, Step, WorkflowState

EMPTY_ITEM_TEXT = "[Item had no text to summarize]"


# ---------- events ----------
@dataclass(frozen=True)
class Begin:
    chunks: List[str]


@dataclass(frozen=True)
class Dispatched:
    at: datetime
    task_id: Optional[str] = None
    result: Optional[str] = None
    attempts: int = 1


@dataclass(frozen=True)
class ChunkResult:
    task_id: str
    text: str


@dataclass(frozen=True)
class ResultStored:
    result_ref: str


@dataclass(frozen=True)
class Abort:
    error: str


Event = Union[Begin, Dispatched, ChunkResult, ResultStored, Abort]


# ---------- effects ----------
@dataclass(frozen=True)
class DispatchChunk:
    index: int
    total: int
    text: str


@dataclass(frozen=True)
class Persist:
    pass


@dataclass(frozen=True)
class StoreItemResult:
    text: str


@dataclass(frozen=True)
class CompleteItem:
    result_ref: str


@dataclass(frozen=True)
class Discard:
    pass


Effect = Union[DispatchChunk, Persist, StoreItemResult, CompleteItem, Discard]


def combine_results(chunking: ChunkingState) -> str:
    n = chunking.total_chunks
    if n == 0:
        return EMPTY_ITEM_TEXT
    parts = []
    for i in range(n):
        text = (chunking.results_by_chunk_index.get(i) or "").strip()
        if not text:
            text = f"[Chunk {i + 1} failed or incomplete]"
        parts.append(f"## Chunk {i + 1} of {n}\n\n{text}" if n > 1 else text)
    return "\n\n".join(parts)


def _next_chunk(state: WorkflowState) -> List[Effect]:
    c = state.chunking
    i = c.current_index
    return [DispatchChunk(index=i, total=c.total_chunks, text=c.chunks[i])]


def _record(state: WorkflowState, text: str) -> List[Effect]:
    c = state.chunking
    c.results_by_chunk_index[c.current_index] = text
    state.active_task_id = None
    if c.current_index + 1 < c.total_chunks:
        c.current_index += 1
        state.step = Step.RESUMING
        return _next_chunk(state)
    state.step = Step.FINALIZING
    return [StoreItemResult(combine_results(c))]


def transition(state: WorkflowState, event: Event) -> Tuple[WorkflowState, List[Effect]]:
    s = state.model_copy(deep=True)

    if isinstance(event, Abort):
        if s.step == Step.DONE:
            raise InvalidTransition(s.step.value, "abort")
        s.step = Step.FAILED
        s.error = event.error
        s.active_task_id = None
        return s, [Persist()]

    if isinstance(event, Begin):
        if s.step != Step.STARTED or s.chunking.total_chunks:
            raise InvalidTransition(s.step.value, "begin")
        s.chunking = ChunkingState(chunks=list(event.chunks), total_chunks=len(event.chunks))
        if not event.chunks:
            s.step = Step.FINALIZING
            return s, [StoreItemResult(combine_results(s.chunking))]
        return s, _next_chunk(s)

    if isinstance(event, Dispatched):
        if s.step not in (Step.STARTED, Step.RESUMING):
            raise InvalidTransition(s.step.value, "dispatched")
        s.attempts = event.attempts
        s.dispatched_at = event.at
        if event.result is not None:
            return s, _record(s, event.result)
        s.step = Step.DISPATCHED
        s.active_task_id = event.task_id
        return s, [Persist()]

    if isinstance(event, ChunkResult):
        if s.step != Step.DISPATCHED or s.active_task_id != event.task_id:
            raise UnknownTask(event.task_id)
        return s, _record(s, event.text)

    if isinstance(event, ResultStored):
        if s.step != Step.FINALIZING:
            raise InvalidTransition(s.step.value, "result_stored")
        s.step = Step.DONE
        return s, [CompleteItem(event.result_ref), Discard()]

    raise InvalidTransition(s.step.value, type(event).__name__)
