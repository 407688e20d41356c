from __future__ import annotations
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from ..storage.kv import BoundedKVStore

logger = logging.getLogger(__name__)


class Step(str, Enum):
    STARTED = "started"
    DISPATCHED = "dispatched"
    RESUMING = "resuming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class ChunkingState(BaseModel):
    chunks: List[str] = Field(default_factory=list)
    total_chunks: int = 0
    current_index: int = 0
    results_by_chunk_index: Dict[int, str] = Field(default_factory=dict)


class WorkflowState(BaseModel):
    document_id: str
    item_id: str
    step: Step = Step.STARTED
    chunking: ChunkingState = Field(default_factory=ChunkingState)
    active_task_id: Optional[str] = None
    progress_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    dispatched_at: Optional[datetime] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return workflow_key(self.document_id, self.item_id)


def workflow_key(document_id: str, item_id: str) -> str:
    return f"workflow:{document_id}:{item_id}"


def task_key(task_id: str) -> str:
    # task ids are minted by the external service; '#' is reserved for slot names
    return "task:" + task_id.replace("%", "%25").replace("#", "%23")


def item_result_key(document_id: str, item_id: str) -> str:
    return f"result:{document_id}:{item_id}"


class WorkflowRepository:
    """Workflow states plus the task-id -> workflow-key index, both in the KV store."""

    def __init__(self, store: BoundedKVStore) -> None:
        self._store = store

    def load(self, document_id: str, item_id: str) -> Optional[WorkflowState]:
        return self._store.get_model(workflow_key(document_id, item_id), WorkflowState)

    def find_by_task(self, task_id: str) -> Optional[WorkflowState]:
        ref = self._store.get_text(task_key(task_id))
        if ref is None:
            return None
        state = self._store.get_model(ref, WorkflowState)
        if state is None or state.active_task_id != task_id:
            # index outlived its state
            logger.warning("Stale task index %s -> %s", task_id, ref)
            self._store.delete(task_key(task_id))
            return None
        return state

    def save(self, state: WorkflowState, previous_task_id: Optional[str] = None) -> None:
        state.updated_at = datetime.now(timezone.utc)
        self._store.put_model(
            state.key, state, tags={"document_id": state.document_id, "step": state.step.value}
        )
        if previous_task_id and previous_task_id != state.active_task_id:
            self._store.delete(task_key(previous_task_id))
        if state.active_task_id:
            self._store.put_text(task_key(state.active_task_id), state.key)

    def delete(self, state: WorkflowState) -> None:
        if state.active_task_id:
            self._store.delete(task_key(state.active_task_id))
        self._store.delete(state.key)

    def list_for_document(self, document_id: str) -> List[WorkflowState]:
        out = []
        for key in self._store.keys(f"workflow:{document_id}:"):
            state = self._store.get_model(key, WorkflowState)
            if state is not None:
                out.append(state)
        return out
