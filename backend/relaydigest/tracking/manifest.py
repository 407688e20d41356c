from __future__ import annotations
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple
from pydantic import BaseModel, Field

from ..errors import UnknownItem, VersionConflict
from ..observability.metrics import record_manifest_conflict
from ..storage.kv import BoundedKVStore

logger = logging.getLogger(__name__)


class ItemKind(str, Enum):
    MAIN = "main"
    SUB = "sub"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ItemRecord(BaseModel):
    item_id: str
    content_id: str
    kind: ItemKind
    status: ItemStatus = ItemStatus.PENDING
    task_id: Optional[str] = None
    result_ref: Optional[str] = None
    completed_at: Optional[datetime] = None
    title: str = ""
    source_kind: str = "document"
    url: Optional[str] = None


class ItemManifest(BaseModel):
    document_id: str
    title: str = ""
    main_item: ItemRecord
    sub_items: List[ItemRecord] = Field(default_factory=list)
    total_count: int
    completed_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finalized_at: Optional[datetime] = None
    notified: bool = False

    def items(self) -> List[ItemRecord]:
        return [self.main_item, *self.sub_items]

    def find(self, item_id: str) -> Optional[ItemRecord]:
        return next((i for i in self.items() if i.item_id == item_id), None)


class MarkResult(BaseModel):
    all_completed: bool
    changed: bool
    manifest: ItemManifest


def manifest_key(document_id: str) -> str:
    return f"manifest:{document_id}"


class CompletionTracker:
    """
    Fan-in gate over a document's items.

    Every mutation is a compare-and-set on the manifest's store version, so
    two callbacks finishing different items at the same moment cannot both
    see the last completion, and neither update is lost.
    """

    def __init__(self, store: BoundedKVStore, cas_retries: int = 8) -> None:
        self._store = store
        self._cas_retries = max(1, cas_retries)

    def init_manifest(
        self,
        document_id: str,
        main_item: ItemRecord,
        sub_items: List[ItemRecord],
        title: str = "",
    ) -> ItemManifest:
        ids = [main_item.item_id] + [s.item_id for s in sub_items]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate item ids in manifest for {document_id}")
        manifest = ItemManifest(
            document_id=document_id,
            title=title,
            main_item=main_item.model_copy(update={"kind": ItemKind.MAIN}),
            sub_items=[s.model_copy(update={"kind": ItemKind.SUB}) for s in sub_items],
            total_count=len(ids),
            completed_count=0,
        )
        self._store.put_model(manifest_key(document_id), manifest, tags={"document_id": document_id})
        logger.info("Manifest created for %s with %d items", document_id, manifest.total_count)
        return manifest

    def get(self, document_id: str) -> Optional[ItemManifest]:
        return self._store.get_model(manifest_key(document_id), ItemManifest)

    def mark_processing(self, document_id: str, item_id: str, task_id: Optional[str] = None) -> ItemManifest:
        def mutate(m: ItemManifest) -> bool:
            rec = self._record(m, item_id)
            if rec.status == ItemStatus.COMPLETED:
                return False
            if rec.status == ItemStatus.PROCESSING and rec.task_id == task_id:
                return False
            rec.status = ItemStatus.PROCESSING
            rec.task_id = task_id
            return True

        manifest, _ = self._update(document_id, mutate)
        return manifest

    def mark_completed(self, document_id: str, item_id: str, result_ref: Optional[str] = None) -> MarkResult:
        def mutate(m: ItemManifest) -> bool:
            rec = self._record(m, item_id)
            if rec.status == ItemStatus.COMPLETED:
                return False
            rec.status = ItemStatus.COMPLETED
            rec.result_ref = result_ref
            rec.completed_at = datetime.now(timezone.utc)
            m.completed_count = sum(1 for i in m.items() if i.status == ItemStatus.COMPLETED)
            return True

        manifest, changed = self._update(document_id, mutate)
        all_completed = changed and manifest.completed_count == manifest.total_count
        if all_completed:
            logger.info("All %d items of %s completed", manifest.total_count, document_id)
        return MarkResult(all_completed=all_completed, changed=changed, manifest=manifest)

    def claim_finalization(self, document_id: str) -> Tuple[ItemManifest, bool]:
        """Stamp `finalized_at`; only the first caller gets True."""
        def mutate(m: ItemManifest) -> bool:
            if m.finalized_at is not None:
                return False
            m.finalized_at = datetime.now(timezone.utc)
            return True

        return self._update(document_id, mutate)

    def record_notification(self, document_id: str, notified: bool) -> ItemManifest:
        def mutate(m: ItemManifest) -> bool:
            if m.notified == notified:
                return False
            m.notified = notified
            return True

        manifest, _ = self._update(document_id, mutate)
        return manifest

    def delete(self, document_id: str) -> bool:
        return self._store.delete(manifest_key(document_id))

    # ---------- internals ----------
    @staticmethod
    def _record(m: ItemManifest, item_id: str) -> ItemRecord:
        rec = m.find(item_id)
        if rec is None:
            raise UnknownItem(m.document_id, item_id)
        return rec

    def _update(self, document_id: str, mutate: Callable[[ItemManifest], bool]) -> Tuple[ItemManifest, bool]:
        key = manifest_key(document_id)
        attempt = 0
        while True:
            attempt += 1
            blob = self._store.get(key)
            if blob is None:
                raise UnknownItem(document_id)
            manifest = ItemManifest.model_validate_json(blob.payload)
            if not mutate(manifest):
                return manifest, False
            try:
                self._store.put_model(key, manifest, tags={"document_id": document_id}, if_version=blob.version)
                return manifest, True
            except VersionConflict:
                record_manifest_conflict()
                if attempt >= self._cas_retries:
                    logger.error("Manifest %s still conflicting after %d attempts", document_id, attempt)
                    raise
                logger.info("Manifest %s changed underneath (attempt %d), retrying", document_id, attempt)
