from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel

from ..errors import InvalidTransition, ReconstructionError, UnknownItem
from ..issues import Issues
from ..integration.webhook import NotifyResult, notify_webhook
from ..observability.events import EventBus, make_event
from ..observability.metrics import record_finalization
from ..storage.kv import BoundedKVStore
from ..tracking.manifest import CompletionTracker, ItemKind, ItemManifest, ItemRecord

logger = logging.getLogger(__name__)

Notify = Callable[[Dict[str, Any]], Awaitable[NotifyResult]]

MISSING_ITEM_TEXT = "[Item result unavailable]"


def final_key(document_id: str) -> str:
    return f"final:{document_id}"


def _shorten(s: str, n: int = 500) -> str:
    s = " ".join(s.split())
    return s[: n - 3] + "..." if len(s) > n else s


class FinalizeResult(BaseModel):
    document_id: str
    final_text: str = ""
    final_ref: Optional[str] = None
    notified: bool = False
    notify_status: int = 0
    skipped: bool = False
    error: Optional[str] = None


def _label(rec: ItemRecord) -> str:
    return rec.title or rec.url or rec.item_id


def build_final_text(manifest: ItemManifest, sections: List[Tuple[ItemRecord, str]], finalized_at: datetime) -> str:
    subs = len(manifest.sub_items)
    lines = [f"# {manifest.title or manifest.document_id}", ""]
    for rec, text in sections:
        if rec.kind == ItemKind.SUB:
            lines.append(f"## Related {rec.source_kind}: {_label(rec)}")
            if rec.url:
                lines.append(f"<{rec.url}>")
            lines.append("")
        lines.append(text.strip())
        lines.append("")
    lines.append("---")
    lines.append(
        f"_Processed {manifest.total_count} items (1 main, {subs} related) · "
        f"{manifest.completed_count}/{manifest.total_count} completed · "
        f"started {manifest.created_at.isoformat()} · finalized {finalized_at.isoformat()}_"
    )
    return "\n".join(lines)


class Finalizer:
    """Builds the combined document once all items are in and sends the one notification."""

    def __init__(
        self,
        store: BoundedKVStore,
        tracker: CompletionTracker,
        *,
        notify: Notify = notify_webhook,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._notify = notify
        self._bus = bus

    async def finalize(self, document_id: str, manifest: Optional[ItemManifest] = None,
                       issues: Optional[Issues] = None) -> FinalizeResult:
        if issues is None:
            issues = Issues()
        manifest = manifest or self._tracker.get(document_id)
        if manifest is None:
            raise UnknownItem(document_id)
        if manifest.finalized_at is not None:
            return FinalizeResult(document_id=document_id, final_ref=final_key(document_id), skipped=True)
        if manifest.completed_count != manifest.total_count:
            raise InvalidTransition("collecting", "finalize")

        sections = [(rec, self._item_text(rec, issues)) for rec in manifest.items()]
        now = datetime.now(timezone.utc)
        final_text = build_final_text(manifest, sections, now)
        ref = final_key(document_id)
        summary = _shorten(sections[0][1])
        self._store.put_text(ref, final_text, tags={"document_id": document_id, "kind": "final", "summary": summary})

        manifest, claimed = self._tracker.claim_finalization(document_id)
        if not claimed:
            logger.info("Document %s was finalized by another invocation", document_id)
            return FinalizeResult(document_id=document_id, final_text=final_text, final_ref=ref, skipped=True)

        for rec in manifest.items():
            if rec.result_ref:
                self._store.delete(rec.result_ref)

        result = await self._send(manifest, ref, summary)
        record_finalization(result.notified)
        result.final_text = final_text
        logger.info("Document %s finalized (%d items, notified=%s)",
                    document_id, manifest.total_count, result.notified)
        if result.error:
            issues.add("notification_failed", result.error, document_id=document_id)
        return result

    async def resend(self, document_id: str) -> FinalizeResult:
        """Send the notification again for an already finalized document."""
        manifest = self._tracker.get(document_id)
        if manifest is None or manifest.finalized_at is None:
            raise UnknownItem(document_id)
        ref = final_key(document_id)
        blob = self._store.get(ref)
        if blob is None:
            raise UnknownItem(document_id)
        result = await self._send(manifest, ref, blob.tags.get("summary", ""))
        result.final_text = blob.text
        return result

    # ---------- internals ----------
    def _item_text(self, rec: ItemRecord, issues: Issues) -> str:
        if not rec.result_ref:
            issues.add("partial_item_failure", "item has no stored result", item_id=rec.item_id)
            return MISSING_ITEM_TEXT
        try:
            text = self._store.get_text(rec.result_ref)
        except ReconstructionError as e:
            logger.error("Result of item %s is damaged: %s", rec.item_id, e)
            issues.add(e.code, str(e), item_id=rec.item_id)
            return MISSING_ITEM_TEXT
        if text is None or not text.strip():
            issues.add("partial_item_failure", "item result missing or empty", item_id=rec.item_id)
            return MISSING_ITEM_TEXT
        return text

    async def _send(self, manifest: ItemManifest, ref: str, summary: str) -> FinalizeResult:
        document_id = manifest.document_id
        payload = {
            "document_id": document_id,
            "title": manifest.title,
            "summary": summary,
            "final_result_ref": ref,
            "item_counts": {
                "total": manifest.total_count,
                "completed": manifest.completed_count,
                "main": 1,
                "sub": len(manifest.sub_items),
            },
            "completed_at": (manifest.finalized_at or datetime.now(timezone.utc)).isoformat(),
        }
        res = await self._notify(payload)
        if res.attempted:
            self._tracker.record_notification(document_id, res.ok)
        if self._bus:
            await self._bus.publish(make_event(
                document_id, "notify", "completed" if res.ok else "error",
                message=res.error, data={"status": res.status_code, "attempted": res.attempted},
            ))
        return FinalizeResult(
            document_id=document_id,
            final_ref=ref,
            notified=res.ok,
            notify_status=res.status_code,
            error=res.error,
        )
