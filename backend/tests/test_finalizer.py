import pytest

from relaydigest.aggregate.finalizer import MISSING_ITEM_TEXT, Finalizer, final_key
from relaydigest.errors import InvalidTransition, UnknownItem
from relaydigest.issues import Issues
from relaydigest.tracking.manifest import CompletionTracker, ItemKind, ItemRecord
from conftest import NotifySpy


def completed_doc(store, with_results=True):
    tracker = CompletionTracker(store)
    tracker.init_manifest(
        "doc",
        ItemRecord(item_id="main", content_id="doc", kind=ItemKind.MAIN, title="Main"),
        [ItemRecord(item_id="sub-1", content_id="u1", kind=ItemKind.SUB, title="Ref",
                    source_kind="link", url="https://x.example/1")],
        title="Report",
    )
    for item in ("main", "sub-1"):
        ref = f"result:doc:{item}"
        if with_results:
            store.put_text(ref, f"{item} summary")
        tracker.mark_completed("doc", item, ref)
    return tracker


class TestFinalize:
    @pytest.mark.asyncio
    async def test_builds_stores_and_notifies(self, store):
        """Test that finalize stores the combined text, then notifies"""
        tracker = completed_doc(store)
        notify = NotifySpy()
        res = await Finalizer(store, tracker, notify=notify).finalize("doc")

        assert res.notified is True
        assert res.final_ref == final_key("doc")
        text = store.get_text(final_key("doc"))
        assert text == res.final_text
        assert text.startswith("# Report\n\nmain summary")
        assert "## Related link: Ref\n<https://x.example/1>\n\nsub-1 summary" in text
        assert "Processed 2 items (1 main, 1 related)" in text

        assert notify.payloads[0]["summary"] == "main summary"
        m = tracker.get("doc")
        assert m.finalized_at is not None
        assert m.notified is True

    @pytest.mark.asyncio
    async def test_second_finalize_is_noop(self, store):
        """Second finalize is noop"""
        tracker = completed_doc(store)
        notify = NotifySpy()
        fin = Finalizer(store, tracker, notify=notify)
        await fin.finalize("doc")
        again = await fin.finalize("doc")
        assert again.skipped is True
        assert len(notify.payloads) == 1

    @pytest.mark.asyncio
    async def test_incomplete_document_rejected(self, store):
        """Incomplete document rejected"""
        tracker = CompletionTracker(store)
        tracker.init_manifest("doc", ItemRecord(item_id="main", content_id="doc", kind=ItemKind.MAIN), [])
        with pytest.raises(InvalidTransition):
            await Finalizer(store, tracker, notify=NotifySpy()).finalize("doc")
        with pytest.raises(UnknownItem):
            await Finalizer(store, tracker, notify=NotifySpy()).finalize("missing")

    @pytest.mark.asyncio
    async def test_missing_result_rendered_as_placeholder(self, store):
        """Missing result rendered as placeholder"""
        tracker = completed_doc(store, with_results=False)
        issues = Issues()
        res = await Finalizer(store, tracker, notify=NotifySpy()).finalize("doc", issues=issues)
        assert res.final_text.count(MISSING_ITEM_TEXT) == 2
        assert [i["code"] for i in issues.as_list()] == ["partial_item_failure", "partial_item_failure"]

    @pytest.mark.asyncio
    async def test_failed_notification_is_reported_not_rolled_back(self, store):
        """Failed notification is reported not rolled back"""
        tracker = completed_doc(store)
        issues = Issues()
        res = await Finalizer(store, tracker, notify=NotifySpy(status_code=502)).finalize("doc", issues=issues)
        assert res.notified is False
        assert res.notify_status == 502
        assert store.get_text(final_key("doc")) is not None
        assert tracker.get("doc").finalized_at is not None
        assert issues.as_list()[0]["code"] == "notification_failed"


class TestResend:
    @pytest.mark.asyncio
    async def test_resend_after_failure(self, store):
        """Resend after failure"""
        tracker = completed_doc(store)
        await Finalizer(store, tracker, notify=NotifySpy(status_code=500)).finalize("doc")
        assert tracker.get("doc").notified is False

        notify = NotifySpy()
        res = await Finalizer(store, tracker, notify=notify).resend("doc")
        assert res.notified is True
        assert notify.payloads[0]["summary"] == "main summary"
        assert tracker.get("doc").notified is True

    @pytest.mark.asyncio
    async def test_resend_requires_finalized(self, store):
        """Resend requires finalized"""
        tracker = completed_doc(store)
        with pytest.raises(UnknownItem):
            await Finalizer(store, tracker, notify=NotifySpy()).resend("doc")
