import json

import httpx
import pytest

from relaydigest.config import Settings
from relaydigest.errors import DispatchFailure
from relaydigest.integration.dispatch import (
    GroqDispatcher, HttpTaskDispatcher, StubDispatcher, get_dispatcher,
)
from relaydigest.integration.retry import with_retry
from relaydigest.integration.webhook import SIGNATURE_HEADER, notify_webhook, sign
from relaydigest.tools.fetcher import discover_related, extract_text
from conftest import SleepSpy

SERVICE = "https://text.example/tasks"


def service(handler) -> HttpTaskDispatcher:
    return HttpTaskDispatcher(SERVICE, api_key="k", callback_url="https://me.example/callbacks/task",
                              transport=httpx.MockTransport(handler))


class TestHttpTaskDispatcher:
    @pytest.mark.asyncio
    async def test_pending_task(self):
        """Test that a task id answer is a pending dispatch"""
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(202, json={"task_id": "abc"})

        out = await service(handler).dispatch("summarize", "text", {"item_id": "main"})
        assert out.pending and out.task_id == "abc"
        assert seen["body"]["callback_url"] == "https://me.example/callbacks/task"
        assert seen["body"]["metadata"] == {"item_id": "main"}
        assert seen["auth"] == "Bearer k"

    @pytest.mark.asyncio
    async def test_immediate_result(self):
        """Test that a result answer needs no callback"""
        out = await service(lambda r: httpx.Response(200, json={"result": "short"})).dispatch("p", "t", {})
        assert not out.pending and out.result == "short"

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        """Server error raises"""
        with pytest.raises(DispatchFailure) as exc:
            await service(lambda r: httpx.Response(503, text="busy")).dispatch("p", "t", {})
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_missing_task_id_raises(self):
        """Missing task id raises"""
        with pytest.raises(DispatchFailure):
            await service(lambda r: httpx.Response(200, json={"status": "queued"})).dispatch("p", "t", {})

    @pytest.mark.asyncio
    async def test_fetch_result(self):
        """Test pulling finished, running and missing tasks"""
        def handler(request: httpx.Request):
            if request.url.path.endswith("/done"):
                return httpx.Response(200, json={"status": "completed", "result": "R"})
            if request.url.path.endswith("/running"):
                return httpx.Response(200, json={"status": "running"})
            return httpx.Response(404)

        d = service(handler)
        assert await d.fetch_result("done") == "R"
        assert await d.fetch_result("running") is None
        assert await d.fetch_result("gone") is None


class TestDispatcherSelection:
    def test_http_when_url_configured(self):
        """Test HTTP dispatcher selection when a service url is set"""
        d = get_dispatcher(Settings(_env_file=None, DISPATCH_URL=SERVICE, CALLBACK_BASE_URL="https://me.example/"))
        assert isinstance(d, HttpTaskDispatcher)
        assert d.callback_url == "https://me.example/callbacks/task"

    def test_groq_when_key_configured(self):
        """Test Groq dispatcher selection when an API key is set"""
        d = get_dispatcher(Settings(_env_file=None, DISPATCH_URL=None, GROQ_API_KEY="gsk_test"))
        assert isinstance(d, GroqDispatcher)

    def test_stub_otherwise(self):
        """Test offline stub dispatcher selection"""
        assert isinstance(get_dispatcher(Settings(_env_file=None, DISPATCH_URL=None, GROQ_API_KEY=None)),
                          StubDispatcher)

    @pytest.mark.asyncio
    async def test_stub_is_extractive(self):
        """Test that the stub dispatcher truncates the text"""
        out = await StubDispatcher(max_chars=20).dispatch("p", "word " * 50, {})
        assert len(out.result) == 20
        assert out.result.endswith("...")


class TestRetry:
    @pytest.mark.asyncio
    async def test_backoff_then_success(self):
        """Backoff then success"""
        sleep = SleepSpy()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise DispatchFailure("nope")
            return "ok"

        value, attempts = await with_retry(flaky, max_retries=3, base_delay_s=1.0, backoff_factor=2.0,
                                           retry_on=(DispatchFailure,), sleep=sleep)
        assert (value, attempts) == ("ok", 3)
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up(self):
        """Test that retries stop after the last attempt"""
        async def down():
            raise DispatchFailure("down")

        with pytest.raises(DispatchFailure):
            await with_retry(down, max_retries=2, retry_on=(DispatchFailure,), sleep=SleepSpy())

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        """Other errors not retried"""
        sleep = SleepSpy()

        async def broken():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await with_retry(broken, retry_on=(DispatchFailure,), sleep=sleep)
        assert sleep.delays == []


class TestWebhook:
    @pytest.mark.asyncio
    async def test_not_configured(self):
        """Test that an empty webhook url sends nothing"""
        res = await notify_webhook({"a": 1}, url="")
        assert res.attempted is False
        assert res.ok is False

    @pytest.mark.asyncio
    async def test_signed_post(self):
        """Test that the notification body is HMAC-signed"""
        seen = {}

        def handler(request: httpx.Request):
            seen["sig"] = request.headers.get(SIGNATURE_HEADER)
            seen["body"] = request.content
            return httpx.Response(200, text="ok")

        res = await notify_webhook({"document_id": "d"}, url="https://hook.example", secret="s3cret",
                                   transport=httpx.MockTransport(handler))
        assert res.ok
        assert seen["sig"] == sign(seen["body"], "s3cret")

    @pytest.mark.asyncio
    async def test_error_status_returned(self):
        """Error status returned"""
        res = await notify_webhook({"x": 1}, url="https://hook.example", secret="",
                                   transport=httpx.MockTransport(lambda r: httpx.Response(500, text="bad")))
        assert res.attempted and not res.ok
        assert res.status_code == 500
        assert res.error == "HTTP 500"


class TestFetcher:
    HTML = """
    <html><head><title>Launch notes</title></head><body>
      <p>Intro paragraph with enough words to be kept as body text.</p>
      <a href="#top">top</a>
      <a href="mailto:team@example.com">mail</a>
      <a href="/docs/setup">Setup guide</a>
      <a href="https://other.example/post#comments">External post</a>
      <a href="/docs/setup">Setup again</a>
      <a href="https://site.example/notes">self</a>
    </body></html>
    """

    def test_discover_related(self):
        """Test that outbound links become deduplicated related items"""
        items = discover_related(self.HTML, "https://site.example/notes", limit=10)
        assert [(i.item_id, i.url, i.title) for i in items] == [
            ("sub-1", "https://site.example/docs/setup", "Setup guide"),
            ("sub-2", "https://other.example/post", "External post"),
        ]

    def test_discover_limit(self):
        """Test the related item limit"""
        assert len(discover_related(self.HTML, "https://site.example/notes", limit=1)) == 1
        assert discover_related(self.HTML, "https://site.example/notes", limit=0) == []

    def test_extract_text(self):
        """Test page text extraction"""
        assert "Intro paragraph" in extract_text(self.HTML, "https://site.example/notes")
