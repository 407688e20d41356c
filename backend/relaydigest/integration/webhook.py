from __future__ import annotations
import hmac, hashlib, json, logging
from typing import Any, Dict, Optional
import httpx
from pydantic import BaseModel
from ..config import settings
from ..observability.metrics import record_webhook_error, record_webhook_request

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Relaydigest-Signature"

class NotifyResult(BaseModel):
    attempted: bool
    status_code: int = 0
    body: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.attempted and 200 <= self.status_code < 300

def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

async def notify_webhook(
    payload: Dict[str, Any],
    *,
    url: Optional[str] = None,
    secret: Optional[str] = None,
    timeout: float = 20,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> NotifyResult:
    """
    POST the payload as JSON. Never raises: transport errors come back with
    status_code=0, and a missing URL comes back as attempted=False.
    """
    url = (url if url is not None else settings.NOTIFY_WEBHOOK_URL or "").strip()
    if not url:
        return NotifyResult(attempted=False, error="NOTIFY_WEBHOOK_URL not set")
    secret = secret if secret is not None else settings.NOTIFY_SECRET

    body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    headers = {"content-type": "application/json"}
    if secret:
        headers[SIGNATURE_HEADER] = sign(body, secret)

    record_webhook_request("notify")

    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            r = await client.post(url, content=body, headers=headers, follow_redirects=True)
        except httpx.HTTPError as e:
            record_webhook_error("notify")
            logger.warning("Notification to %s failed: %r", url, e)
            return NotifyResult(attempted=True, status_code=0, error=repr(e))

    text = r.text
    if not (200 <= r.status_code < 300):
        record_webhook_error("notify")
        logger.warning("Notification to %s returned %s", url, r.status_code)
        return NotifyResult(
            attempted=True, status_code=r.status_code,
            body=(text[:240] + "…") if len(text) > 240 else text,
            error=f"HTTP {r.status_code}",
        )
    return NotifyResult(attempted=True, status_code=r.status_code, body=text[:240])
