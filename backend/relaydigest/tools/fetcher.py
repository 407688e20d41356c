from __future__ import annotations
import logging
from typing import Dict, List, Optional
from urllib.parse import urldefrag, urljoin, urlparse
import httpx
from bs4 import BeautifulSoup
import trafilatura
from pydantic import BaseModel

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0 Safari/537.36 relaydigest"
    )
}

_SKIP_SCHEMES = ("mailto", "javascript", "tel", "data")


class FetchedDocument(BaseModel):
    url: str
    title: str
    text: str
    html: str = ""


class DiscoveredItem(BaseModel):
    item_id: str
    source_kind: str = "link"
    url: str
    title: str = ""


async def _download(client: httpx.AsyncClient, url: str) -> Optional[str]:
    try:
        r = await client.get(url, headers=HEADERS, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.warning("Download of %s failed: %r", url, e)
        return None
    if r.status_code >= 400:
        logger.warning("Download of %s failed: HTTP %d", url, r.status_code)
        return None
    return r.text


def _clean_with_trafilatura(html: str, url: str) -> str:
    text = trafilatura.extract(
        html,
        url=url,
        include_comments=False,
        include_tables=True,
        favor_recall=True,
    )
    return text.strip() if text else ""


def _fallback_bs4(html: str) -> str:
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.extract()
    text = soup.get_text(separator="\n")
    return "\n".join(line.strip() for line in text.splitlines() if line.strip())


def _title_from_html(html: str) -> str:
    soup = BeautifulSoup(html, "lxml")
    t = soup.title.string if soup.title and soup.title.string else ""
    return t.strip()


def extract_text(html: str, url: str) -> str:
    """Main text of a page; trafilatura first, plain BeautifulSoup text otherwise."""
    return _clean_with_trafilatura(html, url) or _fallback_bs4(html)


async def fetch_document(url: str, timeout: Optional[int] = None) -> Optional[FetchedDocument]:
    """
    Fetch and extract a single URL. timeout is seconds; if None defaults to 20.
    Returns None when the page cannot be downloaded or has no text.
    """
    async with httpx.AsyncClient(timeout=timeout or 20) as client:
        html = await _download(client, url)
    if not html:
        return None

    text = extract_text(html, url)
    if not text:
        logger.warning("No text extracted from %s", url)
        return None
    return FetchedDocument(url=url, title=_title_from_html(html) or url, text=text, html=html)


def discover_related(html: str, base_url: str, limit: int = 10) -> List[DiscoveredItem]:
    """
    Outbound links of a page as related items, in document order.
    Same-page anchors, non-http schemes and repeats are skipped.
    """
    if limit <= 0 or not html:
        return []
    soup = BeautifulSoup(html, "lxml")
    page = urldefrag(base_url)[0]
    seen: Dict[str, DiscoveredItem] = {}

    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.startswith("#") or href.split(":", 1)[0].lower() in _SKIP_SCHEMES:
            continue
        url = urldefrag(urljoin(base_url, href))[0]
        if urlparse(url).scheme not in ("http", "https") or url == page or url in seen:
            continue
        title = " ".join(a.get_text(" ").split())
        seen[url] = DiscoveredItem(item_id=f"sub-{len(seen) + 1}", url=url, title=title)
        if len(seen) >= limit:
            break
    return list(seen.values())
