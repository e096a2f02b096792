"""HTTP crawler -- scrapes text, labelled fields and attachment links from
a program's detail page."""

from __future__ import annotations

import html
import logging
import re
from typing import Optional
from urllib.parse import urljoin

import httpx

from .base import CrawlResult, Crawler

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_STRIP_BLOCKS = re.compile(r"<(script|style|nav|header|footer)[^>]*>.*?</\1>", re.I | re.S)
_TAGS = re.compile(r"<[^>]+>")
_ATTACHMENT_ANCHOR = re.compile(
    r"<a[^>]+href=[\"']([^\"']+\.(?:pdf|hwp|hwpx|docx?|xlsx?|pptx|zip))[\"'][^>]*>([^<]*)</a>",
    re.I,
)
_DOWNLOAD_HREF = re.compile(r"href=[\"']([^\"']*(?:download|filedown|attach)[^\"']*)[\"']", re.I)

# Metadata key -> labels that introduce it on Korean program pages.
FIELD_LABELS: dict[str, tuple[str, ...]] = {
    "department": ("담당부서", "주관기관", "소관부처"),
    "applicationMethod": ("신청방법", "접수방법"),
    "contactInfo": ("문의처", "연락처"),
    "targetAudience": ("지원대상", "신청대상"),
    "supportScale": ("지원규모", "지원금액", "지원한도"),
}

MAX_CONTENT = 15_000
_MAX_FIELD = 300


def extract_text(page: str) -> str:
    text = _TAGS.sub(" ", _STRIP_BLOCKS.sub("", page))
    text = re.sub(r"\s+", " ", html.unescape(text)).strip()
    return text[:MAX_CONTENT]


def extract_fields(text: str) -> dict[str, str]:
    fields = {}
    for key, labels in FIELD_LABELS.items():
        for label in labels:
            match = re.search(rf"{label}\s*[:：]?\s*(.+?)(?=\s{{2,}}|$|\s[가-힣]{{2,6}}\s*[:：])", text)
            if match and match.group(1).strip():
                fields[key] = match.group(1).strip()[:_MAX_FIELD]
                break
    return fields


def extract_attachment_links(page: str, base_url: str) -> list[dict[str, str]]:
    links: list[dict[str, str]] = []
    seen: set[str] = set()
    for href, label in _ATTACHMENT_ANCHOR.findall(page):
        url = urljoin(base_url, html.unescape(href))
        if url in seen:
            continue
        seen.add(url)
        links.append({"url": url, "filename": label.strip() or url.rsplit("/", 1)[-1]})
    for href in _DOWNLOAD_HREF.findall(page):
        url = urljoin(base_url, html.unescape(href))
        if url in seen:
            continue
        seen.add(url)
        links.append({"url": url, "filename": url.rsplit("/", 1)[-1] or "attachment"})
    return links


class HttpCrawler(Crawler):
    """Fetches detail pages with httpx; non-2xx responses raise."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(
            timeout=30.0,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def crawl(self, url: str, program_name: str) -> Optional[CrawlResult]:
        resp = await self._client.get(url)
        resp.raise_for_status()
        page = resp.text
        content = extract_text(page)
        if not content:
            logger.info(f"No text on detail page for {program_name}")
            return None
        return CrawlResult(
            content=content,
            fields=extract_fields(content),
            attachment_links=extract_attachment_links(page, str(resp.url)),
        )
