from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import httpx

from nodecascade.logging import get_logger
from nodecascade.service.errors import CrawlTimeoutError, WebRetrievalError

logger = get_logger(__name__)

CAPABILITIES = ("scrape", "search", "map", "crawl")
PAGE_SEPARATOR = "\n\n---\n\n"


def _compact(body: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in body.items() if value is not None}


def _format_pages(pages: List[Dict[str, Any]]) -> str:
    blocks = []
    for page in pages or []:
        metadata = page.get("metadata") or {}
        title = metadata.get("title") or metadata.get("sourceURL") or "Page"
        blocks.append(f"# {title}\n\n{page.get('markdown') or page.get('html') or ''}")
    return PAGE_SEPARATOR.join(blocks)


def _format_search(results: List[Dict[str, Any]]) -> str:
    return PAGE_SEPARATOR.join(
        f"[{index}] {result.get('title')}\n{result.get('url')}\n"
        f"{result.get('description') or ''}\n{result.get('markdown') or ''}"
        for index, result in enumerate(results or [], start=1)
    )


class FirecrawlClient:
    """Web retrieval through Firecrawl: page fetch, search, site map and crawl.

    Crawl jobs are asynchronous; the job is started and then polled until it
    completes, fails or exceeds ``crawl_timeout``.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: Optional[str],
        poll_interval: float = 2.0,
        crawl_timeout: float = 120.0,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.crawl_timeout = crawl_timeout
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.post(f"{self.api_url}{path}", json=_compact(body))
        data = response.json()
        if response.status_code >= 400:
            logger.error("firecrawl_request_failed", path=path, status_code=response.status_code)
            raise WebRetrievalError(
                data.get("error") or f"Request failed with status {response.status_code}"
            )
        return data

    @staticmethod
    def normalize_input(capability: str, raw_input: str) -> str:
        formatted = raw_input.strip()
        if capability != "search" and not formatted.startswith(("http://", "https://")):
            formatted = f"https://{formatted}"
        return formatted

    async def execute(
        self,
        capability: Optional[str],
        raw_input: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not self.is_configured:
            raise WebRetrievalError("Firecrawl not configured")
        if not capability or not (raw_input or "").strip():
            raise WebRetrievalError("Missing capability or input")
        options = options or {}
        target = self.normalize_input(capability, raw_input)
        logger.info("firecrawl_execute", capability=capability, target=target[:200])

        if capability == "scrape":
            data = await self._post(
                "/v1/scrape",
                {
                    "url": target,
                    "formats": options.get("formats") or ["markdown"],
                    "onlyMainContent": options.get("onlyMainContent", True),
                    "waitFor": options.get("waitFor"),
                },
            )
            page = data.get("data") or {}
            return page.get("markdown") or page.get("html") or page.get("summary") or json.dumps(page)
        if capability == "search":
            data = await self._post(
                "/v1/search",
                {
                    "query": target,
                    "limit": options.get("limit") or 10,
                    "lang": options.get("lang"),
                    "country": options.get("country"),
                    "tbs": options.get("tbs"),
                    "scrapeOptions": options.get("scrapeOptions"),
                },
            )
            return _format_search(data.get("data") or [])
        if capability == "map":
            data = await self._post(
                "/v1/map",
                {
                    "url": target,
                    "search": options.get("search"),
                    "limit": options.get("limit") or 100,
                    "includeSubdomains": options.get("includeSubdomains", False),
                },
            )
            return "\n".join(data.get("links") or data.get("data") or [])
        if capability == "crawl":
            started = await self._post(
                "/v1/crawl",
                {
                    "url": target,
                    "limit": options.get("limit") or 50,
                    "maxDepth": options.get("maxDepth") or 3,
                    "includePaths": options.get("includePaths"),
                    "excludePaths": options.get("excludePaths"),
                    "scrapeOptions": {"formats": ["markdown", "html"]},
                },
            )
            completed = await self.poll_crawl(started.get("id"))
            return _format_pages(completed.get("data") or [])
        raise WebRetrievalError(f"Unknown capability: {capability}")

    async def poll_crawl(self, job_id: Optional[str]) -> Dict[str, Any]:
        client = await self._get_client()
        deadline = time.monotonic() + self.crawl_timeout
        while time.monotonic() < deadline:
            response = await client.get(f"{self.api_url}/v1/crawl/{job_id}")
            data = response.json()
            logger.info(
                "firecrawl_crawl_poll",
                job_id=job_id,
                status=data.get("status"),
                completed=data.get("completed") or 0,
                total=data.get("total"),
            )
            if data.get("status") == "completed":
                return data
            if data.get("status") == "failed":
                raise WebRetrievalError(f"Crawl job failed: {data.get('error') or 'Unknown error'}")
            await asyncio.sleep(self.poll_interval)
        raise CrawlTimeoutError(f"Crawl job timed out after {self.crawl_timeout:g} seconds")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
