"""Web search through the Tavily API, and source citation helpers."""

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urlparse

import requests

from services.errors import SearchQuotaExceededError
from utils.constants import (
    MAX_SOURCES,
    WEB_SEARCH_DEFAULT_MAX_RESULTS,
    WEB_SEARCH_DEFAULT_TIMEOUT_MS,
)

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
MAX_SNIPPET_LENGTH = 500
QUOTA_STATUS_CODES = {402, 429}


@dataclass
class WebSearchResult:
    """A normalized search hit."""

    title: str
    url: str
    snippet: str
    published_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def sanitize_http_url(raw_url: str | None) -> str | None:
    """Return the URL if it is an absolute http(s) URL, else None."""
    if not raw_url:
        return None
    try:
        parsed = urlparse(raw_url.strip())
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return parsed.geturl()


def normalize_snippet(value: str) -> str:
    collapsed = " ".join(value.split())
    if len(collapsed) <= MAX_SNIPPET_LENGTH:
        return collapsed
    return f"{collapsed[:MAX_SNIPPET_LENGTH]}..."


def build_sources_markdown(
    sources: list[tuple[str, str]] | list[WebSearchResult],
    max_sources: int = MAX_SOURCES,
) -> str:
    """Build the trailing citation line for an answer.

    Args:
        sources: (title, url) pairs or search results, in ranked order
        max_sources: Maximum number of links

    Returns:
        ``Sources: [title](url) | ...`` or an empty string when no source has
        a valid http(s) URL
    """
    seen: set[str] = set()
    links: list[str] = []
    for source in sources:
        if isinstance(source, WebSearchResult):
            title, raw_url = source.title, source.url
        else:
            title, raw_url = source
        url = sanitize_http_url(raw_url)
        if not url or url in seen:
            continue
        seen.add(url)
        safe_title = (title or "").strip().replace("[", "").replace("]", "") or url
        links.append(f"[{safe_title}]({url})")
        if len(links) >= max_sources:
            break

    if not links:
        return ""
    return f"Sources: {' | '.join(links)}"


def _published_timestamp(published_date: str | None) -> float:
    if not published_date:
        return float("-inf")
    try:
        parsed = datetime.fromisoformat(published_date.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(published_date)
        except (TypeError, ValueError):
            return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


class TavilySearchClient:
    """Client for the Tavily search API."""

    def __init__(self, api_key: str | None, session: requests.Session | None = None):
        self.api_key = api_key
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def search(
        self,
        query: str,
        max_results: int = WEB_SEARCH_DEFAULT_MAX_RESULTS,
        timeout_ms: int = WEB_SEARCH_DEFAULT_TIMEOUT_MS,
    ) -> list[WebSearchResult]:
        """Search the web.

        Args:
            query: Search query
            max_results: Result cap, clamped to 1..10
            timeout_ms: Request timeout, at least one second

        Returns:
            Results with a title, snippet and valid URL, newest first

        Raises:
            SearchQuotaExceededError: On HTTP 402 or 429
            requests.exceptions.RequestException: On other transport or HTTP
                failures
        """
        if not self.api_key:
            raise ValueError("Tavily API key not configured")

        query = query.strip()
        if not query:
            return []

        max_results = max(1, min(10, max_results))
        timeout = max(1000, timeout_ms) / 1000

        response = self.session.post(
            TAVILY_SEARCH_URL,
            json={
                "api_key": self.api_key,
                "query": query,
                "max_results": max_results,
                "search_depth": "basic",
                "include_answer": False,
                "include_raw_content": False,
            },
            timeout=timeout,
        )
        if response.status_code in QUOTA_STATUS_CODES:
            raise SearchQuotaExceededError(
                f"Tavily quota/rate limit reached (status {response.status_code})"
            )
        response.raise_for_status()

        results: list[WebSearchResult] = []
        for item in response.json().get("results") or []:
            title = (item.get("title") or "").strip()
            snippet = (item.get("content") or "").strip()
            url = sanitize_http_url(item.get("url"))
            if not title or not snippet or not url:
                continue
            results.append(
                WebSearchResult(
                    title=title,
                    url=url,
                    snippet=normalize_snippet(snippet),
                    published_date=(item.get("published_date") or "").strip() or None,
                )
            )

        results.sort(key=lambda r: _published_timestamp(r.published_date), reverse=True)
        logger.info("Web search returned %d results for %r", len(results), query)
        return results
