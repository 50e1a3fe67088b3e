"""Tests for Tavily search and source citations."""

from unittest.mock import MagicMock

import pytest
import requests

from services.errors import SearchQuotaExceededError
from services.web_search import (
    TavilySearchClient,
    WebSearchResult,
    build_sources_markdown,
    normalize_snippet,
    sanitize_http_url,
)


def _session(status_code=200, payload=None):
    session = MagicMock()
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {"results": []}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} error"
        )
    session.post.return_value = response
    return session


class TestSourcesMarkdown:
    """Tests for build_sources_markdown."""

    def test_skips_invalid_urls_in_first_seen_order(self):
        markdown = build_sources_markdown(
            [
                ("First", "https://a.example.com/1"),
                ("Broken", "javascript:alert(1)"),
                ("Second", "http://b.example.com/2"),
            ]
        )
        assert markdown == (
            "Sources: [First](https://a.example.com/1) | [Second](http://b.example.com/2)"
        )

    def test_dedupes_and_caps(self):
        sources = [("Same", "https://a.example.com")] * 2 + [
            (f"Site {i}", f"https://s{i}.example.com") for i in range(5)
        ]
        markdown = build_sources_markdown(sources)
        assert markdown.count("](") == 3
        assert markdown.count("a.example.com") == 1

    def test_empty_when_nothing_valid(self):
        assert build_sources_markdown([("Nope", "not a url")]) == ""
        assert build_sources_markdown([]) == ""

    def test_brackets_stripped_and_missing_title_uses_url(self):
        markdown = build_sources_markdown(
            [
                WebSearchResult(title="[Draft] notes", url="https://n.example.com", snippet="s"),
                WebSearchResult(title="  ", url="https://u.example.com", snippet="s"),
            ]
        )
        assert "[Draft notes](https://n.example.com)" in markdown
        assert "[https://u.example.com](https://u.example.com)" in markdown


class TestHelpers:
    def test_sanitize_http_url(self):
        assert sanitize_http_url(" https://x.example.com/a?b=1 ") == "https://x.example.com/a?b=1"
        assert sanitize_http_url("ftp://x.example.com") is None
        assert sanitize_http_url("https://") is None
        assert sanitize_http_url(None) is None

    def test_normalize_snippet(self):
        assert normalize_snippet("a \n  b\tc") == "a b c"
        long = normalize_snippet("x" * 600)
        assert len(long) == 503
        assert long.endswith("...")


class TestTavilySearchClient:
    """Tests for TavilySearchClient.search."""

    def test_results_are_filtered_and_sorted_newest_first(self):
        session = _session(
            payload={
                "results": [
                    {
                        "title": "Older",
                        "url": "https://old.example.com",
                        "content": "old news",
                        "published_date": "2026-01-02",
                    },
                    {"title": "Undated", "url": "https://u.example.com", "content": "undated"},
                    {
                        "title": "Newest",
                        "url": "https://new.example.com",
                        "content": "new news",
                        "published_date": "Mon, 05 Jan 2026 10:00:00 GMT",
                    },
                    {"title": "Bad url", "url": "ftp://files.example.com", "content": "x"},
                    {"title": "No snippet", "url": "https://empty.example.com"},
                ]
            }
        )
        client = TavilySearchClient("tvly-key", session=session)

        results = client.search("  latest news  ", max_results=50, timeout_ms=10)

        assert [r.title for r in results] == ["Newest", "Older", "Undated"]
        body = session.post.call_args.kwargs["json"]
        assert body["query"] == "latest news"
        assert body["max_results"] == 10
        assert session.post.call_args.kwargs["timeout"] == 1.0

    @pytest.mark.parametrize("status_code", [402, 429])
    def test_quota_statuses_raise_quota_error(self, status_code):
        client = TavilySearchClient("tvly-key", session=_session(status_code=status_code))
        with pytest.raises(SearchQuotaExceededError):
            client.search("weather")

    def test_other_http_errors_propagate(self):
        client = TavilySearchClient("tvly-key", session=_session(status_code=500))
        with pytest.raises(requests.exceptions.HTTPError):
            client.search("weather")

    def test_blank_query_skips_request(self):
        session = _session()
        assert TavilySearchClient("tvly-key", session=session).search("   ") == []
        session.post.assert_not_called()

    def test_unconfigured_client(self):
        client = TavilySearchClient(None, session=_session())
        assert not client.is_configured
        with pytest.raises(ValueError):
            client.search("weather")
