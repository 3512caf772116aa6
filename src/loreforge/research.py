"""
Canon research: web search plus page ingest into the canon directory.
Failures of individual searches or pages are logged and skipped.
"""
from __future__ import annotations

import json
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

from langchain_community.document_loaders import WebBaseLoader
from langchain_core.messages import HumanMessage, SystemMessage

from .observability import get_logger

logger = get_logger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
RESEARCH_INDEX_FILENAME = "index.json"
SUMMARY_INPUT_LIMIT = 6000
SUMMARY_SYSTEM_PROMPT = (
    "Summarize the text into a concise 6-10 bullet outline capturing key plot points, "
    "characters, and timeline cues. Return markdown bullets only."
)
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class WebSearchResult:
    url: str
    title: str | None = None
    content: str | None = None
    score: float | None = None


class TavilySearchClient:
    """Web-search collaborator backed by the Tavily search API."""

    def __init__(self, api_key: str | None, *, timeout_s: float = 30.0, endpoint: str = TAVILY_SEARCH_URL):
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self.endpoint = endpoint

    def search(self, query: str, max_results: int = 5) -> list[WebSearchResult]:
        if not self.api_key or not query:
            return []
        payload = json.dumps(
            {
                "api_key": self.api_key,
                "query": query,
                "search_depth": "basic",
                "max_results": min(max(int(max_results), 1), 10),
            }
        ).encode("utf-8")
        req = urllib.request.Request(
            self.endpoint,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                data = json.loads(resp.read())
        except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("web_search_failed", query=query, error=str(exc))
            return []

        results = []
        for item in (data.get("results") or []) if isinstance(data, dict) else []:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            results.append(
                WebSearchResult(
                    url=str(item["url"]),
                    title=item.get("title"),
                    content=item.get("content"),
                    score=item.get("score"),
                )
            )
        return results


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def safe_page_name(url: str) -> str:
    parsed = urlparse(url)
    raw = parsed.netloc + re.sub(r"/+", "-", parsed.path, count=1)
    name = _UNSAFE_FILENAME_RE.sub("-", raw).strip("-.")
    return name[:180] or "site"


def fetch_page_text(url: str) -> str:
    docs = WebBaseLoader(url).load()
    return "\n\n".join(doc.page_content.strip() for doc in docs if doc.page_content)


def summarize_text(text: str, backend, *, temperature: float = 0.3) -> str:
    messages = [
        SystemMessage(content=SUMMARY_SYSTEM_PROMPT),
        HumanMessage(content=text[:SUMMARY_INPUT_LIMIT]),
    ]
    return backend.complete(messages, temperature=temperature).strip()


def _update_research_index(out_dir: Path, written: list[str]):
    index_path = out_dir / RESEARCH_INDEX_FILENAME
    previous: list[str] = []
    if index_path.exists():
        try:
            data = json.loads(index_path.read_text(encoding="utf-8"))
            previous = [str(p) for p in data.get("docs", [])] if isinstance(data, dict) else []
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("research_index_invalid", path=str(index_path), error=str(exc))
    docs = list(dict.fromkeys([*previous, *written]))
    index_path.write_text(json.dumps({"updatedAt": _utcnow_iso(), "docs": docs}, indent=2), encoding="utf-8")


def research_and_ingest(
    out_dir: str | Path,
    urls: list[str],
    *,
    summarizer=None,
    max_pages: int = 5,
    fetcher=fetch_page_text,
) -> list[str]:
    """Fetches each URL into <out_dir>/<name>.site.txt and optionally writes a summary beside it."""
    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    fetched_at = _utcnow_iso()
    written: list[str] = []

    for url in list(dict.fromkeys(u for u in urls if u))[:max(0, int(max_pages))]:
        try:
            content = fetcher(url)
        except Exception as exc:
            logger.warning("research_fetch_failed", url=url, error_type=type(exc).__name__, error=str(exc))
            continue

        name = safe_page_name(url)
        page_file = target / f"{name}.site.txt"
        page_file.write_text(f"URL: {url}\nFetched: {fetched_at}\n\n{content}", encoding="utf-8")
        written.append(str(page_file))

        if summarizer is not None:
            try:
                summary = summarize_text(content, summarizer)
            except Exception as exc:
                logger.warning("research_summary_failed", url=url, error_type=type(exc).__name__, error=str(exc))
                continue
            summary_file = target / f"{name}.site.summary.md"
            summary_file.write_text(f"# Summary: {url}\n\n{summary}", encoding="utf-8")
            written.append(str(summary_file))

    _update_research_index(target, written)
    logger.info("research_ingested", out_dir=str(target), written=len(written))
    return written
