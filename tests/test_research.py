import json
import tempfile
import unittest
import urllib.error
from pathlib import Path
from unittest.mock import MagicMock, patch

from loreforge.research import (
    TavilySearchClient,
    WebSearchResult,
    research_and_ingest,
    safe_page_name,
)


def _response(payload):
    cm = MagicMock()
    cm.__enter__.return_value.read.return_value = json.dumps(payload).encode("utf-8")
    return cm


class _Summarizer:
    def __init__(self):
        self.calls = []

    def complete(self, messages, *, temperature):
        self.calls.append(messages)
        return "- bullet one\n- bullet two"


class TestTavilySearchClient(unittest.TestCase):
    def test_unauthenticated_search_returns_nothing(self):
        with patch("urllib.request.urlopen") as urlopen:
            self.assertEqual(TavilySearchClient(None).search("bells"), [])
        urlopen.assert_not_called()

    def test_parses_results_and_clamps_count(self):
        payload = {
            "results": [
                {"url": "https://a.example/x", "title": "X", "content": "about x", "score": 0.9},
                {"title": "no url"},
                {"url": "https://b.example/y"},
            ]
        }
        with patch("urllib.request.urlopen", return_value=_response(payload)) as urlopen:
            results = TavilySearchClient("key").search("bells", max_results=50)

        self.assertEqual(
            results,
            [
                WebSearchResult(url="https://a.example/x", title="X", content="about x", score=0.9),
                WebSearchResult(url="https://b.example/y"),
            ],
        )
        request = urlopen.call_args[0][0]
        body = json.loads(request.data.decode("utf-8"))
        self.assertEqual(body["max_results"], 10)
        self.assertEqual(body["query"], "bells")

    def test_transport_failure_returns_nothing(self):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("offline")):
            self.assertEqual(TavilySearchClient("key").search("bells"), [])


class TestResearchIngest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.out = Path(self.tmp.name) / "canon"

    def tearDown(self):
        self.tmp.cleanup()

    def test_safe_page_name(self):
        self.assertEqual(safe_page_name("https://wiki.example.org/w/Sunken Bell?x=1"), "wiki.example.org-w-Sunken-Bell")
        self.assertEqual(safe_page_name("not a url"), "not-a-url")

    def test_writes_pages_summaries_and_index(self):
        summarizer = _Summarizer()

        def fetcher(url):
            if "broken" in url:
                raise ConnectionError("refused")
            return f"text of {url}"

        written = research_and_ingest(
            self.out,
            ["https://a.example/page", "https://broken.example/", "https://a.example/page"],
            summarizer=summarizer,
            fetcher=fetcher,
        )

        page = self.out / "a.example-page.site.txt"
        summary = self.out / "a.example-page.site.summary.md"
        self.assertEqual(written, [str(page), str(summary)])
        self.assertTrue(page.read_text(encoding="utf-8").startswith("URL: https://a.example/page\nFetched: "))
        self.assertIn("text of https://a.example/page", page.read_text(encoding="utf-8"))
        self.assertEqual(summary.read_text(encoding="utf-8"), "# Summary: https://a.example/page\n\n- bullet one\n- bullet two")
        self.assertEqual(len(summarizer.calls), 1)

        index = json.loads((self.out / "index.json").read_text(encoding="utf-8"))
        self.assertEqual(index["docs"], written)
        self.assertIn("updatedAt", index)

    def test_index_merges_previous_runs(self):
        research_and_ingest(self.out, ["https://a.example/one"], fetcher=lambda url: "one")
        research_and_ingest(self.out, ["https://a.example/two"], fetcher=lambda url: "two")
        index = json.loads((self.out / "index.json").read_text(encoding="utf-8"))
        self.assertEqual(
            [Path(p).name for p in index["docs"]],
            ["a.example-one.site.txt", "a.example-two.site.txt"],
        )

    def test_max_pages_limits_fetches(self):
        fetched = []
        research_and_ingest(
            self.out,
            [f"https://a.example/{i}" for i in range(4)],
            max_pages=2,
            fetcher=lambda url: fetched.append(url) or "x",
        )
        self.assertEqual(len(fetched), 2)


if __name__ == "__main__":
    unittest.main()
