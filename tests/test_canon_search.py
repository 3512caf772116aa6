import json
import tempfile
import unittest
from pathlib import Path

from loreforge.canon import extract_snippet, load_canon, score_documents, search_canon
from loreforge.models import CanonDocument, CanonIndex
from loreforge.tokenization import count_occurrences, tokenize_terms


def _index(*texts):
    return CanonIndex(docs=tuple(CanonDocument(id=str(i), source_path=f"doc{i}.md", text=t) for i, t in enumerate(texts)))


class TestTokenization(unittest.TestCase):
    def test_terms_are_lowercase_alphanumeric_runs(self):
        self.assertEqual(tokenize_terms("The Dragon's lair, level-2!"), ["the", "dragon", "s", "lair", "level", "2"])

    def test_punctuation_only_yields_no_terms(self):
        self.assertEqual(tokenize_terms("?! ... --"), [])

    def test_repeated_query_terms_count_repeatedly(self):
        self.assertEqual(count_occurrences("dragon dragon", ["dragon", "dragon"]), 4)


class TestLexicalSearch(unittest.TestCase):
    def test_empty_query_returns_nothing(self):
        self.assertEqual(search_canon(_index("dragon"), "", 3), [])

    def test_query_without_terms_returns_nothing(self):
        self.assertEqual(search_canon(_index("dragon"), "!!! ???", 3), [])

    def test_empty_index_returns_nothing(self):
        self.assertEqual(search_canon(CanonIndex(), "dragon", 3), [])

    def test_non_positive_top_k_returns_nothing(self):
        self.assertEqual(search_canon(_index("dragon"), "dragon", 0), [])

    def test_results_never_exceed_top_k(self):
        index = _index("dragon one", "dragon two", "dragon three", "dragon four")
        self.assertEqual(len(search_canon(index, "dragon", 2)), 2)

    def test_zero_score_documents_are_excluded(self):
        index = _index("a quiet meadow", "the dragon sleeps")
        self.assertEqual(search_canon(index, "dragon", 5), ["the dragon sleeps"])

    def test_order_is_by_score_then_load_order(self):
        index = _index(
            "dragon once",
            "dragon dragon dragon thrice",
            "dragon again once",
            "dragon dragon twice",
        )
        ranked = score_documents(index, ["dragon"])
        self.assertEqual([doc.id for doc, _score in ranked], ["1", "3", "0", "2"])
        scores = [score for _doc, score in ranked]
        self.assertEqual(scores, sorted(scores, reverse=True))

    def test_scoring_is_case_insensitive(self):
        ranked = score_documents(_index("DRAGON Dragon dragon"), ["dragon"])
        self.assertEqual(ranked[0][1], 3)


class TestSnippetExtraction(unittest.TestCase):
    def test_document_that_is_only_the_term_starts_at_offset_zero(self):
        self.assertEqual(extract_snippet("dragon", ["dragon"], window=400), "dragon")

    def test_window_with_most_hits_is_selected(self):
        text = ("lorem " * 20) + ("dragon " * 5) + ("ipsum " * 20)
        snippet = extract_snippet(text, ["dragon"], window=40)
        self.assertIn("dragon", snippet)
        self.assertLessEqual(len(snippet), 40)

    def test_ties_keep_first_window(self):
        text = "dragon" + ("." * 94) + "dragon" + ("." * 94)
        snippet = extract_snippet(text, ["dragon"], window=50)
        self.assertTrue(snippet.startswith("dragon"))


class TestCanonLoad(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_directory_yields_empty_index(self):
        self.assertEqual(len(load_canon(self.root / "missing")), 0)
        self.assertEqual(len(load_canon(None)), 0)

    def test_loads_text_files_recursively_in_sorted_order(self):
        (self.root / "b.md").write_text("beta lore", encoding="utf-8")
        (self.root / "nested").mkdir()
        (self.root / "nested" / "c.txt").write_text("gamma lore", encoding="utf-8")
        (self.root / "a.markdown").write_text("alpha lore", encoding="utf-8")
        (self.root / "image.png").write_bytes(b"\x89PNG")

        index = load_canon(self.root)
        self.assertEqual([doc.text for doc in index.docs], ["alpha lore", "beta lore", "gamma lore"])
        self.assertEqual([doc.id for doc in index.docs], ["0", "1", "2"])

    def test_json_is_rendered_canonically_and_malformed_json_is_skipped(self):
        (self.root / "good.json").write_text('{"name":"Aria","home":"Vale"}', encoding="utf-8")
        (self.root / "bad.json").write_text("{not json", encoding="utf-8")

        index = load_canon(self.root)
        self.assertEqual(len(index), 1)
        self.assertEqual(index.docs[0].text, json.dumps({"name": "Aria", "home": "Vale"}, indent=2))

    def test_bookkeeping_files_are_not_canon(self):
        (self.root / "embeddings.index.json").write_text('{"model": "x", "docs": []}', encoding="utf-8")
        (self.root / "index.json").write_text('{"docs": []}', encoding="utf-8")
        (self.root / "lore.md").write_text("the keep", encoding="utf-8")

        index = load_canon(self.root)
        self.assertEqual([Path(doc.source_path).name for doc in index.docs], ["lore.md"])

    def test_undecodable_file_is_skipped(self):
        (self.root / "broken.txt").write_bytes(b"\xff\xfe\xfa")
        (self.root / "fine.txt").write_text("fine", encoding="utf-8")

        index = load_canon(self.root)
        self.assertEqual([doc.text for doc in index.docs], ["fine"])


if __name__ == "__main__":
    unittest.main()
