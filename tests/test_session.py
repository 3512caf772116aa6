import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from loreforge import research
from loreforge import session as session_module
from loreforge.config import LoreforgeConfig
from loreforge.embeddings import EmbeddingChunk, EmbeddingIndex, save_index
from loreforge.metrics import NarrationMetrics
from loreforge.models import NarrationResult, SeedData, SeedWorld
from loreforge.providers import LocalNarrator
from loreforge.session import NarrativeSession, OpenWorld, open_session
from loreforge.transcript import read_transcript


class _StrictWorld(OpenWorld):
    """Knows a few commands; 'explode' raises."""

    def __init__(self):
        super().__init__(player_name="Mira", room_id="vale:gate")
        self.executed = []

    def has_command(self, name):
        return name in {"look", "north", "explode"}

    def execute(self, name, args):
        self.executed.append((name, args))
        if name == "explode":
            raise RuntimeError("kaboom")
        return f"[{name}]"


class _RecordingProvider:
    name = "recording"

    def __init__(self):
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        return NarrationResult("The wind shifts.", ["wait", "climb"])


class _UnreachableEmbeddings:
    def embed_query(self, text):
        raise ConnectionError("embedding backend unreachable")

    def embed_documents(self, texts):
        raise ConnectionError("embedding backend unreachable")


class _SearchClient:
    def __init__(self, urls):
        self.urls = urls
        self.queries = []

    def search(self, query, max_results=5):
        self.queries.append((query, max_results))
        return [type("Result", (), {"url": u})() for u in self.urls]


class TestNarrativeSession(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.canon = self.root / "canon"
        self.canon.mkdir()
        (self.canon / "vale.md").write_text("The vale gate is guarded by a stone lion.", encoding="utf-8")
        self.config = LoreforgeConfig(canon_path=self.canon, sessions_dir=self.root / "sessions")
        self.seed = SeedData(world=SeedWorld(title="Vale", tone="grim"))
        self.session_dir = self.root / "sessions" / "s1"

    def tearDown(self):
        self.tmp.cleanup()

    def _session(self, provider=None, world=None, config=None, **kwargs):
        return NarrativeSession(
            config or self.config,
            world or OpenWorld(),
            provider or LocalNarrator(),
            self.seed,
            self.session_dir,
            **kwargs,
        )

    def _events(self):
        return read_transcript(self.session_dir / "transcript.ndjson")

    def test_open_narrates_with_world_title_as_canon_query(self):
        provider = _RecordingProvider()
        session = self._session(provider=provider, world=_StrictWorld())
        reply = session.open()
        self.assertEqual(reply.lines, ["[look]", "The wind shifts.", "1. wait", "2. climb"])
        request = provider.requests[0]
        self.assertIsNone(request.last_command)
        self.assertEqual(request.player_name, "Mira")
        self.assertEqual(request.room_id, "vale:gate")
        self.assertEqual(request.canon_snippets, ("The vale gate is guarded by a stone lion.",))
        self.assertEqual([e.type for e in self._events()], ["narration"])

    def test_turn_appends_command_and_narration(self):
        session = self._session()
        reply = session.handle("look")
        self.assertEqual([e.type for e in self._events()], ["command", "narration"])
        self.assertEqual(len(reply.lines), 5)
        self.assertTrue((self.session_dir / "state.step-0001.json").exists())
        snapshot = json.loads((self.session_dir / "state.step-0001.json").read_text(encoding="utf-8"))
        self.assertEqual(snapshot["name"], "Admin")
        story = (self.session_dir / "story.md").read_text(encoding="utf-8")
        self.assertIn("> look", story)
        self.assertIn("Choices: 1) inventory", story)

    def test_numeric_choice_maps_to_last_choices(self):
        provider = _RecordingProvider()
        session = self._session(provider=provider)
        session.open()
        session.handle("2")
        commands = [e.text for e in self._events() if e.type == "command"]
        self.assertEqual(commands, ["climb"])
        self.assertEqual(provider.requests[-1].last_command, "climb")

    def test_out_of_range_choice_is_a_plain_command(self):
        provider = _RecordingProvider()
        session = self._session(provider=provider, world=_StrictWorld())
        session.open()
        reply = session.handle("9")
        self.assertIn("Unknown command.", reply.lines)

    def test_unknown_command_and_world_errors_do_not_end_the_session(self):
        world = _StrictWorld()
        session = self._session(world=world)
        unknown = session.handle("dance")
        failed = session.handle("explode now")
        self.assertFalse(unknown.quit)
        self.assertIn("Unknown command.", unknown.lines)
        self.assertIn("Error executing command: kaboom", failed.lines)
        self.assertEqual(world.executed, [("explode", "now")])
        kinds = [e.type for e in self._events()]
        self.assertIn("error", kinds)
        self.assertEqual(kinds.count("narration"), 2)

    def test_world_output_is_recorded(self):
        session = self._session(world=_StrictWorld())
        reply = session.handle("north")
        self.assertEqual(reply.lines[0], "[north]")
        outputs = [e.text for e in self._events() if e.type == "output"]
        self.assertEqual(outputs, ["[north]"])

    def test_narrate_override_skips_the_world(self):
        world = _StrictWorld()
        provider = _RecordingProvider()
        session = self._session(world=world, provider=provider)
        session.handle("narrate the lion wakes")
        self.assertEqual(world.executed, [])
        self.assertEqual(provider.requests[-1].last_command, "the lion wakes")

    def test_canon_query_override_is_used(self):
        provider = _RecordingProvider()
        config = self.config.with_overrides(canon_query="stone lion")
        session = self._session(provider=provider, config=config)
        session.handle("look")
        self.assertEqual(len(provider.requests[-1].canon_snippets), 1)

    def test_meta_commands(self):
        session = self._session()
        self.assertEqual(session.handle("chapter").lines, ["(chapter break)"])
        self.assertEqual(session.handle("note remember the lion").lines, ["(noted)"])
        self.assertEqual(session.handle("bookmark Lion Gate!").lines, ["(bookmark added)"])
        self.assertEqual(session.handle("bookmark").lines, ["(bookmark added)"])
        self.assertEqual(session.handle("save").lines, ["(saved snapshot)"])

        kinds = [e.type for e in self._events()]
        self.assertEqual(kinds, ["chapter_break", "note", "bookmark", "bookmark", "output"])
        self.assertTrue((self.session_dir / "bookmark-001-lion-gate-.txt").exists())
        self.assertTrue((self.session_dir / "bookmark-002-mark-2.txt").exists())
        self.assertTrue((self.session_dir / "state.step-0001.json").exists())

    def test_help_lists_commands_and_last_choices(self):
        session = self._session()
        session.open()
        text = session.handle("?").lines[0]
        self.assertIn("Provider: local", text)
        self.assertIn("export-chapters", text)
        self.assertIn("1. look", text)

    def test_canon_command_shows_lexical_snippets(self):
        session = self._session()
        text = session.handle("canon stone lion").lines[0]
        self.assertTrue(text.startswith("Canon results for: stone lion"))
        self.assertIn("stone lion", text.splitlines()[1])

    def test_reload_canon_replaces_indexes(self):
        session = self._session()
        old_retriever = session.retriever
        (self.canon / "more.txt").write_text("more lore", encoding="utf-8")
        self.assertEqual(session.handle("reload-canon").lines, ["(canon reloaded: 2 docs)"])
        self.assertIsNot(session.retriever, old_retriever)

    def test_set_seed_and_reload_seed(self):
        seed_file = self.root / "seed.json"
        seed_file.write_text(json.dumps({"world": {"title": "Harbor"}, "characters": [{"name": 3}]}), encoding="utf-8")
        session = self._session()
        reply = session.handle(f"set-seed {seed_file}")
        self.assertTrue(reply.lines[0].startswith("[seed] warnings:"))
        self.assertEqual(session.seed.world.title, "Harbor")
        seed_file.write_text(json.dumps({"world": {"title": "Harbor II"}}), encoding="utf-8")
        self.assertEqual(session.handle("reload-seed").lines, ["(seed reloaded)"])
        self.assertEqual(session.seed.world.title, "Harbor II")

    def test_auto_chapter_breaks(self):
        session = self._session(config=self.config.with_overrides(auto_chapter_every=2))
        session.handle("look")
        session.handle("look")
        breaks = [e.text for e in self._events() if e.type == "chapter_break"]
        self.assertEqual(breaks, ["--- (auto)"])

    def test_export_chapters(self):
        session = self._session()
        session.open()
        session.handle("look")
        reply = session.handle("export-chapters")
        out = self.session_dir / "chapters.md"
        self.assertEqual(reply.lines, [f"(exported to {out})"])
        text = out.read_text(encoding="utf-8")
        self.assertTrue(text.startswith("# Chapter 1"))
        self.assertIn("# Raw Story Log", text)

    def test_research_ingests_and_reloads(self):
        client = _SearchClient(["https://example.org/lore/bell"])
        config = self.config.with_overrides(research_web_results=3)
        session = self._session(config=config, search_client=client)
        real_ingest = research.research_and_ingest

        def _ingest(out_dir, urls, **kwargs):
            return real_ingest(out_dir, urls, fetcher=lambda url: "The bell tolls under water.", **kwargs)

        with patch.object(session_module, "research_and_ingest", side_effect=_ingest):
            reply = session.handle("research sunken bell")

        self.assertEqual(client.queries, [("sunken bell", 3)])
        self.assertEqual(reply.lines, ["(research done: 1 files)"])
        self.assertEqual(len(session.canon_index), 2)
        self.assertTrue((self.canon / "example.org-lore-bell.site.txt").exists())

    def test_quit(self):
        reply = self._session().handle("quit")
        self.assertTrue(reply.quit)
        self.assertEqual(reply.lines, ["Goodbye."])
        self.assertEqual([e.type for e in self._events()], ["command"])

    def test_embedding_outage_does_not_end_the_turn(self):
        save_index(
            EmbeddingIndex(
                model="fake",
                updatedAt="2024-01-01T00:00:00+00:00",
                docs=[EmbeddingChunk(id="vale.md:0", source="vale.md", offset=0, length=4, text="vale", vector=[1.0])],
            ),
            self.config.resolved_index_path,
        )
        provider = _RecordingProvider()
        session = self._session(provider=provider, embeddings=_UnreachableEmbeddings())
        reply = session.handle("look")
        self.assertFalse(reply.quit)
        self.assertIn("The wind shifts.", reply.lines)
        self.assertEqual([e.type for e in self._events()], ["command", "narration"])
        self.assertEqual(provider.requests[-1].canon_snippets, ())

        canon_text = session.handle("canon stone lion").lines[0]
        self.assertIn("stone lion", canon_text)

    def test_metrics_are_recorded_per_narration(self):
        metrics = NarrationMetrics(self.root / "metrics")
        session = self._session(metrics=metrics)
        session.open()
        session.handle("look")
        summary = metrics.get_summary()
        self.assertEqual(summary["generations"]["total"], 2)
        self.assertEqual(summary["fallbacks"]["count"], 0)


class TestOpenSession(unittest.TestCase):
    def test_wires_local_session_from_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            config = LoreforgeConfig(canon_path=root / "canon", sessions_dir=root, seed_path=root / "missing.json")
            session, warnings = open_session(config, root / "s")
            self.assertIsInstance(session.provider, LocalNarrator)
            self.assertEqual(session.seed.world.title, "Seedless Realm")
            self.assertEqual(len(warnings), 1)
            self.assertTrue((root / "s").is_dir())


if __name__ == "__main__":
    unittest.main()
