# /loreforge/app.py
"""
Command-line entry point for loreforge.
Sub-commands: play, index, search, export, seed, research.
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

from rich.panel import Panel
from rich.prompt import Prompt

from .chapters import export_chapters, summarize_chapters
from .config import LoreforgeConfig, console
from .embeddings import build_embeddings, index_directory, load_index, search_index
from .observability import configure_logging, get_logger
from .providers import ChatModelBackend, build_chat_model
from .research import TavilySearchClient, research_and_ingest
from .seeds import build_composite_seed, write_seed
from .session import open_session

logger = get_logger(__name__)


def _new_session_id() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")


def latest_session_id(sessions_dir: Path) -> str | None:
    if not sessions_dir.is_dir():
        return None
    entries = sorted(p.name for p in sessions_dir.iterdir() if p.is_dir())
    return entries[-1] if entries else None


def _remote_backend(config: LoreforgeConfig):
    if config.provider == "local":
        return None
    return ChatModelBackend(build_chat_model(config))


# --- UI & Formatting Functions ---

def display_welcome_banner(config: LoreforgeConfig, session_id: str):
    console.print(Panel(
        "[bold magenta]Loreforge - Interactive Narration[/bold magenta]",
        subtitle=f"[cyan]provider: {config.provider}[/cyan]",
        expand=False
    ))
    console.print(f"[green]Session: {session_id}[/green]")


def _print_lines(lines: list[str]):
    for line in lines:
        console.print(line, markup=False, highlight=False)


# --- Sub-commands ---

def cmd_play(config: LoreforgeConfig, args) -> int:
    session_id = args.session_id or _new_session_id()
    session_dir = Path(config.sessions_dir) / session_id
    session, warnings = open_session(config, session_dir, embeddings=build_embeddings(config))

    display_welcome_banner(config, session_id)
    if warnings:
        console.print(f"[yellow][seed] warnings: {' | '.join(warnings)}[/yellow]")
    _print_lines(session.open().lines)

    while True:
        try:
            line = Prompt.ask("[bold cyan]>[/bold cyan]")
        except (KeyboardInterrupt, EOFError):
            break
        reply = session.handle(line)
        _print_lines(reply.lines)
        if reply.quit:
            break

    if session.metrics is not None:
        summary = session.metrics.get_summary()
        logger.info("session_closed", session_id=session_id, **summary["generations"])
    return 0


def cmd_index(config: LoreforgeConfig, args) -> int:
    directory = Path(args.dir or config.canon_path)
    out = Path(args.out) if args.out else directory / config.resolved_index_path.name
    with console.status("[bold cyan]Embedding canon...[/bold cyan]", spinner="dots"):
        index = index_directory(
            directory,
            out,
            build_embeddings(config),
            model_name=config.embedding_model,
            chunk_chars=config.embed_chunk_chars,
        )
    if index is None:
        console.print("[yellow]Embedding not configured.[/yellow]")
        return 0
    console.print(f"[green]Indexed {len(index)} chunks -> {out}[/green]")
    return 0


def cmd_search(config: LoreforgeConfig, args) -> int:
    index_path = Path(args.index) if args.index else config.resolved_index_path
    index = load_index(index_path)
    if index is None:
        console.print("[bold red]No index found.[/bold red]")
        return 2
    for chunk in search_index(index, args.query, build_embeddings(config), args.top_k):
        console.print(f"[cyan]{chunk.source}@{chunk.offset}[/cyan] {chunk.text[:120]!r}", highlight=False)
    return 0


def cmd_export(config: LoreforgeConfig, args) -> int:
    sessions_dir = Path(config.sessions_dir)
    session_id = args.session_id or latest_session_id(sessions_dir)
    if not session_id:
        console.print("[bold red]No session found.[/bold red]")
        return 1
    session_dir = sessions_dir / session_id
    steps = args.steps if args.steps is not None else config.chapter_every_steps
    out = export_chapters(
        session_dir / "transcript.ndjson",
        session_dir / "chapters.md",
        steps,
        raw_log_path=session_dir / "story.md",
    )
    backend = _remote_backend(config)
    if config.summarize_chapters and backend is not None:
        summarize_chapters(out, backend)
    console.print(f"[green]Exported chapters to {out}[/green]")
    return 0


def cmd_seed(config: LoreforgeConfig, args) -> int:
    directory = Path(args.dir or config.seed_path or "seeds")
    if directory.is_file():
        directory = directory.parent
    out = Path(args.out) if args.out else directory / "seed.json"
    write_seed(build_composite_seed(directory, config), out)
    console.print(f"[green]Wrote seed to {out}[/green]")
    return 0


def cmd_research(config: LoreforgeConfig, args) -> int:
    urls = [u.strip() for u in (args.urls or "").split(",") if u.strip()]
    web = args.web if args.web is not None else 0
    if args.query and web > 0:
        client = TavilySearchClient(config.tavily_api_key)
        urls.extend(result.url for result in client.search(args.query, web))
    out_dir = Path(args.out or config.canon_path)
    written = research_and_ingest(
        out_dir,
        urls,
        summarizer=_remote_backend(config) if args.summarize else None,
        max_pages=args.max,
    )
    console.print(f"[green]Wrote {len(written)} files to {out_dir}[/green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loreforge", description="Retrieval-augmented narration for interactive fiction.")
    sub = parser.add_subparsers(dest="command")

    play = sub.add_parser("play", help="Start an interactive session.")
    play.add_argument("--session-id", dest="session_id", default=None)
    play.set_defaults(handler=cmd_play)

    index = sub.add_parser("index", help="Build the embedding index for a canon directory.")
    index.add_argument("dir", nargs="?", default=None)
    index.add_argument("out", nargs="?", default=None)
    index.set_defaults(handler=cmd_index)

    search = sub.add_parser("search", help="Search the embedding index.")
    search.add_argument("query")
    search.add_argument("--index", default=None)
    search.add_argument("--top-k", dest="top_k", type=int, default=3)
    search.set_defaults(handler=cmd_search)

    export = sub.add_parser("export", help="Export a session transcript as chapters.")
    export.add_argument("session_id", nargs="?", default=None)
    export.add_argument("--steps", type=int, default=None)
    export.set_defaults(handler=cmd_export)

    seed = sub.add_parser("seed", help="Materialize a composite seed directory into seed.json.")
    seed.add_argument("dir", nargs="?", default=None)
    seed.add_argument("out", nargs="?", default=None)
    seed.set_defaults(handler=cmd_seed)

    research = sub.add_parser("research", help="Fetch web pages into the canon directory.")
    research.add_argument("query", nargs="?", default=None)
    research.add_argument("--urls", default=None, help="Comma-separated URLs.")
    research.add_argument("--out", default=None)
    research.add_argument("--max", type=int, default=5)
    research.add_argument("--web", type=int, default=None)
    research.add_argument("--summarize", action="store_true")
    research.set_defaults(handler=cmd_research)
    return parser


def main(argv: list[str] | None = None):
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        sys.exit(1)

    config = LoreforgeConfig.from_env()
    configure_logging(config.resolved_log_path)
    try:
        code = args.handler(config, args)
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
