from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from textwrap import shorten
from typing import List

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import RAGConfig, load_config
from .errors import RAGError
from .ingest import MarkdownDirectorySource
from .models import QueryRequest, RetrievalResult
from .query import SUMMARY_STYLES
from .system import RAGSystem

console = Console()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False, show_path=False)],
    )


def _print_sources(sources: List[RetrievalResult]) -> None:
    console.rule("[bold blue]Retrieved Chunks[/bold blue]")
    for source in sources:
        preview = shorten(source.snippet.replace("\n", " "), width=180, placeholder="...")
        console.print(
            Panel(
                preview,
                title=f"{source.note_title} ({source.note_id})",
                subtitle=f"score={source.score:.3f}",
                expand=False,
            )
        )


async def _ask(system: RAGSystem, args: argparse.Namespace) -> None:
    request = QueryRequest(
        query=args.question,
        note_ids=args.note or None,
        limit=args.limit,
        include_metadata=args.detailed,
    )
    console.rule("[bold green]Answer[/bold green]")
    if args.no_stream:
        response = await system.query(request)
        console.print(response.answer.strip())
        sources = response.sources
    else:
        async with system.stream_query(request) as stream:
            async for delta in stream:
                console.print(delta, end="", soft_wrap=True, markup=False, highlight=False)
            console.print()
            sources = stream.sources
    if sources:
        _print_sources(sources)


async def _run(cfg: RAGConfig, args: argparse.Namespace) -> None:
    source = MarkdownDirectorySource(cfg.data_dir_resolved)
    async with RAGSystem.from_config(cfg, source) as system:
        if args.command == "index":
            console.print("[bold green]Building index...[/bold green]")
            report = await (system.rebuild_index() if args.rebuild else system.reindex_all())
            console.print(
                f"[green]Indexed {report.indexed} notes[/green], {report.skipped} unchanged, "
                f"{report.removed} removed, {report.failed_chunks} chunks failed"
            )
        elif args.command == "ask":
            await _ask(system, args)
        elif args.command == "similar":
            similar = await system.get_similar_notes(args.note_id, limit=args.limit)
            if not similar:
                console.print("[yellow]No similar notes found. Did you build the index?[/yellow]")
            for item in similar:
                console.print(f"{item.score:.3f}  {item.title} [dim]({item.note_id})[/dim]")
        elif args.command == "tags":
            note = source.get_note(args.note_id)
            if note is None:
                console.print(f"[red]Note not found: {args.note_id}[/red]")
                return
            system.update_tags_list(sorted({t for n in source.list_notes() for t in n.tags}))
            suggestions = await system.suggest_tags(
                note,
                max_tags=args.max_tags,
                min_confidence=args.min_confidence,
                use_llm=not args.no_llm,
            )
            if not suggestions:
                console.print("[yellow]No tag suggestions.[/yellow]")
            for s in suggestions:
                console.print(f"#{s.tag}  [bold]{s.confidence:.2f}[/bold]  [dim]{s.reason}[/dim]")
        elif args.command == "summarize":
            note = source.get_note(args.note_id)
            if note is None:
                console.print(f"[red]Note not found: {args.note_id}[/red]")
                return
            summary = await system.summarize_note(note, style=args.style)
            console.rule(f"[bold green]{note.title}[/bold green]")
            console.print(summary.summary)
            console.print(f"[dim]{summary.word_count} words, {summary.reading_time} min read[/dim]")
        elif args.command == "stats":
            stats = system.stats()
            table = Table(title="Index statistics")
            table.add_column("metric")
            table.add_column("value", justify="right")
            table.add_row("embeddings", str(stats.total_embeddings))
            table.add_row("notes", str(stats.unique_notes))
            table.add_row("cache size (bytes)", str(stats.cache_size))
            for name, enabled in stats.features.items():
                table.add_row(f"feature: {name}", "on" if enabled else "off")
            console.print(table)
        elif args.command == "clear":
            await system.clear_index()
            console.print("[green]Index cleared.[/green]")


def _add_config(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to a config YAML file (default: config.yaml).",
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="notes-rag - index your notes and ask questions, find related notes, suggest tags."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    index_parser = subparsers.add_parser("index", help="Index new and changed notes.")
    index_parser.add_argument("--rebuild", action="store_true", help="Drop the index and embed everything again.")
    _add_config(index_parser)

    ask_parser = subparsers.add_parser("ask", help="Ask a question using the existing index.")
    ask_parser.add_argument("question", type=str, help="Question to ask over your notes.")
    ask_parser.add_argument("--note", action="append", help="Restrict the search to this note id (repeatable).")
    ask_parser.add_argument("--limit", type=int, default=None, help="Number of chunks to retrieve.")
    ask_parser.add_argument("--detailed", action="store_true", help="Use the detailed prompt with relevance metadata.")
    ask_parser.add_argument("--no-stream", action="store_true", help="Wait for the full answer instead of streaming.")
    _add_config(ask_parser)

    similar_parser = subparsers.add_parser("similar", help="List notes similar to a note.")
    similar_parser.add_argument("note_id", type=str)
    similar_parser.add_argument("--limit", type=int, default=5)
    _add_config(similar_parser)

    tags_parser = subparsers.add_parser("tags", help="Suggest tags for a note.")
    tags_parser.add_argument("note_id", type=str)
    tags_parser.add_argument("--max-tags", type=int, default=5)
    tags_parser.add_argument("--min-confidence", type=float, default=0.7)
    tags_parser.add_argument("--no-llm", action="store_true", help="Skip model-proposed tags.")
    _add_config(tags_parser)

    summarize_parser = subparsers.add_parser("summarize", help="Summarize a note.")
    summarize_parser.add_argument("note_id", type=str)
    summarize_parser.add_argument("--style", choices=SUMMARY_STYLES, default="brief")
    _add_config(summarize_parser)

    stats_parser = subparsers.add_parser("stats", help="Show index statistics.")
    _add_config(stats_parser)

    clear_parser = subparsers.add_parser("clear", help="Delete every indexed vector.")
    _add_config(clear_parser)

    args = parser.parse_args()

    try:
        cfg = load_config(Path(args.config))
        _setup_logging(cfg.log_level)
        asyncio.run(_run(cfg, args))
    except RAGError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
