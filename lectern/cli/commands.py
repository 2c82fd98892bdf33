"""CLI commands for lectern."""

from __future__ import annotations

import asyncio
from pathlib import Path  # noqa: TC003 - Typer evaluates annotations at runtime
from typing import Annotated, Awaitable, Callable, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from lectern.config.loader import load_config
from lectern.config.schema import Config
from lectern.documents import DocumentRef
from lectern.errors import LecternError
from lectern.logging import setup_logging
from lectern.orchestrator import Orchestrator
from lectern.session.options import TurnOptions
from lectern.session.transport import encode_sse
from lectern.usage import format_tokens

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

app = typer.Typer(
    name="lectern",
    help="Stream conversations about documents.",
    no_args_is_help=True,
)


def _make_orchestrator(config: Config) -> Orchestrator:
    return Orchestrator.from_config(config)


def _setup(verbose: bool) -> Orchestrator:
    config = load_config()
    setup_logging(
        json_output=config.logging.json_output,
        level="DEBUG" if verbose else config.logging.level,
    )
    return _make_orchestrator(config)


def _fail(message: str) -> NoReturn:
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(1)


def _run(orchestrator: Orchestrator, work: Callable[[], Awaitable[T]]) -> T:
    """Run *work* on a fresh event loop, then release the orchestrator."""

    async def _main() -> T:
        try:
            return await work()
        finally:
            await orchestrator.aclose()

    try:
        return asyncio.run(_main())
    except LecternError as e:
        _fail(str(e))


def _load_document(path: Path | None, title: str | None, authors: str | None) -> DocumentRef | None:
    if path is None:
        return None
    if not path.exists():
        _fail(f"Document not found: {path}")
    text = path.read_text(encoding="utf-8")
    return DocumentRef(doc_id=path.stem, title=title or path.stem, authors=authors, text=text)


@app.command("ask")
def ask_cmd(
    question: Annotated[str, typer.Argument(help="What to ask")],
    conversation: Annotated[str, typer.Option("--conversation", "-c", help="Conversation id")] = "cli",
    document: Annotated[
        Path | None,
        typer.Option("--document", "-d", help="Plain-text file with the document's extracted text"),
    ] = None,
    title: Annotated[str | None, typer.Option("--title", help="Document title")] = None,
    authors: Annotated[str | None, typer.Option("--authors", help="Document authors")] = None,
    model: Annotated[str | None, typer.Option("--model", "-m", help="Model to use")] = None,
    engine: Annotated[str, typer.Option("--engine", help="google, mcp or off")] = "google",
    search: Annotated[bool, typer.Option("--search/--no-search", help="Live web search")] = True,
    cache: Annotated[bool, typer.Option("--cache", help="Use a context cache for the document")] = False,
    thinking: Annotated[bool, typer.Option("--thinking", help="Show thought summaries")] = False,
    sse: Annotated[bool, typer.Option("--sse", help="Print raw Server-Sent Events")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Ask a question and stream the answer."""
    orchestrator = _setup(verbose)
    doc = _load_document(document, title, authors)
    options = TurnOptions(model=model, engine=engine, search=search, use_cache=cache)  # type: ignore[arg-type]

    async def _stream() -> int:
        exit_code = 0
        try:
            async for event in orchestrator.start_turn(conversation, doc, question, options):
                if sse:
                    console.print(encode_sse(event), end="", markup=False, highlight=False)
                    continue
                kind = event["type"]
                if kind == "sources":
                    for source in event["data"]:
                        console.print(f"[dim]source: {source['text']} ({source['score']})[/dim]")
                elif kind == "summary_used":
                    console.print(f"[dim]summary used: {event['data']}[/dim]")
                elif kind == "thinking" and thinking:
                    console.print(event["data"], end="", style="dim italic", markup=False, highlight=False)
                elif kind == "content":
                    console.print(event["data"], end="", markup=False, highlight=False)
                elif kind == "usage":
                    data = event["data"]
                    console.print(
                        f"\n[dim]{format_tokens(data['tokens'])} tokens, {data['cost_formatted']} ({data['model']})[/dim]"
                    )
                elif kind == "error":
                    err_console.print(f"\n[bold red]Error:[/bold red] {event['data']}")
                    exit_code = 1
            console.print()
        finally:
            await orchestrator.aclose()
        return exit_code

    try:
        exit_code = asyncio.run(_stream())
    except LecternError as e:
        _fail(str(e))
    if exit_code:
        raise typer.Exit(exit_code)


@app.command("cache-list")
def cache_list_cmd(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """List live context caches."""
    orchestrator = _setup(verbose)
    entries = _run(orchestrator, orchestrator.list_caches)

    if not entries:
        console.print("No context caches.")
        return
    table = Table(title="Context caches")
    table.add_column("Fingerprint", style="cyan")
    table.add_column("Model")
    table.add_column("Tokens", justify="right")
    table.add_column("Expires")
    table.add_column("Name", style="dim")
    for entry in entries:
        expires = entry.expire_time.isoformat(timespec="seconds") if entry.expire_time else "-"
        table.add_row(entry.fingerprint, entry.model, str(entry.token_count), expires, entry.name)
    console.print(table)


@app.command("cache-delete")
def cache_delete_cmd(
    fingerprint: Annotated[str, typer.Argument(help="Document fingerprint")],
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Delete the context cache for a document fingerprint."""
    orchestrator = _setup(verbose)
    if not _run(orchestrator, lambda: orchestrator.delete_cache(fingerprint)):
        _fail(f"No context cache for {fingerprint}")
    console.print(f"Deleted context cache for {fingerprint}")


@app.command("history")
def history_cmd(
    conversation: Annotated[str, typer.Argument(help="Conversation id")],
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Show a conversation's summary and retained messages."""
    orchestrator = _setup(verbose)
    context = _run(orchestrator, lambda: orchestrator.get_history(conversation))

    if context.summary:
        console.print(
            f"[bold]Summary[/bold] ({context.summary.rounds_summarized} rounds summarized)\n{context.summary.text}\n",
        )
    if not context.recent_messages:
        console.print("No messages.")
        return
    console.print(f"[dim]{context.turn_count} turns, {context.total_rounds} rounds[/dim]")
    for message in context.recent_messages:
        console.print(f"[bold]{message['role']}:[/bold] ", end="")
        console.print(message["content"], markup=False, highlight=False)


@app.command("history-clear")
def history_clear_cmd(
    conversation: Annotated[str, typer.Argument(help="Conversation id")],
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Clear a conversation's history and summary."""
    orchestrator = _setup(verbose)
    _run(orchestrator, lambda: orchestrator.clear(conversation))
    console.print(f"Cleared {conversation}")
