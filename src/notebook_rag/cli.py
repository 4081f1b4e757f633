from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import AppConfig, load_config
from .errors import NotebookRagError
from .ledger import AttachmentStatus
from .workspace import Workspace

console = Console()

STATUS_STYLE = {
    AttachmentStatus.PENDING: "yellow",
    AttachmentStatus.READY: "green",
    AttachmentStatus.ERROR: "red",
}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _add_json_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Print records as JSON.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Notebook RAG - attach documents to notebooks and ask questions answered from them."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to a config YAML file (default: config.yaml).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a notebook.")
    create_parser.add_argument("title", type=str, help="Notebook title.")

    list_parser = subparsers.add_parser("list", help="List notebooks, most recently used first.")
    _add_json_flag(list_parser)

    delete_parser = subparsers.add_parser("delete", help="Delete a notebook and everything in it.")
    delete_parser.add_argument("notebook_id", type=str)

    files_parser = subparsers.add_parser("files", help="List the attachments of a notebook.")
    files_parser.add_argument("notebook_id", type=str)
    _add_json_flag(files_parser)

    attach_parser = subparsers.add_parser(
        "attach",
        help="Attach .pdf, .md or .txt files to a notebook and index them.",
    )
    attach_parser.add_argument("notebook_id", type=str)
    attach_parser.add_argument("paths", type=Path, nargs="+", help="Files to attach.")

    detach_parser = subparsers.add_parser("detach", help="Remove an attachment and its vectors.")
    detach_parser.add_argument("attachment_id", type=str)

    ask_parser = subparsers.add_parser("ask", help="Ask a question inside a notebook.")
    ask_parser.add_argument("notebook_id", type=str)
    ask_parser.add_argument("question", type=str, help="Question to ask over the notebook's files.")

    history_parser = subparsers.add_parser("history", help="Show a notebook's chat history.")
    history_parser.add_argument("notebook_id", type=str)
    _add_json_flag(history_parser)

    subparsers.add_parser("recover", help="Clean up after an interrupted run.")

    return parser


async def _list_notebooks(ws: Workspace, as_json: bool = False) -> None:
    notebooks = await ws.list_notebooks()
    if as_json:
        console.print_json(data=[nb.to_dict() for nb in notebooks])
        return
    if not notebooks:
        console.print("[yellow]No notebooks yet. Create one with 'notebook-rag create TITLE'.[/yellow]")
        return
    table = Table(title="Notebooks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Last accessed")
    for nb in notebooks:
        table.add_row(nb.id, nb.title, f"{nb.last_accessed:%Y-%m-%d %H:%M}")
    console.print(table)


async def _list_files(ws: Workspace, notebook_id: str, as_json: bool = False) -> None:
    attachments = await ws.list_attachments(notebook_id)
    if as_json:
        console.print_json(data=[att.to_dict() for att in attachments])
        return
    if not attachments:
        console.print("[yellow]No files attached to this notebook.[/yellow]")
        return
    table = Table(title="Attachments")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    for att in attachments:
        style = STATUS_STYLE[att.status]
        table.add_row(att.id, att.file_name, f"{att.file_size:,}", f"[{style}]{att.status.value}[/{style}]")
    console.print(table)


async def _attach(ws: Workspace, notebook_id: str, paths: List[Path]) -> int:
    failures = 0
    uploaded = []
    for path in paths:
        try:
            uploaded.append(await ws.upload(notebook_id, path))
        except NotebookRagError as exc:
            console.print(f"[red]{path}: {exc}[/red]")
            failures += 1

    for att in uploaded:
        with console.status(f"Processing {att.file_name}..."):
            status = await ws.orchestrator.wait(att.id)
        if status is AttachmentStatus.READY:
            console.print(f"[green]{att.file_name}[/green] ready ({att.id})")
        else:
            console.print(f"[red]{att.file_name}: failed to process the file.[/red]")
            failures += 1
    return failures


async def _ask(ws: Workspace, notebook_id: str, question: str) -> None:
    await ws.open_notebook(notebook_id)
    with console.status("Thinking..."):
        exchange = await ws.chat.exchange(notebook_id, question)

    console.rule("[bold green]Answer[/bold green]")
    console.print(exchange.reply.message)

    if exchange.contexts:
        console.rule("[bold blue]Retrieved Chunks[/bold blue]")
        for chunk in exchange.contexts:
            preview = chunk.text.replace("\n", " ")
            if len(preview) > 180:
                preview = preview[:177] + "..."
            console.print(
                Panel(
                    preview,
                    title=Path(chunk.path).name,
                    subtitle=f"distance={chunk.distance:.3f}",
                    expand=False,
                )
            )


async def _history(ws: Workspace, notebook_id: str, as_json: bool = False) -> None:
    entries = await ws.chat_history(notebook_id)
    if as_json:
        console.print_json(data=[entry.to_dict() for entry in entries])
        return
    if not entries:
        console.print("[yellow]No messages yet.[/yellow]")
        return
    for entry in entries:
        colour = "green" if entry.role.value == "assistant" else "cyan"
        console.print(f"[bold {colour}]{entry.role.value}[/bold {colour}] [dim]{entry.timestamp:%Y-%m-%d %H:%M}[/dim]")
        console.print(entry.message)
        console.print()


async def _run(args: argparse.Namespace, cfg: AppConfig) -> int:
    async with Workspace.open(cfg) as ws:
        if args.command == "create":
            nb = await ws.create_notebook(args.title)
            console.print(f"[bold green]Created notebook[/bold green] {nb.title} ({nb.id})")
        elif args.command == "list":
            await _list_notebooks(ws, args.json)
        elif args.command == "delete":
            if await ws.delete_notebook(args.notebook_id):
                console.print(f"[green]Deleted notebook {args.notebook_id}[/green]")
            else:
                console.print(f"[yellow]Notebook {args.notebook_id} not found[/yellow]")
        elif args.command == "files":
            await _list_files(ws, args.notebook_id, args.json)
        elif args.command == "attach":
            return 1 if await _attach(ws, args.notebook_id, args.paths) else 0
        elif args.command == "detach":
            if await ws.delete_attachment(args.attachment_id):
                console.print(f"[green]Removed attachment {args.attachment_id}[/green]")
            else:
                console.print(f"[yellow]Attachment {args.attachment_id} not found[/yellow]")
        elif args.command == "ask":
            await _ask(ws, args.notebook_id, args.question)
        elif args.command == "history":
            await _history(ws, args.notebook_id, args.json)
        elif args.command == "recover":
            report = ws.startup_recovery or await ws.recover()
            console.print(
                f"[green]Marked {report.interrupted} interrupted attachments as failed, "
                f"removed {report.orphaned} orphaned vector sets.[/green]"
            )
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    _setup_logging(cfg.log_level)

    try:
        return asyncio.run(_run(args, cfg))
    except NotebookRagError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
