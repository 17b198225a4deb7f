#!/usr/bin/env python3
"""
Terminal front end for rgpanel search sessions.

Usage:
    rgp search "pattern" [DIR]   - Run one search and print the results
    rgp interactive [DIR]        - Incremental search prompt
    rgp config                   - Show the effective configuration
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import aiofiles
import click
import yaml
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..engine.config import Config
from ..engine.errors import ModeResolutionError
from ..engine.models import CaseMode, DirOrigin, RequestingDocument, SessionState, StartOptions
from ..engine.render import HIGHLIGHT_FOCUS, HIGHLIGHT_MATCH, MemorySink
from ..engine.session import SearchSession

console = Console()

PREVIEW_CONTEXT = 3

COMMANDS = {
    ":up": "Move focus up",
    ":down": "Move focus down",
    ":up5": "Move focus up by 5",
    ":down5": "Move focus down by 5",
    ":case": "Cycle case mode (smart/ignore/strict)",
    ":regex": "Toggle regex / fixed strings",
    ":word": "Toggle whole-word matching",
    ":dir": "Switch between document dir and workspace root",
    ":parent": "Search the parent directory",
    ":child": "Descend one directory toward the original root",
    ":status": "Show session status",
    ":open": "Open the focused match and exit",
    ":quit": "Exit",
}


class ConsoleSink(MemorySink):
    """In-memory document that can paint itself and preview files on the console."""

    def __init__(self, console: Console, preview: bool = True):
        super().__init__()
        self.console = console
        self.preview = preview

    async def open_file(self, path: str, line: int, focus: bool) -> None:
        await super().open_file(path, line, focus)
        if self.preview or focus:
            await self.show_file(path, line)

    async def show_file(self, path: str, line: int) -> None:
        try:
            async with aiofiles.open(path, "r", errors="replace") as f:
                lines = await f.readlines()
        except OSError as e:
            logger.warning(f"Cannot preview {path}: {e}")
            return

        first = max(1, line - PREVIEW_CONTEXT)
        last = min(len(lines), line + PREVIEW_CONTEXT)
        body = Text()
        for n in range(first, last + 1):
            style = "bold reverse" if n == line else ""
            body.append(f"{n:>5} {lines[n - 1].rstrip()}\n", style=style)
        self.console.print(Panel(body, title=f"{path}:{line}", expand=False))

    def paint(self) -> None:
        """Print the document with match and focus highlights."""
        match_ranges = self.highlights.get(HIGHLIGHT_MATCH, [])
        focus_lines = {r.line for r in self.highlights.get(HIGHLIGHT_FOCUS, [])}

        for n, content in enumerate(self.lines):
            text = Text(content)
            if n == 0:
                text.stylize("bold")
            elif n == 1:
                text.stylize("red" if content.startswith("ERROR") else "dim")
            for r in match_ranges:
                if r.line == n:
                    text.stylize("bold red", r.start, r.end)
            if n in focus_lines:
                text.stylize("on grey23")
            self.console.print(text)


def setup_logging(config: Config) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=config.logging.level
    )

    if config.logging.file:
        log_dir = Path.home() / ".local" / "share" / "rgpanel" / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "rgpanel.log",
            rotation="1 day",
            retention="7 days",
            level="DEBUG"
        )


def load_config(config_path: Optional[str]) -> Config:
    try:
        config = Config.load(Path(config_path) if config_path else None)
    except FileNotFoundError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    setup_logging(config)
    return config


def request_for(directory: Optional[str]) -> RequestingDocument:
    root = Path(directory or ".").resolve()
    # Pretend the request came from a document inside the directory
    return RequestingDocument(path=root / ".rgpanel", workspace_root=Path.cwd().resolve())


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(), help="Config file path")
@click.pass_context
def cli(ctx, config_path: Optional[str]):
    """rgpanel - incremental ripgrep search."""
    ctx.obj = load_config(config_path)


@cli.command()
@click.argument("pattern")
@click.argument("directory", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("--case", type=click.Choice([m.value for m in CaseMode]), help="Case mode")
@click.option("--fixed-strings", "-F", is_flag=True, help="Treat the pattern as a literal")
@click.option("--word-regexp", "-w", is_flag=True, help="Match whole words only")
@click.option("--timeout", default=30.0, help="Seconds to wait for the search")
@click.pass_obj
def search(
    config: Config,
    pattern: str,
    directory: Optional[str],
    case: Optional[str],
    fixed_strings: bool,
    word_regexp: bool,
    timeout: float
):
    """Run a single search and print the results."""
    if case:
        config.defaults.case_mode = CaseMode(case)
    config.defaults.regex = not fixed_strings
    config.defaults.word = word_regexp
    asyncio.run(run_search(config, pattern, directory, timeout))


async def run_search(config: Config, pattern: str, directory: Optional[str], timeout: float):
    sink = ConsoleSink(console, preview=False)
    session = SearchSession(sink, config)
    try:
        await session.start(request_for(directory), pattern, StartOptions(directory_origin=DirOrigin.DOC))
        if not await session.wait_settled(timeout):
            console.print(f"[yellow]Search still running after {timeout:.0f}s[/yellow]")
        await session.drain()
        display_results(session)
    except ModeResolutionError as e:
        console.print(f"[red]Error:[/red] {e}")
    finally:
        await session.quit()


def display_results(session: SearchSession) -> None:
    summary = session.last_summary
    if summary is not None and summary.message:
        console.print(Text(summary.status_text(), style="red"))
        return

    if not session.matches:
        console.print("[yellow]No results found[/yellow]")
        return

    title = summary.status_text() if summary else f"{len(session.matches)} matches"
    table = Table(title=title)
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Line", justify="right", style="green")
    table.add_column("Text", no_wrap=False)

    for record in session.matches:
        text = Text(record.line_text)
        for s in record.submatches:
            text.stylize("bold red", s.start, s.end)
        table.add_row(record.file_path, str(record.line_number), text)

    console.print(table)
    if session.omitted:
        console.print(f"[dim]{session.config.display.omitted_marker} ({session.omitted_count} more)[/dim]")


@cli.command()
@click.argument("directory", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("--query", "-q", default="", help="Initial query")
@click.pass_obj
def interactive(config: Config, directory: Optional[str], query: str):
    """Incremental search prompt. Type ':help' for commands."""
    try:
        asyncio.run(run_interactive(config, directory, query))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


async def run_interactive(config: Config, directory: Optional[str], query: str):
    sink = ConsoleSink(console)
    session = SearchSession(sink, config)
    try:
        await session.start(request_for(directory), query)
    except ModeResolutionError as e:
        console.print(f"[red]Error:[/red] {e}")
        return

    try:
        while session.state is not SessionState.CLOSED:
            await session.drain()
            sink.paint()
            line = await asyncio.to_thread(console.input, f"[bold]{config.display.prompt}[/bold]")
            if not await handle_input(session, line):
                break
    finally:
        await session.quit(return_to_origin=True)


async def handle_input(session: SearchSession, line: str) -> bool:
    """Apply one line of input; returns False when the session should end."""
    command = line.strip()
    if not command.startswith(":"):
        await session.set_query(line)
        await session.wait_settled(1.0)
        return True

    actions = {
        ":up": lambda: session.move_focus("up"),
        ":down": lambda: session.move_focus("down"),
        ":up5": lambda: session.move_focus("up5"),
        ":down5": lambda: session.move_focus("down5"),
        ":case": lambda: session.toggle_mode("case"),
        ":regex": lambda: session.toggle_mode("regex"),
        ":word": lambda: session.toggle_mode("word"),
        ":dir": session.toggle_directory,
        ":parent": session.navigate_directory_up,
        ":child": session.navigate_directory_down,
    }

    if command == ":quit":
        return False
    if command == ":open":
        record = await session.commit()
        if record is None:
            console.print("[yellow]Nothing focused[/yellow]")
        return False
    if command == ":status":
        display_status(session)
        return True
    if command in actions:
        await actions[command]()
        await session.wait_settled(1.0)
        return True

    display_help()
    return True


def display_help() -> None:
    table = Table(title="Commands")
    table.add_column("Command", style="cyan")
    table.add_column("Action")
    for name, help_text in COMMANDS.items():
        table.add_row(name, help_text)
    console.print(table)


def display_status(session: SearchSession) -> None:
    status = session.get_status()
    modes = status.get("modes") or {}
    console.print(f"Session: {status['session_id']} ({status['state']})")
    console.print(f"Query #{status['query_id']}: [cyan]{escape(status['query'])}[/cyan] in {status['cwd']}")
    console.print(
        f"Case: {modes.get('case')}  Regex: {modes.get('regex')}  Word: {modes.get('word')}"
    )
    console.print(f"Results: {status['results']} (+{status['omitted']} omitted), focus: {status['focus']}")
    if status["process"]:
        console.print(f"Process: {status['process']['pid']} ({status['process']['status']})")
    for error in status["errors"][-3:]:
        console.print(f"[red]{error['error_type']}[/red]: {escape(error['message'])}")


@cli.command(name="config")
@click.pass_obj
def show_config(config: Config):
    """Show the effective configuration."""
    console.print(yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
