"""Typer-based CLI for noteledger."""

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .collaborators import ConsolePromptSink
from .config import REPO_CONFIG_RELPATH, NoteLedgerConfig, _find_repo_root
from .engine import NoteEngine
from .errors import NoteLedgerError
from .ledger import LedgerStore
from .models.diffusion import Rejected
from .models.evidence import FrameAvailability
from .paths import DataPaths

app = typer.Typer(
    name="noteledger",
    help="noteledger - evidence ledger and note reconciliation for video feedback sessions",
    add_completion=False,
)

console = Console()

DATA_DIR_HELP = "Path to data directory (default: NOTELEDGER_DATA_DIR env or ./noteledger_data)"


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=debug)],
        force=True,
    )


def _load_config(data_dir: Optional[str], engine: Optional[str] = None) -> NoteLedgerConfig:
    config = NoteLedgerConfig.from_env(cli_data_dir=data_dir)
    if engine:
        valid_engines = ["auto", "fake", "openai"]
        if engine not in valid_engines:
            console.print(f"[red]Error: Invalid engine '{engine}'. Must be one of: {', '.join(valid_engines)}[/red]")
            raise typer.Exit(code=1)
        config.synthesis.engine = engine
    return config


@contextmanager
def _open_engine(data_dir: Optional[str], engine: Optional[str] = None) -> Iterator[NoteEngine]:
    config = _load_config(data_dir, engine)
    paths = DataPaths.from_config(config)
    if not paths.ledger_db.exists():
        console.print(f"[red]Error: Ledger not initialized at {config.data_dir}[/red]")
        console.print("[yellow]Run 'noteledger init' first[/yellow]")
        raise typer.Exit(code=1)

    try:
        note_engine = NoteEngine.from_config(config, prompt_sink=ConsolePromptSink(console))
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    try:
        yield note_engine
    finally:
        note_engine.close()


@app.command()
def init(
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
    write_config: bool = typer.Option(
        True,
        "--write-config/--no-write-config",
        help="Write .noteledger/config.toml at the repo root if it does not exist",
    ),
):
    """Initialize the data directory and ledger database.

    Idempotent: existing directories, ledger and config are left alone.
    """
    config = _load_config(data_dir)
    paths = DataPaths.from_config(config)

    created = 0
    for directory in paths.get_all_directories():
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            created += 1
    if created:
        console.print(f"[green]+[/green] Created {created} directories under {paths.root}")
    else:
        console.print("[dim]All directories already exist[/dim]")

    if paths.ledger_db.exists():
        console.print(f"[dim]Ledger already exists: {paths.ledger_db}[/dim]")
    else:
        LedgerStore(paths.ledger_db)
        console.print(f"[green]+[/green] Created ledger: {paths.ledger_db}")

    if write_config:
        config_file = _find_repo_root(Path.cwd()) / REPO_CONFIG_RELPATH
        if config_file.exists():
            console.print(f"[dim]Config already exists: {config_file}[/dim]")
        else:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            config_file.write_text(config.to_toml_str(), encoding="utf-8")
            console.print(f"[green]+[/green] Created config: {config_file}")

    console.print()
    console.print("[bold green]noteledger initialization complete![/bold green]")
    console.print(f"[dim]Data location:[/dim] {paths.root.absolute()}")


@app.command("ingest-transcript")
def ingest_transcript(
    session_id: str = typer.Argument(..., help="Session identifier"),
    at: float = typer.Option(..., "--at", help="Video timestamp in seconds"),
    text: str = typer.Option(..., "--text", "-t", help="Transcribed speech"),
    confidence: float = typer.Option(1.0, "--confidence", "-c", help="Transcription confidence (0.0-1.0)"),
    engine: str = typer.Option(None, "--engine", help="Synthesis engine: auto, fake, or openai"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Append a transcript fragment and reconcile affected notes."""
    with _open_engine(data_dir, engine) as note_engine:
        try:
            result = note_engine.ingest_transcript(session_id, at, text, confidence)
        except (NoteLedgerError, ValueError) as e:
            console.print(f"[red]Error during ingest: {e}[/red]")
            raise typer.Exit(code=1)
        _print_ingest(result)


@app.command("ingest-frame")
def ingest_frame(
    session_id: str = typer.Argument(..., help="Session identifier"),
    at: float = typer.Option(..., "--at", help="Video timestamp in seconds"),
    blob_ref: str = typer.Option(..., "--blob-ref", help="Reference to the stored frame"),
    availability: FrameAvailability = typer.Option(
        FrameAvailability.AVAILABLE, "--availability", help="available, expired, or pending"
    ),
    engine: str = typer.Option(None, "--engine", help="Synthesis engine: auto, fake, or openai"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Append a frame capture and reconcile affected notes."""
    with _open_engine(data_dir, engine) as note_engine:
        try:
            result = note_engine.ingest_frame(session_id, at, blob_ref, availability)
        except (NoteLedgerError, ValueError) as e:
            console.print(f"[red]Error during ingest: {e}[/red]")
            raise typer.Exit(code=1)
        _print_ingest(result)


def _print_ingest(result) -> None:
    entry = result.entry
    console.print(f"[green]Appended[/green] {entry.kind.value} #{entry.sequence} to {entry.session_id}")
    for r in result.reconcile.results:
        note = r.note_id or "-"
        console.print(f"  {note}: [magenta]{r.action.value}[/magenta]" + (f" [dim]({r.error})[/dim]" if r.error else ""))
    for ladder in result.ladders:
        status = "resolved" if ladder.resolved else ("awaiting user" if ladder.awaiting_user else "open")
        console.print(f"  escalation {ladder.note_id}: {' -> '.join(ladder.steps) or '-'} [yellow]{status}[/yellow]")
    for r in result.deferred:
        console.print(f"  {r.note_id}: [magenta]{r.action.value}[/magenta] [dim](deferred)[/dim]")


@app.command()
def notes(
    session_id: str = typer.Argument(..., help="Session identifier"),
    show_all: bool = typer.Option(False, "--all", help="Include merged notes"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """List the current notes of a session."""
    with _open_engine(data_dir, "fake") as note_engine:
        session_notes = note_engine.get_notes(session_id, include_merged=show_all)
        escalations = {e.note_id: e for e in note_engine.get_escalations(session_id)}

    if not session_notes:
        console.print("[dim]No notes in session[/dim]")
        return

    table = Table(title=f"Notes for {session_id}")
    table.add_column("Time", style="cyan", no_wrap=True)
    table.add_column("Note ID", style="yellow")
    table.add_column("Category", style="magenta")
    table.add_column("Conf", justify="right")
    table.add_column("Status")
    table.add_column("Text", style="dim")

    for note in session_notes:
        state = escalations.get(note.note_id)
        status = note.status.value if not note.is_active else (state.status.value if state else "-")
        if state is not None and state.awaiting_user:
            status += " (awaiting user)"
        text = note.text if len(note.text) <= 60 else note.text[:57] + "..."
        table.add_row(
            f"{note.timestamp_seconds:.1f}s",
            note.note_id,
            note.category.value,
            f"{note.confidence:.2f}",
            status,
            text,
        )
    console.print(table)


@app.command()
def tail(
    session_id: str = typer.Argument(..., help="Session identifier"),
    n: int = typer.Option(20, "--n", help="Number of recent entries to display"),
    full: bool = typer.Option(False, "--full", help="Show full payloads with JSON pretty-print"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Display the last N ledger entries of a session."""
    config = _load_config(data_dir)
    paths = DataPaths.from_config(config)
    if not paths.ledger_db.exists():
        console.print(f"[red]Error: Ledger not initialized at {config.data_dir}[/red]")
        raise typer.Exit(code=1)

    entries = LedgerStore(paths.ledger_db).tail(session_id, n)
    if not entries:
        console.print("[dim]No entries in ledger[/dim]")
        return

    if full:
        console.print(f"[bold]Last {len(entries)} Ledger Entr{'y' if len(entries) == 1 else 'ies'}[/bold]\n")
        for entry in entries:
            console.print(f"[cyan]#{entry.sequence}[/cyan] [magenta]{entry.kind.value}[/magenta]")
            console.print(f"  [dim]Created:[/dim]    {entry.created_at.strftime('%Y-%m-%d %H:%M:%S')} UTC")
            console.print(f"  [dim]Hash:[/dim]       {entry.entry_hash}")
            console.print(f"  [dim]Prev:[/dim]       {entry.prev_hash}")
            console.print(f"  [dim]References:[/dim] {entry.references or '-'}")
            console.print("  [dim]Payload:[/dim]")
            for line in json.dumps(entry.payload, indent=2, sort_keys=True).split("\n"):
                console.print(f"    {line}")
            console.print()
        return

    table = Table(title=f"Last {len(entries)} entries of {session_id}")
    table.add_column("Seq", justify="right", style="cyan")
    table.add_column("Created (UTC)", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("Hash", style="yellow")
    table.add_column("Payload", style="dim")
    for entry in entries:
        payload_str = json.dumps(entry.payload, sort_keys=True)
        if len(payload_str) > 60:
            payload_str = payload_str[:57] + "..."
        table.add_row(
            str(entry.sequence),
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.kind.value,
            entry.entry_hash[:12],
            payload_str,
        )
    console.print(table)


@app.command()
def replay(
    session_id: str = typer.Argument(..., help="Session identifier"),
    up_to: int = typer.Option(None, "--up-to", help="Last sequence to fold (default: tip)"),
    as_json: bool = typer.Option(False, "--json", help="Print the canonical snapshot JSON"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Rebuild a session snapshot from the ledger."""
    with _open_engine(data_dir, "fake") as note_engine:
        snapshot = note_engine.replay(session_id, up_to)

    if as_json:
        typer.echo(snapshot.canonical_json())
        return
    console.print(f"[bold]Snapshot of {session_id}[/bold] up to #{snapshot.up_to_sequence}")
    console.print(f"  Notes:         {len(snapshot.notes)}")
    console.print(f"  Evidence:      {snapshot.evidence_count}")
    console.print(f"  Snapshot hash: {snapshot.snapshot_hash}")


@app.command()
def export(
    session_id: str = typer.Argument(..., help="Session identifier"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Write a hash-stable export bundle for a session."""
    with _open_engine(data_dir, "fake") as note_engine:
        bundle = note_engine.export(session_id)
        path = note_engine.replay_service.write_bundle(bundle, DataPaths.from_config(note_engine.config).exports)

    console.print(f"[green]Exported[/green] {session_id} at #{bundle.tip_sequence}")
    console.print(f"  Bundle: {path}")
    console.print(f"  Hash:   {bundle.bundle_hash}")
    if not bundle.chain_valid:
        console.print("[yellow]Warning: ledger chain failed verification[/yellow]")


@app.command()
def verify(
    session_id: str = typer.Argument(None, help="Session identifier (default: every session)"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Verify chain integrity and replay determinism."""
    with _open_engine(data_dir, "fake") as note_engine:
        session_ids = [session_id] if session_id else note_engine.ledger.sessions()
        results = [note_engine.verify(s) for s in session_ids]

    if not results:
        console.print("[dim]No sessions in ledger[/dim]")
        return

    table = Table(title="Replay verification")
    table.add_column("Session", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Result")
    table.add_column("Problems", style="dim")
    for r in results:
        table.add_row(
            r.session_id,
            str(r.chain.entries),
            "[green]ok[/green]" if r.ok else "[red]FAILED[/red]",
            "; ".join(r.problems) or "-",
        )
    console.print(table)

    if not all(r.ok for r in results):
        raise typer.Exit(code=1)


@app.command()
def diffuse(
    session_id: str = typer.Argument(..., help="Session identifier"),
    engine: str = typer.Option(None, "--engine", help="Synthesis engine: auto, fake, or openai"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Run one diffusion pass over a session and wait for it."""
    with _open_engine(data_dir, engine) as note_engine:
        result = note_engine.schedule_diffusion(session_id, wait=True)

    if isinstance(result, Rejected):
        console.print(f"[yellow]Diffusion rejected: {result.reason.value}[/yellow]")
        raise typer.Exit(code=1)
    if result.error:
        console.print(f"[yellow]Diffusion {result.task_id} {result.status.value}: {result.error}[/yellow]")
        return
    console.print(
        f"[green]Diffusion {result.task_id} {result.status.value}[/green] "
        f"({len(result.committed_sequences)} revision(s), cost {result.cost_spent:.2f})"
    )


@app.command()
def dismiss(
    session_id: str = typer.Argument(..., help="Session identifier"),
    note_id: str = typer.Argument(..., help="Note to dismiss"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Dismiss an escalation prompt for a note."""
    with _open_engine(data_dir, "fake") as note_engine:
        try:
            entry = note_engine.dismiss(session_id, note_id)
        except KeyError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(code=1)

    if entry is None:
        console.print(f"[dim]Escalation for {note_id} already resolved[/dim]")
    else:
        console.print(f"[green]Dismissed[/green] {note_id} (#{entry.sequence})")


@app.command()
def correct(
    session_id: str = typer.Argument(..., help="Session identifier"),
    note_id: str = typer.Argument(..., help="Note to correct"),
    text: str = typer.Option(..., "--text", "-t", help="Corrected note text"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Replace a note's text with a user correction."""
    with _open_engine(data_dir, "fake") as note_engine:
        try:
            entries = note_engine.correct(session_id, note_id, text)
        except KeyError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(code=1)
    console.print(f"[green]Corrected[/green] {note_id} (#{entries[-1].sequence})")


@app.command("flush-deferred")
def flush_deferred(
    engine: str = typer.Option(None, "--engine", help="Synthesis engine: auto, fake, or openai"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Re-evaluate revisions deferred by the rate cap whose window has opened."""
    with _open_engine(data_dir, engine) as note_engine:
        outcomes = note_engine.flush_deferred()
        pending = note_engine.reconciler.deferred()

    if not outcomes:
        console.print("[dim]No deferred revisions are due[/dim]")
    for o in outcomes:
        console.print(f"  {o.note_id}: [magenta]{o.action.value}[/magenta]")
    for d in pending:
        console.print(f"  [dim]{d.session_id}/{d.note_id} waits until {d.not_before.isoformat()}[/dim]")


@app.command()
def serve(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    engine: str = typer.Option(None, "--engine", help="Synthesis engine: auto, fake, or openai"),
    data_dir: str = typer.Option(None, "--data-dir", "-d", help=DATA_DIR_HELP),
):
    """Serve notes and export bundles over HTTP."""
    from .api import serve as make_server

    with _open_engine(data_dir, engine) as note_engine:
        server = make_server(note_engine, host=host, port=port)
        console.print(f"[green]noteledger API running on {host}:{port}[/green]")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            console.print("[dim]Shutting down[/dim]")
        finally:
            server.server_close()


if __name__ == "__main__":
    app()
