"""
Command-line interface for ics-lifecycle.
"""

import json
import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ics_lifecycle import compliance
from ics_lifecycle import normalizer
from ics_lifecycle.db import IdentityStore
from ics_lifecycle.db import query_status
from ics_lifecycle.debug import dump_document
from ics_lifecycle.models import DEFAULT_CONFIG
from ics_lifecycle.models import DEFAULT_PRODID
from ics_lifecycle.models import DEFAULT_STATE_DB
from ics_lifecycle.models import DEFAULT_UID_DOMAIN
from ics_lifecycle.models import CalendarCodecError
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import EventData
from ics_lifecycle.models import LifecycleNotice
from ics_lifecycle.models import MutationResult
from ics_lifecycle.mutators import DocumentMutator
from ics_lifecycle.parser import parse_raw
from ics_lifecycle.registry import IdentityRegistry

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Repair, inspect, build and cancel iCalendar event documents.",
)
uid_app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Inspect and maintain the UID identity registry.",
)
app.add_typer(uid_app, name="uid")

# Documents go to stdout; logs and status panels go to stderr.
console = Console(stderr=True)

CONFIG_SECTION = "ics-lifecycle"


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    state_db_explicit: bool = False
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"Identity DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db or DEFAULT_STATE_DB
    state.state_db_explicit = state_db is not None
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _flag(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    try:
        return ConfigParser.BOOLEAN_STATES[value.strip().lower()]
    except KeyError:
        raise typer.BadParameter(f"not a boolean in {state.config_path}: {value!r}") from None


def _build_config(rebuild: bool = False) -> CodecConfig:
    config_file = _load_config_file(state.config_path)
    if not state.state_db_explicit and config_file.get("state_db"):
        state.state_db = Path(config_file["state_db"]).expanduser()
    return CodecConfig(
        prodid=config_file.get("prodid") or DEFAULT_PRODID,
        uid_domain=config_file.get("uid_domain") or DEFAULT_UID_DOMAIN,
        state_db_path=state.state_db,
        always_rebuild=rebuild or _flag(config_file.get("always_rebuild"), False),
        confirm_status_on_request=_flag(config_file.get("confirm_status_on_request"), True),
        verbose=state.verbose,
    )


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/] {message}")
    raise typer.Exit(1)


def _read_text(path: Path) -> str:
    try:
        # newline="" keeps CRLF intact for the normalizer
        with open(path, encoding="utf-8", errors="replace", newline="") as f:
            return f.read()
    except OSError as e:
        _fail(f"Cannot read {path}: {e.strerror}")


def _read_event(path: Path) -> EventData:
    try:
        return EventData.from_dict(json.loads(_read_text(path)))
    except (ValueError, KeyError, TypeError) as e:
        _fail(f"Invalid event JSON in {path}: {e}")


def _emit(text: str, output: Path | None) -> None:
    if output is None:
        typer.echo(text, nl=False)
        return
    try:
        with open(output, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    except OSError as e:
        _fail(f"Cannot write {output}: {e.strerror}")
    console.print(f"[green]✓[/] Wrote [cyan]{output}[/]")


def _log_notice(notice: LifecycleNotice) -> None:
    logging.getLogger(__name__).debug(
        "Lifecycle notice: %s %s (%s)", notice.operation, notice.uid, notice.internal_id
    )


def _open_store(cfg: CodecConfig) -> IdentityStore:
    store = IdentityStore(cfg.state_db_path)
    try:
        store.connect()
    except CalendarCodecError as e:
        _fail(str(e))
    return store


def _registry(store: IdentityStore, cfg: CodecConfig) -> IdentityRegistry:
    return IdentityRegistry(store, notifier=_log_notice, uid_domain=cfg.uid_domain)


def _print_result(result: MutationResult) -> None:
    info = Table.grid(padding=(0, 2))
    info.add_column(style="bold")
    info.add_column()
    event = result.document.event
    info.add_row("UID", result.uid or "")
    info.add_row("SEQUENCE", str(event.sequence if event else ""))
    info.add_row("Content-Type", result.content_type)
    if result.internal_id:
        info.add_row("Internal id", result.internal_id)
    diag_val = Text(str(len(result.diagnostics)))
    if not result.diagnostics:
        diag_val.append(" ✓", style="green")
    else:
        diag_val.stylize("bold yellow")
    info.add_row("Diagnostics", diag_val)
    console.print(Panel(info, title=f"[bold]{result.document.method}[/bold]", expand=False))
    for diagnostic in result.diagnostics:
        console.print(f"  [yellow]•[/] {diagnostic}")


_OUTPUT = Annotated[
    Path | None,
    typer.Option("--output", "-o", help="Write the document here instead of stdout"),
]


# ---------------------------------------------------------------------------
# Subcommands: document handling
# ---------------------------------------------------------------------------


@app.command()
def normalize(
    file: Annotated[Path, typer.Argument(help="Raw (possibly malformed) iCalendar file")],
    output: _OUTPUT = None,
) -> None:
    """Repair line-break damage and print the normalized text."""
    _emit(normalizer.normalize(_read_text(file)), output)


@app.command()
def inspect(
    file: Annotated[Path, typer.Argument(help="iCalendar file to parse")],
    no_raw: Annotated[bool, typer.Option("--no-raw", help="Omit the raw iCal block")] = False,
) -> None:
    """Parse a document and show its structure and diagnostics."""
    raw = _read_text(file)
    doc, diagnostics = parse_raw(raw)
    dump_document(doc, console, raw=None if no_raw else raw)
    console.print(
        f"\n[bold]{len(doc.events)} event(s), {len(diagnostics)} diagnostic(s)[/bold]"
    )


@app.command()
def invite(
    event_json: Annotated[Path, typer.Argument(help="Event data as JSON")],
    uid: Annotated[str | None, typer.Option(help="UID to use for a new event")] = None,
    internal_id: Annotated[
        str | None, typer.Option("--internal-id", help="Bind the UID to this internal id")
    ] = None,
    sequence: Annotated[
        int | None, typer.Option(min=0, help="SEQUENCE for an edit (default 0)")
    ] = None,
    output: _OUTPUT = None,
) -> None:
    """Build a METHOD:REQUEST invitation."""
    cfg = _build_config()
    event = _read_event(event_json)
    internal_id = internal_id or event.internal_id

    try:
        if internal_id:
            with _open_store(cfg) as store:
                mutator = DocumentMutator(cfg, _registry(store, cfg))
                result = mutator.invite(event, internal_id=internal_id, uid=uid, sequence=sequence)
        else:
            result = DocumentMutator(cfg).invite(event, uid=uid, sequence=sequence)
    except CalendarCodecError as e:
        _fail(str(e))

    _print_result(result)
    _emit(result.text, output)


@app.command()
def update(
    original: Annotated[Path, typer.Argument(help="Current iCalendar document of the event")],
    event_json: Annotated[
        Path | None, typer.Option("--event", help="Event data as JSON with the changed fields")
    ] = None,
    internal_id: Annotated[
        str | None, typer.Option("--internal-id", help="Internal id for UID/SEQUENCE bookkeeping")
    ] = None,
    output: _OUTPUT = None,
) -> None:
    """Build the next METHOD:REQUEST revision of an existing document."""
    cfg = _build_config()
    raw = _read_text(original)
    event = _read_event(event_json) if event_json is not None else None
    if internal_id is None and event is not None:
        internal_id = event.internal_id

    try:
        if internal_id:
            with _open_store(cfg) as store:
                mutator = DocumentMutator(cfg, _registry(store, cfg))
                result = mutator.update(raw, event, internal_id=internal_id)
        else:
            result = DocumentMutator(cfg).update(raw, event)
    except CalendarCodecError as e:
        _fail(str(e))

    _print_result(result)
    _emit(result.text, output)


@app.command()
def cancel(
    original: Annotated[
        Path | None, typer.Argument(help="Original iCalendar document to cancel")
    ] = None,
    event_json: Annotated[
        Path | None, typer.Option("--event", help="Event data as JSON (fallback source)")
    ] = None,
    internal_id: Annotated[
        str | None, typer.Option("--internal-id", help="Internal id for UID/SEQUENCE bookkeeping")
    ] = None,
    rebuild: Annotated[
        bool, typer.Option("--rebuild", help="Always rebuild a minimal cancellation")
    ] = False,
    output: _OUTPUT = None,
) -> None:
    """Build a METHOD:CANCEL document from an original and/or event data."""
    if original is None and event_json is None:
        _fail("Provide an original document, [cyan]--event[/], or both.")

    cfg = _build_config(rebuild)
    raw = _read_text(original) if original is not None else None
    event = _read_event(event_json) if event_json is not None else None
    if internal_id is None and event is not None:
        internal_id = event.internal_id

    try:
        if internal_id:
            with _open_store(cfg) as store:
                mutator = DocumentMutator(cfg, _registry(store, cfg))
                result = mutator.cancel(raw, event, internal_id=internal_id)
        else:
            result = DocumentMutator(cfg).cancel(raw, event)
    except CalendarCodecError as e:
        _fail(str(e))

    _print_result(result)
    _emit(result.text, output)


@app.command()
def verify(
    file: Annotated[Path, typer.Argument(help="Serialized iCalendar file to check")],
    as_cancel: Annotated[
        bool, typer.Option("--cancel", help="Also apply the cancellation checks")
    ] = False,
    uid: Annotated[str | None, typer.Option(help="UID the document must carry")] = None,
    min_sequence: Annotated[
        int | None, typer.Option("--min-sequence", help="SEQUENCE must be greater than this")
    ] = None,
) -> None:
    """Check folding, BEGIN/END balance and (optionally) cancellation compliance."""
    text = _read_text(file)
    if as_cancel:
        issues = compliance.check_cancellation(text, uid, min_sequence)
    else:
        issues = compliance.check_balance(text) + compliance.check_folding(text)

    if not issues:
        console.print(f"[green]✓[/] {file} passed all checks")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Issue")
    for number, issue in enumerate(issues, start=1):
        table.add_row(str(number), Text(issue, style="red"))
    console.print(Panel(table, title=f"[bold red]{len(issues)} issue(s)[/bold red]", expand=False))
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: uid registry
# ---------------------------------------------------------------------------


@uid_app.command("resolve")
def uid_resolve(
    internal_id: Annotated[str, typer.Argument(help="Internal event id")],
    uid: Annotated[str | None, typer.Option(help="UID offered by the caller")] = None,
    raw: Annotated[
        Path | None, typer.Option(help="Raw document whose UID takes precedence")
    ] = None,
) -> None:
    """Print the permanent UID for an internal id, assigning one if needed."""
    cfg = _build_config()
    raw_text = _read_text(raw) if raw is not None else None
    with _open_store(cfg) as store:
        resolved = _registry(store, cfg).resolve_uid(
            internal_id, provided_uid=uid, existing_raw_document=raw_text
        )
    typer.echo(resolved)


@uid_app.command("map")
def uid_map(
    external_uid: Annotated[str, typer.Argument(help="UID seen in a foreign calendar")],
    internal_uid: Annotated[str, typer.Argument(help="UID known internally")],
) -> None:
    """Record that a foreign UID refers to an internal UID."""
    cfg = _build_config()
    with _open_store(cfg) as store:
        _registry(store, cfg).register_external_mapping(external_uid, internal_uid)
    console.print(f"[green]✓[/] {external_uid} → {internal_uid}")


@uid_app.command("lookup")
def uid_lookup(
    external_uid: Annotated[str, typer.Argument(help="UID seen in a foreign calendar")],
) -> None:
    """Print the internal UID for a foreign UID (or the UID itself)."""
    cfg = _build_config()
    with _open_store(cfg) as store:
        typer.echo(_registry(store, cfg).lookup_internal_uid(external_uid))


@uid_app.command("forget")
def uid_forget(
    internal_id: Annotated[str, typer.Argument(help="Internal event id")],
) -> None:
    """Delete the UID binding of an event that no longer exists."""
    cfg = _build_config()
    with _open_store(cfg) as store:
        deleted = _registry(store, cfg).delete_uid(internal_id)
    if not deleted:
        console.print(f"[yellow]No binding for internal id[/] [cyan]{internal_id}[/]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Forgot UID binding for [cyan]{internal_id}[/]")


@uid_app.command("status")
def uid_status() -> None:
    """Show configuration and identity database summary."""
    cfg = _build_config()
    config_exists = state.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "yellow"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Domain:   ", style="bold")
    cfg_info.append(cfg.uid_domain)
    console.print(Panel(cfg_info, title="[bold]ics-lifecycle: Status[/bold]"))

    counts = query_status(cfg.state_db_path)
    if not counts:
        console.print("[yellow]No identity database yet: no UIDs assigned.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Bindings", justify="right")
    table.add_column("Documents", justify="right")
    table.add_column("Mappings", justify="right")
    table.add_column("Last update")
    ts = counts["last_update"]
    last_update = datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "-"
    table.add_row(
        str(counts["bindings"]), str(counts["documents"]), str(counts["mappings"]), last_update
    )
    console.print(Panel(table, title="[bold]Identity registry[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
