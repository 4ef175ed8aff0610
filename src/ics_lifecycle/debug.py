"""
Inspect tools for parsed calendar documents.

Importable functions:
  dump_event(event, console)  - render one VEVENT in a Rich Panel
  dump_document(doc, console, raw=None)  - render calendar properties, events,
                                           diagnostics and optionally the raw text
"""

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventTime
from ics_lifecycle.serializer import format_datetime


def fmt_time(when: EventTime | None) -> str | None:
    if when is None:
        return None
    text = format_datetime(when.value, when.tzid)
    if when.all_day:
        return f"{text} (all day)"
    if when.tzid:
        return f"{text} ({when.tzid})"
    return text


def dump_event(event: EventComponent, console: Console) -> None:
    """Render a single VEVENT as a Rich Panel."""
    summary = event.summary or "(no summary)"
    lines = Text()

    def row(label: str, value) -> None:
        if value is None:
            return
        lines.append(f"  {label:<14}: ", style="bold cyan")
        lines.append(f"{value}\n")

    row("SUMMARY", summary)
    row("UID", event.uid or "(no UID)")
    row("DTSTAMP", format_datetime(event.dtstamp) if event.dtstamp else None)
    row("DTSTART", fmt_time(event.dtstart))
    row("DTEND", fmt_time(event.dtend))
    row("SEQUENCE", event.sequence)
    row("STATUS", event.status)
    row("LOCATION", event.location)
    row("RRULE", event.rrule)
    if event.organizer:
        name = f" ({event.organizer.name})" if event.organizer.name else ""
        row("ORGANIZER", f"{event.organizer.email}{name}")
    for prop in event.extra:
        row(prop.name, prop.value)
    for prop in event.x_props:
        row(prop.name, prop.value)

    console.print(Panel(lines, title=f"[bold]{summary}[/bold]", expand=False))

    if event.attendees:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Email", style="bold")
        table.add_column("Name")
        table.add_column("Role")
        table.add_column("Type")
        table.add_column("PARTSTAT")
        for entry in event.attendees:
            partstat = entry.partstat or ""
            style = "green" if partstat == "ACCEPTED" else "yellow" if partstat else "dim"
            cutype = entry.cutype or ""
            if entry.is_resource and entry.resource_type:
                cutype = f"{cutype} ({entry.resource_type})"
            table.add_row(
                entry.email,
                entry.name or "",
                entry.role or "",
                cutype,
                Text(partstat, style=style),
            )
        console.print(table)


def dump_document(doc: CalendarDocument, console: Console, raw: str | None = None) -> None:
    """Render a whole document; ``raw`` adds a syntax-highlighted source panel."""
    header = Text()
    for name, value in doc.properties.items():
        header.append(f"  {name:<14}: ", style="bold cyan")
        header.append(f"{value}\n")
    console.print(Panel(header, title="[bold]VCALENDAR[/bold]", expand=False))

    for event in doc.events:
        dump_event(event, console)

    if doc.diagnostics:
        notes = Text()
        for diagnostic in doc.diagnostics:
            notes.append("  • ", style="yellow")
            notes.append(f"{diagnostic}\n")
        console.print(Panel(notes, title="[bold yellow]Diagnostics[/bold yellow]", expand=False))

    if raw is not None:
        console.print(
            Panel(
                Syntax(raw, "ical", theme="monokai", word_wrap=True),
                title="Raw iCal",
                expand=False,
            )
        )
