"""
Pure data models, exceptions and defaults. No sqlite or CLI imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import timedelta
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/ics-lifecycle-identity.db"
DEFAULT_CONFIG = Path.home() / ".config/ics-lifecycle.conf"
DEFAULT_PRODID = "-//ics-lifecycle//NONSGML Calendar//EN"
DEFAULT_UID_DOMAIN = "ics-lifecycle.local"

METHOD_REQUEST = "REQUEST"
METHOD_CANCEL = "CANCEL"
METHOD_PUBLISH = "PUBLISH"

STATUS_CONFIRMED = "CONFIRMED"
STATUS_CANCELLED = "CANCELLED"
STATUS_TENTATIVE = "TENTATIVE"
EVENT_STATUSES = frozenset({STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_TENTATIVE})

PARTSTAT_NEEDS_ACTION = "NEEDS-ACTION"
ROLE_REQ_PARTICIPANT = "REQ-PARTICIPANT"
ROLE_NON_PARTICIPANT = "NON-PARTICIPANT"
CUTYPE_INDIVIDUAL = "INDIVIDUAL"
CUTYPE_RESOURCE = "RESOURCE"

CANCELLED_PREFIX = "CANCELLED: "


class CalendarCodecError(Exception):
    """Base exception for calendar codec errors."""

    pass


class MalformedInputError(CalendarCodecError):
    """Input text could not be read as iCalendar without repair."""

    pass


class IdentityConflictError(CalendarCodecError):
    """A different UID was offered for an internal id that is already bound."""

    def __init__(self, internal_id: str, existing_uid: str, offered_uid: str):
        super().__init__(
            f"internal id {internal_id} is bound to {existing_uid}, refusing {offered_uid}"
        )
        self.internal_id = internal_id
        self.existing_uid = existing_uid
        self.offered_uid = offered_uid


class ComplianceCheckFailed(CalendarCodecError):
    """A generated document failed its self-check."""

    def __init__(self, issues: list[str]):
        super().__init__("; ".join(issues))
        self.issues = issues


class InvalidEventDataError(CalendarCodecError, ValueError):
    """Required event data is missing and cannot be defaulted (programmer error)."""

    pass


@dataclass
class CodecConfig:
    """Configuration for document generation and identity bookkeeping."""

    prodid: str = DEFAULT_PRODID
    uid_domain: str = DEFAULT_UID_DOMAIN
    state_db_path: Path = DEFAULT_STATE_DB
    always_rebuild: bool = False  # skip the property-preserving cancellation path
    confirm_status_on_request: bool = True
    verbose: bool = False


@dataclass
class Property:
    """A raw content line: name, ordered parameters and the unparsed value."""

    name: str
    value: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class EventTime:
    """DTSTART/DTEND value. A plain ``date`` marks an all-day event."""

    value: datetime | date
    tzid: str | None = None

    @property
    def all_day(self) -> bool:
        return not isinstance(self.value, datetime)


@dataclass
class Organizer:
    email: str
    name: str | None = None
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class AttendeeEntry:
    """One ATTENDEE line. Resources carry CUTYPE=RESOURCE plus X- metadata."""

    email: str
    name: str | None = None
    role: str | None = None
    cutype: str | None = None
    partstat: str | None = None
    rsvp: bool | None = None
    resource_type: str | None = None
    capacity: int | None = None
    admin_name: str | None = None
    admin_email: str | None = None
    params: dict[str, str] = field(default_factory=dict)  # unrecognised parameters

    @property
    def key(self) -> str:
        return self.email.strip().lower()

    @property
    def is_resource(self) -> bool:
        return (self.cutype or "").upper() in (CUTYPE_RESOURCE, "ROOM")

    def completeness(self) -> int:
        """Number of populated optional fields; used to pick between duplicates."""
        filled = [
            self.name,
            self.role,
            self.cutype,
            self.partstat,
            self.rsvp,
            self.resource_type,
            self.capacity,
            self.admin_name,
            self.admin_email,
        ]
        return sum(1 for v in filled if v not in (None, "")) + len(self.params)


@dataclass
class EventComponent:
    """One VEVENT."""

    uid: str | None = None
    dtstamp: datetime | None = None
    dtstart: EventTime | None = None
    dtend: EventTime | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    status: str | None = None
    sequence: int | None = None
    organizer: Organizer | None = None
    attendees: list[AttendeeEntry] = field(default_factory=list)
    rrule: str | None = None
    # Standard properties without a dedicated field (CREATED, TRANSP, EXDATE, ...)
    extra: list[Property] = field(default_factory=list)
    x_props: list[Property] = field(default_factory=list)


@dataclass
class CalendarDocument:
    """A VCALENDAR: calendar-level properties plus its VEVENTs."""

    properties: dict[str, str] = field(default_factory=dict)
    events: list[EventComponent] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list, compare=False)

    @property
    def method(self) -> str | None:
        return self.properties.get("METHOD")

    @method.setter
    def method(self, value: str) -> None:
        self.properties["METHOD"] = value

    @property
    def event(self) -> EventComponent | None:
        """The first VEVENT, which is the only one in mutator output."""
        return self.events[0] if self.events else None


@dataclass
class ResourceData:
    """A bookable resource as supplied by the caller."""

    email: str
    name: str | None = None
    resource_type: str | None = None
    capacity: int | None = None
    admin_name: str | None = None
    admin_email: str | None = None

    def to_attendee(self) -> AttendeeEntry:
        return AttendeeEntry(
            email=self.email,
            name=self.name,
            role=ROLE_NON_PARTICIPANT,
            cutype=CUTYPE_RESOURCE,
            partstat=PARTSTAT_NEEDS_ACTION,
            resource_type=self.resource_type,
            capacity=self.capacity,
            admin_name=self.admin_name,
            admin_email=self.admin_email,
        )


@dataclass
class RecurrencePattern:
    """Structured recurrence: compiled into a single RRULE value."""

    frequency: str  # DAILY, WEEKLY, MONTHLY, YEARLY (case-insensitive)
    interval: int = 1
    weekdays: list[str] = field(default_factory=list)  # "MO" or "Monday"
    count: int | None = None
    until: datetime | date | None = None


@dataclass
class EventData:
    """Caller-side description of an event, independent of any document."""

    title: str | None = None
    start: datetime | date | None = None
    end: datetime | date | None = None
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    organizer: Organizer | None = None
    attendees: list[AttendeeEntry] = field(default_factory=list)
    resources: list[ResourceData] = field(default_factory=list)
    recurrence: RecurrencePattern | str | None = None
    uid: str | None = None
    sequence: int | None = None
    internal_id: str | None = None

    def default_end(self) -> datetime | date | None:
        """End time, defaulting to one hour (or one day when all-day) after start."""
        if self.end is not None:
            return self.end
        if self.start is None:
            return None
        return self.start + (timedelta(days=1) if self.all_day else timedelta(hours=1))

    @classmethod
    def from_dict(cls, data: dict) -> "EventData":
        """Build EventData from the JSON shape accepted by the CLI."""

        def _when(raw):
            if raw is None or isinstance(raw, (date, datetime)):
                return raw
            text = str(raw)
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text.replace("Z", "+00:00"))

        organizer = None
        if data.get("organizer"):
            org = data["organizer"]
            organizer = Organizer(email=org["email"], name=org.get("name"))

        attendees = [
            AttendeeEntry(
                email=a["email"],
                name=a.get("name"),
                role=a.get("role"),
                cutype=a.get("cutype"),
                partstat=a.get("partstat") or a.get("status"),
            )
            for a in data.get("attendees") or []
            if a and a.get("email")
        ]
        resources = [
            ResourceData(
                email=r["email"],
                name=r.get("name"),
                resource_type=r.get("type") or r.get("sub_type"),
                capacity=r.get("capacity"),
                admin_name=r.get("admin_name"),
                admin_email=r.get("admin_email"),
            )
            for r in data.get("resources") or []
            if r and r.get("email")
        ]

        recurrence = data.get("recurrence")
        if isinstance(recurrence, dict):
            recurrence = RecurrencePattern(
                frequency=recurrence["frequency"],
                interval=int(recurrence.get("interval") or 1),
                weekdays=list(recurrence.get("weekdays") or []),
                count=recurrence.get("count"),
                until=_when(recurrence.get("until")),
            )

        sequence = data.get("sequence")
        internal_id = data.get("internal_id")
        return cls(
            title=data.get("title"),
            start=_when(data.get("start")),
            end=_when(data.get("end")),
            all_day=bool(data.get("all_day", False)),
            description=data.get("description"),
            location=data.get("location"),
            organizer=organizer,
            attendees=attendees,
            resources=resources,
            recurrence=recurrence,
            uid=data.get("uid"),
            sequence=int(sequence) if sequence is not None else None,
            internal_id=str(internal_id) if internal_id is not None else None,
        )


@dataclass
class IdentityRecord:
    """Durable binding between an internal event id and its UID."""

    internal_id: str
    uid: str
    created_at: int
    updated_at: int
    sequence: int = 0
    raw_document: str | None = None


@dataclass
class LifecycleNotice:
    """Emitted to the notification collaborator after a lifecycle change."""

    internal_id: str
    uid: str
    operation: str  # 'assign', 'cancel', 'delete'


@dataclass
class MutationResult:
    """A finished document ready for the delivery collaborator."""

    document: CalendarDocument
    text: str
    content_type: str
    internal_id: str | None = None

    @property
    def uid(self) -> str | None:
        event = self.document.event
        return event.uid if event else None

    @property
    def diagnostics(self) -> list[str]:
        return self.document.diagnostics
