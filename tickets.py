from __future__ import annotations

import csv
import io
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator, Mapping, Optional

from errors import NotFoundError, PermissionDeniedError, ValidationError
from identity import ROLE_IT_STAFF, UserSession, normalize_email

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------------------
# Constants
# --------------------------------------------------------------------------------------
STATUSES = ["open", "in-progress", "resolved", "closed"]
STATUS_LABELS = {
    "open": "Open",
    "in-progress": "In Progress",
    "resolved": "Resolved",
    "closed": "Closed",
}
PRIORITIES = ["low", "medium", "high", "urgent"]
PRIORITY_LABELS = {
    "low": "Low",
    "medium": "Medium",
    "high": "High",
    "urgent": "Urgent",
}
DEFAULT_PRIORITY = "medium"

CATEGORIES = [
    "Hardware",
    "Network Connectivity",
    "Software",
    "Access & Accounts",
    "Business Systems",
    "Security",
    "Printer",
    "Phone / Mobile",
    "Other",
]

DATE_RANGES = ["today", "last-7-days", "last-30-days"]
DATE_RANGE_LABELS = {
    "today": "Today",
    "last-7-days": "Last 7 days",
    "last-30-days": "Last 30 days",
}

# Filter values that always match
ANY_VALUES = {"", "any", "all"}

UNASSIGNED_LABEL = "Unassigned"
EXPORT_DATE_FORMAT = "%m/%d/%Y"
EXPORT_COLUMNS = [
    "ID",
    "Title",
    "Description",
    "Priority",
    "Category",
    "Status",
    "Submitted By",
    "Assigned To",
    "Created At",
    "Updated At",
]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex


# --------------------------------------------------------------------------------------
# Records
# --------------------------------------------------------------------------------------
@dataclass
class Comment:
    id: str
    author: str
    content: str
    timestamp: datetime
    is_internal: bool = False


@dataclass
class Attachment:
    id: str
    name: str
    size: int
    media_type: str
    url: str = ""
    data: bytes = field(default=b"", repr=False)


@dataclass
class Ticket:
    id: str
    title: str
    description: str
    priority: str
    category: str
    status: str
    submitted_by: str
    created_at: datetime
    updated_at: datetime
    assigned_to: Optional[str] = None
    comments: list[Comment] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    equipment_number: str = ""
    location: str = ""

    def find_attachment(self, attachment_id: str) -> Attachment:
        for attachment in self.attachments:
            if attachment.id == attachment_id:
                return attachment
        raise NotFoundError(f"Attachment {attachment_id} not found on ticket {self.id}.")


IMMUTABLE_FIELDS = {"id", "submitted_by", "created_at", "comments", "attachments"}
TICKET_FIELDS = {f.name for f in fields(Ticket)}


# --------------------------------------------------------------------------------------
# Ticket store
# --------------------------------------------------------------------------------------
class TicketStore:
    """In-memory collection of tickets, most recent first."""

    def __init__(self, clock: Callable[[], datetime] = now_utc):
        self.clock = clock
        self._tickets: list[Ticket] = []

    def __iter__(self) -> Iterator[Ticket]:
        return iter(list(self._tickets))

    def __len__(self) -> int:
        return len(self._tickets)

    def __contains__(self, ticket_id: object) -> bool:
        return any(ticket.id == ticket_id for ticket in self._tickets)

    def all(self) -> list[Ticket]:
        return list(self._tickets)

    def insert(self, ticket: Ticket) -> Ticket:
        # Uniqueness comes from generated ids; no duplicate check here.
        self._tickets.insert(0, ticket)
        return ticket

    def get(self, ticket_id: str) -> Ticket:
        for ticket in self._tickets:
            if ticket.id == ticket_id:
                return ticket
        raise NotFoundError(f"Ticket {ticket_id} not found.")

    def _stamp(self, ticket: Ticket) -> None:
        ts = self.clock()
        # updated_at never moves backwards, even if the clock does
        ticket.updated_at = max(ts, ticket.updated_at, ticket.created_at)

    def update(self, ticket_id: str, **changes) -> Ticket:
        """Apply a partial change to one ticket and stamp ``updated_at``."""

        ticket = self.get(ticket_id)
        unknown = set(changes) - TICKET_FIELDS
        if unknown:
            raise ValidationError(f"Unknown ticket field(s): {', '.join(sorted(unknown))}.")
        locked = (set(changes) & IMMUTABLE_FIELDS) | ({"updated_at"} & set(changes))
        if locked:
            raise ValidationError(f"Field(s) cannot be changed: {', '.join(sorted(locked))}.")
        for name, value in changes.items():
            setattr(ticket, name, value)
        self._stamp(ticket)
        return ticket

    def append_comment(self, ticket_id: str, comment: Comment) -> Ticket:
        ticket = self.get(ticket_id)
        ticket.comments.append(comment)
        self._stamp(ticket)
        return ticket


# --------------------------------------------------------------------------------------
# Filter / search engine
# --------------------------------------------------------------------------------------
def _is_any(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ANY_VALUES


@dataclass(frozen=True)
class TicketFilter:
    status: str = ""
    priority: str = ""
    category: str = ""
    assigned_to: str = ""
    search: str = ""
    date_range: str = ""

    @classmethod
    def from_args(cls, args: Mapping[str, str]) -> "TicketFilter":
        """Build a filter from query-string arguments, ignoring unknown choices."""

        def _arg(name: str) -> str:
            return (args.get(name) or "").strip()

        status = _arg("status")
        priority = _arg("priority")
        date_range = _arg("date_range")
        return cls(
            status=status if status in STATUSES else "",
            priority=priority if priority in PRIORITIES else "",
            category=_arg("category"),
            assigned_to=normalize_email(_arg("assigned_to")),
            search=_arg("q") or _arg("search"),
            date_range=date_range if date_range in DATE_RANGES else "",
        )

    def applied(self) -> list[tuple[str, str]]:
        labels = [
            ("Status", STATUS_LABELS.get(self.status, self.status)),
            ("Priority", PRIORITY_LABELS.get(self.priority, self.priority)),
            ("Category", self.category),
            ("Assigned to", self.assigned_to),
            ("Created", DATE_RANGE_LABELS.get(self.date_range, self.date_range)),
        ]
        raw = [self.status, self.priority, self.category, self.assigned_to, self.date_range]
        return [pair for pair, value in zip(labels, raw) if not _is_any(value)]

    @property
    def active_count(self) -> int:
        return len(self.applied())

    def to_args(self) -> dict[str, str]:
        """Query-string form, used to carry the filter over to the export link."""

        args = {
            "status": self.status,
            "priority": self.priority,
            "category": self.category,
            "assigned_to": self.assigned_to,
            "q": self.search,
            "date_range": self.date_range,
        }
        return {key: value for key, value in args.items() if not _is_any(value)}


def _matches_search(ticket: Ticket, term: str) -> bool:
    needle = term.lower()
    return (
        needle in ticket.title.lower()
        or needle in ticket.description.lower()
        or term in ticket.id
    )


def _matches_date_range(created_at: datetime, date_range: str, now: datetime) -> bool:
    if date_range == "today":
        return created_at.astimezone(now.tzinfo).date() == now.date()
    if date_range == "last-7-days":
        return created_at >= now - timedelta(days=7)
    if date_range == "last-30-days":
        return created_at >= now - timedelta(days=30)
    return True


def ticket_matches(ticket: Ticket, criteria: TicketFilter, now: datetime) -> bool:
    if not _is_any(criteria.status) and ticket.status != criteria.status:
        return False
    if not _is_any(criteria.priority) and ticket.priority != criteria.priority:
        return False
    if not _is_any(criteria.category) and ticket.category != criteria.category:
        return False
    if not _is_any(criteria.assigned_to) and ticket.assigned_to != criteria.assigned_to:
        return False
    term = criteria.search.strip()
    if term and not _matches_search(ticket, term):
        return False
    if not _is_any(criteria.date_range) and not _matches_date_range(ticket.created_at, criteria.date_range, now):
        return False
    return True


def filter_tickets(
    tickets: Iterable[Ticket],
    role: str,
    identity: str,
    criteria: Optional[TicketFilter] = None,
    now: Optional[datetime] = None,
) -> list[Ticket]:
    """Return the tickets a role/identity may see that match ``criteria``, in store order."""

    if criteria is None:
        criteria = TicketFilter()
    if now is None:
        now = now_utc()
    candidates = list(tickets)
    if role != ROLE_IT_STAFF:
        candidates = [ticket for ticket in candidates if ticket.submitted_by == identity]
    return [ticket for ticket in candidates if ticket_matches(ticket, criteria, now)]


def can_view(ticket: Ticket, role: str, identity: str) -> bool:
    return role == ROLE_IT_STAFF or ticket.submitted_by == identity


def visible_comments(ticket: Ticket, role: str) -> list[Comment]:
    if role == ROLE_IT_STAFF:
        return list(ticket.comments)
    return [comment for comment in ticket.comments if not comment.is_internal]


# --------------------------------------------------------------------------------------
# Lifecycle controller
# --------------------------------------------------------------------------------------
def _default_attachment_url(ticket_id: str, attachment_id: str) -> str:
    return f"/ticket/{ticket_id}/attachment/{attachment_id}"


def _snapshot(ticket: Ticket) -> Ticket:
    # Lists are copied; comment and attachment records (and attachment bytes) are shared
    return replace(ticket, comments=list(ticket.comments), attachments=list(ticket.attachments))


def _require_staff(actor: Optional[UserSession], action: str) -> None:
    if actor is not None and not actor.is_staff:
        logger.warning("Rejected %s by non-staff user %s", action, actor.email)
        raise PermissionDeniedError(f"Only IT staff can {action}.")


class TicketController:
    """Sole writer of the ticket store.

    Every operation sends one confirmation message through ``notify`` and, when
    the ticket is the one currently selected for the detail view, refreshes the
    selected snapshot so both copies stay in sync.
    """

    def __init__(
        self,
        store: TicketStore,
        notify: Optional[Callable[[str], None]] = None,
        attachment_url: Optional[Callable[[str, str], str]] = None,
    ):
        self.store = store
        self.notify = notify or (lambda message: None)
        self.attachment_url = attachment_url or _default_attachment_url
        self.selected: Optional[Ticket] = None

    def select(self, ticket_id: str) -> Ticket:
        self.selected = _snapshot(self.store.get(ticket_id))
        return self.selected

    def _sync_selected(self, ticket: Ticket) -> None:
        if self.selected is not None and self.selected.id == ticket.id:
            self.selected = _snapshot(ticket)

    def submit_ticket(
        self,
        title: str,
        description: str,
        category: str,
        submitted_by: str,
        priority: str = DEFAULT_PRIORITY,
        equipment_number: str = "",
        location: str = "",
        attachments: Iterable[Mapping] = (),
    ) -> Ticket:
        title = (title or "").strip()
        description = (description or "").strip()
        category = (category or "").strip()
        submitted_by = normalize_email(submitted_by)
        priority = (priority or DEFAULT_PRIORITY).strip().lower()

        missing = [
            label
            for label, value in (
                ("title", title),
                ("description", description),
                ("category", category),
                ("submitter", submitted_by),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}.")
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority '{priority}'.")

        ticket_id = generate_id()
        ts = self.store.clock()
        files = []
        for item in attachments:
            data = item.get("data") or b""
            attachment_id = generate_id()
            files.append(
                Attachment(
                    id=attachment_id,
                    name=item.get("filename") or f"attachment-{len(files) + 1}",
                    size=len(data),
                    media_type=item.get("content_type") or "application/octet-stream",
                    url=self.attachment_url(ticket_id, attachment_id),
                    data=data,
                )
            )
        ticket = Ticket(
            id=ticket_id,
            title=title,
            description=description,
            priority=priority,
            category=category,
            status="open",
            submitted_by=submitted_by,
            created_at=ts,
            updated_at=ts,
            assigned_to=None,
            comments=[],
            attachments=files,
            equipment_number=(equipment_number or "").strip(),
            location=(location or "").strip(),
        )
        self.store.insert(ticket)
        logger.info("Ticket %s submitted by %s (%d attachment(s))", ticket.id, submitted_by, len(files))
        self.notify("Ticket submitted successfully!")
        return ticket

    def update_status(self, ticket_id: str, new_status: str, actor: Optional[UserSession] = None) -> Ticket:
        _require_staff(actor, "change ticket status")
        new_status = (new_status or "").strip().lower()
        if new_status not in STATUSES:
            raise ValidationError(f"Unknown status '{new_status}'.")
        ticket = self.store.update(ticket_id, status=new_status)
        self._sync_selected(ticket)
        logger.info("Ticket %s status set to %s", ticket_id, new_status)
        self.notify(f"Ticket status updated to {STATUS_LABELS[new_status].lower()}.")
        return ticket

    def assign_ticket(self, ticket_id: str, assignee: Optional[str], actor: Optional[UserSession] = None) -> Ticket:
        _require_staff(actor, "assign tickets")
        assignee = normalize_email(assignee) or None
        ticket = self.store.update(ticket_id, assigned_to=assignee)
        self._sync_selected(ticket)
        logger.info("Ticket %s assigned to %s", ticket_id, assignee or "nobody")
        if assignee:
            self.notify(f"Ticket assigned to {assignee.split('@')[0]}.")
        else:
            self.notify("Ticket unassigned.")
        return ticket

    def add_comment(
        self,
        ticket_id: str,
        content: str,
        author: str,
        is_internal: bool = False,
        actor: Optional[UserSession] = None,
    ) -> Comment:
        if is_internal:
            _require_staff(actor, "post internal notes")
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment cannot be empty.")
        comment = Comment(
            id=generate_id(),
            author=(author or "").strip(),
            content=content,
            timestamp=self.store.clock(),
            is_internal=bool(is_internal),
        )
        ticket = self.store.append_comment(ticket_id, comment)
        self._sync_selected(ticket)
        logger.info("Comment %s added to ticket %s (internal=%s)", comment.id, ticket_id, comment.is_internal)
        self.notify("Comment added successfully!")
        return comment


# --------------------------------------------------------------------------------------
# Export
# --------------------------------------------------------------------------------------
def _export_row(ticket: Ticket) -> list[str]:
    return [
        ticket.id,
        ticket.title,
        ticket.description,
        ticket.priority,
        ticket.category,
        ticket.status,
        ticket.submitted_by,
        ticket.assigned_to or UNASSIGNED_LABEL,
        ticket.created_at.strftime(EXPORT_DATE_FORMAT),
        ticket.updated_at.strftime(EXPORT_DATE_FORMAT),
    ]


def export_csv(tickets: Iterable[Ticket]) -> Optional[str]:
    """Render tickets as CSV text, or ``None`` when there is nothing to export."""

    rows = [_export_row(ticket) for ticket in tickets]
    if not rows:
        return None
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    writer.writerows(rows)
    return buf.getvalue()


def export_filename(now: Optional[datetime] = None) -> str:
    now = now or now_utc()
    return f"tickets_{now:%Y-%m-%d}.csv"


# --------------------------------------------------------------------------------------
# Dashboard summaries
# --------------------------------------------------------------------------------------
def dashboard_stats(tickets: Iterable[Ticket], role: str, identity: str) -> dict[str, int]:
    visible = filter_tickets(tickets, role, identity)
    counts = Counter(ticket.status for ticket in visible)
    if role == ROLE_IT_STAFF:
        mine = sum(1 for ticket in visible if ticket.assigned_to == identity)
    else:
        mine = len(visible)
    return {
        "total": len(visible),
        "open": counts.get("open", 0),
        "in_progress": counts.get("in-progress", 0),
        "resolved": counts.get("resolved", 0),
        "closed": counts.get("closed", 0),
        "mine": mine,
    }


def category_breakdown(tickets: Iterable[Ticket]) -> list[tuple[str, int]]:
    counter: Counter[str] = Counter()
    for ticket in tickets:
        category = (ticket.category or "Uncategorized").strip() or "Uncategorized"
        counter[category] += 1
    return counter.most_common()


def _distinct(values: Iterable[Optional[str]]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def filter_options(tickets: Iterable[Ticket]) -> dict[str, list[str]]:
    tickets = list(tickets)
    return {
        "statuses": _distinct(ticket.status for ticket in tickets),
        "priorities": _distinct(ticket.priority for ticket in tickets),
        "categories": _distinct(ticket.category for ticket in tickets),
        "assignees": _distinct(ticket.assigned_to for ticket in tickets),
    }


# --------------------------------------------------------------------------------------
# Demo data
# --------------------------------------------------------------------------------------
def seed_demo_tickets(store: TicketStore) -> None:
    """Load the two sample tickets shown on a fresh install."""

    samples = [
        Ticket(
            id=generate_id(),
            title="Network share not reachable",
            description="I can't open \\\\fileserver\\shared from my workstation since this morning.",
            priority="medium",
            category="Network Connectivity",
            status="in-progress",
            submitted_by="alice.silva@company.com",
            assigned_to="jane.smith@company.com",
            created_at=datetime(2024, 1, 14, 14, 20, tzinfo=timezone.utc),
            updated_at=datetime(2024, 1, 15, 8, 45, tzinfo=timezone.utc),
            location="Downtown Branch",
        ),
        Ticket(
            id=generate_id(),
            title="Computer won't boot after Windows update",
            description="After last night's update my computer shows a blue screen on startup.",
            priority="high",
            category="Hardware",
            status="open",
            submitted_by="user@company.com",
            assigned_to="john.doe@company.com",
            created_at=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
            updated_at=datetime(2024, 1, 15, 10, 15, tzinfo=timezone.utc),
            equipment_number="PAT-001234",
            location="Headquarters",
        ),
    ]
    for ticket in samples:
        store.insert(ticket)
