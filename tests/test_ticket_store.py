import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
from errors import NotFoundError, ValidationError  # noqa: E402
from tickets import Comment, Ticket, TicketStore  # noqa: E402

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def ticking_clock(start=START, step=timedelta(minutes=1)):
    ticks = itertools.count(1)
    return lambda: start + step * next(ticks)


def make_ticket(ticket_id="t1", **overrides):
    values = {
        "id": ticket_id,
        "title": "Printer offline",
        "description": "Nothing prints",
        "priority": "high",
        "category": "Hardware",
        "status": "open",
        "submitted_by": "a@x.com",
        "created_at": START,
        "updated_at": START,
    }
    values.update(overrides)
    return Ticket(**values)


def test_insert_places_newest_first():
    store = TicketStore()
    store.insert(make_ticket("t1"))
    store.insert(make_ticket("t2"))

    assert [t.id for t in store] == ["t2", "t1"]
    assert len(store) == 2
    assert "t1" in store


def test_get_unknown_ticket_raises_not_found():
    store = TicketStore()
    with pytest.raises(NotFoundError):
        store.get("missing")


def test_update_changes_fields_and_stamps_updated_at():
    store = TicketStore(clock=ticking_clock())
    store.insert(make_ticket())

    ticket = store.update("t1", status="in-progress", assigned_to="tech@x.com")

    assert ticket.status == "in-progress"
    assert ticket.assigned_to == "tech@x.com"
    assert ticket.updated_at > ticket.created_at


def test_update_unknown_ticket_leaves_store_unchanged():
    store = TicketStore()
    store.insert(make_ticket())
    before = [(t.id, t.status, t.updated_at) for t in store]

    with pytest.raises(NotFoundError):
        store.update("missing", status="closed")

    assert [(t.id, t.status, t.updated_at) for t in store] == before


@pytest.mark.parametrize("field", ["id", "submitted_by", "created_at", "updated_at", "comments"])
def test_update_rejects_locked_fields(field):
    store = TicketStore()
    store.insert(make_ticket())

    with pytest.raises(ValidationError):
        store.update("t1", **{field: "changed"})


def test_update_rejects_unknown_fields():
    store = TicketStore()
    store.insert(make_ticket())

    with pytest.raises(ValidationError):
        store.update("t1", colour="blue")


def test_updated_at_never_moves_backwards():
    earlier = START - timedelta(days=1)
    store = TicketStore(clock=lambda: earlier)
    store.insert(make_ticket(updated_at=START + timedelta(hours=1)))

    ticket = store.update("t1", priority="low")

    assert ticket.updated_at == START + timedelta(hours=1)
    assert ticket.updated_at >= ticket.created_at


def test_append_comment_keeps_order():
    store = TicketStore(clock=ticking_clock())
    store.insert(make_ticket())

    for n in range(3):
        store.append_comment("t1", Comment(id=f"c{n}", author="a@x.com", content=str(n), timestamp=START))

    assert [c.id for c in store.get("t1").comments] == ["c0", "c1", "c2"]


def test_iteration_is_a_snapshot():
    store = TicketStore()
    store.insert(make_ticket("t1"))
    seen = []
    for ticket in store:
        seen.append(ticket.id)
        store.insert(make_ticket("t2"))
    assert seen == ["t1"]


def test_update_unknown_ticket_reports_not_found_before_field_checks():
    store = TicketStore()
    store.insert(make_ticket())

    with pytest.raises(NotFoundError):
        store.update("missing", id="x")
    with pytest.raises(NotFoundError):
        store.update("missing", colour="blue")
