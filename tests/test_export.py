import csv
import io
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
from tickets import EXPORT_COLUMNS, Ticket, export_csv, export_filename  # noqa: E402

CREATED = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


def make_ticket(**overrides):
    values = {
        "id": "abc123",
        "title": "Printer offline",
        "description": "Nothing prints",
        "priority": "high",
        "category": "Hardware",
        "status": "open",
        "submitted_by": "a@x.com",
        "created_at": CREATED,
        "updated_at": datetime(2024, 1, 16, 8, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Ticket(**values)


def test_empty_subset_exports_nothing():
    assert export_csv([]) is None


def test_one_ticket_gives_header_and_row():
    text = export_csv([make_ticket()])
    lines = text.splitlines()

    assert len(lines) == 2
    assert lines[0] == ",".join(EXPORT_COLUMNS)
    assert lines[1] == "abc123,Printer offline,Nothing prints,high,Hardware,open,a@x.com,Unassigned,01/15/2024,01/16/2024"


def test_fields_with_delimiters_are_quoted():
    ticket = make_ticket(
        title='Monitor says "No signal", again',
        description="Line one\nLine two",
        assigned_to="tech@x.com",
    )

    rows = list(csv.reader(io.StringIO(export_csv([ticket]))))

    assert rows[1][1] == 'Monitor says "No signal", again'
    assert rows[1][2] == "Line one\nLine two"
    assert rows[1][7] == "tech@x.com"


def test_export_filename_uses_the_date():
    assert export_filename(CREATED) == "tickets_2024-01-15.csv"
