import csv
import io
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as helpdesk_app  # noqa: E402
from tickets import TicketController  # noqa: E402


def make_app(**config):
    settings = {"TESTING": True, "SEED_DEMO_TICKETS": False}
    settings.update(config)
    return helpdesk_app.create_app(settings)


def get_store(app):
    return app.extensions["helpdesk"]["store"]


def seed_ticket(app, **overrides):
    values = {
        "title": "Printer offline",
        "description": "Nothing prints",
        "category": "Hardware",
        "submitted_by": "a@x.com",
        "priority": "high",
    }
    values.update(overrides)
    return TicketController(get_store(app)).submit_ticket(**values)


def sign_in(client, email, role="client"):
    with client.session_transaction() as session:
        session["user"] = {"email": email, "role": role}


def test_login_stores_role_in_session():
    app = make_app()
    client = app.test_client()

    response = client.post("/login", data={"email": "Tech@X.com", "password": "pw", "role": "it-staff"})

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")
    with client.session_transaction() as session:
        assert session["user"]["email"] == "tech@x.com"
        assert session["user"]["role"] == "it-staff"


def test_login_with_blank_password_rerenders_form():
    app = make_app()
    client = app.test_client()

    response = client.post("/login", data={"email": "a@x.com", "password": "", "role": "client"})
    body = response.get_data(as_text=True)

    assert response.status_code == 400
    assert "Email and password are required." in body
    assert 'value="a@x.com"' in body
    with client.session_transaction() as session:
        assert "user" not in session


def test_login_honours_relative_next_only():
    app = make_app()
    client = app.test_client()

    ok = client.post("/login", data={"email": "a@x.com", "password": "pw", "next": "/tickets"})
    evil = client.post("/login", data={"email": "a@x.com", "password": "pw", "next": "https://evil.example.com/"})

    assert ok.headers["Location"].endswith("/tickets")
    assert evil.headers["Location"].endswith("/dashboard")


def test_register_then_logout():
    app = make_app()
    client = app.test_client()

    response = client.post(
        "/register",
        data={"name": "Alice", "email": "a@x.com", "password": "pw", "user_type": "client"},
        follow_redirects=True,
    )
    assert "Account created" in response.get_data(as_text=True)

    sign_in(client, "a@x.com")
    response = client.get("/logout")
    assert response.status_code == 302
    with client.session_transaction() as session:
        assert "user" not in session


def test_submit_ticket_with_attachment():
    app = make_app()
    client = app.test_client()
    sign_in(client, "a@x.com")

    response = client.post(
        "/new",
        data={
            "title": "Scanner jam",
            "description": "Paper stuck",
            "category": "Printer",
            "priority": "urgent",
            "attachments": (io.BytesIO(b"hello"), "screen shot.png"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 302
    ticket = get_store(app).all()[0]
    assert ticket.title == "Scanner jam"
    assert ticket.priority == "urgent"
    assert ticket.submitted_by == "a@x.com"
    attachment = ticket.attachments[0]
    assert attachment.name == "screen_shot.png"

    download = client.get(attachment.url)
    assert download.status_code == 200
    assert download.data == b"hello"


def test_submit_with_missing_fields_flashes_error():
    app = make_app()
    client = app.test_client()
    sign_in(client, "a@x.com")

    response = client.post("/new", data={"title": "", "description": "x", "category": "Other"}, follow_redirects=True)

    assert "Missing required field(s): title." in response.get_data(as_text=True)
    assert len(get_store(app)) == 0


def test_client_cannot_open_someone_elses_ticket():
    app = make_app()
    ticket = seed_ticket(app, submitted_by="other@x.com")
    client = app.test_client()
    sign_in(client, "a@x.com")

    response = client.get(f"/ticket/{ticket.id}", follow_redirects=True)

    assert "Ticket not found." in response.get_data(as_text=True)
    assert client.get(f"/ticket/{ticket.id}/attachment/nope").status_code == 404


def test_internal_note_hidden_from_client():
    app = make_app()
    ticket = seed_ticket(app)
    staff = app.test_client()
    sign_in(staff, "tech@x.com", "it-staff")

    staff.post(f"/ticket/{ticket.id}/comment", data={"body": "Vendor RMA pending", "internal": "1"})
    staff.post(f"/ticket/{ticket.id}/comment", data={"body": "We are on it"})

    client = app.test_client()
    sign_in(client, "a@x.com")
    client_view = client.get(f"/ticket/{ticket.id}").get_data(as_text=True)
    staff_view = staff.get(f"/ticket/{ticket.id}").get_data(as_text=True)

    assert "We are on it" in client_view
    assert "Vendor RMA pending" not in client_view
    assert "Vendor RMA pending" in staff_view


def test_client_cannot_post_internal_note():
    app = make_app()
    ticket = seed_ticket(app)
    client = app.test_client()
    sign_in(client, "a@x.com")

    response = client.post(f"/ticket/{ticket.id}/comment", data={"body": "sneaky", "internal": "1"})

    assert response.status_code == 403
    assert get_store(app).get(ticket.id).comments == []


def test_status_and_assignee_are_staff_only():
    app = make_app()
    ticket = seed_ticket(app)
    client = app.test_client()
    sign_in(client, "a@x.com")

    assert client.post(f"/ticket/{ticket.id}/status", data={"status": "closed"}).status_code == 403
    assert client.post(f"/ticket/{ticket.id}/assignee", data={"assignee": "a@x.com"}).status_code == 403
    assert get_store(app).get(ticket.id).status == "open"


def test_staff_updates_status_and_assignee():
    app = make_app()
    ticket = seed_ticket(app)
    staff = app.test_client()
    sign_in(staff, "tech@x.com", "it-staff")

    staff.post(f"/ticket/{ticket.id}/assignee", data={"assignee": "jane.smith@company.com"})
    response = staff.post(
        f"/ticket/{ticket.id}/status",
        data={"status": "in-progress", "next": "/tickets"},
        follow_redirects=True,
    )

    stored = get_store(app).get(ticket.id)
    assert stored.assigned_to == "jane.smith@company.com"
    assert stored.status == "in-progress"
    assert "Ticket status updated to in progress." in response.get_data(as_text=True)


def test_staff_status_on_unknown_ticket_flashes_not_found():
    app = make_app()
    staff = app.test_client()
    sign_in(staff, "tech@x.com", "it-staff")

    response = staff.post("/ticket/missing/status", data={"status": "closed"}, follow_redirects=True)

    assert "Ticket not found." in response.get_data(as_text=True)


def test_export_downloads_filtered_csv():
    app = make_app()
    seed_ticket(app, title="Printer offline", category="Hardware")
    seed_ticket(app, title="VPN drops", category="Network Connectivity")
    staff = app.test_client()
    sign_in(staff, "tech@x.com", "it-staff")

    response = staff.get("/tickets/export?category=Hardware")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "attachment" in response.headers["Content-Disposition"]
    assert "tickets_" in response.headers["Content-Disposition"]
    rows = list(csv.reader(io.StringIO(response.data.decode("utf-8-sig"))))
    assert len(rows) == 2
    assert rows[1][1] == "Printer offline"


def test_empty_export_flashes_message():
    app = make_app()
    client = app.test_client()
    sign_in(client, "a@x.com")

    response = client.get("/tickets/export", follow_redirects=True)

    assert response.status_code == 200
    assert "No tickets to export." in response.get_data(as_text=True)


def test_demo_tickets_seeded_by_default():
    app = make_app(SEED_DEMO_TICKETS=True)
    assert len(get_store(app)) == 2


def test_mixed_case_assignee_matches_staff_identity():
    app = make_app()
    ticket = seed_ticket(app)
    staff = app.test_client()
    sign_in(staff, "John.Doe@company.com", "it-staff")

    staff.post(f"/ticket/{ticket.id}/assignee", data={"assignee": "  John.Doe@company.com "})

    assert get_store(app).get(ticket.id).assigned_to == "john.doe@company.com"
    body = staff.get("/dashboard?assigned_to=John.Doe@company.com").get_data(as_text=True)
    assert "1 assigned to you" in body
    assert "Printer offline" in body


def test_core_lifecycle_is_logged_at_info(caplog):
    app = make_app(LOG_LEVEL="INFO")
    client = app.test_client()
    sign_in(client, "a@x.com")

    client.post("/new", data={"title": "Mouse broken", "description": "Left click dead", "category": "Hardware"})

    records = [r for r in caplog.records if r.name == "tickets" and r.levelname == "INFO"]
    assert any("submitted by a@x.com" in r.getMessage() for r in records)


def test_detail_view_tracks_selected_ticket():
    app = make_app()
    ticket = seed_ticket(app)
    staff = app.test_client()
    sign_in(staff, "tech@x.com", "it-staff")
    controller = app.extensions["helpdesk"]["controller"]

    staff.get(f"/ticket/{ticket.id}")
    assert controller.selected.id == ticket.id
    assert controller.selected.comments == []

    staff.post(f"/ticket/{ticket.id}/comment", data={"body": "Swapped the toner"})

    assert [c.content for c in controller.selected.comments] == ["Swapped the toner"]
    assert controller.selected is not get_store(app).get(ticket.id)
