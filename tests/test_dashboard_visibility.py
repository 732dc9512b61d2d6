import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as helpdesk_app  # noqa: E402
from tickets import TicketController  # noqa: E402


def make_app():
    return helpdesk_app.create_app({"TESTING": True, "SEED_DEMO_TICKETS": False})


def seed_ticket(app, **overrides):
    defaults = {
        "title": "Sample Ticket",
        "description": "Details",
        "category": "Network Connectivity",
        "submitted_by": "user@example.com",
        "priority": "medium",
    }
    defaults.update(overrides)
    controller = TicketController(app.extensions["helpdesk"]["store"])
    return controller.submit_ticket(**defaults)


def sign_in(client, email, role):
    with client.session_transaction() as session:
        session["user"] = {"email": email, "role": role}


def test_staff_sees_all_tickets():
    app = make_app()
    seed_ticket(app, title="Branch Issue", submitted_by="user1@example.com")
    seed_ticket(app, title="Printer Down", submitted_by="user2@example.com")

    client = app.test_client()
    sign_in(client, "john.doe@company.com", "it-staff")

    response = client.get("/tickets")
    body = response.get_data(as_text=True)

    assert response.status_code == 200
    assert "Branch Issue" in body
    assert "Printer Down" in body
    assert "All Tickets" in body


def test_client_sees_only_their_tickets():
    app = make_app()
    seed_ticket(app, title="WiFi Failure", submitted_by="employee@company.com")
    seed_ticket(app, title="Accounting Software", submitted_by="other@company.com")

    client = app.test_client()
    sign_in(client, "employee@company.com", "client")

    response = client.get("/tickets")
    body = response.get_data(as_text=True)

    assert response.status_code == 200
    assert "WiFi Failure" in body
    assert "Accounting Software" not in body


def test_dashboard_stats_follow_role():
    app = make_app()
    first = seed_ticket(app, title="VPN drops", submitted_by="employee@company.com")
    seed_ticket(app, title="Laptop fan noise", submitted_by="other@company.com")
    controller = TicketController(app.extensions["helpdesk"]["store"])
    controller.update_status(first.id, "resolved")

    client = app.test_client()
    sign_in(client, "employee@company.com", "client")
    body = client.get("/dashboard").get_data(as_text=True)

    assert "VPN drops" in body
    assert "Laptop fan noise" not in body
    assert "1 submitted by you" in body


def test_dashboard_applies_filters_from_query_string():
    app = make_app()
    seed_ticket(app, title="Printer jam", category="Printer")
    seed_ticket(app, title="Outlook crash", category="Software")

    client = app.test_client()
    sign_in(client, "jane.smith@company.com", "it-staff")
    body = client.get("/dashboard?category=Printer").get_data(as_text=True)

    assert "Printer jam" in body
    assert "Outlook crash" not in body
    assert "Category: Printer" in body


def test_unauthenticated_dashboard_redirects_to_login():
    app = make_app()
    response = app.test_client().get("/dashboard")

    assert response.status_code == 302
    assert "/login" in response.headers["Location"]
