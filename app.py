from __future__ import annotations

import io
import logging
import os
from datetime import datetime, timezone
from functools import wraps
from typing import Optional
from urllib.parse import urlparse

from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    flash,
    redirect,
    render_template_string,
    request,
    send_file,
    session,
    url_for,
)
from jinja2 import DictLoader
from werkzeug.utils import secure_filename

from errors import NotFoundError, PermissionDeniedError, RemoteAuthError, ValidationError
from identity import ROLE_CLIENT, ROLE_LABELS, ROLES, UserSession, build_identity_provider
from tickets import (
    CATEGORIES,
    DATE_RANGE_LABELS,
    DATE_RANGES,
    DEFAULT_PRIORITY,
    PRIORITIES,
    PRIORITY_LABELS,
    STATUSES,
    STATUS_LABELS,
    TicketController,
    TicketFilter,
    TicketStore,
    can_view,
    category_breakdown,
    dashboard_stats,
    export_csv,
    export_filename,
    filter_options,
    filter_tickets,
    seed_demo_tickets,
    visible_comments,
)

# --------------------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------------------
SECRET_KEY = os.environ.get("FLASK_SECRET", "dev-secret")
IDENTITY_API_URL = os.getenv("IDENTITY_API_URL")
try:
    IDENTITY_API_TIMEOUT = float(os.getenv("IDENTITY_API_TIMEOUT", "10"))
except ValueError:
    IDENTITY_API_TIMEOUT = 10.0
SEED_DEMO_TICKETS = os.getenv("HELPDESK_SEED_DEMO", "1").strip().lower() not in {"0", "false", "no", "off"}
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16 MB overall request cap
MAX_ATTACHMENT_TOTAL_BYTES = 10 * 1024 * 1024  # 10 MB per ticket submission
CORE_LOGGERS = ("tickets", "identity")


def _load_staff_emails() -> list[str]:
    """Return the IT staff addresses offered as assignees."""

    raw = os.getenv(
        "IT_STAFF_EMAILS",
        "john.doe@company.com,jane.smith@company.com,mike.wilson@company.com",
    )
    emails: list[str] = []
    for item in raw.split(","):
        email = item.strip().lower()
        if email and email not in emails:
            emails.append(email)
    return emails


IT_STAFF_EMAILS = _load_staff_emails()

STATUS_BADGES = {
    "open": {"cls": "badge-chip badge-open", "icon": "bi bi-lightning-charge"},
    "in-progress": {"cls": "badge-chip badge-progress", "icon": "bi bi-arrow-repeat"},
    "resolved": {"cls": "badge-chip badge-complete", "icon": "bi bi-check-circle"},
    "closed": {"cls": "badge-chip badge-closed", "icon": "bi bi-check2-all"},
}
PRIORITY_BADGES = {
    "urgent": {"cls": "badge-chip priority-urgent", "icon": "bi bi-fire"},
    "high": {"cls": "badge-chip priority-high", "icon": "bi bi-exclamation-octagon"},
    "medium": {"cls": "badge-chip priority-medium", "icon": "bi bi-activity"},
    "low": {"cls": "badge-chip priority-low", "icon": "bi bi-arrow-down"},
}


def format_file_size(num_bytes: int) -> str:
    """Convert a byte count to a human-friendly label."""
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def format_timestamp(value: Optional[datetime]) -> str:
    if not value:
        return "—"
    dt = value
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%b %d, %Y %I:%M %p UTC")


# --------------------------------------------------------------------------------------
# Request helpers
# --------------------------------------------------------------------------------------
bp = Blueprint("helpdesk", __name__)


def get_store() -> TicketStore:
    return current_app.extensions["helpdesk"]["store"]


def get_identity_provider():
    return current_app.extensions["helpdesk"]["identity"]


def current_user() -> Optional[UserSession]:
    return UserSession.from_dict(session.get("user"))


def get_controller() -> TicketController:
    return current_app.extensions["helpdesk"]["controller"]


def _attachment_url(ticket_id: str, attachment_id: str) -> str:
    return url_for("helpdesk.download_attachment", ticket_id=ticket_id, attachment_id=attachment_id)


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            return redirect(url_for("helpdesk.login", next=request.path))
        return view_func(*args, **kwargs)
    return wrapper


def _safe_next(default: str) -> str:
    target = (request.values.get("next") or "").strip()
    parsed = urlparse(target)
    if target.startswith("/") and not target.startswith("//") and not parsed.netloc:
        return target
    return default


def _viewable_ticket(ticket_id: str, user: UserSession):
    """Return the ticket if this user may open it; clients only see their own."""

    try:
        ticket = get_store().get(ticket_id)
    except NotFoundError:
        return None
    if not can_view(ticket, user.role, user.email):
        return None
    return ticket


# --------------------------------------------------------------------------------------
# Templates (kept inline for single-file simplicity)
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>IT Helpdesk</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css" rel="stylesheet">
  <style>
    :root {
      --hd-ink: #1f2937;
      --hd-blue: #2563eb;
      --hd-blue-dark: #1d4ed8;
      --hd-violet: #7c3aed;
      --hd-offwhite: #f5f6fa;
      --hd-surface: #ffffff;
      --hd-shadow: 0 18px 35px rgba(15, 23, 42, 0.08);
    }

    html, body {
      min-height: 100%;
      background: radial-gradient(circle at top, rgba(124,58,237,.08), transparent 55%), var(--hd-offwhite);
      color: var(--hd-ink);
      font-family: "Segoe UI", "Helvetica Neue", Arial, sans-serif;
    }

    a { color: var(--hd-blue); text-decoration: none; }
    a:hover { color: var(--hd-blue-dark); }

    .app-header {
      background: linear-gradient(135deg, #0f172a, #312e81);
      color: #fff;
      padding: 0.85rem 1.5rem;
      display: flex;
      align-items: center;
      justify-content: space-between;
      border-bottom: 4px solid var(--hd-blue);
      position: sticky;
      top: 0;
      z-index: 1020;
    }

    .brand-mark { display: flex; align-items: center; gap: 0.75rem; font-weight: 600; font-size: 1.15rem; }

    .brand-icon {
      height: 40px;
      width: 40px;
      border-radius: 12px;
      background: linear-gradient(135deg, var(--hd-blue), var(--hd-violet));
      display: grid;
      place-items: center;
    }

    .app-user-meta { display: flex; align-items: center; gap: 1rem; font-size: 0.875rem; }
    .app-shell { display: flex; min-height: calc(100vh - 72px); }

    .app-sidebar {
      width: 230px;
      background: rgba(15, 23, 42, 0.94);
      color: rgba(255, 255, 255, 0.82);
      padding: 1.5rem 1.25rem;
    }

    .nav-section-title {
      font-size: 0.75rem;
      text-transform: uppercase;
      letter-spacing: 0.08em;
      color: rgba(255, 255, 255, 0.52);
      margin-bottom: 0.75rem;
    }

    .nav-pill {
      display: flex;
      align-items: center;
      gap: 0.65rem;
      padding: 0.65rem 0.85rem;
      border-radius: 12px;
      color: inherit;
    }

    .nav-pill:hover { background: rgba(37, 99, 235, 0.18); color: #fff; }
    .nav-pill.active { background: linear-gradient(135deg, var(--hd-blue), var(--hd-violet)); color: #fff; }

    .app-content { flex: 1; padding: 2rem; display: flex; flex-direction: column; gap: 1.5rem; }

    .surface-card {
      background: var(--hd-surface);
      border-radius: 18px;
      border: 1px solid rgba(15, 23, 42, 0.06);
      box-shadow: var(--hd-shadow);
    }

    .stat-card { padding: 1.5rem; }
    .stat-kicker { text-transform: uppercase; letter-spacing: 0.12em; font-size: 0.75rem; color: rgba(15,23,42,0.58); }
    .stat-value { font-size: 2.4rem; font-weight: 600; margin: 0; }

    .badge-chip {
      border-radius: 999px;
      padding: 0.35rem 0.85rem;
      font-weight: 600;
      font-size: 0.75rem;
      display: inline-flex;
      align-items: center;
      gap: 0.35rem;
    }

    .badge-open { background: rgba(37,99,235,0.14); color: #1e40af; }
    .badge-progress { background: rgba(234,179,8,0.2); color: #854d0e; }
    .badge-complete { background: rgba(22,163,74,0.16); color: #166534; }
    .badge-closed { background: rgba(15,23,42,0.1); color: var(--hd-ink); }
    .badge-internal { background: rgba(124,58,237,0.16); color: #5b21b6; }

    .priority-urgent { background: rgba(220,38,38,0.2); color: #991b1b; }
    .priority-high { background: rgba(234,88,12,0.18); color: #9a3412; }
    .priority-medium { background: rgba(234,179,8,0.2); color: #854d0e; }
    .priority-low { background: rgba(22,163,74,0.16); color: #166534; }

    .ticket-title { font-weight: 600; }
    .ticket-meta { font-size: 0.8rem; color: rgba(15,23,42,0.6); }

    .timeline-entry { border-left: 3px solid rgba(37,99,235,0.25); padding: 0 0 1rem 1rem; }
    .timeline-entry.internal { border-left-color: var(--hd-violet); }

    .flash-message {
      background: rgba(37,99,235,0.1);
      border: 1px solid rgba(37,99,235,0.25);
      border-radius: 12px;
      padding: 0.75rem 1rem;
    }
  </style>
</head>
<body>
{% if current_user %}
  <header class="app-header">
    <a class="brand-mark text-white" href="{{ url_for('helpdesk.dashboard') }}">
      <span class="brand-icon"><i class="bi bi-ticket-perforated"></i></span>
      <span>IT Helpdesk</span>
    </a>
    <div class="app-user-meta">
      <div class="text-white-50">Signed in as <strong>{{ current_user.display_name }}</strong> · {{ role_labels[current_user.role] }}</div>
      <a class="btn btn-outline-light btn-sm" href="{{ url_for('helpdesk.logout') }}">Logout</a>
      <a class="btn btn-primary btn-sm" href="{{ url_for('helpdesk.new_ticket') }}"><i class="bi bi-plus-lg me-1"></i>New Ticket</a>
    </div>
  </header>
  <div class="app-shell">
    <aside class="app-sidebar">
      <div class="nav-section-title">Workspace</div>
      <a class="nav-pill {% if request.endpoint == 'helpdesk.dashboard' %}active{% endif %}" href="{{ url_for('helpdesk.dashboard') }}"><i class="bi bi-speedometer"></i>Dashboard</a>
      <a class="nav-pill {% if request.endpoint == 'helpdesk.tickets' %}active{% endif %}" href="{{ url_for('helpdesk.tickets') }}"><i class="bi bi-list-task"></i>{% if current_user.is_staff %}All Tickets{% else %}My Tickets{% endif %}</a>
      <a class="nav-pill {% if request.endpoint == 'helpdesk.new_ticket' %}active{% endif %}" href="{{ url_for('helpdesk.new_ticket') }}"><i class="bi bi-plus-circle"></i>New Ticket</a>
    </aside>
    <main class="app-content">
      {% with messages = get_flashed_messages() %}
        {% for message in messages %}
          <div class="flash-message">{{ message }}</div>
        {% endfor %}
      {% endwith %}
      {% block workspace_content %}{% endblock %}
    </main>
  </div>
{% else %}
  <main class="container py-5">
    {% with messages = get_flashed_messages() %}
      {% for message in messages %}
        <div class="flash-message mb-4">{{ message }}</div>
      {% endfor %}
    {% endwith %}
    {% block home_content %}{% endblock %}
  </main>
{% endif %}
<script src="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js"></script>
</body>
</html>
"""


HOME_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="row g-4 align-items-center">
  <div class="col-lg-7">
    <span class="badge-chip badge-open text-uppercase small"><i class="bi bi-stars"></i> IT Support</span>
    <h1 class="display-4 fw-semibold mt-3 mb-3">IT Helpdesk</h1>
    <p class="lead text-secondary mb-4">Report technology issues, follow their progress, and let the IT team triage everything from one queue.</p>
    <ul class="list-unstyled d-flex flex-column gap-2 text-secondary">
      <li><i class="bi bi-check-circle-fill text-success me-2"></i>Clients submit tickets and follow their own requests.</li>
      <li><i class="bi bi-check-circle-fill text-success me-2"></i>IT staff filter, assign and resolve the whole queue.</li>
      <li><i class="bi bi-check-circle-fill text-success me-2"></i>Export any filtered view to CSV.</li>
    </ul>
    <div class="d-flex flex-wrap gap-3 mt-4">
      <a class="btn btn-primary btn-lg d-flex align-items-center gap-2" href="{{ url_for('helpdesk.login') }}"><i class="bi bi-box-arrow-in-right"></i>Sign in</a>
      <a class="btn btn-outline-dark btn-lg" href="{{ url_for('helpdesk.register') }}">Create account</a>
    </div>
  </div>
</div>
{% endblock %}
"""


LOGIN_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="row justify-content-center">
  <div class="col-md-7 col-lg-5">
    <div class="surface-card p-4 p-lg-5">
      <h2 class="fw-semibold mb-1">Sign in</h2>
      <p class="text-secondary mb-4">Access your support dashboard.</p>
      <form method="post" class="d-flex flex-column gap-3">
        <input type="hidden" name="next" value="{{ next_url or '' }}">
        <div>
          <label class="form-label fw-semibold" for="email">Email</label>
          <input id="email" type="email" name="email" class="form-control" value="{{ email or '' }}" placeholder="you@company.com" required>
        </div>
        <div>
          <label class="form-label fw-semibold" for="password">Password</label>
          <input id="password" type="password" name="password" class="form-control" required>
        </div>
        <fieldset>
          <legend class="form-label fw-semibold fs-6">Access type</legend>
          <div class="d-flex gap-3">
            {% for r in roles %}
            <div class="form-check">
              <input class="form-check-input" type="radio" name="role" id="role-{{ r }}" value="{{ r }}" {% if r == role %}checked{% endif %}>
              <label class="form-check-label" for="role-{{ r }}">{{ role_labels[r] }}</label>
            </div>
            {% endfor %}
          </div>
        </fieldset>
        <button class="btn btn-primary" type="submit"><i class="bi bi-box-arrow-in-right me-1"></i>Sign in</button>
      </form>
      <p class="text-secondary small mt-4 mb-0">No account yet? <a href="{{ url_for('helpdesk.register') }}">Register</a></p>
    </div>
  </div>
</div>
{% endblock %}
"""


REGISTER_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="row justify-content-center">
  <div class="col-md-7 col-lg-5">
    <div class="surface-card p-4 p-lg-5">
      <h2 class="fw-semibold mb-4">Create an account</h2>
      <form method="post" class="d-flex flex-column gap-3">
        <div>
          <label class="form-label fw-semibold" for="name">Name</label>
          <input id="name" name="name" class="form-control" value="{{ name or '' }}" required>
        </div>
        <div>
          <label class="form-label fw-semibold" for="email">Email</label>
          <input id="email" type="email" name="email" class="form-control" value="{{ email or '' }}" required>
        </div>
        <div>
          <label class="form-label fw-semibold" for="password">Password</label>
          <input id="password" type="password" name="password" class="form-control" required>
        </div>
        <div>
          <label class="form-label fw-semibold" for="user_type">Account type</label>
          <select id="user_type" name="user_type" class="form-select">
            {% for r in roles %}<option value="{{ r }}" {% if r == user_type %}selected{% endif %}>{{ role_labels[r] }}</option>{% endfor %}
          </select>
        </div>
        <button class="btn btn-primary" type="submit">Register</button>
      </form>
      <p class="text-secondary small mt-4 mb-0">Already registered? <a href="{{ url_for('helpdesk.login') }}">Sign in</a></p>
    </div>
  </div>
</div>
{% endblock %}
"""


TICKET_ROWS_HTML = """
{% for t in tickets %}
{% set status_style = status_badges.get(t.status, status_badges['open']) %}
{% set priority_style = priority_badges.get(t.priority, priority_badges['medium']) %}
<tr>
  <td>
    <a class="ticket-title" href="{{ url_for('helpdesk.ticket_detail', ticket_id=t.id) }}">{{ t.title }}</a>
    <div class="ticket-meta">#{{ t.id[:8] }}{% if current_user.is_staff %} • {{ t.submitted_by }}{% endif %}</div>
  </td>
  <td><span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ status_labels.get(t.status, t.status) }}</span></td>
  <td><span class="{{ priority_style.cls }}"><i class="{{ priority_style.icon }}"></i>{{ priority_labels.get(t.priority, t.priority) }}</span></td>
  <td>{{ t.category or '—' }}</td>
  <td>{{ t.assigned_to or 'Unassigned' }}</td>
  <td><div class="fw-semibold">{{ format_ts(t.created_at) }}</div><div class="ticket-meta">Updated {{ format_ts(t.updated_at) }}</div></td>
  {% if inline_actions and current_user.is_staff %}
  <td class="text-end">
    <form class="d-flex gap-2 justify-content-end mb-2" method="post" action="{{ url_for('helpdesk.update_status', ticket_id=t.id) }}">
      <input type="hidden" name="next" value="{{ request.full_path }}">
      <select name="status" class="form-select form-select-sm" style="min-width: 140px;">
        {% for s in statuses %}<option value="{{ s }}" {% if s == t.status %}selected{% endif %}>{{ status_labels[s] }}</option>{% endfor %}
      </select>
      <button class="btn btn-sm btn-primary" type="submit" title="Update status"><i class="bi bi-arrow-repeat"></i></button>
    </form>
    <form class="d-flex gap-2 justify-content-end" method="post" action="{{ url_for('helpdesk.update_assignee', ticket_id=t.id) }}">
      <input type="hidden" name="next" value="{{ request.full_path }}">
      <select name="assignee" class="form-select form-select-sm" style="min-width: 140px;">
        <option value="">Unassigned</option>
        {% for email in staff_emails %}<option value="{{ email }}" {% if email == t.assigned_to %}selected{% endif %}>{{ email }}</option>{% endfor %}
      </select>
      <button class="btn btn-sm btn-outline-dark" type="submit" title="Assign"><i class="bi bi-person-check"></i></button>
    </form>
  </td>
  {% endif %}
</tr>
{% else %}
<tr>
  <td colspan="7" class="text-center py-5">
    <div class="fw-semibold mb-2">No tickets found</div>
    <p class="text-secondary mb-0">Adjust the filters or submit a new request.</p>
  </td>
</tr>
{% endfor %}
"""


DASHBOARD_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section class="d-flex flex-wrap align-items-center justify-content-between gap-3">
  <div>
    <h1 class="fw-semibold display-6 mb-2">Dashboard</h1>
    <p class="text-secondary mb-0">{% if current_user.is_staff %}Your assigned requests and the overall queue.{% else %}Requests you sent to the IT team.{% endif %}</p>
  </div>
  <a class="btn btn-primary d-flex align-items-center gap-2" href="{{ url_for('helpdesk.new_ticket') }}"><i class="bi bi-plus-lg"></i>New Ticket</a>
</section>

<div class="row g-3">
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Total</div>
      <p class="stat-value">{{ stats.total }}</p>
    </div>
  </div>
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Open</div>
      <p class="stat-value text-primary">{{ stats.open }}</p>
    </div>
  </div>
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">In Progress</div>
      <p class="stat-value text-warning">{{ stats.in_progress }}</p>
    </div>
  </div>
  <div class="col-md-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Resolved</div>
      <p class="stat-value text-success">{{ stats.resolved }}</p>
      <div class="text-secondary small">{% if current_user.is_staff %}{{ stats.mine }} assigned to you{% else %}{{ stats.mine }} submitted by you{% endif %}</div>
    </div>
  </div>
</div>

<div class="surface-card p-4">
  <form class="row g-3 align-items-end" method="get">
    <div class="col-12 col-xl-4">
      <label class="form-label text-uppercase small" for="q">Search</label>
      <input id="q" name="q" class="form-control" value="{{ criteria.search }}" placeholder="Title, description or ticket id">
    </div>
    <div class="col-6 col-xl-2">
      <label class="form-label text-uppercase small">Status</label>
      <select class="form-select" name="status">
        <option value="">All statuses</option>
        {% for s in options.statuses %}<option value="{{ s }}" {% if s == criteria.status %}selected{% endif %}>{{ status_labels.get(s, s) }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-6 col-xl-2">
      <label class="form-label text-uppercase small">Priority</label>
      <select class="form-select" name="priority">
        <option value="">All priorities</option>
        {% for p in options.priorities %}<option value="{{ p }}" {% if p == criteria.priority %}selected{% endif %}>{{ priority_labels.get(p, p) }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-6 col-xl-2">
      <label class="form-label text-uppercase small">Category</label>
      <select class="form-select" name="category">
        <option value="">All categories</option>
        {% for c in options.categories %}<option value="{{ c }}" {% if c == criteria.category %}selected{% endif %}>{{ c }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-6 col-xl-2">
      <label class="form-label text-uppercase small">Created</label>
      <select class="form-select" name="date_range">
        <option value="">Any time</option>
        {% for d in date_ranges %}<option value="{{ d }}" {% if d == criteria.date_range %}selected{% endif %}>{{ date_range_labels[d] }}</option>{% endfor %}
      </select>
    </div>
    {% if current_user.is_staff %}
    <div class="col-6 col-xl-3">
      <label class="form-label text-uppercase small">Assigned to</label>
      <select class="form-select" name="assigned_to">
        <option value="">Anyone</option>
        {% for a in options.assignees %}<option value="{{ a }}" {% if a == criteria.assigned_to %}selected{% endif %}>{{ a }}</option>{% endfor %}
      </select>
    </div>
    {% endif %}
    <div class="col d-flex flex-wrap gap-2 justify-content-end">
      <button class="btn btn-primary d-flex align-items-center gap-2" type="submit"><i class="bi bi-funnel"></i>Filter{% if criteria.active_count %} ({{ criteria.active_count }}){% endif %}</button>
      <a class="btn btn-link text-decoration-none" href="{{ url_for('helpdesk.dashboard') }}">Clear filters</a>
    </div>
  </form>
</div>

<div class="row g-3">
  <div class="col-xl-9">
    <div class="surface-card p-0 overflow-hidden">
      <div class="d-flex flex-wrap align-items-center justify-content-between gap-2 p-4 border-bottom">
        <div class="d-flex align-items-center gap-3 flex-wrap">
          <div class="badge-chip badge-open"><i class="bi bi-lightning"></i>{{ tickets|length }} Results</div>
          {% for label, value in criteria.applied() %}
          <span class="badge bg-light text-dark border">{{ label }}: {{ value }}</span>
          {% endfor %}
        </div>
        <a class="btn btn-sm btn-outline-dark d-flex align-items-center gap-2" href="{{ url_for('helpdesk.export_tickets', **criteria.to_args()) }}"><i class="bi bi-cloud-download"></i>Export CSV</a>
      </div>
      <div class="table-responsive p-3">
        <table class="table align-middle mb-0">
          <thead>
            <tr>
              <th scope="col">Ticket</th>
              <th scope="col">Status</th>
              <th scope="col">Priority</th>
              <th scope="col">Category</th>
              <th scope="col">Assigned to</th>
              <th scope="col">Created</th>
            </tr>
          </thead>
          <tbody>
            {% include 'ticket_rows.html' %}
          </tbody>
        </table>
      </div>
    </div>
  </div>
  <div class="col-xl-3">
    <div class="surface-card p-4 h-100">
      <h6 class="mb-3 text-uppercase small text-secondary">Top Categories</h6>
      {% for name, count in category_stats %}
        <div class="d-flex justify-content-between align-items-center mb-2">
          <span class="fw-semibold">{{ name }}</span>
          <span class="text-secondary">{{ count }}</span>
        </div>
      {% else %}
        <div class="text-secondary">No tickets yet.</div>
      {% endfor %}
    </div>
  </div>
</div>
{% endblock %}
"""


LIST_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section>
  <h1 class="fw-semibold display-6 mb-2">{% if current_user.is_staff %}All Tickets{% else %}My Tickets{% endif %}</h1>
</section>
<div class="surface-card p-4">
  <form class="row g-3 align-items-end" method="get">
    <div class="col-12 col-md-6">
      <label class="form-label text-uppercase small" for="q">Search</label>
      <input id="q" name="q" class="form-control" value="{{ criteria.search }}" placeholder="Search tickets…">
    </div>
    <div class="col-6 col-md-2">
      <label class="form-label text-uppercase small">Status</label>
      <select class="form-select" name="status">
        <option value="all">All statuses</option>
        {% for s in statuses %}<option value="{{ s }}" {% if s == criteria.status %}selected{% endif %}>{{ status_labels[s] }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-6 col-md-2">
      <label class="form-label text-uppercase small">Priority</label>
      <select class="form-select" name="priority">
        <option value="all">All priorities</option>
        {% for p in priorities %}<option value="{{ p }}" {% if p == criteria.priority %}selected{% endif %}>{{ priority_labels[p] }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-12 col-md-2 d-flex justify-content-end">
      <button class="btn btn-primary d-flex align-items-center gap-2" type="submit"><i class="bi bi-search"></i>Search</button>
    </div>
  </form>
</div>
<div class="surface-card p-0 overflow-hidden">
  <div class="table-responsive p-3">
    <table class="table align-middle mb-0">
      <thead>
        <tr>
          <th scope="col">Ticket</th>
          <th scope="col">Status</th>
          <th scope="col">Priority</th>
          <th scope="col">Category</th>
          <th scope="col">Assigned to</th>
          <th scope="col">Created</th>
          {% if current_user.is_staff %}<th scope="col" class="text-end">Actions</th>{% endif %}
        </tr>
      </thead>
      <tbody>
        {% include 'ticket_rows.html' %}
      </tbody>
    </table>
  </div>
</div>
{% endblock %}
"""


NEW_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<div class="surface-card p-4 p-lg-5">
  <div class="mb-4">
    <h2 class="fw-semibold mb-2">Submit a Support Ticket</h2>
    <p class="text-secondary mb-0">Tell us what's happening and the IT team will pick it up.</p>
  </div>
  <form method="post" enctype="multipart/form-data" class="d-flex flex-column gap-4">
    <div class="row g-4">
      <div class="col-lg-8">
        <div class="d-flex flex-column gap-3">
          <div>
            <label class="form-label fw-semibold" for="title">Title</label>
            <input id="title" name="title" class="form-control" placeholder="Example: Printer offline on 2nd floor" required>
          </div>
          <div>
            <label class="form-label fw-semibold" for="description">What's happening?</label>
            <textarea id="description" name="description" class="form-control" rows="6" placeholder="Share clear details, steps, and any error messages." required></textarea>
          </div>
          <div class="row g-3">
            <div class="col-md-6">
              <label class="form-label fw-semibold" for="equipment_number">Equipment number</label>
              <input id="equipment_number" name="equipment_number" class="form-control" placeholder="Optional">
            </div>
            <div class="col-md-6">
              <label class="form-label fw-semibold" for="location">Location</label>
              <input id="location" name="location" class="form-control" placeholder="Optional">
            </div>
          </div>
        </div>
      </div>
      <div class="col-lg-4">
        <div class="surface-card p-3 p-lg-4">
          <h5 class="fw-semibold mb-3">Triage details</h5>
          <div class="mb-3">
            <label class="form-label text-uppercase small">Priority</label>
            <select name="priority" class="form-select">
              {% for option in priorities %}
              <option value="{{ option }}" {% if option == default_priority %}selected{% endif %}>{{ priority_labels[option] }}</option>
              {% endfor %}
            </select>
          </div>
          <div class="mb-3">
            <label class="form-label text-uppercase small">Category</label>
            <select name="category" class="form-select" required>
              <option value="">Choose a category…</option>
              {% for cat in categories %}
              <option value="{{ cat }}">{{ cat }}</option>
              {% endfor %}
            </select>
          </div>
          <div class="mb-3">
            <label class="form-label text-uppercase small" for="attachments">Attachments</label>
            <input type="file" id="attachments" name="attachments" class="form-control" multiple>
            <span class="text-secondary small">Total size up to {{ attachment_limit }}.</span>
          </div>
        </div>
      </div>
    </div>
    <div class="d-flex flex-wrap gap-3 justify-content-end">
      <a class="btn btn-outline-dark" href="{{ url_for('helpdesk.tickets') }}">Cancel</a>
      <button class="btn btn-primary d-flex align-items-center gap-2" type="submit"><i class="bi bi-send"></i>Submit ticket</button>
    </div>
  </form>
</div>
{% endblock %}
"""


DETAIL_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
{% set status_style = status_badges.get(t.status, status_badges['open']) %}
{% set priority_style = priority_badges.get(t.priority, priority_badges['medium']) %}
<div class="d-flex flex-wrap align-items-start justify-content-between gap-3">
  <div>
    <a class="small" href="{{ url_for('helpdesk.tickets') }}"><i class="bi bi-arrow-left me-1"></i>Back to tickets</a>
    <h2 class="fw-semibold mt-2 mb-2">{{ t.title }}</h2>
    <div class="d-flex flex-wrap gap-2 text-secondary small">
      <span>#{{ t.id[:8] }}</span>
      <span>• <i class="bi bi-envelope me-1"></i>{{ t.submitted_by }}</span>
      <span>• Created {{ format_ts(t.created_at) }}</span>
    </div>
  </div>
  <div class="d-flex flex-wrap gap-2">
    <span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ status_labels.get(t.status, t.status) }}</span>
    <span class="{{ priority_style.cls }}"><i class="{{ priority_style.icon }}"></i>{{ priority_labels.get(t.priority, t.priority) }} Priority</span>
  </div>
</div>

<div class="row g-4">
  <div class="col-xl-8">
    <div class="surface-card p-4">
      <div class="d-flex align-items-center justify-content-between mb-3">
        <h5 class="fw-semibold mb-0">Issue details</h5>
        <span class="badge-chip badge-closed"><i class="bi bi-tag"></i>{{ t.category or 'Uncategorized' }}</span>
      </div>
      <p class="mb-0" style="white-space: pre-line;">{{ t.description }}</p>
      <div class="d-flex flex-wrap gap-3 text-secondary small mt-4">
        <span><i class="bi bi-clock-history me-1"></i>Updated {{ format_ts(t.updated_at) }}</span>
        <span><i class="bi bi-person-bounding-box me-1"></i>Assigned to {{ t.assigned_to or 'Unassigned' }}</span>
        {% if t.equipment_number %}<span><i class="bi bi-pc-display me-1"></i>{{ t.equipment_number }}</span>{% endif %}
        {% if t.location %}<span><i class="bi bi-geo-alt me-1"></i>{{ t.location }}</span>{% endif %}
      </div>
    </div>

    <div class="surface-card p-4 mt-4">
      <h5 class="fw-semibold mb-3">Comments ({{ comments|length }})</h5>
      <div>
        <div class="timeline-entry">
          <div class="fw-semibold">Ticket created</div>
          <div class="text-secondary small">{{ format_ts(t.created_at) }} • {{ t.submitted_by }}</div>
        </div>
        {% for c in comments %}
        <div class="timeline-entry {% if c.is_internal %}internal{% endif %}">
          <div class="fw-semibold d-flex align-items-center gap-2">
            <i class="bi bi-chat-dots text-primary"></i>{{ c.author or 'Anonymous' }}
            {% if c.is_internal %}<span class="badge-chip badge-internal">Internal</span>{% endif %}
          </div>
          <div class="text-secondary small">{{ format_ts(c.timestamp) }}</div>
          <div class="mt-2" style="white-space: pre-line;">{{ c.content }}</div>
        </div>
        {% else %}
        <div class="timeline-entry">
          <div class="fw-semibold text-secondary">No comments yet</div>
        </div>
        {% endfor %}
      </div>
      <form method="post" action="{{ url_for('helpdesk.add_comment', ticket_id=t.id) }}" class="mt-4">
        <label class="form-label text-uppercase small" for="body">Add a comment</label>
        <textarea id="body" class="form-control" name="body" rows="3" placeholder="Add an update" required></textarea>
        <div class="d-flex justify-content-between align-items-center mt-3">
          {% if current_user.is_staff %}
          <div class="form-check">
            <input class="form-check-input" type="checkbox" name="internal" value="1" id="internal">
            <label class="form-check-label" for="internal">Internal note (hidden from the client)</label>
          </div>
          {% else %}<span></span>{% endif %}
          <button class="btn btn-primary d-flex align-items-center gap-2" type="submit"><i class="bi bi-chat-text"></i>Post comment</button>
        </div>
      </form>
    </div>
  </div>

  <div class="col-xl-4">
    <div class="surface-card p-4 mb-4">
      <h5 class="fw-semibold mb-3">Attachments</h5>
      {% if t.attachments %}
      <ul class="list-unstyled d-flex flex-column gap-2 mb-0">
        {% for file in t.attachments %}
        <li class="d-flex justify-content-between align-items-center gap-3">
          <a class="d-flex align-items-center gap-2" href="{{ file.url }}">
            <i class="bi {% if file.media_type.startswith('image/') %}bi-image{% else %}bi-paperclip{% endif %}"></i>
            <span>{{ file.name }}</span>
          </a>
          <span class="text-secondary small">{{ format_size(file.size) }}</span>
        </li>
        {% endfor %}
      </ul>
      {% else %}
      <p class="text-secondary small mb-0">No attachments uploaded for this ticket.</p>
      {% endif %}
    </div>
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Ticket controls</h5>
      {% if current_user.is_staff %}
      <form method="post" action="{{ url_for('helpdesk.update_status', ticket_id=t.id) }}" class="mb-3">
        <label class="form-label text-uppercase small">Status</label>
        <div class="d-flex gap-2">
          <select name="status" class="form-select">
            {% for s in statuses %}<option value="{{ s }}" {% if s == t.status %}selected{% endif %}>{{ status_labels[s] }}</option>{% endfor %}
          </select>
          <button class="btn btn-primary" type="submit"><i class="bi bi-arrow-repeat"></i></button>
        </div>
      </form>
      <form method="post" action="{{ url_for('helpdesk.update_assignee', ticket_id=t.id) }}">
        <label class="form-label text-uppercase small">Assignee</label>
        <div class="d-flex gap-2">
          <input class="form-control" name="assignee" list="staff-emails" value="{{ t.assigned_to or '' }}" placeholder="e.g., {{ staff_emails[0] if staff_emails else 'tech@company.com' }}">
          <datalist id="staff-emails">
            {% for email in staff_emails %}<option value="{{ email }}">{% endfor %}
          </datalist>
          <button class="btn btn-outline-dark" type="submit">Save</button>
        </div>
      </form>
      {% else %}
      <p class="text-secondary small mb-0">Ticket updates are managed by the IT team. Add a comment if you have more information to share.</p>
      {% endif %}
    </div>
  </div>
</div>
{% endblock %}
"""


# --------------------------------------------------------------------------------------
# Auth routes
# --------------------------------------------------------------------------------------
@bp.route("/")
def home():
    if current_user() is not None:
        return redirect(url_for("helpdesk.dashboard"))
    return render_template_string(HOME_HTML)


@bp.route("/login", methods=["GET", "POST"])
def login():
    next_url = _safe_next("")
    if request.method == "GET":
        return render_template_string(LOGIN_HTML, email="", role=ROLE_CLIENT, next_url=next_url)

    email = (request.form.get("email") or "").strip()
    password = request.form.get("password") or ""
    role = (request.form.get("role") or ROLE_CLIENT).strip()
    try:
        user = get_identity_provider().login(email, password, role)
    except (ValidationError, RemoteAuthError) as exc:
        current_app.logger.warning("Login failed for %s: %s", email or "<blank>", exc)
        flash(str(exc))
        return render_template_string(LOGIN_HTML, email=email, role=role, next_url=next_url), 400

    session.clear()
    session["user"] = user.to_dict()
    current_app.logger.info("User %s signed in as %s", user.email, user.role)
    flash(f"Signed in as {user.email}")
    return redirect(next_url or url_for("helpdesk.dashboard"))


@bp.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "GET":
        return render_template_string(REGISTER_HTML, name="", email="", user_type=ROLE_CLIENT)

    name = (request.form.get("name") or "").strip()
    email = (request.form.get("email") or "").strip()
    password = request.form.get("password") or ""
    user_type = (request.form.get("user_type") or ROLE_CLIENT).strip()
    try:
        message = get_identity_provider().register(name, email, password, user_type)
    except (ValidationError, RemoteAuthError) as exc:
        current_app.logger.warning("Registration failed for %s: %s", email or "<blank>", exc)
        flash(str(exc))
        return render_template_string(REGISTER_HTML, name=name, email=email, user_type=user_type), 400

    current_app.logger.info("Registered account for %s", email)
    flash(message)
    return redirect(url_for("helpdesk.login"))


@bp.route("/logout")
def logout():
    session.clear()
    flash("Signed out.")
    return redirect(url_for("helpdesk.home"))


# --------------------------------------------------------------------------------------
# Ticket views
# --------------------------------------------------------------------------------------
@bp.route("/dashboard")
@login_required
def dashboard():
    user = current_user()
    store = get_store()
    criteria = TicketFilter.from_args(request.args)
    visible = filter_tickets(store, user.role, user.email)
    results = filter_tickets(visible, user.role, user.email, criteria)
    return render_template_string(
        DASHBOARD_HTML,
        tickets=results,
        criteria=criteria,
        stats=dashboard_stats(store, user.role, user.email),
        category_stats=category_breakdown(visible),
        options=filter_options(visible),
        inline_actions=False,
    )


@bp.route("/tickets")
@login_required
def tickets():
    user = current_user()
    criteria = TicketFilter.from_args(request.args)
    results = filter_tickets(get_store(), user.role, user.email, criteria)
    return render_template_string(LIST_HTML, tickets=results, criteria=criteria, inline_actions=True)


@bp.route("/tickets/export")
@login_required
def export_tickets():
    user = current_user()
    criteria = TicketFilter.from_args(request.args)
    results = filter_tickets(get_store(), user.role, user.email, criteria)
    text = export_csv(results)
    if text is None:
        flash("No tickets to export.")
        return redirect(url_for("helpdesk.dashboard", **criteria.to_args()))
    current_app.logger.info("User %s exported %d ticket(s)", user.email, len(results))
    return send_file(
        io.BytesIO(text.encode("utf-8-sig")),
        download_name=export_filename(),
        mimetype="text/csv",
        as_attachment=True,
    )


@bp.route("/new", methods=["GET", "POST"])
@login_required
def new_ticket():
    if request.method == "POST":
        user = current_user()
        data = {k: (request.form.get(k) or "").strip() for k in [
            "title", "description", "priority", "category", "equipment_number", "location"
        ]}

        attachments_to_save: list[dict[str, object]] = []
        total_size = 0
        for upload in request.files.getlist("attachments"):
            if not upload or not upload.filename:
                continue
            file_data = upload.read()
            if not file_data:
                continue
            total_size += len(file_data)
            if total_size > MAX_ATTACHMENT_TOTAL_BYTES:
                flash(
                    "Attachments exceed the total upload limit of "
                    f"{format_file_size(MAX_ATTACHMENT_TOTAL_BYTES)}."
                )
                return redirect(url_for("helpdesk.new_ticket"))
            filename = secure_filename(upload.filename) or f"attachment-{len(attachments_to_save) + 1}"
            attachments_to_save.append(
                {
                    "filename": filename,
                    "content_type": upload.mimetype,
                    "data": file_data,
                }
            )

        try:
            get_controller().submit_ticket(
                title=data["title"],
                description=data["description"],
                category=data["category"],
                submitted_by=user.email,
                priority=data["priority"] or DEFAULT_PRIORITY,
                equipment_number=data["equipment_number"],
                location=data["location"],
                attachments=attachments_to_save,
            )
        except ValidationError as exc:
            flash(str(exc))
            return redirect(url_for("helpdesk.new_ticket"))
        return redirect(url_for("helpdesk.tickets"))

    return render_template_string(
        NEW_HTML,
        categories=CATEGORIES,
        default_priority=DEFAULT_PRIORITY,
        attachment_limit=format_file_size(MAX_ATTACHMENT_TOTAL_BYTES),
    )


@bp.route("/ticket/<ticket_id>")
@login_required
def ticket_detail(ticket_id: str):
    user = current_user()
    if _viewable_ticket(ticket_id, user) is None:
        flash("Ticket not found.")
        return redirect(url_for("helpdesk.tickets"))
    ticket = get_controller().select(ticket_id)
    return render_template_string(
        DETAIL_HTML,
        t=ticket,
        comments=visible_comments(ticket, user.role),
    )


@bp.route("/ticket/<ticket_id>/attachment/<attachment_id>")
@login_required
def download_attachment(ticket_id: str, attachment_id: str):
    ticket = _viewable_ticket(ticket_id, current_user())
    if ticket is None:
        abort(404)
    try:
        attachment = ticket.find_attachment(attachment_id)
    except NotFoundError:
        abort(404)
    return send_file(
        io.BytesIO(attachment.data or b""),
        download_name=attachment.name,
        mimetype=attachment.media_type or "application/octet-stream",
        as_attachment=True,
    )


@bp.route("/ticket/<ticket_id>/comment", methods=["POST"])
@login_required
def add_comment(ticket_id: str):
    user = current_user()
    if _viewable_ticket(ticket_id, user) is None:
        flash("Ticket not found.")
        return redirect(url_for("helpdesk.tickets"))
    body = request.form.get("body") or ""
    is_internal = request.form.get("internal") in {"1", "on", "true"}
    try:
        get_controller().add_comment(ticket_id, body, author=user.email, is_internal=is_internal, actor=user)
    except PermissionDeniedError:
        abort(403)
    except ValidationError as exc:
        flash(str(exc))
    return redirect(url_for("helpdesk.ticket_detail", ticket_id=ticket_id))


@bp.route("/ticket/<ticket_id>/status", methods=["POST"])
@login_required
def update_status(ticket_id: str):
    user = current_user()
    new_status = (request.form.get("status") or "").strip()
    try:
        get_controller().update_status(ticket_id, new_status, actor=user)
    except PermissionDeniedError:
        abort(403)
    except NotFoundError:
        flash("Ticket not found.")
        return redirect(url_for("helpdesk.tickets"))
    except ValidationError as exc:
        flash(str(exc))
    return redirect(_safe_next(url_for("helpdesk.ticket_detail", ticket_id=ticket_id)))


@bp.route("/ticket/<ticket_id>/assignee", methods=["POST"])
@login_required
def update_assignee(ticket_id: str):
    user = current_user()
    assignee = (request.form.get("assignee") or "").strip()
    try:
        get_controller().assign_ticket(ticket_id, assignee, actor=user)
    except PermissionDeniedError:
        abort(403)
    except NotFoundError:
        flash("Ticket not found.")
        return redirect(url_for("helpdesk.tickets"))
    return redirect(_safe_next(url_for("helpdesk.ticket_detail", ticket_id=ticket_id)))


# --------------------------------------------------------------------------------------
# Application factory
# --------------------------------------------------------------------------------------
TEMPLATES = {
    "base.html": BASE_HTML,
    "home.html": HOME_HTML,
    "login.html": LOGIN_HTML,
    "register.html": REGISTER_HTML,
    "ticket_rows.html": TICKET_ROWS_HTML,
    "dashboard.html": DASHBOARD_HTML,
    "list.html": LIST_HTML,
    "new.html": NEW_HTML,
    "detail.html": DETAIL_HTML,
}


def create_app(config: Optional[dict] = None) -> Flask:
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=SECRET_KEY,
        MAX_CONTENT_LENGTH=MAX_CONTENT_LENGTH,
        IDENTITY_API_URL=IDENTITY_API_URL,
        IDENTITY_API_TIMEOUT=IDENTITY_API_TIMEOUT,
        SEED_DEMO_TICKETS=SEED_DEMO_TICKETS,
        IT_STAFF_EMAILS=IT_STAFF_EMAILS,
        LOG_LEVEL=LOG_LEVEL,
    )
    if config:
        app.config.update(config)
    app.logger.setLevel(app.config["LOG_LEVEL"])
    for name in CORE_LOGGERS:
        logging.getLogger(name).setLevel(app.config["LOG_LEVEL"])

    store = TicketStore()
    if app.config["SEED_DEMO_TICKETS"]:
        seed_demo_tickets(store)
    provider = app.config.get("IDENTITY_PROVIDER") or build_identity_provider(
        app.config["IDENTITY_API_URL"],
        timeout=app.config["IDENTITY_API_TIMEOUT"],
    )
    app.extensions["helpdesk"] = {
        "store": store,
        "identity": provider,
        "controller": TicketController(store, notify=flash, attachment_url=_attachment_url),
    }

    app.jinja_loader = DictLoader(TEMPLATES)
    app.jinja_env.globals.update(
        format_ts=format_timestamp,
        format_size=format_file_size,
        status_badges=STATUS_BADGES,
        priority_badges=PRIORITY_BADGES,
        status_labels=STATUS_LABELS,
        priority_labels=PRIORITY_LABELS,
        statuses=STATUSES,
        priorities=PRIORITIES,
        date_ranges=DATE_RANGES,
        date_range_labels=DATE_RANGE_LABELS,
        roles=ROLES,
        role_labels=ROLE_LABELS,
    )

    @app.context_processor
    def _inject_user():
        return {
            "current_user": current_user(),
            "staff_emails": app.config["IT_STAFF_EMAILS"],
        }

    app.register_blueprint(bp)
    app.logger.info(
        "Helpdesk ready: %d ticket(s) in memory, identity via %s",
        len(store),
        app.config["IDENTITY_API_URL"] or "placeholder login",
    )
    return app


app = create_app()

# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL)
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
