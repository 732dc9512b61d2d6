from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from errors import RemoteAuthError, ValidationError

logger = logging.getLogger(__name__)

ROLE_CLIENT = "client"
ROLE_IT_STAFF = "it-staff"
ROLES = [ROLE_CLIENT, ROLE_IT_STAFF]
ROLE_LABELS = {
    ROLE_CLIENT: "Client",
    ROLE_IT_STAFF: "IT Staff",
}


def normalize_email(value: Optional[str]) -> str:
    """Canonical form of an address, used for session identities and assignees."""

    return (value or "").strip().lower()


def normalize_role(value: Optional[str]) -> str:
    """Map a submitted role value onto a known role, defaulting to client."""

    cleaned = (value or "").strip().lower()
    return cleaned if cleaned in ROLES else ROLE_CLIENT


@dataclass(frozen=True)
class UserSession:
    """Identity and role of the signed-in user for the current browser session."""

    email: str
    role: str = ROLE_CLIENT
    name: str = ""
    token: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "email", normalize_email(self.email))
        object.__setattr__(self, "role", normalize_role(self.role))

    @property
    def is_staff(self) -> bool:
        return self.role == ROLE_IT_STAFF

    @property
    def display_name(self) -> str:
        return self.name or self.email

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "role": self.role,
            "name": self.name,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["UserSession"]:
        if not data or not data.get("email"):
            return None
        return cls(
            email=data["email"],
            role=data.get("role") or ROLE_CLIENT,
            name=data.get("name") or "",
            token=data.get("token"),
        )


def _require_credentials(email: str, password: str) -> str:
    cleaned = (email or "").strip()
    if not cleaned or not password:
        raise ValidationError("Email and password are required.")
    return cleaned


class LocalIdentityProvider:
    """Placeholder sign-in: any non-empty email/password pair is accepted."""

    def login(self, email: str, password: str, role: str = ROLE_CLIENT) -> UserSession:
        cleaned = _require_credentials(email, password)
        return UserSession(email=cleaned, role=role)

    def register(self, name: str, email: str, password: str, user_type: str = ROLE_CLIENT) -> str:
        _require_credentials(email, password)
        if not (name or "").strip():
            raise ValidationError("Name is required.")
        return "Account created. You can sign in now."


def _error_detail(response: requests.Response) -> str:
    """Pull the service's ``detail`` message out of an error response."""

    fallback = f"Identity service returned {response.status_code}."
    try:
        data = response.json()
    except ValueError:
        return fallback
    detail = data.get("detail") if isinstance(data, dict) else None
    if isinstance(detail, str) and detail.strip():
        return detail.strip()
    if isinstance(detail, list) and detail:
        # Validation errors come back as a list of {"msg": ...} entries
        messages = [str(item.get("msg")) for item in detail if isinstance(item, dict) and item.get("msg")]
        if messages:
            return "; ".join(messages)
    return fallback


class RemoteIdentityProvider:
    """Delegates login and registration to an external identity service."""

    def __init__(self, base_url: str, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Identity request to %s failed: %s", url, exc)
            raise RemoteAuthError("The sign-in service is unavailable. Try again later.") from exc
        if not response.ok:
            message = _error_detail(response)
            logger.warning("Identity service rejected %s (%s): %s", url, response.status_code, message)
            raise RemoteAuthError(message)
        try:
            data = response.json()
        except ValueError as exc:  # JSONDecodeError inherits from ValueError
            raise RemoteAuthError("The sign-in service returned an invalid response.") from exc
        return data if isinstance(data, dict) else {}

    def login(self, email: str, password: str, role: str = ROLE_CLIENT) -> UserSession:
        cleaned = _require_credentials(email, password)
        data = self._post("users/login", {"user": cleaned, "password": password})
        token = data.get("token")
        if not token:
            raise RemoteAuthError("Sign-in succeeded but no token was returned.")
        return UserSession(email=cleaned, role=role, token=token)

    def register(self, name: str, email: str, password: str, user_type: str = ROLE_CLIENT) -> str:
        cleaned = _require_credentials(email, password)
        if not (name or "").strip():
            raise ValidationError("Name is required.")
        data = self._post(
            "users/register",
            {
                "name": name.strip(),
                "email": cleaned,
                "password": password,
                "user_type": normalize_role(user_type),
            },
        )
        return str(data.get("message") or "Account created. You can sign in now.")


def build_identity_provider(base_url: Optional[str] = None, timeout: float = 10):
    if base_url:
        return RemoteIdentityProvider(base_url, timeout=timeout)
    return LocalIdentityProvider()
