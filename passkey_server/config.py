"""Configuration and application setup for the passkey server."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flask import Flask, has_request_context, request

from .challenge import DEFAULT_CHALLENGE_TTL, ChallengeBinder
from .ceremony import DEFAULT_TIMEOUT_MS
from .storage import CredentialStore, InMemoryCredentialStore, PickleCredentialStore
from .verifier import Fido2Verifier, RelyingParty

app = Flask(__name__)


def _env_flag(name: str) -> Optional[bool]:
    """Return ``True`` or ``False`` when the named env var is explicitly set."""

    raw_value = os.environ.get(name)
    if raw_value is None:
        return None

    normalised = raw_value.strip().lower()
    if normalised in {"", "0", "false", "off", "no"}:
        return False
    return True


def _env_number(name: str, default: float) -> float:
    raw_value = os.environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return float(raw_value)
    except ValueError:
        app.logger.warning("Ignoring non-numeric %s=%r", name, raw_value)
        return default


_session_secret = os.environ.get("SESSION_SECRET")
if _session_secret:
    app.secret_key = _session_secret
else:
    app.logger.warning(
        "SESSION_SECRET is not set; using a random key, sessions will not survive a restart."
    )
    app.secret_key = os.urandom(32)

_production = (os.environ.get("FLASK_ENV") or os.environ.get("ENV") or "").lower() == "production"
_secure_cookies = _env_flag("PASSKEY_SECURE_COOKIES")

app.config.setdefault("SESSION_COOKIE_NAME", "passkey-demo-session")
app.config["SESSION_COOKIE_SECURE"] = _production if _secure_cookies is None else _secure_cookies
app.config.setdefault("SESSION_COOKIE_SAMESITE", "Lax")
app.config.setdefault("FIDO_SERVER_RP_NAME", os.environ.get("FIDO_SERVER_RP_NAME", "Passkey Demo"))
app.config.setdefault("FIDO_SERVER_RP_ID", os.environ.get("FIDO_SERVER_RP_ID"))
app.config.setdefault("FIDO_SERVER_ORIGIN", os.environ.get("FIDO_SERVER_ORIGIN"))
app.config.setdefault(
    "PASSKEY_CHALLENGE_TTL", _env_number("PASSKEY_CHALLENGE_TTL", DEFAULT_CHALLENGE_TTL)
)
app.config.setdefault(
    "PASSKEY_CEREMONY_TIMEOUT_MS",
    int(_env_number("PASSKEY_CEREMONY_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)),
)
app.config.setdefault("PASSKEY_STORAGE_DIR", os.environ.get("PASSKEY_STORAGE_DIR"))


def _hostname(host: str) -> str:
    """Strip the port from a Host header value, unwrapping ``[IPv6]`` literals."""

    host = host.strip().lower()
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    if host.count(":") > 1:
        return host
    return host.split(":", 1)[0]


def determine_rp_id(explicit_id: Optional[str] = None) -> str:
    """Resolve the relying party identifier for the current request."""

    if explicit_id:
        return explicit_id

    configured_id = app.config.get("FIDO_SERVER_RP_ID")
    if isinstance(configured_id, str) and configured_id.strip():
        return configured_id.strip()

    if has_request_context():
        host = _hostname(request.host)
        if not host or host in {"127.0.0.1", "::1"}:
            return "localhost"
        return host

    return "localhost"


def determine_origin(explicit_origin: Optional[str] = None) -> str:
    """Resolve the origin client data must report for the current request."""

    if explicit_origin:
        return explicit_origin

    configured_origin = app.config.get("FIDO_SERVER_ORIGIN")
    if isinstance(configured_origin, str) and configured_origin.strip():
        return configured_origin.strip().rstrip("/")

    if has_request_context():
        forwarded = request.headers.get("X-Forwarded-Proto", "")
        scheme = forwarded.split(",", 1)[0].strip().lower() or request.scheme
        return f"{scheme}://{request.host}"

    return "http://localhost"


def build_relying_party() -> RelyingParty:
    return RelyingParty(
        id=determine_rp_id(),
        name=app.config.get("FIDO_SERVER_RP_NAME") or "Passkey Demo",
        origin=determine_origin(),
    )


@dataclass
class PasskeyServices:
    """Long-lived collaborators the ceremonies are built from."""

    store: CredentialStore
    binder: ChallengeBinder
    verifier: Any


def create_services(config: Mapping[str, Any]) -> PasskeyServices:
    storage_dir = config.get("PASSKEY_STORAGE_DIR")
    if storage_dir:
        store: CredentialStore = PickleCredentialStore(storage_dir)
    else:
        store = InMemoryCredentialStore()

    ttl = config.get("PASSKEY_CHALLENGE_TTL")
    return PasskeyServices(
        store=store,
        binder=ChallengeBinder(ttl=float(ttl) if ttl else None),
        verifier=Fido2Verifier(),
    )


def get_services() -> PasskeyServices:
    services = app.extensions.get("passkey")
    if services is None:
        services = create_services(app.config)
        app.extensions["passkey"] = services
    return services


__all__ = [
    "PasskeyServices",
    "app",
    "build_relying_party",
    "create_services",
    "determine_origin",
    "determine_rp_id",
    "get_services",
]
