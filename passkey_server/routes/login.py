"""Routes for the authentication ceremony."""
from __future__ import annotations

from flask import jsonify

from ..authentication import AuthenticationCeremony
from ..challenge import ensure_ceremony_session_id, get_ceremony_session_id
from ..config import app, build_relying_party, get_services
from ..errors import PasskeyError
from .general import parse_ceremony_request
from .session import set_authenticated_identity


def _ceremony(session_id):
    services = get_services()
    return AuthenticationCeremony(
        services.store,
        services.binder,
        services.verifier,
        build_relying_party(),
        session_id,
        timeout_ms=app.config["PASSKEY_CEREMONY_TIMEOUT_MS"],
    )


@app.route("/api/login", methods=["POST"])
def login():
    email, step, credential = parse_ceremony_request()

    if step == "start":
        ceremony = _ceremony(ensure_ceremony_session_id())
        options = ceremony.start(email)
        return jsonify(options)

    if step == "verify":
        ceremony = _ceremony(get_ceremony_session_id())
        try:
            stored = ceremony.verify(email, credential or {})
        except PasskeyError as exc:
            app.logger.warning("Login for %s failed: %s", email, exc.message)
            raise
        set_authenticated_identity(email)
        app.logger.info("Authenticated %s (counter %d)", email, stored.sign_count)
        return jsonify({"verified": True})

    raise PasskeyError("Invalid request")
