"""Routes for the registration ceremony."""
from __future__ import annotations

from flask import jsonify

from ..challenge import ensure_ceremony_session_id, get_ceremony_session_id
from ..config import app, build_relying_party, get_services
from ..errors import PasskeyError
from ..registration import RegistrationCeremony
from ..storage import encode_base64url
from .general import parse_ceremony_request
from .session import get_authenticated_identity


def _ceremony(session_id):
    services = get_services()
    return RegistrationCeremony(
        services.store,
        services.binder,
        services.verifier,
        build_relying_party(),
        session_id,
        timeout_ms=app.config["PASSKEY_CEREMONY_TIMEOUT_MS"],
    )


@app.route("/api/register", methods=["POST"])
def register():
    email, step, credential = parse_ceremony_request()

    if step == "start":
        ceremony = _ceremony(ensure_ceremony_session_id())
        options = ceremony.start(email, authenticated_identity=get_authenticated_identity())
        app.logger.info("Issued registration options for %s", email)
        return jsonify(options)

    if step == "verify":
        ceremony = _ceremony(get_ceremony_session_id())
        try:
            stored = ceremony.verify(email, credential or {})
        except PasskeyError as exc:
            app.logger.warning("Registration for %s failed: %s", email, exc.message)
            raise
        app.logger.info(
            "Registered credential %s for %s", encode_base64url(stored.credential_id), email
        )
        return jsonify({"verified": True})

    raise PasskeyError("Invalid request")
