"""General application routes and request helpers."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

from flask import jsonify, request

from ..config import app
from ..errors import PasskeyError

__all__ = ["parse_ceremony_request"]


def parse_ceremony_request() -> Tuple[str, Optional[str], Optional[Mapping[str, Any]]]:
    """Return ``(email, step, credential)`` from a ceremony request body."""

    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise PasskeyError("Invalid request")

    email = payload.get("email")
    if not isinstance(email, str) or not email.strip():
        raise PasskeyError("Email is required")

    step = payload.get("step")
    credential = payload.get("credential")
    if credential is None:
        credential = payload.get("assertion")
    if credential is not None and not isinstance(credential, Mapping):
        raise PasskeyError("Invalid credential payload")

    return email.strip(), step if isinstance(step, str) else None, credential


@app.errorhandler(PasskeyError)
def handle_passkey_error(exc: PasskeyError):
    return jsonify({"error": exc.message}), exc.status_code


@app.route("/api/health")
def health_check():
    payload: Dict[str, Any] = {
        "status": "healthy",
        "message": "Passkey server is running",
    }
    return jsonify(payload)
