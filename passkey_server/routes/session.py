"""Routes and helpers for the signed-in session."""
from __future__ import annotations

from typing import Optional

from flask import jsonify, session

from ..challenge import get_ceremony_session_id
from ..config import app, get_services
from ..errors import NotAuthenticated
from ..storage import credential_to_json

__all__ = [
    "get_authenticated_identity",
    "set_authenticated_identity",
]

_AUTHENTICATED_IDENTITY_KEY = "email"


def get_authenticated_identity() -> Optional[str]:
    identity = session.get(_AUTHENTICATED_IDENTITY_KEY)
    if isinstance(identity, str) and identity:
        return identity
    return None


def set_authenticated_identity(identity: str) -> None:
    session[_AUTHENTICATED_IDENTITY_KEY] = identity


@app.route("/api/session", methods=["GET"])
def get_session():
    identity = get_authenticated_identity()
    if identity is None:
        raise NotAuthenticated()
    return jsonify({"email": identity})


@app.route("/api/session", methods=["DELETE"])
def delete_session():
    get_services().binder.discard(get_ceremony_session_id())
    session.clear()
    return jsonify({"success": True})


@app.route("/api/credentials", methods=["GET"])
def list_credentials():
    identity = get_authenticated_identity()
    if identity is None:
        raise NotAuthenticated()

    credentials = get_services().store.list_credentials(identity)
    return jsonify({
        "email": identity,
        "credentials": [credential_to_json(credential) for credential in credentials],
    })
