"""Application entry point for the passkey server."""
from __future__ import annotations

import os

from .config import app

# Import the route modules so their decorators register endpoints with Flask.
from .routes import general, login, register, session  # noqa: F401,E402


def main() -> None:
    # Browsers treat http://localhost as a secure context, so WebAuthn works
    # there without TLS. Any other host needs HTTPS in front of this server.
    app.run(
        host=os.environ.get("PASSKEY_SERVER_HOST", "localhost"),
        port=int(os.environ.get("PASSKEY_SERVER_PORT", "3000")),
        debug=bool(os.environ.get("FLASK_DEBUG")),
    )


__all__ = ["app", "main"]


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
