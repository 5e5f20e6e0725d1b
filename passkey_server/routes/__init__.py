"""Route registrations for the passkey server."""

# Import submodules to register routes via decorators.
from . import general  # noqa: F401
from . import login  # noqa: F401
from . import register  # noqa: F401
from . import session  # noqa: F401

__all__ = ["general", "login", "register", "session"]
