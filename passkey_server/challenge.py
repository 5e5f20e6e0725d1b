"""One-time challenges bound to an identity and a client session."""
from __future__ import annotations

import logging
import os
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, Optional

from flask import has_request_context, session

from .errors import ChallengeExpired, Mismatch

__all__ = [
    "Binding",
    "CeremonyPurpose",
    "ChallengeBinder",
    "MIN_CHALLENGE_SIZE",
    "ensure_ceremony_session_id",
    "get_ceremony_session_id",
]

LOGGER = logging.getLogger("passkey_server.challenge")

MIN_CHALLENGE_SIZE = 16
DEFAULT_CHALLENGE_SIZE = 32
DEFAULT_CHALLENGE_TTL = 300.0

_CEREMONY_SESSION_KEY = "passkey.ceremony-session"


class CeremonyPurpose(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class Binding:
    challenge: bytes
    identity: str
    purpose: CeremonyPurpose
    issued_at: float
    # Set when a signed-in owner starts registering an additional passkey.
    extends_identity: bool = False


@dataclass
class _SessionLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class ChallengeBinder:
    """Issues challenges and tracks at most one outstanding binding per session.

    Bindings live here rather than in the client cookie, so replaying an old
    cookie cannot bring back a challenge that was already consumed.
    """

    def __init__(
        self,
        ttl: Optional[float] = DEFAULT_CHALLENGE_TTL,
        *,
        challenge_size: int = DEFAULT_CHALLENGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if challenge_size < MIN_CHALLENGE_SIZE:
            raise ValueError(f"challenge_size must be at least {MIN_CHALLENGE_SIZE} bytes")
        self.ttl = ttl
        self.challenge_size = challenge_size
        self._clock = clock
        self._lock = threading.Lock()
        self._bindings: Dict[str, Binding] = {}
        self._session_locks: Dict[str, _SessionLock] = {}

    def _expired(self, binding: Binding, now: float) -> bool:
        return self.ttl is not None and now - binding.issued_at > self.ttl

    def _purge_expired(self, now: float) -> None:
        stale = [key for key, binding in self._bindings.items() if self._expired(binding, now)]
        for key in stale:
            del self._bindings[key]

    def issue(
        self,
        session_id: str,
        identity: str,
        purpose: CeremonyPurpose = CeremonyPurpose.AUTHENTICATION,
        *,
        extends_identity: bool = False,
    ) -> bytes:
        challenge = os.urandom(self.challenge_size)
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._bindings[session_id] = Binding(
                challenge=challenge,
                identity=identity,
                purpose=CeremonyPurpose(purpose),
                issued_at=now,
                extends_identity=extends_identity,
            )
        return challenge

    def consume(
        self,
        session_id: Optional[str],
        presented_identity: str,
        purpose: Optional[CeremonyPurpose] = None,
    ) -> Binding:
        """Remove and return the binding for ``session_id``.

        The binding is dropped before any check runs, so a failed attempt
        cannot be retried with the same challenge.
        """

        with self._lock:
            binding = self._bindings.pop(session_id, None) if session_id else None
            now = self._clock()

        if binding is None:
            raise Mismatch()
        if binding.identity != presented_identity:
            LOGGER.warning(
                "Challenge for %s presented with identity %s", binding.identity, presented_identity
            )
            raise Mismatch()
        if purpose is not None and binding.purpose != CeremonyPurpose(purpose):
            raise Mismatch()
        if self._expired(binding, now):
            raise ChallengeExpired()
        return binding

    def peek(self, session_id: Optional[str]) -> Optional[Binding]:
        if not session_id:
            return None
        with self._lock:
            return self._bindings.get(session_id)

    def discard(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        with self._lock:
            self._bindings.pop(session_id, None)

    @contextmanager
    def locked(self, session_id: Optional[str]) -> Iterator[None]:
        """Serialise ceremony steps that share ``session_id``.

        The per-session lock is dropped once its last holder leaves.
        """

        if not session_id:
            yield
            return

        with self._lock:
            entry = self._session_locks.get(session_id)
            if entry is None:
                entry = _SessionLock()
                self._session_locks[session_id] = entry
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.holders -= 1
                if entry.holders == 0:
                    self._session_locks.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)


def get_ceremony_session_id() -> Optional[str]:
    if not has_request_context():
        return None

    existing = session.get(_CEREMONY_SESSION_KEY)
    if isinstance(existing, str) and existing.strip():
        return existing.strip()
    return None


def ensure_ceremony_session_id() -> str:
    identifier = get_ceremony_session_id()
    if identifier:
        return identifier

    if not has_request_context():
        raise RuntimeError("Unable to establish ceremony session identifier.")

    identifier = secrets.token_urlsafe(32)
    session[_CEREMONY_SESSION_KEY] = identifier
    return identifier
