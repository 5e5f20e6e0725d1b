"""State shared by the registration and authentication ceremonies."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Tuple

from fido2.cose import CoseKey

from .challenge import ChallengeBinder
from .errors import InvalidSession
from .storage import CredentialStore
from .verifier import RelyingParty

__all__ = ["Ceremony", "CeremonyState", "PREFERRED_ALGORITHMS", "public_key_credential_params"]


# Ed25519, ES256 and RS256, in the order clients should prefer them.
PREFERRED_ALGORITHMS: Tuple[int, ...] = (-8, -7, -257)

DEFAULT_TIMEOUT_MS = 60000


def public_key_credential_params() -> list:
    supported = set(CoseKey.supported_algorithms())
    return [
        {"type": "public-key", "alg": alg}
        for alg in PREFERRED_ALGORITHMS
        if alg in supported
    ]


class CeremonyState(str, Enum):
    IDLE = "idle"
    OPTIONS_ISSUED = "options-issued"
    VERIFIED = "verified"
    FAILED = "failed"


class Ceremony:
    """One attempt at a two-step ceremony for a single client session.

    ``start`` moves the attempt to ``OPTIONS_ISSUED``; ``verify`` ends it in
    ``VERIFIED`` or ``FAILED``. A finished attempt accepts no further calls.
    The challenge itself lives in the binder, so ``verify`` may run on a new
    instance built for the follow-up request.
    """

    def __init__(
        self,
        store: CredentialStore,
        binder: ChallengeBinder,
        verifier: Any,
        rp: RelyingParty,
        session_id: Optional[str],
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.store = store
        self.binder = binder
        self.verifier = verifier
        self.rp = rp
        self.session_id = session_id
        self.timeout_ms = timeout_ms
        self.state = CeremonyState.IDLE

    def _ensure_open(self) -> None:
        if self.state in (CeremonyState.VERIFIED, CeremonyState.FAILED):
            raise InvalidSession("Ceremony already completed")

    def _rp_options(self) -> Dict[str, Any]:
        return {"id": self.rp.id, "name": self.rp.name}
