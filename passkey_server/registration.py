"""Registration ceremony: enrolling a new passkey for an identity."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from fido2.utils import websafe_encode

from .ceremony import Ceremony, CeremonyState, public_key_credential_params
from .challenge import CeremonyPurpose
from .errors import (
    AlreadyExists,
    DuplicateCredential,
    DuplicateIdentity,
    InvalidSession,
    Mismatch,
    PasskeyError,
    UnknownIdentity,
    VerificationFailed,
)
from .storage import Credential, Identity
from .transports import extract_response_transports
from .verifier import RegistrationResult

__all__ = ["RegistrationCeremony"]

LOGGER = logging.getLogger("passkey_server.registration")


class RegistrationCeremony(Ceremony):
    """Two-step enrolment of a credential.

    Only identities without credentials may register, unless the caller is
    already signed in as that identity, in which case further passkeys can
    be added.
    """

    def start(self, identity: str, *, authenticated_identity: Optional[str] = None) -> Dict[str, Any]:
        self._ensure_open()

        existing = self.store.get_identity(identity)
        if existing is not None and existing.credentials and authenticated_identity != identity:
            raise DuplicateIdentity()

        if existing is None:
            try:
                existing = self.store.create_identity(identity)
            except AlreadyExists:
                existing = self.store.get_identity(identity)
                if existing is None:
                    raise
                if existing.credentials and authenticated_identity != identity:
                    raise DuplicateIdentity() from None

        challenge = self.binder.issue(
            self.session_id,
            identity,
            CeremonyPurpose.REGISTRATION,
            extends_identity=authenticated_identity == identity,
        )
        self.state = CeremonyState.OPTIONS_ISSUED
        return self._build_options(existing, challenge)

    def _build_options(self, identity: Identity, challenge: bytes) -> Dict[str, Any]:
        return {
            "challenge": websafe_encode(challenge),
            "rp": self._rp_options(),
            "user": {
                "id": websafe_encode(identity.user_handle),
                "name": identity.name,
                "displayName": identity.name,
            },
            "userName": identity.name,
            "pubKeyCredParams": public_key_credential_params(),
            "timeout": self.timeout_ms,
            "excludeCredentials": [
                {
                    "type": "public-key",
                    "id": websafe_encode(credential.credential_id),
                    "transports": list(credential.transports),
                }
                for credential in identity.credentials
            ],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "requireResidentKey": False,
                "userVerification": "preferred",
            },
            "attestation": "none",
            "extensions": {"credProps": True},
        }

    def verify(self, identity: str, response: Mapping[str, Any]) -> Credential:
        self._ensure_open()
        with self.binder.locked(self.session_id):
            try:
                credential = self._verify(identity, response)
            except PasskeyError:
                self.state = CeremonyState.FAILED
                raise
        self.state = CeremonyState.VERIFIED
        return credential

    def _verify(self, identity: str, response: Mapping[str, Any]) -> Credential:
        try:
            binding = self.binder.consume(self.session_id, identity, CeremonyPurpose.REGISTRATION)
        except Mismatch as exc:
            raise InvalidSession() from exc

        if self.store.get_identity(identity) is None:
            raise UnknownIdentity("User not found during verification")

        try:
            result = self.verifier.verify_registration(response, challenge=binding.challenge, rp=self.rp)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Registration verification error for %s: %s", identity, exc)
            raise VerificationFailed() from exc

        if not isinstance(result, RegistrationResult):
            LOGGER.warning("Registration response for %s was not verified", identity)
            raise VerificationFailed()

        credential = Credential(
            credential_id=result.credential_id,
            public_key=result.public_key,
            sign_count=result.sign_count,
            device_type=result.device_type,
            backed_up=result.backed_up,
            transports=extract_response_transports(response),
        )

        try:
            self.store.add_credential(identity, credential, first_only=not binding.extends_identity)
        except DuplicateIdentity as exc:
            LOGGER.warning("%s gained a passkey while this registration was pending", identity)
            raise VerificationFailed() from exc
        except DuplicateCredential as exc:
            LOGGER.warning("Rejected already registered credential for %s", identity)
            raise VerificationFailed() from exc
        except OSError as exc:
            LOGGER.error("Could not store credential for %s: %s", identity, exc)
            raise VerificationFailed() from exc

        return credential
