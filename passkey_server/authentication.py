"""Authentication ceremony: proving possession of a registered passkey."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from fido2.utils import websafe_encode

from .ceremony import Ceremony, CeremonyState
from .challenge import CeremonyPurpose
from .errors import (
    CounterReplay,
    InvalidSession,
    Mismatch,
    NoCredentials,
    PasskeyError,
    UnknownCredential,
    UnknownIdentity,
    VerificationFailed,
)
from .storage import Credential, encode_base64url
from .verifier import AuthenticationResult, credential_id_from_response

__all__ = ["AuthenticationCeremony"]

LOGGER = logging.getLogger("passkey_server.authentication")


class AuthenticationCeremony(Ceremony):
    def start(self, identity: str) -> Dict[str, Any]:
        self._ensure_open()

        account = self.store.get_identity(identity)
        if account is None:
            raise UnknownIdentity()

        credentials = self.store.list_credentials(identity)
        if not credentials:
            raise NoCredentials()

        challenge = self.binder.issue(self.session_id, identity, CeremonyPurpose.AUTHENTICATION)
        self.state = CeremonyState.OPTIONS_ISSUED
        return {
            "challenge": websafe_encode(challenge),
            "rpId": self.rp.id,
            "timeout": self.timeout_ms,
            "allowCredentials": [
                {
                    "type": "public-key",
                    "id": websafe_encode(credential.credential_id),
                    "transports": list(credential.transports),
                }
                for credential in credentials
            ],
            "userVerification": "preferred",
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
            binding = self.binder.consume(self.session_id, identity, CeremonyPurpose.AUTHENTICATION)
        except Mismatch as exc:
            raise InvalidSession() from exc

        try:
            credential_id = credential_id_from_response(response)
        except ValueError as exc:
            raise UnknownCredential() from exc

        credential = self.store.find_credential(identity, credential_id)
        if credential is None:
            LOGGER.warning(
                "Unknown credential %s presented for %s", encode_base64url(credential_id), identity
            )
            raise UnknownCredential()

        try:
            result = self.verifier.verify_authentication(
                response,
                credential=credential,
                challenge=binding.challenge,
                rp=self.rp,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Authentication verification error for %s: %s", identity, exc)
            raise VerificationFailed() from exc

        if not isinstance(result, AuthenticationResult) or result.credential_id != credential.credential_id:
            LOGGER.warning("Assertion for %s was not verified", identity)
            raise VerificationFailed()

        try:
            return self.store.update_counter(
                identity,
                credential.credential_id,
                result.new_counter,
                backed_up=result.backed_up,
            )
        except CounterReplay:
            LOGGER.warning(
                "Possible cloned authenticator for %s: counter %d after %d",
                identity,
                result.new_counter,
                credential.sign_count,
            )
            raise
        except OSError as exc:
            LOGGER.error("Could not store counter for %s: %s", identity, exc)
            raise VerificationFailed() from exc
