"""Adapter around python-fido2's response verification."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestedCredentialData,
    AuthenticationResponse,
    AuthenticatorData,
    PublicKeyCredentialRpEntity,
    RegistrationResponse,
    UserVerificationRequirement,
)

from .storage import Credential, DeviceType

__all__ = [
    "AuthenticationResult",
    "Fido2Verifier",
    "RegistrationResult",
    "RelyingParty",
    "credential_id_from_response",
]

LOGGER = logging.getLogger("passkey_server.verifier")


@dataclass(frozen=True)
class RelyingParty:
    id: str
    name: str
    origin: str

    def to_entity(self) -> PublicKeyCredentialRpEntity:
        return PublicKeyCredentialRpEntity(name=self.name, id=self.id)


@dataclass(frozen=True)
class RegistrationResult:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    device_type: DeviceType
    backed_up: bool


@dataclass(frozen=True)
class AuthenticationResult:
    credential_id: bytes
    new_counter: int
    backed_up: bool


def credential_id_from_response(response: Any) -> bytes:
    """Decode the credential id a client put into ``rawId`` (or ``id``)."""

    if not isinstance(response, Mapping):
        raise ValueError("credential response must be an object")

    raw_value = response.get("rawId") or response.get("id")
    if isinstance(raw_value, (bytes, bytearray, memoryview)):
        return bytes(raw_value)
    if not isinstance(raw_value, str) or not raw_value.strip():
        raise ValueError("credential response is missing its id")
    return websafe_decode(raw_value.strip())


def _exact_origin(expected: str) -> Callable[[str], bool]:
    def verify_origin(origin: str) -> bool:
        return origin == expected

    return verify_origin


class Fido2Verifier:
    """Checks signed ceremony responses with :class:`fido2.server.Fido2Server`.

    Any problem with the response surfaces as an exception from python-fido2
    (usually ``ValueError``); callers normalise those. Signature counters are
    reported, not judged, here.
    """

    def __init__(
        self,
        user_verification: UserVerificationRequirement = UserVerificationRequirement.PREFERRED,
    ) -> None:
        self.user_verification = user_verification

    def _server(self, rp: RelyingParty) -> Fido2Server:
        return Fido2Server(
            rp.to_entity(),
            attestation=AttestationConveyancePreference.NONE,
            verify_origin=_exact_origin(rp.origin),
        )

    def _state(self, challenge: bytes) -> dict:
        return {
            "challenge": websafe_encode(challenge),
            "user_verification": self.user_verification,
        }

    def verify_registration(
        self,
        response: Mapping[str, Any],
        *,
        challenge: bytes,
        rp: RelyingParty,
    ) -> RegistrationResult:
        registration = RegistrationResponse.from_dict(dict(response))
        auth_data = self._server(rp).register_complete(self._state(challenge), registration)

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise ValueError("Attested credential data missing from registration response.")

        flags = auth_data.flags
        return RegistrationResult(
            credential_id=bytes(credential_data.credential_id),
            public_key=cbor.encode(dict(credential_data.public_key)),
            sign_count=auth_data.counter,
            device_type=(
                DeviceType.MULTI_DEVICE
                if flags & AuthenticatorData.FLAG.BE
                else DeviceType.SINGLE_DEVICE
            ),
            backed_up=bool(flags & AuthenticatorData.FLAG.BS),
        )

    def verify_authentication(
        self,
        response: Mapping[str, Any],
        *,
        credential: Credential,
        challenge: bytes,
        rp: RelyingParty,
    ) -> AuthenticationResult:
        assertion = AuthenticationResponse.from_dict(dict(response))

        public_key = CoseKey.parse(cbor.decode(credential.public_key))
        stored = AttestedCredentialData.create(bytes(16), credential.credential_id, public_key)

        self._server(rp).authenticate_complete(self._state(challenge), [stored], assertion)

        auth_data = assertion.response.authenticator_data
        LOGGER.debug("Assertion verified, reported counter %d", auth_data.counter)
        return AuthenticationResult(
            credential_id=credential.credential_id,
            new_counter=auth_data.counter,
            backed_up=bool(auth_data.flags & AuthenticatorData.FLAG.BS),
        )
