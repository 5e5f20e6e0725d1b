import hashlib
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.cose import ES256
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorData,
    CollectedClientData,
)

from passkey_server.app import app
from passkey_server.challenge import ChallengeBinder
from passkey_server.config import PasskeyServices
from passkey_server.storage import DeviceType, InMemoryCredentialStore
from passkey_server.verifier import (
    AuthenticationResult,
    Fido2Verifier,
    RegistrationResult,
    RelyingParty,
)


class SoftAuthenticator:
    """ES256 authenticator producing browser-shaped WebAuthn JSON."""

    def __init__(
        self,
        rp_id: str,
        origin: str,
        *,
        credential_id: Optional[bytes] = None,
        counter: int = 0,
        backup_eligible: bool = False,
        backed_up: bool = False,
    ) -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.public_key = ES256.from_cryptography_key(self.private_key.public_key())
        self.credential_id = credential_id or os.urandom(16)
        self.counter = counter
        self.backup_eligible = backup_eligible
        self.backed_up = backed_up

    @property
    def rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.rp_id.encode("utf-8")).digest()

    def _flags(self, base: int) -> int:
        flags = base | AuthenticatorData.FLAG.UP
        if self.backup_eligible:
            flags |= AuthenticatorData.FLAG.BE
        if self.backed_up:
            flags |= AuthenticatorData.FLAG.BS
        return flags

    def register(
        self,
        challenge: str,
        *,
        origin: Optional[str] = None,
        transports: Iterable[str] = ("internal", "hybrid"),
    ) -> Dict[str, Any]:
        client_data = CollectedClientData.create(
            CollectedClientData.TYPE.CREATE,
            websafe_decode(challenge),
            origin or self.origin,
        )
        auth_data = AuthenticatorData.create(
            self.rp_id_hash,
            self._flags(AuthenticatorData.FLAG.AT),
            counter=self.counter,
            credential_data=AttestedCredentialData.create(
                bytes(16), self.credential_id, self.public_key
            ),
        )
        attestation_object = AttestationObject.create("none", auth_data, {})
        return {
            "id": websafe_encode(self.credential_id),
            "rawId": websafe_encode(self.credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(bytes(client_data)),
                "attestationObject": websafe_encode(bytes(attestation_object)),
                "transports": list(transports),
            },
            "clientExtensionResults": {},
        }

    def authenticate(
        self,
        challenge: str,
        *,
        origin: Optional[str] = None,
        counter_step: int = 1,
        tamper: bool = False,
    ) -> Dict[str, Any]:
        self.counter += counter_step
        client_data = CollectedClientData.create(
            CollectedClientData.TYPE.GET,
            websafe_decode(challenge),
            origin or self.origin,
        )
        auth_data = AuthenticatorData.create(self.rp_id_hash, self._flags(0), counter=self.counter)
        message = bytes(auth_data) + client_data.hash
        if tamper:
            message += b"tampered"
        signature = self.private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        return {
            "id": websafe_encode(self.credential_id),
            "rawId": websafe_encode(self.credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(bytes(client_data)),
                "authenticatorData": websafe_encode(bytes(auth_data)),
                "signature": websafe_encode(signature),
            },
            "clientExtensionResults": {},
        }


class FakeVerifier:
    """Stands in for python-fido2 so ceremony logic can be tested alone."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, bytes, RelyingParty]] = []
        self.error: Optional[Exception] = None
        self.credential_id = b"credential-1"
        self.sign_count = 0
        self.device_type = DeviceType.SINGLE_DEVICE
        self.backed_up = False
        self.new_counter = 1
        self.result_override: Any = None

    def verify_registration(self, response, *, challenge, rp):
        self.calls.append(("registration", challenge, rp))
        if self.error is not None:
            raise self.error
        if self.result_override is not None:
            return self.result_override
        return RegistrationResult(
            credential_id=self.credential_id,
            public_key=b"public-key-" + self.credential_id,
            sign_count=self.sign_count,
            device_type=self.device_type,
            backed_up=self.backed_up,
        )

    def verify_authentication(self, response, *, credential, challenge, rp):
        self.calls.append(("authentication", challenge, rp))
        if self.error is not None:
            raise self.error
        if self.result_override is not None:
            return self.result_override
        return AuthenticationResult(
            credential_id=credential.credential_id,
            new_counter=self.new_counter,
            backed_up=self.backed_up,
        )


def _registration_response(credential_id: bytes = b"credential-1", transports=("usb", "nfc")):
    return {
        "id": websafe_encode(credential_id),
        "rawId": websafe_encode(credential_id),
        "type": "public-key",
        "response": {"transports": list(transports)},
    }


def _assertion_response(credential_id: bytes = b"credential-1"):
    return {
        "id": websafe_encode(credential_id),
        "rawId": websafe_encode(credential_id),
        "type": "public-key",
        "response": {},
    }


@pytest.fixture
def registration_response():
    return _registration_response


@pytest.fixture
def assertion_response():
    return _assertion_response


@pytest.fixture
def soft_authenticator():
    return SoftAuthenticator


@pytest.fixture
def rp() -> RelyingParty:
    return RelyingParty(id="example.com", name="Example", origin="https://example.com")


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def binder() -> ChallengeBinder:
    return ChallengeBinder()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


def _configure_app(monkeypatch, services: PasskeyServices):
    monkeypatch.setitem(app.extensions, "passkey", services)
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "FIDO_SERVER_RP_ID", "localhost")
    monkeypatch.setitem(app.config, "FIDO_SERVER_ORIGIN", "http://localhost")


@pytest.fixture
def client(monkeypatch, store, binder, verifier):
    _configure_app(monkeypatch, PasskeyServices(store=store, binder=binder, verifier=verifier))
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def fido2_client(monkeypatch, store, binder):
    _configure_app(
        monkeypatch, PasskeyServices(store=store, binder=binder, verifier=Fido2Verifier())
    )
    with app.test_client() as test_client:
        yield test_client
