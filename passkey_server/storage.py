"""Credential storage for registered passkeys."""
from __future__ import annotations

import abc
import base64
import hashlib
import logging
import os
import pickle
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import (
    AlreadyExists,
    CounterReplay,
    DuplicateCredential,
    DuplicateIdentity,
    UnknownCredential,
    UnknownIdentity,
)

__all__ = [
    "Credential",
    "CredentialStore",
    "DeviceType",
    "Identity",
    "InMemoryCredentialStore",
    "PickleCredentialStore",
    "convert_bytes_for_json",
    "credential_to_json",
    "encode_base64url",
    "is_counter_accepted",
]

LOGGER = logging.getLogger("passkey_server.storage")


class DeviceType(str, Enum):
    SINGLE_DEVICE = "singleDevice"
    MULTI_DEVICE = "multiDevice"


@dataclass(frozen=True)
class Credential:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    device_type: DeviceType
    backed_up: bool
    transports: Tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)
    last_used_at: Optional[float] = None


@dataclass
class Identity:
    name: str
    user_handle: bytes = field(default_factory=lambda: os.urandom(32))
    credentials: List[Credential] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


def is_counter_accepted(stored: int, reported: int) -> bool:
    """Return ``True`` when ``reported`` may replace the ``stored`` counter.

    A stored value of zero accepts anything so authenticators that never
    increment keep working. Once non-zero, the counter must strictly grow.
    """

    if stored == 0:
        return True
    return reported > stored


def encode_base64url(value: bytes) -> str:
    return base64.urlsafe_b64encode(bytes(value)).decode("ascii").rstrip("=")


def convert_bytes_for_json(obj: Any) -> Any:
    """Recursively convert bytes-like objects to base64url strings for JSON serialization."""
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return encode_base64url(bytes(obj))
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: convert_bytes_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [convert_bytes_for_json(item) for item in obj]
    return obj


def credential_to_json(credential: Credential) -> Dict[str, Any]:
    return convert_bytes_for_json({
        "credentialId": credential.credential_id,
        "publicKey": credential.public_key,
        "signCount": credential.sign_count,
        "deviceType": credential.device_type,
        "backedUp": credential.backed_up,
        "transports": list(credential.transports),
        "createdAt": credential.created_at,
        "lastUsedAt": credential.last_used_at,
    })


class CredentialStore(abc.ABC):
    """Mapping from identities to their registered credentials."""

    @abc.abstractmethod
    def create_identity(self, name: str) -> Identity:
        ...

    @abc.abstractmethod
    def get_identity(self, name: str) -> Optional[Identity]:
        ...

    @abc.abstractmethod
    def add_credential(self, name: str, credential: Credential, *, first_only: bool = False) -> None:
        ...

    @abc.abstractmethod
    def find_credential(self, name: str, credential_id: bytes) -> Optional[Credential]:
        ...

    @abc.abstractmethod
    def update_counter(
        self,
        name: str,
        credential_id: bytes,
        new_counter: int,
        *,
        backed_up: Optional[bool] = None,
    ) -> Credential:
        ...

    def list_credentials(self, name: str) -> List[Credential]:
        identity = self.get_identity(name)
        if identity is None:
            return []
        return list(identity.credentials)


class InMemoryCredentialStore(CredentialStore):
    """Process-local store.

    ``_lock`` guards the identity map and the global credential-id index;
    each identity additionally has its own lock so counter updates for one
    account never block another. Changes are handed to ``_persist`` as a
    staged copy and only applied in memory once it returns.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: Dict[str, Identity] = {}
        self._identity_locks: Dict[str, threading.RLock] = {}
        self._credential_owners: Dict[bytes, str] = {}

    def _identity_lock(self, name: str) -> threading.RLock:
        with self._lock:
            lock = self._identity_locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._identity_locks[name] = lock
            return lock

    def _persist(self, identity: Identity) -> None:
        """Hook for durable subclasses, called with the identity lock held."""

    def create_identity(self, name: str) -> Identity:
        identity = Identity(name=name)
        with self._identity_lock(name):
            with self._lock:
                if name in self._identities:
                    raise AlreadyExists(f"Identity {name!r} already exists")
            self._persist(identity)
            with self._lock:
                self._identities[name] = identity
        LOGGER.debug("Created identity %s", name)
        return identity

    def get_identity(self, name: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(name)

    def add_credential(self, name: str, credential: Credential, *, first_only: bool = False) -> None:
        """Attach ``credential`` to ``name``.

        With ``first_only`` the identity must not hold any credential yet;
        the check and the insert happen under the identity lock.
        """

        credential_id = bytes(credential.credential_id)
        with self._identity_lock(name):
            with self._lock:
                identity = self._identities.get(name)
                if identity is None:
                    raise UnknownIdentity()
                if first_only and identity.credentials:
                    raise DuplicateIdentity()
                if credential_id in self._credential_owners:
                    raise DuplicateCredential()
                self._credential_owners[credential_id] = name

            try:
                self._persist(replace(identity, credentials=[*identity.credentials, credential]))
            except Exception:
                with self._lock:
                    self._credential_owners.pop(credential_id, None)
                raise
            identity.credentials.append(credential)
        LOGGER.info("Registered credential %s for %s", encode_base64url(credential_id), name)

    def find_credential(self, name: str, credential_id: bytes) -> Optional[Credential]:
        identity = self.get_identity(name)
        if identity is None:
            return None
        with self._identity_lock(name):
            for credential in identity.credentials:
                if credential.credential_id == bytes(credential_id):
                    return credential
        return None

    def update_counter(
        self,
        name: str,
        credential_id: bytes,
        new_counter: int,
        *,
        backed_up: Optional[bool] = None,
    ) -> Credential:
        identity = self.get_identity(name)
        if identity is None:
            raise UnknownIdentity()

        with self._identity_lock(name):
            for index, credential in enumerate(identity.credentials):
                if credential.credential_id != bytes(credential_id):
                    continue
                if not is_counter_accepted(credential.sign_count, new_counter):
                    LOGGER.warning(
                        "Rejected signature counter %d for credential %s of %s (stored %d)",
                        new_counter,
                        encode_base64url(credential.credential_id),
                        name,
                        credential.sign_count,
                    )
                    raise CounterReplay()
                updated = replace(
                    credential,
                    sign_count=new_counter,
                    backed_up=credential.backed_up if backed_up is None else backed_up,
                    last_used_at=time.time(),
                )
                credentials = list(identity.credentials)
                credentials[index] = updated
                self._persist(replace(identity, credentials=credentials))
                identity.credentials[index] = updated
                return updated

        raise UnknownCredential()

    def _load(self, identities: Sequence[Identity]) -> None:
        with self._lock:
            for identity in identities:
                self._identities[identity.name] = identity
                self._identity_locks.setdefault(identity.name, threading.RLock())
                for credential in identity.credentials:
                    self._credential_owners[bytes(credential.credential_id)] = identity.name

    def __iter__(self) -> Iterator[Identity]:
        with self._lock:
            return iter(list(self._identities.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)


class PickleCredentialStore(InMemoryCredentialStore):
    """In-memory store mirrored to ``*_credential_data.pkl`` files in ``basepath``."""

    _SUFFIX = "_credential_data.pkl"

    def __init__(self, basepath: str) -> None:
        super().__init__()
        self.basepath = os.path.abspath(basepath)
        os.makedirs(self.basepath, exist_ok=True)
        self._load(list(self._read_all()))

    def _filename(self, name: str) -> str:
        # Identities are user input; hash them so they cannot escape basepath.
        digest = hashlib.sha256(name.encode("utf-8")).hexdigest()
        return os.path.join(self.basepath, f"{digest}{self._SUFFIX}")

    def _persist(self, identity: Identity) -> None:
        savekey(self._filename(identity.name), identity)

    def _read_all(self) -> Iterator[Identity]:
        for filename in sorted(os.listdir(self.basepath)):
            if not filename.endswith(self._SUFFIX):
                continue
            identity = readkey(os.path.join(self.basepath, filename))
            if isinstance(identity, Identity):
                yield identity
            else:
                LOGGER.warning("Ignoring unreadable credential file %s", filename)


def savekey(path: str, value: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "wb") as f:
        f.write(pickle.dumps(value))
    os.replace(tmp_path, path)


def readkey(path: str) -> Any:
    try:
        with open(path, "rb") as f:
            return pickle.loads(f.read())
    except (OSError, pickle.UnpicklingError, EOFError, AttributeError, ImportError, ValueError) as exc:
        LOGGER.warning("Failed to read %s: %s", path, exc)
        return None
