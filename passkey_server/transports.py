"""Helpers for authenticator transport hint handling."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, List, Optional, Set, Tuple

__all__ = [
    "KNOWN_TRANSPORTS",
    "extract_response_transports",
    "normalize_transport",
    "normalize_transport_list",
]


KNOWN_TRANSPORTS: Tuple[str, ...] = (
    "ble",
    "cable",
    "hybrid",
    "internal",
    "nfc",
    "smart-card",
    "usb",
)


def normalize_transport(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized not in KNOWN_TRANSPORTS:
        return None
    return normalized


def normalize_transport_list(raw_values: Any) -> Tuple[str, ...]:
    if isinstance(raw_values, (str, bytes, bytearray, Mapping)) or raw_values is None:
        return ()
    if not isinstance(raw_values, Iterable):
        return ()

    normalized: List[str] = []
    seen: Set[str] = set()
    for candidate in raw_values:
        normalized_value = normalize_transport(candidate)
        if normalized_value and normalized_value not in seen:
            normalized.append(normalized_value)
            seen.add(normalized_value)
    return tuple(normalized)


def extract_response_transports(response: Any) -> Tuple[str, ...]:
    """Return the transports the client declared in a registration response."""

    if not isinstance(response, Mapping):
        return ()
    credential_response = response.get("response")
    if not isinstance(credential_response, Mapping):
        return ()
    return normalize_transport_list(credential_response.get("transports"))
