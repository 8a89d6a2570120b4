"""Canonical identifiers used as rate-limit and block keys."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from jengahacks.errors import MalformedIdentifier

from .config import Dimension

UNKNOWN_IP = "unknown"
MAX_EMAIL_LENGTH = 254
MAX_CLIENT_FINGERPRINT_LENGTH = 256

# Conservative RFC 5322 subset: dot-atom local part, LDH labels in the domain
_EMAIL_RE = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
    r"(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*$"
)


@dataclass(frozen=True)
class Identifier:
    """A canonical (value, dimension) pair."""

    value: str
    dimension: Dimension

    @property
    def is_resolvable(self) -> bool:
        """False for an IP that could not be resolved; its checks are skipped."""
        return not (self.dimension == Dimension.IP and self.value == UNKNOWN_IP)

    def masked(self) -> str:
        return mask_identifier(self.value, self.dimension)

    def __str__(self) -> str:
        return f"{self.dimension.value}:{self.value}"


def normalize_email(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if not value or len(value) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(value):
        raise MalformedIdentifier("Please enter a valid email address", field="email")
    return value


def normalize_ip(raw: Optional[str]) -> str:
    """Return the canonical address, or ``UNKNOWN_IP`` when it does not parse.

    IP limiting is best-effort: proxies and privacy tools legitimately hide
    the address, so an unusable value disables the dimension instead of
    rejecting the request.
    """
    value = (raw or "").strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    if not value:
        return UNKNOWN_IP
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return UNKNOWN_IP
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return addr.compressed


def normalize_client(raw: Optional[str]) -> str:
    value = (raw or "").strip()
    if not value:
        raise MalformedIdentifier("Client fingerprint must not be empty", field="client_fingerprint")
    return value[:MAX_CLIENT_FINGERPRINT_LENGTH]


def normalize(raw: Optional[str], dimension: Union[Dimension, str]) -> Identifier:
    """Canonicalize ``raw`` for ``dimension``.

    Raises MalformedIdentifier for a bad email or an empty client fingerprint.
    An unparsable IP never raises; it yields the ``unknown`` identifier.
    """
    dim = Dimension(dimension)
    if dim == Dimension.EMAIL:
        return Identifier(normalize_email(raw), dim)
    if dim == Dimension.IP:
        return Identifier(normalize_ip(raw), dim)
    return Identifier(normalize_client(raw), dim)


def try_normalize(raw: Optional[str], dimension: Union[Dimension, str]) -> Optional[Identifier]:
    """Like :func:`normalize` but returns None for absent or unusable soft signals."""
    try:
        ident = normalize(raw, dimension)
    except MalformedIdentifier:
        return None
    return ident if ident.is_resolvable else None


def require_identifier(raw: Optional[str], dimension: Union[Dimension, str]) -> Identifier:
    """Like :func:`normalize` but raises MalformedIdentifier for an unparsable IP.

    Used where an operator names an identifier explicitly, so the
    ``unknown`` placeholder can never be blocked or looked up.
    """
    ident = normalize(raw, dimension)
    if not ident.is_resolvable:
        raise MalformedIdentifier(f"Not a valid {ident.dimension.value} identifier", field="identifier")
    return ident


def resolve_client_ip(
    headers: Mapping[str, str],
    peer_host: Optional[str],
    *,
    trust_proxy: bool = True,
) -> Optional[str]:
    """Extract the client address, honouring reverse-proxy headers when trusted."""
    if trust_proxy:
        # Take the first IP in the chain (original client)
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first

        real_ip = headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()

    return peer_host or None


def mask_identifier(value: str, dimension: Union[Dimension, str]) -> str:
    """Mask an identifier for display and logs."""
    dim = Dimension(dimension)
    if dim == Dimension.EMAIL:
        local, sep, domain = value.partition("@")
        if sep and local and domain:
            return f"{local[:3]}***@{domain}"
        return value
    if dim == Dimension.IP:
        parts = value.split(".")
        if len(parts) == 4:
            return ".".join(parts[:3]) + ".***"
        segments = value.split(":")
        if len(segments) > 1:
            return ":".join(segments[:-1]) + ":***"
        return value
    return value[:16] + "..." if len(value) > 16 else value


__all__ = [
    "Identifier",
    "MAX_EMAIL_LENGTH",
    "UNKNOWN_IP",
    "mask_identifier",
    "normalize",
    "normalize_client",
    "require_identifier",
    "normalize_email",
    "normalize_ip",
    "resolve_client_ip",
    "try_normalize",
]
