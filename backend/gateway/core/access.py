"""Shared-token and source-address checks applied to inbound requests."""

from __future__ import annotations

import ipaddress
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_LOOPBACK_V6 = ipaddress.IPv6Address("::1")
_LOOPBACK_V4 = ipaddress.IPv4Address("127.0.0.1")


def parse_address(raw: str | None) -> IPAddress | None:
    """Return the parsed address for *raw*, or ``None`` when it is not an IP.

    IPv4-mapped IPv6 addresses collapse to their IPv4 form so that a dual-stack
    listener reporting ``::ffff:10.0.0.5`` matches an ``10.0.0.5`` entry.
    """

    if raw is None:
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    candidate = candidate.split()[0].strip("[]")
    # ipaddress cannot parse zone identifiers such as "fe80::1%eth0".
    if "%" in candidate:
        candidate = candidate.split("%", 1)[0]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


@dataclass(frozen=True, slots=True)
class LiteralAddress:
    """Allowlist entry matching exactly one address."""

    address: IPAddress

    def matches(self, ip: IPAddress) -> bool:
        if ip == self.address:
            return True
        # Loopback over IPv6 is treated as 127.0.0.1.
        return ip == _LOOPBACK_V6 and self.address == _LOOPBACK_V4

    def __str__(self) -> str:
        return str(self.address)


@dataclass(frozen=True, slots=True)
class CidrBlock:
    """Allowlist entry matching every address inside a network."""

    network: IPNetwork

    def matches(self, ip: IPAddress) -> bool:
        if ip.version != self.network.version:
            if ip == _LOOPBACK_V6:
                return _LOOPBACK_V4 in self.network
            return False
        return ip in self.network

    def __str__(self) -> str:
        return str(self.network)


AllowlistEntry = Union[LiteralAddress, CidrBlock]


def parse_allowlist_entry(raw: str) -> AllowlistEntry:
    """Parse a literal IP or CIDR string; raise ``ValueError`` when malformed."""

    text = raw.strip()
    if not text:
        raise ValueError("allowlist entries must not be empty")
    if "/" in text:
        try:
            return CidrBlock(ipaddress.ip_network(text, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid CIDR allowlist entry: {raw!r}") from exc
    address = parse_address(text)
    if address is None:
        raise ValueError(f"invalid IP allowlist entry: {raw!r}")
    return LiteralAddress(address)


class DenyReason(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Result of :meth:`AccessGuard.authorize`; ``reason`` is set when denied."""

    allowed: bool
    reason: DenyReason | None = None
    message: str = ""

    @classmethod
    def authorized(cls) -> "AccessDecision":
        return cls(True)

    @classmethod
    def denied(cls, reason: DenyReason, message: str) -> "AccessDecision":
        return cls(False, reason, message)


def extract_credential(headers: Mapping[str, str]) -> str | None:
    """Return the presented gateway token from ``Authorization`` or ``X-Gateway-Token``."""

    auth = headers.get("authorization")
    if auth:
        scheme, _, value = auth.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    token = headers.get("x-gateway-token")
    if token and token.strip():
        return token.strip()
    return None


class AccessGuard:
    """Pure predicate over (credential, source address) and the gateway config."""

    def __init__(self, *, token: str | None, allowlist: Iterable[str]) -> None:
        self._token = token or None
        self._entries: tuple[AllowlistEntry, ...] = tuple(
            parse_allowlist_entry(raw) for raw in allowlist
        )

    @property
    def entries(self) -> tuple[AllowlistEntry, ...]:
        return self._entries

    @property
    def open_mode(self) -> bool:
        return self._token is None

    def is_allowed(self, client_ip: str | None) -> bool:
        address = parse_address(client_ip)
        if address is None:
            return False
        return any(entry.matches(address) for entry in self._entries)

    def token_matches(self, credential: str | None) -> bool:
        if self._token is None:
            return True
        if not credential:
            return False
        return secrets.compare_digest(credential.encode(), self._token.encode())

    def authorize(self, *, credential: str | None, client_ip: str | None) -> AccessDecision:
        # Allowlist first: a caller outside it gets 403 whatever token it sends.
        if not self.is_allowed(client_ip):
            return AccessDecision.denied(DenyReason.FORBIDDEN, "IP not allowed")
        if not self.token_matches(credential):
            message = "Missing gateway token" if not credential else "Invalid gateway token"
            return AccessDecision.denied(DenyReason.UNAUTHORIZED, message)
        return AccessDecision.authorized()
