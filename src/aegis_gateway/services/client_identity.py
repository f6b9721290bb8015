"""Client identity resolution through untrusted proxies."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from dataclasses import dataclass

from starlette.requests import Request

UNKNOWN_IP = "unknown"
FORWARDED_FOR_HEADER = "x-forwarded-for"
FORWARDED_PROTO_HEADER = "x-forwarded-proto"
_MAPPED_PREFIX = "::ffff:"


@dataclass(frozen=True)
class ClientIdentity:
    """Client address derived for a single request. Never persisted."""

    ip: str
    via_trusted_proxy: bool = False


def normalize_ip(value: str | None) -> str | None:
    """Return the canonical text form of ``value`` or None if it is not an IP.

    The IPv4-mapped IPv6 prefix is stripped so ``::ffff:192.0.2.1`` and
    ``192.0.2.1`` compare equal.
    """
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    if candidate.lower().startswith(_MAPPED_PREFIX):
        candidate = candidate[len(_MAPPED_PREFIX):]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return str(address.ipv4_mapped)
    return address.compressed


class ClientIdentityResolver:
    """Derive a trustworthy client IP from the peer address and forwarding header.

    The forwarding header is only believed when the connection peer is one of
    the configured trusted proxies; otherwise it is ignored entirely.
    """

    def __init__(self, trusted_proxies: Iterable[str] = ()) -> None:
        self._trusted = self._normalize_all(trusted_proxies)

    @staticmethod
    def _normalize_all(addresses: Iterable[str]) -> frozenset[str]:
        normalized = (normalize_ip(address) for address in addresses)
        return frozenset(address for address in normalized if address is not None)

    @property
    def trusted_proxies(self) -> frozenset[str]:
        return self._trusted

    def resolve(
        self,
        peer_ip: str | None,
        forwarded_for: str | None,
        trusted_proxies: Iterable[str] | None = None,
    ) -> ClientIdentity:
        """Resolve the client identity for one request.

        Args:
            peer_ip: Address of the immediate connection peer
            forwarded_for: Raw ``X-Forwarded-For`` header value, if any
            trusted_proxies: Overrides the configured proxy list for this call

        Returns:
            ClientIdentity with ``ip`` set to ``"unknown"`` when nothing usable
            was found
        """
        trusted = self._trusted if trusted_proxies is None else self._normalize_all(trusted_proxies)
        peer = normalize_ip(peer_ip)

        if peer is not None and peer in trusted and forwarded_for:
            left_most = forwarded_for.split(",")[0].strip()
            client = normalize_ip(left_most)
            if client is not None:
                return ClientIdentity(ip=client, via_trusted_proxy=True)

        if peer is not None:
            return ClientIdentity(ip=peer)
        # Non-IP peers (e.g. test transports) are kept verbatim rather than dropped.
        if peer_ip and peer_ip.strip():
            return ClientIdentity(ip=peer_ip.strip())
        return ClientIdentity(ip=UNKNOWN_IP)

    def resolve_request(self, request: Request) -> ClientIdentity:
        """Resolve the identity of a Starlette request."""
        peer_ip = request.client.host if request.client else None
        return self.resolve(peer_ip, request.headers.get(FORWARDED_FOR_HEADER))


def is_secure_request(request: Request, identity: ClientIdentity | None = None) -> bool:
    """Return True if the client reached us over HTTPS.

    ``X-Forwarded-Proto`` is only believed for requests that arrived through a
    trusted proxy, which typically terminates TLS and forwards plain HTTP.
    """
    if request.url.scheme == "https":
        return True
    if identity is None or not identity.via_trusted_proxy:
        return False
    proto = request.headers.get(FORWARDED_PROTO_HEADER, "")
    return proto.split(",")[0].strip().lower() == "https"
