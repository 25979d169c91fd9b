"""NAT traversal provider interface and private address detection."""

from __future__ import annotations

import ipaddress
from abc import ABC, abstractmethod

_PRIVATE_BLOCKS = tuple(
    ipaddress.ip_network(block)
    for block in (
        "127.0.0.0/8",
        "::1/128",
        "fe80::/10",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
    )
)


class Provider(ABC):
    """A NAT traversal protocol able to forward ports."""

    @abstractmethod
    def external_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        """Public IP address of the gateway."""

    @abstractmethod
    def add_mapping(
        self, protocol: str, external_port: int, internal_port: int, expiry: float
    ) -> None:
        """Forward ``external_port`` to ``internal_port`` for ``expiry`` seconds."""

    @abstractmethod
    def delete_mapping(self, protocol: str, external_port: int, internal_port: int) -> None:
        """Remove a forwarding set up by add_mapping."""


def is_private_ip(ip) -> bool:
    """Whether ``ip`` (text or address object) lies within a private range."""
    if ip is None:
        return False
    if isinstance(ip, str):
        try:
            ip = ipaddress.ip_address(ip)
        except ValueError:
            return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == block.version and ip in block for block in _PRIVATE_BLOCKS)