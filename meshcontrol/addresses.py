"""IP prefix handling and address allocation."""

from __future__ import annotations

import ipaddress
from typing import Container, Iterable, Union

from .keys import HeadscaleError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]


class CouldNotAllocateIP(HeadscaleError):
    """No free address is left in a prefix."""

    def __init__(self, message: str = "could not find any suitable IP") -> None:
        super().__init__(message)


def _network(prefix: str | IPNetwork | IPInterface) -> IPNetwork:
    if isinstance(prefix, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return prefix.network
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    return ipaddress.ip_network(prefix, strict=False)


def get_ip_prefix_endpoints(prefix: str | IPNetwork | IPInterface) -> tuple[IPAddress, IPAddress]:
    """Return the first and last address covered by a prefix."""
    network = _network(prefix)
    return network.network_address, network.broadcast_address


def parse_machine_addresses(value: str | bytes | None) -> list[IPAddress]:
    """Parse a comma-separated stored address list; raise ValueError if malformed."""
    if value is None:
        return []
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return [ipaddress.ip_address(part) for part in value.split(",") if part]


def used_ips(address_rows: Iterable[str | bytes | None]) -> frozenset[IPAddress]:
    """Collect every address recorded in the stored address lists."""
    used: set[IPAddress] = set()
    for row in address_rows:
        try:
            used.update(parse_machine_addresses(row))
        except ValueError as err:
            raise ValueError(f"failed to read ip from database: {err}") from err
    return frozenset(used)


def get_available_ip(
    prefix: str | IPNetwork | IPInterface, used: Container[IPAddress]
) -> IPAddress:
    """Return the lowest free host address in a prefix."""
    network = _network(prefix)
    broadcast = network.broadcast_address
    ip = network.network_address
    while True:
        try:
            ip = ip + 1
        except ipaddress.AddressValueError as err:
            raise CouldNotAllocateIP() from err
        if ip not in network:
            raise CouldNotAllocateIP()
        if ip == broadcast or ip in used or ip.is_loopback:
            continue
        return ip


def get_available_ips(
    prefixes: Iterable[str | IPNetwork | IPInterface], used: Container[IPAddress]
) -> list[IPAddress]:
    """Return one free address from each prefix."""
    return [get_available_ip(prefix, used) for prefix in prefixes]


def ip_prefix_to_string(prefixes: Iterable[IPInterface | IPNetwork]) -> list[str]:
    return [str(prefix) for prefix in prefixes]


def string_to_ip_prefix(prefixes: Iterable[str]) -> list[IPInterface]:
    """Parse prefixes written as address/bits, keeping any host bits."""
    result = []
    for text in prefixes:
        address, sep, bits = text.partition("/")
        if not sep or not address or not bits.isdigit():
            raise ValueError(f"invalid prefix: {text!r}")
        result.append(ipaddress.ip_interface(text))
    return result