"""Network interface detection and lookup.

This module provides functionality for:
- Listing the interfaces that can carry proxy traffic
- Resolving an interface name to the address the listener should bind to
- Interface filtering

Each interface is described by:
- Interface name
- IPv4 and IPv6 addresses
- Interface status
- Wireless capability

Example:
    host = interface_address("wlan0")
    for iface in scan_interfaces():
        print(f"{iface.name}: {iface.ipv4 or iface.ipv6}")
"""

import os
import socket
from dataclasses import dataclass
from pathlib import Path

import psutil

VIRTUAL_PREFIXES = ("vmnet", "docker", "veth", "bridge", "utun")
WIRELESS_PREFIXES = ("wlan", "wifi", "wlp", "wl", "ap")


@dataclass
class NetworkInterface:
    """Network interface representation with its key properties.

    Attributes:
        name: Interface name (e.g., 'en0', 'eth0')
        ipv4: First IPv4 address assigned to the interface
        ipv6: First IPv6 address assigned to the interface
        is_up: Boolean indicating if the interface is up and running
        is_wireless: Boolean indicating if this is a wireless interface
    """

    name: str
    ipv4: str | None
    ipv6: str | None
    is_up: bool
    is_wireless: bool

    @property
    def is_loopback(self) -> bool:
        return self.name.startswith("lo") or (self.ipv4 or "").startswith("127.")


def _is_wireless(name: str) -> bool:
    if name.startswith(WIRELESS_PREFIXES):
        return True
    return os.name != "nt" and Path(f"/sys/class/net/{name}/wireless").exists()


def scan_interfaces(*, include_virtual: bool = False) -> list[NetworkInterface]:
    """List interfaces with at least one address, up interfaces first."""
    stats = psutil.net_if_stats()
    interfaces = []
    for name, addrs in psutil.net_if_addrs().items():
        if not include_virtual and name.startswith(VIRTUAL_PREFIXES):
            continue
        ipv4 = next((addr.address for addr in addrs if addr.family == socket.AF_INET), None)
        ipv6 = next(
            (addr.address.split("%", 1)[0] for addr in addrs if addr.family == socket.AF_INET6),
            None,
        )
        if not ipv4 and not ipv6:
            continue
        iface_stats = stats.get(name)
        interfaces.append(
            NetworkInterface(
                name=name,
                ipv4=ipv4,
                ipv6=ipv6,
                is_up=bool(iface_stats and iface_stats.isup),
                is_wireless=_is_wireless(name),
            )
        )
    return sorted(interfaces, key=lambda iface: (not iface.is_up, iface.is_loopback, iface.name))


def interface_address(name: str, *, ipv6: bool = False) -> str:
    """Return the address the listener should use for interface ``name``.

    Raises:
        ValueError: If the interface does not exist, is down or has no address
            of the requested family
    """
    for iface in scan_interfaces(include_virtual=True):
        if iface.name != name:
            continue
        if not iface.is_up:
            msg = f"interface {name} is down"
            raise ValueError(msg)
        address = iface.ipv6 if ipv6 else iface.ipv4
        if address is None:
            family = "IPv6" if ipv6 else "IPv4"
            msg = f"interface {name} has no {family} address"
            raise ValueError(msg)
        return address
    msg = f"no such interface: {name}"
    raise ValueError(msg)
