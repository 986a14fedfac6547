"""
Data model shared by the bootstrap selector, the stores and the services.
"""

import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Tuple, Union
from urllib.parse import parse_qsl


@dataclass(frozen=True, slots=True)
class AddressRange:
    """Inclusive range of client-assignable IPv4 addresses."""

    first: ipaddress.IPv4Address
    last: ipaddress.IPv4Address

    def __post_init__(self):
        if self.first > self.last:
            raise ValueError(f"empty address range {self.first} - {self.last}")

    def __contains__(self, address: ipaddress.IPv4Address) -> bool:
        return self.first <= address <= self.last

    def __len__(self) -> int:
        return int(self.last) - int(self.first) + 1

    def __str__(self) -> str:
        return f"{self.first} - {self.last}"


@dataclass(frozen=True, slots=True)
class DhcpLease:
    """Lease obtained from an external DHCP server during bootstrap."""

    address: ipaddress.IPv4Address
    netmask: ipaddress.IPv4Address
    routers: Tuple[ipaddress.IPv4Address, ...] = ()
    dns_servers: Tuple[ipaddress.IPv4Address, ...] = ()
    server_id: Optional[ipaddress.IPv4Address] = None

    @property
    def interface(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface(f"{self.address}/{self.netmask}")


@dataclass(frozen=True, slots=True)
class ProxyMode:
    """Another DHCP server leases addresses; we only answer boot queries."""

    network: ipaddress.IPv4Network


@dataclass(frozen=True, slots=True)
class AuthoritativeMode:
    """We lease addresses ourselves out of address_range."""

    network: ipaddress.IPv4Network
    address_range: AddressRange
    # BitmapAllocator; only DHCPRecordStore touches it once serving starts
    allocator: Any = field(compare=False, repr=False)


BootMode = Union[ProxyMode, AuthoritativeMode]


@dataclass(frozen=True, slots=True)
class HostBootConfig:
    """Host configuration produced by bootstrap. Read-only for every listener."""

    ip: ipaddress.IPv4Address
    gateway: ipaddress.IPv4Address
    forwarders: Tuple[str, ...]
    mode: BootMode
    interface: str
    server_root: str
    tftp_root: str
    controlplane: str

    dns_port: int = 53
    dhcp_port: int = 67
    tftp_port: int = 69
    http_port: int = 8080
    pxe_port: int = 4011

    lease_time: int = 3600
    dns_ttl: int = 60

    @property
    def proxy(self) -> bool:
        return isinstance(self.mode, ProxyMode)

    @property
    def boot_url(self) -> str:
        return f"http://{self.ip}:{self.http_port}"


@dataclass(slots=True)
class DHCPRecord:
    """Lease held by one client."""

    ip: ipaddress.IPv4Address
    expires: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires


class BootType(str, enum.Enum):
    """Role a machine selected from the boot menu."""

    INIT = "init"
    CONTROLPLANE = "controlplane"
    WORKER = "worker"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BootType":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def elects_controlplane(self) -> bool:
        return self in (BootType.INIT, BootType.CONTROLPLANE)


@dataclass(frozen=True, slots=True)
class BootSelection:
    """Query parameters of one boot request."""

    uuid: str = ""
    mac: str = ""
    ip: str = ""
    hostname: str = ""
    serial: str = ""
    domain: str = ""
    type: BootType = BootType.UNKNOWN

    @classmethod
    def from_query(cls, query_string: Union[bytes, str]) -> "BootSelection":
        """
        Decode a raw query string.

        Raises:
            ValueError: malformed query string or non UTF-8 content.
        """
        if isinstance(query_string, bytes):
            query_string = query_string.decode("utf-8")
        if not query_string:
            return cls()

        params = dict(
            parse_qsl(query_string, keep_blank_values=True, strict_parsing=True, errors="strict")
        )
        return cls(
            uuid=params.get("uuid", ""),
            mac=params.get("mac", ""),
            ip=params.get("ip", ""),
            hostname=params.get("hostname", ""),
            serial=params.get("serial", ""),
            domain=params.get("domain", ""),
            type=BootType.parse(params.get("type")),
        )

    @property
    def address(self) -> Optional[ipaddress.IPv4Address]:
        """Announced client address, or None if absent or unparseable."""
        try:
            return ipaddress.IPv4Address(self.ip)
        except ValueError:
            return None
