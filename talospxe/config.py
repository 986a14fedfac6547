"""
Configuration management for talos-pxe.

Loads configuration from environment variables with validation.
"""

import ipaddress
import os
from dataclasses import dataclass
from typing import Optional
from decouple import config

DEFAULT_CONTROLPLANE = "controlplane.talos."
DEFAULT_FORWARDER = "1.1.1.1:53"


def normalize_forwarder(value: str) -> str:
    """Return host:port for a forwarder given as host or host:port."""
    host, _, port = value.strip().rpartition(":")
    if not host:
        host, port = port, "53"
    ipaddress.IPv4Address(host)
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Invalid forwarder port in {value!r}")
    return f"{host}:{port}"


@dataclass(slots=True)
class BootConfig:
    """Process configuration, read once at startup."""

    server_root: str
    interface: str
    static_cidr: str
    controlplane: str = DEFAULT_CONTROLPLANE
    gateway_override: Optional[str] = None
    dns_override: Optional[str] = None
    tftp_root: Optional[str] = None

    # Bootstrap DHCP client
    dhcp_client_timeout: float = 10.0

    # Authoritative DHCP / local DNS
    dhcp_lease_time: int = 3600
    dns_ttl: int = 60

    # Ports are fixed by client firmware; overridable for testing only
    dns_port: int = 53
    dhcp_port: int = 67
    tftp_port: int = 69
    http_port: int = 8080
    pxe_port: int = 4011

    # Logging
    log_level: str = "INFO"

    # Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @classmethod
    def from_env(cls) -> "BootConfig":
        """Load configuration from environment variables."""

        server_root = config("SERVER_ROOT", default=".")
        interface = config("INTERFACE", default="eth0")

        static_cidr = config("STATIC_CIDR", default="192.168.123.1/24")
        try:
            ipaddress.IPv4Interface(static_cidr)
        except ValueError as e:
            raise ValueError(f"Invalid STATIC_CIDR: {static_cidr}. {e}") from e

        gateway_override = config("GATEWAY", default=None) or None
        if gateway_override:
            try:
                ipaddress.IPv4Address(gateway_override)
            except ValueError as e:
                raise ValueError(f"Invalid GATEWAY: {gateway_override}") from e

        dns_override = config("DNS", default=None) or None
        if dns_override:
            try:
                dns_override = normalize_forwarder(dns_override)
            except ValueError as e:
                raise ValueError(f"Invalid DNS: {dns_override}") from e

        controlplane = config("CONTROLPLANE", default=DEFAULT_CONTROLPLANE)
        if not controlplane.endswith("."):
            controlplane += "."

        tftp_root = config("TFTP_ROOT", default=os.path.join(server_root, "tftp"))

        return cls(
            server_root=server_root,
            interface=interface,
            static_cidr=static_cidr,
            controlplane=controlplane.lower(),
            gateway_override=gateway_override,
            dns_override=dns_override,
            tftp_root=tftp_root,
            dhcp_client_timeout=config("DHCP_CLIENT_TIMEOUT", default=10.0, cast=float),
            dhcp_lease_time=config("DHCP_LEASE_TIME", default=3600, cast=int),
            dns_ttl=config("DNS_TTL", default=60, cast=int),
            dns_port=config("DNS_PORT", default=53, cast=int),
            dhcp_port=config("DHCP_PORT", default=67, cast=int),
            tftp_port=config("TFTP_PORT", default=69, cast=int),
            http_port=config("HTTP_PORT", default=8080, cast=int),
            pxe_port=config("PXE_PORT", default=4011, cast=int),
            log_level=config("LOG_LEVEL", default="INFO"),
            metrics_enabled=config("METRICS_ENABLED", default=True, cast=bool),
            metrics_port=config("METRICS_PORT", default=9090, cast=int),
        )
