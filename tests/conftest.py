"""
talos-pxe Testing Framework - Global Test Configuration
Pytest fixtures shared by the unit tests
"""

import ipaddress
import json
from pathlib import Path

import pytest

from talospxe.ipam import BitmapAllocator, plan_range
from talospxe.models import AuthoritativeMode, HostBootConfig, ProxyMode
from talospxe.records import DNSRecordStore


def make_authoritative_host(cidr: str = "192.168.123.1/24", **overrides) -> HostBootConfig:
    host = ipaddress.IPv4Interface(cidr)
    address_range = plan_range(host.network, host.ip)
    mode = AuthoritativeMode(
        network=host.network,
        address_range=address_range,
        allocator=BitmapAllocator(address_range, reserved=[host.ip]),
    )
    settings = dict(
        ip=host.ip,
        gateway=host.ip,
        forwarders=("1.1.1.1:53",),
        mode=mode,
        interface="eth0",
        server_root=".",
        tftp_root=".",
        controlplane="controlplane.talos.",
    )
    settings.update(overrides)
    return HostBootConfig(**settings)


@pytest.fixture(scope='function')
def authoritative_host():
    """Host configured as the subnet's DHCP authority on 192.168.123.0/24."""
    return make_authoritative_host()


@pytest.fixture(scope='function')
def proxy_host():
    """Host running next to an existing DHCP server."""
    return HostBootConfig(
        ip=ipaddress.IPv4Address("10.0.0.10"),
        gateway=ipaddress.IPv4Address("10.0.0.1"),
        forwarders=("10.0.0.1:53",),
        mode=ProxyMode(network=ipaddress.IPv4Network("10.0.0.0/24")),
        interface="eth0",
        server_root=".",
        tftp_root=".",
        controlplane="controlplane.talos.",
    )


@pytest.fixture(scope='function')
def dns_store():
    """Empty DNS record store."""
    return DNSRecordStore()


@pytest.fixture(scope='function')
def server_root(tmp_path: Path) -> Path:
    """Server root with worker and controlplane groups, their profiles and one asset."""
    (tmp_path / "groups").mkdir()
    (tmp_path / "profiles").mkdir()
    (tmp_path / "assets").mkdir()

    groups = {
        "worker": {"id": "worker", "profile": "talos-worker", "selector": {"type": "worker"}},
        "controlplane": {"id": "controlplane", "profile": "talos-cp", "selector": {"type": "controlplane"}},
        "init": {"id": "init", "profile": "talos-cp", "selector": {"type": "init"}},
        "special-worker": {
            "id": "special-worker",
            "profile": "talos-special",
            "selector": {"type": "worker", "mac": "52:54:00:aa:bb:cc"},
        },
    }
    for name, group in groups.items():
        (tmp_path / "groups" / f"{name}.json").write_text(json.dumps(group))

    profiles = {
        "talos-worker": {
            "id": "talos-worker",
            "boot": {
                "kernel": "/assets/vmlinuz",
                "initrd": ["/assets/initramfs.xz"],
                "args": ["talos.platform=metal", "talos.config=http://192.168.123.1:8080/assets/worker.yaml"],
            },
        },
        "talos-cp": {
            "id": "talos-cp",
            "boot": {
                "kernel": "/assets/vmlinuz",
                "initrd": ["/assets/initramfs.xz"],
                "args": ["talos.platform=metal", "talos.config=http://192.168.123.1:8080/assets/controlplane.yaml"],
            },
        },
        "talos-special": {
            "id": "talos-special",
            "boot": {"kernel": "/assets/vmlinuz-special", "initrd": [], "args": []},
        },
    }
    for name, profile in profiles.items():
        (tmp_path / "profiles" / f"{name}.json").write_text(json.dumps(profile))

    (tmp_path / "assets" / "vmlinuz").write_bytes(b"\x7fKERNEL")
    return tmp_path


@pytest.fixture(scope='function')
def make_host():
    """Factory for authoritative hosts with overridden settings."""
    return make_authoritative_host
