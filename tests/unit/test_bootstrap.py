"""Unit tests for bootstrap mode selection.

The DHCP client and the ip commands are replaced, so no packets are sent
and no interface is touched.
"""

import ipaddress
from unittest.mock import AsyncMock

import pytest
from scapy.layers.dhcp import BOOTP, DHCP

from talospxe import bootstrap, network
from talospxe.bootstrap import BootstrapSelector, lease_from_ack
from talospxe.config import BootConfig
from talospxe.errors import InterfaceError, InvalidPrefixError
from talospxe.models import AuthoritativeMode, DhcpLease, ProxyMode

LEASE = DhcpLease(
    address=ipaddress.IPv4Address("10.0.0.50"),
    netmask=ipaddress.IPv4Address("255.255.255.0"),
    routers=(ipaddress.IPv4Address("10.0.0.1"),),
    dns_servers=(ipaddress.IPv4Address("10.0.0.2"),),
    server_id=ipaddress.IPv4Address("10.0.0.1"),
)


@pytest.fixture
def fake_network(monkeypatch):
    """Replace interface configuration with mocks."""
    mocks = {
        "set_link_up": AsyncMock(),
        "set_address": AsyncMock(),
        "set_default_gateway": AsyncMock(),
    }
    for name, mock in mocks.items():
        monkeypatch.setattr(network, name, mock)
    monkeypatch.setattr(network, "list_valid_interfaces", lambda: ["eth0"])
    return mocks


def boot_config(tmp_path, **overrides):
    settings = dict(
        server_root=str(tmp_path),
        interface="eth0",
        static_cidr="192.168.123.1/24",
        tftp_root=str(tmp_path / "tftp"),
        dhcp_client_timeout=0.1,
    )
    settings.update(overrides)
    return BootConfig(**settings)


def lease_result(lease):
    def negotiate(interface, timeout, hostname=None):
        return lease
    return negotiate


class TestBootstrapSelector:
    """Tests for BootstrapSelector.select()."""

    @pytest.mark.asyncio
    async def test_lease_selects_proxy_mode(self, tmp_path, monkeypatch, fake_network):
        monkeypatch.setattr(bootstrap, "negotiate_lease", lease_result(LEASE))

        host = await BootstrapSelector(boot_config(tmp_path)).select()

        assert host.proxy
        assert isinstance(host.mode, ProxyMode)
        assert host.mode.network == ipaddress.IPv4Network("10.0.0.0/24")
        assert host.ip == ipaddress.IPv4Address("10.0.0.50")
        assert host.gateway == ipaddress.IPv4Address("10.0.0.1")
        assert host.forwarders == ("10.0.0.2:53",)

        fake_network["set_link_up"].assert_awaited_once_with("eth0")
        fake_network["set_address"].assert_awaited_once_with("eth0", ipaddress.IPv4Interface("10.0.0.50/24"))
        fake_network["set_default_gateway"].assert_awaited_once_with("eth0", ipaddress.IPv4Address("10.0.0.1"))

    @pytest.mark.asyncio
    async def test_no_lease_selects_authoritative_mode(self, tmp_path, monkeypatch, fake_network):
        monkeypatch.setattr(bootstrap, "negotiate_lease", lease_result(None))

        host = await BootstrapSelector(boot_config(tmp_path)).select()

        assert not host.proxy
        assert isinstance(host.mode, AuthoritativeMode)
        assert host.ip == ipaddress.IPv4Address("192.168.123.1")
        assert host.gateway == host.ip
        assert host.forwarders == ("1.1.1.1:53",)
        assert str(host.mode.address_range) == "192.168.123.2 - 192.168.123.254"
        assert host.mode.allocator.allocate() == ipaddress.IPv4Address("192.168.123.2")

        fake_network["set_address"].assert_awaited_once_with("eth0", ipaddress.IPv4Interface("192.168.123.1/24"))
        fake_network["set_default_gateway"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_failure_selects_authoritative_mode(self, tmp_path, monkeypatch, fake_network):
        def negotiate(interface, timeout, hostname=None):
            raise OSError("Operation not permitted")

        monkeypatch.setattr(bootstrap, "negotiate_lease", negotiate)

        host = await BootstrapSelector(boot_config(tmp_path)).select()
        assert isinstance(host.mode, AuthoritativeMode)

    @pytest.mark.asyncio
    async def test_overrides_win(self, tmp_path, monkeypatch, fake_network):
        monkeypatch.setattr(bootstrap, "negotiate_lease", lease_result(LEASE))
        config = boot_config(tmp_path, gateway_override="10.0.0.254", dns_override="9.9.9.9:53")

        host = await BootstrapSelector(config).select()

        assert host.gateway == ipaddress.IPv4Address("10.0.0.254")
        assert host.forwarders == ("9.9.9.9:53",)

    @pytest.mark.asyncio
    async def test_lease_without_router_or_dns(self, tmp_path, monkeypatch, fake_network):
        lease = DhcpLease(address=LEASE.address, netmask=LEASE.netmask)
        monkeypatch.setattr(bootstrap, "negotiate_lease", lease_result(lease))

        host = await BootstrapSelector(boot_config(tmp_path)).select()

        assert host.gateway == lease.address
        assert host.forwarders == ("1.1.1.1:53",)

    @pytest.mark.asyncio
    async def test_settings_carried_into_host(self, tmp_path, monkeypatch, fake_network):
        monkeypatch.setattr(bootstrap, "negotiate_lease", lease_result(None))
        config = boot_config(tmp_path, http_port=9080, dhcp_lease_time=600, controlplane="cp.lab.")

        host = await BootstrapSelector(config).select()

        assert host.http_port == 9080
        assert host.lease_time == 600
        assert host.controlplane == "cp.lab."
        assert host.tftp_root == str(tmp_path / "tftp")
        assert host.boot_url == "http://192.168.123.1:9080"

    @pytest.mark.asyncio
    async def test_unplannable_prefix(self, tmp_path, monkeypatch, fake_network):
        monkeypatch.setattr(bootstrap, "negotiate_lease", lease_result(None))

        with pytest.raises(InvalidPrefixError):
            await BootstrapSelector(boot_config(tmp_path, static_cidr="192.168.123.1/31")).select()

    @pytest.mark.asyncio
    async def test_no_interfaces(self, tmp_path, monkeypatch, fake_network):
        def no_interfaces():
            raise InterfaceError("Could not find any non-loopback interfaces")

        monkeypatch.setattr(network, "list_valid_interfaces", no_interfaces)

        with pytest.raises(InterfaceError):
            await BootstrapSelector(boot_config(tmp_path)).select()
        fake_network["set_link_up"].assert_not_awaited()


def test_lease_from_ack():
    ack = BOOTP(
        bytes(
            BOOTP(op=2, yiaddr="10.0.0.50")
            / DHCP(options=[
                ("message-type", "ack"),
                ("server_id", "10.0.0.1"),
                ("subnet_mask", "255.255.255.0"),
                ("router", "10.0.0.1"),
                ("name_server", "10.0.0.2"),
                "end",
            ])
        )
    )

    lease = lease_from_ack(ack)

    assert lease.address == ipaddress.IPv4Address("10.0.0.50")
    assert lease.interface == ipaddress.IPv4Interface("10.0.0.50/24")
    assert lease.routers == (ipaddress.IPv4Address("10.0.0.1"),)
    assert lease.dns_servers == (ipaddress.IPv4Address("10.0.0.2"),)
    assert lease.server_id == ipaddress.IPv4Address("10.0.0.1")
