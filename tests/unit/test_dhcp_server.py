"""Unit tests for the DHCP and PXE boot servers.

Packets are built with scapy and fed straight to handle(); nothing is
sent on the network.
"""

import ipaddress

import pytest
from scapy.layers.dhcp import BOOTP, DHCP
from scapy.utils import mac2str

from talospxe import dhcp
from talospxe.services.dhcp_proxy import PXEServer
from talospxe.services.dhcp_server import DHCPServer

PXE_CLASS = b"PXEClient:Arch:00000:UNDI:002001"


def client_packet(message_type, mac="52:54:00:00:00:01", options=(), ciaddr="0.0.0.0", flags=dhcp.BROADCAST_FLAG):
    return bytes(
        BOOTP(op=1, chaddr=mac2str(mac), xid=0x1234, ciaddr=ciaddr, flags=flags)
        / DHCP(options=[("message-type", message_type), *options, "end"])
    )


def pxe_packet(message_type, **kwargs):
    options = [("vendor_class_id", PXE_CLASS), *kwargs.pop("options", ())]
    return client_packet(message_type, options=options, **kwargs)


def decode(payload):
    packet = BOOTP(payload)
    return packet, dhcp.options_of(packet)


class TestPacketHelpers:
    """Tests for the dhcp helper module."""

    def test_parse_rejects_short_and_reply_packets(self):
        assert dhcp.parse_packet(b"\x01" * 100) is None
        reply = bytes(BOOTP(op=2) / DHCP(options=[("message-type", "offer"), "end"]))
        assert dhcp.parse_packet(reply) is None

    def test_client_mac(self):
        packet = dhcp.parse_packet(client_packet("discover", mac="52:54:00:aa:bb:cc"))
        assert dhcp.client_mac(packet) == "52:54:00:aa:bb:cc"

    def test_message_type(self):
        packet = dhcp.parse_packet(client_packet("request"))
        assert dhcp.message_type(packet) == dhcp.DHCP_REQUEST

    @pytest.mark.parametrize("options,expected", [
        ({}, dhcp.BIOS_BOOT_FILE),
        ({"pxe_client_architecture": (0,)}, dhcp.BIOS_BOOT_FILE),
        ({"pxe_client_architecture": (7,)}, dhcp.EFI_BOOT_FILE),
        ({93: (b"\x00\x09",)}, dhcp.EFI_BOOT_FILE),
        ({"user_class": (b"iPXE",)}, "http://10.0.0.10:8080/boot.ipxe"),
    ])
    def test_select_boot_file(self, options, expected):
        assert dhcp.select_boot_file(options, "http://10.0.0.10:8080") == expected

    def test_pxe_client_detection(self):
        assert dhcp.is_pxe_client({"vendor_class_id": (PXE_CLASS,)})
        assert not dhcp.is_pxe_client({"vendor_class_id": (b"udhcp 1.36",)})
        assert not dhcp.is_pxe_client({})

    @pytest.mark.parametrize("giaddr,ciaddr,flags,expected", [
        ("10.1.0.1", "0.0.0.0", 0, ("10.1.0.1", 67)),
        ("0.0.0.0", "10.0.0.5", 0, ("10.0.0.5", 68)),
        ("0.0.0.0", "10.0.0.5", dhcp.BROADCAST_FLAG, ("255.255.255.255", 68)),
        ("0.0.0.0", "0.0.0.0", 0, ("255.255.255.255", 68)),
    ])
    def test_reply_destination(self, giaddr, ciaddr, flags, expected):
        packet = BOOTP(op=1, giaddr=giaddr, ciaddr=ciaddr, flags=flags)
        assert dhcp.reply_destination(packet) == expected


class TestProxyDHCP:
    """Tests for DHCPServer next to another DHCP server."""

    def test_pxe_discover_gets_boot_offer(self, proxy_host):
        server = DHCPServer(proxy_host)
        payload, destination = server.handle(pxe_packet("discover"))
        reply, options = decode(payload)

        assert destination == ("255.255.255.255", 68)
        assert reply.op == 2
        assert reply.xid == 0x1234
        assert reply.yiaddr == "0.0.0.0"
        assert reply.siaddr == "10.0.0.10"
        assert reply.file.rstrip(b"\x00") == b"undionly.kpxe"
        assert options["message-type"] == (dhcp.DHCP_OFFER,)
        assert dhcp.is_pxe_client(options)

    def test_ordinary_client_ignored(self, proxy_host):
        assert DHCPServer(proxy_host).handle(client_packet("discover")) is None

    def test_request_ignored(self, proxy_host):
        assert DHCPServer(proxy_host).handle(pxe_packet("request")) is None

    def test_no_store_in_proxy_mode(self, proxy_host):
        assert DHCPServer(proxy_host).store is None

    def test_garbage_ignored(self, proxy_host):
        assert DHCPServer(proxy_host).handle(b"\x00" * 300) is None


class TestAuthoritativeDHCP:
    """Tests for DHCPServer as the subnet's authority."""

    def test_discover_offers_first_free_address(self, authoritative_host):
        server = DHCPServer(authoritative_host)
        payload, destination = server.handle(pxe_packet("discover"))
        reply, options = decode(payload)

        assert destination == ("255.255.255.255", 68)
        assert reply.yiaddr == "192.168.123.2"
        assert options["message-type"] == (dhcp.DHCP_OFFER,)
        assert options["subnet_mask"] == ("255.255.255.0",)
        assert options["router"] == ("192.168.123.1",)
        assert options["name_server"] == ("192.168.123.1",)
        assert options["lease_time"] == (3600,)
        assert options["server_id"] == ("192.168.123.1",)
        assert reply.file.rstrip(b"\x00") == b"undionly.kpxe"

    def test_request_is_acknowledged(self, authoritative_host):
        server = DHCPServer(authoritative_host)
        server.handle(client_packet("discover"))

        payload, _ = server.handle(client_packet("request", options=[
            ("requested_addr", "192.168.123.2"),
            ("server_id", "192.168.123.1"),
        ]))
        reply, options = decode(payload)

        assert options["message-type"] == (dhcp.DHCP_ACK,)
        assert reply.yiaddr == "192.168.123.2"
        assert server.store.lookup("52:54:00:00:00:01").ip == ipaddress.IPv4Address("192.168.123.2")

    def test_request_for_other_address_is_refused(self, authoritative_host):
        server = DHCPServer(authoritative_host)
        server.handle(client_packet("discover"))

        payload, _ = server.handle(client_packet("request", options=[("requested_addr", "192.168.123.77")]))
        _, options = decode(payload)

        assert options["message-type"] == (dhcp.DHCP_NAK,)

    def test_request_for_other_server_is_ignored(self, authoritative_host):
        server = DHCPServer(authoritative_host)
        packet = client_packet("request", options=[
            ("requested_addr", "192.168.123.2"),
            ("server_id", "192.168.123.250"),
        ])
        assert server.handle(packet) is None

    def test_renewal_is_unicast(self, authoritative_host):
        server = DHCPServer(authoritative_host)
        server.handle(client_packet("discover"))
        server.handle(client_packet("request", options=[("requested_addr", "192.168.123.2")]))

        payload, destination = server.handle(client_packet("request", ciaddr="192.168.123.2", flags=0))
        reply, options = decode(payload)

        assert destination == ("192.168.123.2", 68)
        assert options["message-type"] == (dhcp.DHCP_ACK,)
        assert reply.yiaddr == "192.168.123.2"

    def test_clients_get_distinct_addresses(self, authoritative_host):
        server = DHCPServer(authoritative_host)
        first, _ = server.handle(client_packet("discover", mac="52:54:00:00:00:01"))
        second, _ = server.handle(client_packet("discover", mac="52:54:00:00:00:02"))
        assert decode(first)[0].yiaddr != decode(second)[0].yiaddr

    def test_exhausted_pool_stays_silent(self, make_host):
        server = DHCPServer(make_host("10.0.0.1/30"))
        assert server.handle(client_packet("discover", mac="52:54:00:00:00:01")) is not None
        assert server.handle(client_packet("discover", mac="52:54:00:00:00:02")) is None

    def test_release_frees_address(self, make_host):
        server = DHCPServer(make_host("10.0.0.1/30"))
        server.handle(client_packet("discover", mac="52:54:00:00:00:01"))
        server.handle(client_packet("release", mac="52:54:00:00:00:01", ciaddr="10.0.0.2"))

        payload, _ = server.handle(client_packet("discover", mac="52:54:00:00:00:02"))
        assert decode(payload)[0].yiaddr == "10.0.0.2"


class TestPXEServer:
    """Tests for the port 4011 boot server."""

    def test_address(self, proxy_host):
        assert PXEServer(proxy_host).address == ("10.0.0.10", 4011)

    def test_pxe_request_gets_boot_file(self, proxy_host):
        payload = PXEServer(proxy_host).handle(pxe_packet("request", ciaddr="10.0.0.60", flags=0))
        reply, options = decode(payload)

        assert options["message-type"] == (dhcp.DHCP_ACK,)
        assert reply.yiaddr == "0.0.0.0"
        assert reply.siaddr == "10.0.0.10"
        assert reply.file.rstrip(b"\x00") == b"undionly.kpxe"
        assert dhcp.is_pxe_client(options)

    def test_discover_ignored(self, proxy_host):
        assert PXEServer(proxy_host).handle(pxe_packet("discover")) is None

    def test_non_pxe_request_ignored(self, proxy_host):
        assert PXEServer(proxy_host).handle(client_packet("request")) is None
