"""
Bootstrap mode selection.

Tries to lease an address from an existing DHCP server. With a lease we
run as a PXE proxy next to that server; without one we take the static
address and become the subnet's DHCP authority.
"""

import asyncio
import ipaddress
import random
import socket
import time
from typing import Optional

import structlog
from scapy.arch import get_if_hwaddr
from scapy.config import conf
from scapy.error import Scapy_Exception
from scapy.layers.dhcp import BOOTP, DHCP
from scapy.layers.inet import IP, UDP
from scapy.layers.l2 import Ether
from scapy.sendrecv import srp1
from scapy.utils import mac2str

from talospxe import dhcp, network
from talospxe.config import DEFAULT_FORWARDER, BootConfig
from talospxe.ipam import BitmapAllocator, plan_range
from talospxe.models import AuthoritativeMode, DhcpLease, HostBootConfig, ProxyMode

logger = structlog.get_logger()

# subnet mask, router, DNS, domain name, broadcast, lease time, server id
PARAM_REQUEST_LIST = [1, 3, 6, 15, 28, 51, 54]


def _client_frame(mac: str, xid: int):
    return (
        Ether(src=mac, dst="ff:ff:ff:ff:ff:ff")
        / IP(src="0.0.0.0", dst="255.255.255.255")
        / UDP(sport=dhcp.DHCP_CLIENT_PORT, dport=dhcp.DHCP_SERVER_PORT)
        / BOOTP(chaddr=mac2str(mac), xid=xid, flags=dhcp.BROADCAST_FLAG)
    )


def lease_from_ack(packet) -> DhcpLease:
    """Build a DhcpLease from a DHCPACK."""
    options = dhcp.options_of(packet)
    routers = options.get("router", ())
    dns_servers = options.get("name_server", ())
    server_id = dhcp.first_option(options, "server_id")

    return DhcpLease(
        address=ipaddress.IPv4Address(packet[BOOTP].yiaddr),
        netmask=ipaddress.IPv4Address(dhcp.first_option(options, "subnet_mask", default="255.255.255.0")),
        routers=tuple(ipaddress.IPv4Address(r) for r in routers if r),
        dns_servers=tuple(ipaddress.IPv4Address(d) for d in dns_servers if d),
        server_id=ipaddress.IPv4Address(server_id) if server_id else None,
    )


def negotiate_lease(interface: str, timeout: float, hostname: Optional[str] = None) -> Optional[DhcpLease]:
    """
    Run DISCOVER/OFFER/REQUEST/ACK on interface within timeout seconds.

    Blocking. Every exchange is bounded by the time left, and scapy
    releases its socket when each exchange returns. Returns None when no
    server answers in time or the server declines.
    """
    deadline = time.monotonic() + timeout
    # Offers come from the server address, not the broadcast we sent to.
    conf.checkIPaddr = False

    mac = get_if_hwaddr(interface)
    xid = random.getrandbits(32)
    extra = [("hostname", hostname)] if hostname else []

    discover = _client_frame(mac, xid) / DHCP(
        options=[("message-type", "discover"), ("param_req_list", PARAM_REQUEST_LIST), *extra, "end"]
    )
    offer = srp1(discover, iface=interface, timeout=timeout, verbose=False)
    if offer is None or dhcp.message_type(offer) != dhcp.DHCP_OFFER:
        return None

    remaining = deadline - time.monotonic()
    if remaining <= 0:
        return None

    offered = offer[BOOTP].yiaddr
    server_id = dhcp.first_option(dhcp.options_of(offer), "server_id")
    logger.debug("dhcp_client_offer_received", offered=offered, server=server_id)

    request = _client_frame(mac, xid) / DHCP(
        options=[
            ("message-type", "request"),
            ("requested_addr", offered),
            ("server_id", server_id),
            ("param_req_list", PARAM_REQUEST_LIST),
            *extra,
            "end",
        ]
    )
    ack = srp1(request, iface=interface, timeout=remaining, verbose=False)
    if ack is None or dhcp.message_type(ack) != dhcp.DHCP_ACK:
        return None

    return lease_from_ack(ack)


class BootstrapSelector:
    """Brings the interface up and decides between proxy and authoritative mode."""

    def __init__(self, config: BootConfig):
        self.config = config

    async def obtain_lease(self) -> Optional[DhcpLease]:
        """Lease from an existing DHCP server, or None if there is none."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                negotiate_lease,
                self.config.interface,
                self.config.dhcp_client_timeout,
                socket.gethostname(),
            )
        except (OSError, Scapy_Exception) as e:
            logger.warning("dhcp_client_failed", interface=self.config.interface, error=str(e))
            return None

    async def _configure_proxy(self, lease: DhcpLease):
        logger.info("dhcp_lease_obtained", address=str(lease.address), netmask=str(lease.netmask))

        await network.set_address(self.config.interface, lease.interface)
        for router in lease.routers:
            logger.info("adding_default_gateway", gateway=str(router))
            await network.set_default_gateway(self.config.interface, router)

        forwarders = [f"{server}:53" for server in lease.dns_servers]
        for forwarder in forwarders:
            logger.info("adding_dns_forwarder", forwarder=forwarder)

        gateway = lease.routers[0] if lease.routers else lease.address
        return lease.address, gateway, forwarders, ProxyMode(network=lease.interface.network)

    async def _configure_authoritative(self):
        host = ipaddress.IPv4Interface(self.config.static_cidr)
        address_range = plan_range(host.network, host.ip)
        allocator = BitmapAllocator(address_range, reserved=[host.ip])

        logger.info(
            "authoritative_mode_selected",
            address=str(host.ip),
            network=str(host.network),
            range=str(address_range),
        )

        await network.set_address(self.config.interface, host)

        mode = AuthoritativeMode(network=host.network, address_range=address_range, allocator=allocator)
        return host.ip, host.ip, [], mode

    async def select(self) -> HostBootConfig:
        """
        Configure the interface and return the host configuration.

        Raises:
            InterfaceError: no usable interface, or it could not be configured.
            InvalidPrefixError: the static prefix cannot hold a client range.
        """
        interfaces = network.list_valid_interfaces()
        logger.info("valid_interfaces", interfaces=interfaces)
        logger.info("interface_selected", interface=self.config.interface)

        await network.set_link_up(self.config.interface)

        lease = await self.obtain_lease()
        if lease is not None:
            ip, gateway, forwarders, mode = await self._configure_proxy(lease)
        else:
            logger.info("no_dhcp_server_found", timeout=self.config.dhcp_client_timeout)
            ip, gateway, forwarders, mode = await self._configure_authoritative()

        if self.config.gateway_override:
            logger.info("gateway_overridden", gateway=self.config.gateway_override)
            gateway = ipaddress.IPv4Address(self.config.gateway_override)

        if self.config.dns_override:
            logger.info("dns_overridden", forwarder=self.config.dns_override)
            forwarders = [self.config.dns_override]

        return HostBootConfig(
            ip=ip,
            gateway=gateway,
            forwarders=tuple(forwarders or [DEFAULT_FORWARDER]),
            mode=mode,
            interface=self.config.interface,
            server_root=self.config.server_root,
            tftp_root=self.config.tftp_root or self.config.server_root,
            controlplane=self.config.controlplane,
            dns_port=self.config.dns_port,
            dhcp_port=self.config.dhcp_port,
            tftp_port=self.config.tftp_port,
            http_port=self.config.http_port,
            pxe_port=self.config.pxe_port,
            lease_time=self.config.dhcp_lease_time,
            dns_ttl=self.config.dns_ttl,
        )
