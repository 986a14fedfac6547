"""
DHCP server on port 67.

In authoritative mode it leases addresses from the DHCP record store and
hands out PXE boot information with them. In proxy mode another server
owns the leases, and we only answer PXE clients with boot information.
"""

import ipaddress
from typing import Optional, Tuple

import structlog

from talospxe import dhcp, metrics
from talospxe.errors import PoolExhaustedError
from talospxe.models import AuthoritativeMode, HostBootConfig, ProxyMode
from talospxe.records import DHCPRecordStore
from talospxe.services.listener import DatagramListener, udp_socket

logger = structlog.get_logger()

Reply = Tuple[bytes, Tuple[str, int]]


class DHCPServer(DatagramListener):
    """Authoritative or proxy DHCP depending on the bootstrap mode."""

    name = "dhcp"

    def __init__(self, host: HostBootConfig, store: Optional[DHCPRecordStore] = None):
        super().__init__()
        self.host = host
        self.store = store
        if isinstance(host.mode, AuthoritativeMode) and store is None:
            self.store = DHCPRecordStore(host.mode.allocator, lease_time=host.lease_time)

    @property
    def address(self):
        return "0.0.0.0", self.host.dhcp_port

    def bind(self):
        # Clients without an address broadcast, so bind the wildcard on our interface only.
        self.sock = udp_socket(*self.address, broadcast=True, device=self.host.interface)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        try:
            reply = self.handle(data)
        except Exception as e:
            logger.error("dhcp_packet_error", client=addr[0], error=str(e))
            return
        if reply is not None:
            payload, destination = reply
            self.send(payload, destination)

    def handle(self, data: bytes) -> Optional[Reply]:
        """Reply (payload, destination) for one datagram, or None to stay silent."""
        packet = dhcp.parse_packet(data)
        if packet is None:
            return None

        if isinstance(self.host.mode, ProxyMode):
            return self._handle_proxy(packet)
        return self._handle_authoritative(packet)

    def _boot_options(self, options):
        return dhcp.select_boot_file(options, self.host.boot_url)

    def _reply(self, packet, message_type: int, yiaddr=None, boot_file: str = "", options=()) -> Reply:
        payload = dhcp.build_reply(
            packet,
            message_type,
            server_ip=self.host.ip,
            yiaddr=yiaddr,
            siaddr=self.host.ip,
            boot_file=boot_file,
            options=options,
        )
        metrics.dhcp_messages.labels(service=self.name, message_type=dhcp.MESSAGE_TYPE_NAMES[message_type]).inc()
        return payload, dhcp.reply_destination(packet)

    def _handle_proxy(self, packet) -> Optional[Reply]:
        options = dhcp.options_of(packet)
        if not dhcp.is_pxe_client(options) or dhcp.message_type(packet) != dhcp.DHCP_DISCOVER:
            return None

        mac = dhcp.client_mac(packet)
        boot_file = self._boot_options(options)
        logger.info("proxydhcp_discover", mac=mac, boot_file=boot_file)

        return self._reply(
            packet,
            dhcp.DHCP_OFFER,
            boot_file=boot_file,
            options=[("vendor_class_id", dhcp.PXE_VENDOR_CLASS)],
        )

    def _lease_options(self):
        mode: AuthoritativeMode = self.host.mode
        return [
            ("lease_time", self.store.lease_time),
            ("subnet_mask", str(mode.network.netmask)),
            ("router", str(self.host.gateway)),
            ("name_server", str(self.host.ip)),
        ]

    def _handle_authoritative(self, packet) -> Optional[Reply]:
        options = dhcp.options_of(packet)
        msg_type = dhcp.message_type(packet)
        mac = dhcp.client_mac(packet)
        requested = dhcp.first_option(options, "requested_addr")
        requested = ipaddress.IPv4Address(requested) if requested else None

        if msg_type == dhcp.DHCP_DISCOVER:
            try:
                ip = self.store.allocate(mac, requested=requested)
            except PoolExhaustedError as e:
                logger.warning("dhcp_pool_exhausted", mac=mac, error=str(e))
                return None
            logger.info("dhcp_offer", mac=mac, ip=str(ip))
            return self._reply(
                packet,
                dhcp.DHCP_OFFER,
                yiaddr=ip,
                boot_file=self._boot_options(options),
                options=self._lease_options(),
            )

        if msg_type == dhcp.DHCP_REQUEST:
            server_id = dhcp.first_option(options, "server_id")
            if server_id and ipaddress.IPv4Address(server_id) != self.host.ip:
                # client accepted another server's offer
                return None

            ciaddr = packet.ciaddr if packet.ciaddr != "0.0.0.0" else None
            wanted = requested or (ipaddress.IPv4Address(ciaddr) if ciaddr else None)

            record = self.store.lookup(mac)
            if record is not None and wanted not in (None, record.ip):
                logger.info("dhcp_nak", mac=mac, requested=str(wanted), leased=str(record.ip))
                return self._reply(packet, dhcp.DHCP_NAK)

            try:
                ip = self.store.allocate(mac, requested=wanted)
            except PoolExhaustedError:
                logger.warning("dhcp_nak_pool_exhausted", mac=mac)
                return self._reply(packet, dhcp.DHCP_NAK)

            if wanted is not None and ip != wanted:
                self.store.release(ip)
                logger.info("dhcp_nak", mac=mac, requested=str(wanted))
                return self._reply(packet, dhcp.DHCP_NAK)

            logger.info("dhcp_ack", mac=mac, ip=str(ip))
            return self._reply(
                packet,
                dhcp.DHCP_ACK,
                yiaddr=ip,
                boot_file=self._boot_options(options),
                options=self._lease_options(),
            )

        if msg_type == dhcp.DHCP_RELEASE:
            record = self.store.lookup(mac)
            if record is not None:
                self.store.release(record.ip)
            return None

        if msg_type == dhcp.DHCP_DECLINE:
            logger.warning("dhcp_decline", mac=mac, ip=str(requested))
            return None

        return None
