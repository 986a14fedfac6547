"""
PXE boot server on port 4011.

After getting an address, PXE firmware asks the boot server directly for
its boot file. Answers never carry an address assignment.
"""

from typing import Optional, Tuple

import structlog

from talospxe import dhcp, metrics
from talospxe.models import HostBootConfig
from talospxe.services.listener import DatagramListener, udp_socket

logger = structlog.get_logger()


class PXEServer(DatagramListener):
    """ProxyDHCP boot server for PXE clients."""

    name = "pxe"

    def __init__(self, host: HostBootConfig):
        super().__init__()
        self.host = host

    @property
    def address(self):
        return str(self.host.ip), self.host.pxe_port

    def bind(self):
        self.sock = udp_socket(*self.address)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        try:
            payload = self.handle(data)
        except Exception as e:
            logger.error("pxe_packet_error", client=addr[0], error=str(e))
            return
        if payload is not None:
            # boot server replies go straight back to the sender
            self.send(payload, addr)

    def handle(self, data: bytes) -> Optional[bytes]:
        packet = dhcp.parse_packet(data)
        if packet is None:
            return None

        options = dhcp.options_of(packet)
        if not dhcp.is_pxe_client(options):
            return None
        if dhcp.message_type(packet) not in (dhcp.DHCP_REQUEST, dhcp.DHCP_INFORM):
            return None

        mac = dhcp.client_mac(packet)
        boot_file = dhcp.select_boot_file(options, self.host.boot_url)
        logger.info("pxe_boot_request", mac=mac, boot_file=boot_file, arch=dhcp.client_arch(options))

        metrics.dhcp_messages.labels(service=self.name, message_type="ack").inc()
        return dhcp.build_reply(
            packet,
            dhcp.DHCP_ACK,
            server_ip=self.host.ip,
            siaddr=self.host.ip,
            boot_file=boot_file,
            options=[("vendor_class_id", dhcp.PXE_VENDOR_CLASS)],
        )
