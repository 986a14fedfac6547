"""
DHCP/BOOTP packet helpers on top of scapy.

scapy does the wire encoding; these helpers read the options we care
about and assemble server replies.
"""

import ipaddress
from typing import Any, Dict, Optional, Sequence, Tuple

from scapy.layers.dhcp import BOOTP, DHCP
from scapy.packet import Packet

DHCP_SERVER_PORT = 67
DHCP_CLIENT_PORT = 68

# DHCP message types
DHCP_DISCOVER = 1
DHCP_OFFER = 2
DHCP_REQUEST = 3
DHCP_DECLINE = 4
DHCP_ACK = 5
DHCP_NAK = 6
DHCP_RELEASE = 7
DHCP_INFORM = 8

MESSAGE_TYPE_NAMES = {
    DHCP_DISCOVER: "discover",
    DHCP_OFFER: "offer",
    DHCP_REQUEST: "request",
    DHCP_DECLINE: "decline",
    DHCP_ACK: "ack",
    DHCP_NAK: "nak",
    DHCP_RELEASE: "release",
    DHCP_INFORM: "inform",
}

# Client system architectures (option 93, RFC 4578)
ARCH_BIOS = 0
ARCH_EFI_X86_64 = (7, 9)

BIOS_BOOT_FILE = "undionly.kpxe"
EFI_BOOT_FILE = "ipxe.efi"

BROADCAST_FLAG = 0x8000
PXE_VENDOR_CLASS = b"PXEClient"
IPXE_USER_CLASS = b"iPXE"


def parse_packet(data: bytes) -> Optional[Packet]:
    """Decode a UDP payload. Returns None unless it is a BOOTP request carrying DHCP options."""
    if len(data) < 240:
        return None
    packet = BOOTP(data)
    if packet.op != 1 or not packet.haslayer(DHCP):
        return None
    return packet


def options_of(packet: Packet) -> Dict[Any, Tuple[Any, ...]]:
    """Map option name (or code, for options scapy does not name) to its values."""
    options = {}
    if not packet.haslayer(DHCP):
        return options
    for option in packet[DHCP].options:
        if isinstance(option, tuple) and option:
            options[option[0]] = tuple(option[1:])
    return options


def first_option(options: Dict[Any, Tuple[Any, ...]], *names: Any, default: Any = None) -> Any:
    for name in names:
        values = options.get(name)
        if values:
            return values[0]
    return default


def message_type(packet: Packet) -> Optional[int]:
    value = first_option(options_of(packet), "message-type")
    if isinstance(value, str):
        for code, name in MESSAGE_TYPE_NAMES.items():
            if name == value:
                return code
        return None
    return value


def client_mac(packet: Packet) -> str:
    bootp = packet[BOOTP]
    hlen = bootp.hlen or 6
    return ":".join(f"{b:02x}" for b in bytes(bootp.chaddr)[:hlen])


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8", errors="ignore")
    if isinstance(value, (list, tuple)):
        return b"".join(_as_bytes(v) for v in value)
    return bytes(value)


def is_pxe_client(options: Dict[Any, Tuple[Any, ...]]) -> bool:
    return _as_bytes(first_option(options, "vendor_class_id", 60)).startswith(PXE_VENDOR_CLASS)


def is_ipxe_client(options: Dict[Any, Tuple[Any, ...]]) -> bool:
    return IPXE_USER_CLASS in _as_bytes(first_option(options, "user_class", 77))


def client_arch(options: Dict[Any, Tuple[Any, ...]]) -> int:
    value = first_option(options, "pxe_client_architecture", "client_arch", 93)
    if value is None:
        return ARCH_BIOS
    if isinstance(value, int):
        return value
    raw = _as_bytes(value)
    return int.from_bytes(raw[:2], "big") if raw else ARCH_BIOS


def select_boot_file(options: Dict[Any, Tuple[Any, ...]], boot_url: str) -> str:
    """
    Pick the file a client should load next.

    Firmware PXE loads an iPXE binary over TFTP; iPXE itself is sent to
    the HTTP boot script.
    """
    if is_ipxe_client(options):
        return f"{boot_url}/boot.ipxe"
    if client_arch(options) in ARCH_EFI_X86_64:
        return EFI_BOOT_FILE
    return BIOS_BOOT_FILE


def build_reply(
    request: Packet,
    message_type: int,
    server_ip: ipaddress.IPv4Address,
    yiaddr: Optional[ipaddress.IPv4Address] = None,
    siaddr: Optional[ipaddress.IPv4Address] = None,
    boot_file: str = "",
    options: Sequence[Tuple[Any, ...]] = (),
) -> bytes:
    """Encode a BOOTREPLY answering request."""
    bootp = request[BOOTP]
    reply = BOOTP(
        op=2,
        htype=bootp.htype,
        hlen=bootp.hlen,
        xid=bootp.xid,
        flags=bootp.flags,
        ciaddr=bootp.ciaddr,
        yiaddr=str(yiaddr or "0.0.0.0"),
        siaddr=str(siaddr or "0.0.0.0"),
        giaddr=bootp.giaddr,
        chaddr=bootp.chaddr,
        file=boot_file.encode("ascii"),
    ) / DHCP(
        options=[
            ("message-type", message_type),
            ("server_id", str(server_ip)),
            *options,
            "end",
        ]
    )
    return bytes(reply)


def reply_destination(request: Packet, port: int = DHCP_CLIENT_PORT) -> Tuple[str, int]:
    """Where a reply to request goes: the relay, the client, or broadcast."""
    bootp = request[BOOTP]
    if bootp.giaddr and bootp.giaddr != "0.0.0.0":
        return bootp.giaddr, DHCP_SERVER_PORT
    if bootp.ciaddr and bootp.ciaddr != "0.0.0.0" and not bootp.flags & BROADCAST_FLAG:
        return bootp.ciaddr, port
    return "255.255.255.255", port
