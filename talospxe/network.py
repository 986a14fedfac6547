"""
Host network interface inspection and configuration.

Interfaces are listed with netifaces and configured by running the
iproute2 ``ip`` command.
"""

import asyncio
import ipaddress
from typing import List

import structlog

from talospxe.errors import InterfaceError

logger = structlog.get_logger()

# Returned by iproute2 when the address or route is already in place.
ALREADY_EXISTS = "File exists"


def list_valid_interfaces() -> List[str]:
    """
    Interfaces usable for provisioning: non-loopback with a hardware address.

    Raises:
        InterfaceError: no such interface exists.
    """
    import netifaces

    valid = []
    for name in netifaces.interfaces():
        addrs = netifaces.ifaddresses(name)
        inet = addrs.get(netifaces.AF_INET, [])
        if any(ipaddress.IPv4Address(a["addr"]).is_loopback for a in inet if "addr" in a):
            continue
        links = addrs.get(netifaces.AF_LINK, [])
        if not any(a.get("addr") and a["addr"] != "00:00:00:00:00:00" for a in links):
            continue
        valid.append(name)

    if not valid:
        raise InterfaceError("Could not find any non-loopback interfaces")
    return valid


async def _ip(*args: str) -> None:
    """
    Run one iproute2 command. "File exists" counts as success.

    Raises:
        InterfaceError: ip is missing or the command failed.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            "ip", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise InterfaceError("ip command not found, install iproute2") from e

    _, stderr = await process.communicate()
    message = stderr.decode("utf-8", errors="ignore").strip()

    if process.returncode == 0:
        return
    if ALREADY_EXISTS in message:
        logger.debug("ip_command_already_applied", args=list(args))
        return
    raise InterfaceError(f"ip {' '.join(args)} failed: {message or process.returncode}")


async def set_link_up(interface: str):
    await _ip("link", "set", "dev", interface, "up")
    logger.info("interface_up", interface=interface)


async def set_address(interface: str, address: ipaddress.IPv4Interface):
    """Assign address to interface. An address that is already assigned is accepted."""
    await _ip("addr", "add", str(address), "dev", interface)
    logger.info("interface_address_set", interface=interface, address=str(address))


async def set_default_gateway(interface: str, gateway: ipaddress.IPv4Address):
    await _ip("route", "add", "default", "via", str(gateway), "dev", interface)
    logger.info("default_gateway_set", interface=interface, gateway=str(gateway))
