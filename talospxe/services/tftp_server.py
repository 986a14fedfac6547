"""
TFTP server for serving iPXE boot binaries.

Serves undionly.kpxe (BIOS) and ipxe.efi (UEFI) read-only from the TFTP root.
"""

import asyncio
import os
from pathlib import Path
from typing import Tuple

import structlog
from py3tftp.file_io import FileReader
from py3tftp.netascii import Netascii
from py3tftp.protocols import TFTPServerProtocol

from talospxe import dhcp
from talospxe.models import HostBootConfig
from talospxe.services.listener import DatagramListener, udp_socket

logger = structlog.get_logger()

TFTP_OPTIONS = {b"ack_timeout": 0.5, b"conn_timeout": 3.0}


def resolve_path(root: str, fname) -> Path:
    """
    Map a requested file name onto root.

    Raises:
        FileNotFoundError: the name escapes root.
    """
    name = os.fsdecode(fname).replace("\\", "/").lstrip("/")
    base = Path(root).resolve()
    path = (base / name).resolve()
    if path != base and base not in path.parents:
        raise FileNotFoundError(name)
    return path


class RootedFileReader(FileReader):
    """FileReader serving from a fixed root instead of the working directory."""

    def __init__(self, root: str, fname, chunk_size=0, mode=None):
        self._f = None
        self.fname = resolve_path(root, fname)
        self.chunk_size = chunk_size
        self._f = open(self.fname, "rb")
        self.finished = False

        if mode == b"netascii":
            self._f = Netascii(self._f)


def _refuse_write(filename, opts):
    raise PermissionError(f"write refused: {os.fsdecode(filename)}")


class RootedTFTPProtocol(TFTPServerProtocol):
    """Read-only TFTPServerProtocol bound to a root directory."""

    def __init__(self, root: str, host_interface: str, loop, extra_opts):
        super().__init__(host_interface, loop, extra_opts)
        self.root = root

    def select_file_handler(self, packet):
        if packet.is_wrq():
            return _refuse_write
        return lambda filename, opts: RootedFileReader(self.root, filename, opts, packet.mode)


class TFTPServer(DatagramListener):
    """TFTP server for iPXE binaries."""

    name = "tftp"

    def __init__(self, host: HostBootConfig):
        super().__init__()
        self.host = host

    @property
    def address(self) -> Tuple[str, int]:
        return str(self.host.ip), self.host.tftp_port

    def bind(self):
        self.sock = udp_socket(*self.address)

    def protocol_factory(self):
        return RootedTFTPProtocol(
            self.host.tftp_root,
            str(self.host.ip),
            asyncio.get_running_loop(),
            TFTP_OPTIONS,
        )

    async def start(self):
        """Start TFTP server."""
        # Verify TFTP root exists
        tftp_root = Path(self.host.tftp_root)
        if not tftp_root.exists():
            logger.error("tftp_root_not_found", path=str(tftp_root))
            raise FileNotFoundError(f"TFTP root not found: {tftp_root}")

        # Check for required files
        for filename in (dhcp.BIOS_BOOT_FILE, dhcp.EFI_BOOT_FILE):
            file_path = tftp_root / filename
            if not file_path.exists():
                logger.warning("tftp_file_missing", file=filename)
            else:
                logger.info("tftp_file_found", file=filename, size=file_path.stat().st_size)

        await super().start()
