"""
Socket-owning service loops run by the supervisor.

A listener binds its socket in bind(), before any loop starts, and serves
on it in start() until cancelled.
"""

import asyncio
import socket
from typing import Optional, Tuple

import structlog

logger = structlog.get_logger()


def udp_socket(host: str, port: int, broadcast: bool = False, device: Optional[str] = None) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        if device and hasattr(socket, "SO_BINDTODEVICE"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, device.encode())
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


def tcp_socket(host: str, port: int, backlog: int = 128) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


class Listener:
    """Base for the five service loops."""

    name = "listener"

    def __init__(self):
        self.sock: Optional[socket.socket] = None
        self.running = False

    @property
    def address(self) -> Tuple[str, int]:
        raise NotImplementedError

    def bind(self):
        raise NotImplementedError

    async def start(self):
        raise NotImplementedError

    def close(self):
        """Release the socket. Used when a sibling listener fails to bind."""
        if self.sock is not None:
            self.sock.close()
            self.sock = None


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: "DatagramListener"):
        self.listener = listener

    def connection_made(self, transport):
        self.listener.transport = transport

    def datagram_received(self, data, addr):
        self.listener.datagram_received(data, addr)

    def error_received(self, exc):
        logger.warning("datagram_error", listener=self.listener.name, error=str(exc))


class DatagramListener(Listener):
    """UDP listener dispatching each datagram to datagram_received()."""

    def __init__(self):
        super().__init__()
        self.transport: Optional[asyncio.DatagramTransport] = None

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        raise NotImplementedError

    def protocol_factory(self) -> asyncio.BaseProtocol:
        return _DatagramProtocol(self)

    def send(self, payload: bytes, addr: Tuple[str, int]):
        if self.transport is not None:
            self.transport.sendto(payload, addr)

    async def start(self):
        loop = asyncio.get_running_loop()
        if self.sock is None:
            self.bind()

        host, port = self.address
        try:
            self.transport, _ = await loop.create_datagram_endpoint(self.protocol_factory, sock=self.sock)
            self.running = True
            logger.info("listener_started", listener=self.name, host=host, port=port)

            # Keep running
            while self.running:
                await asyncio.sleep(1)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("listener_error", listener=self.name, error=str(e))
            raise
        finally:
            self.running = False
            if self.transport:
                self.transport.close()
            self.sock = None
            logger.info("listener_stopped", listener=self.name)
