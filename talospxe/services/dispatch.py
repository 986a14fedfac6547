"""
Boot dispatch filter.

ASGI middleware in front of the boot HTTP application. For /ipxe it
captures the wrapped application's response, then decides:

* 404, no profile matched: serve the generic boot menu instead.
* 200, a profile matched: relay it, and if the machine chose the init or
  controlplane role register its address under the control-plane name.
* anything else: relay it untouched.

Capture and decision are separate so the decision can be tested as a
plain function.
"""

import ipaddress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import jinja2
import structlog

from talospxe import metrics
from talospxe.models import BootSelection
from talospxe.records import DNSRecordStore
from talospxe.services.ipxe_handler import render_menu

logger = structlog.get_logger()

Scope = Dict[str, Any]
Receive = Callable[[], Awaitable[Dict[str, Any]]]
Send = Callable[[Dict[str, Any]], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]

DISPATCH_PATHS = ("/ipxe", "ipxe")


@dataclass(frozen=True, slots=True)
class CapturedResponse:
    """Buffered response of the wrapped application."""

    status: int
    headers: Tuple[Tuple[bytes, bytes], ...]
    body: bytes


@dataclass(frozen=True, slots=True)
class Relay:
    """Send the captured response as is, registering register if set."""

    response: CapturedResponse
    register: Optional[ipaddress.IPv4Address] = None


@dataclass(frozen=True, slots=True)
class RenderMenu:
    """Send the generic boot menu."""


Decision = Union[Relay, RenderMenu]


def decide(captured: CapturedResponse, selection: BootSelection) -> Decision:
    if captured.status == 404:
        return RenderMenu()
    if captured.status == 200 and selection.type.elects_controlplane:
        return Relay(captured, register=selection.address)
    return Relay(captured)


async def capture(app: ASGIApp, scope: Scope, receive: Receive) -> CapturedResponse:
    """Run app with a send() that buffers instead of writing to the client."""
    status = 500
    headers: List[Tuple[bytes, bytes]] = []
    body = bytearray()

    async def send(message: Dict[str, Any]):
        nonlocal status, headers
        if message["type"] == "http.response.start":
            status = message["status"]
            headers = [(bytes(k), bytes(v)) for k, v in message.get("headers", [])]
        elif message["type"] == "http.response.body":
            body.extend(message.get("body", b""))

    await app(scope, receive, send)
    return CapturedResponse(status=status, headers=tuple(headers), body=bytes(body))


async def _respond(send: Send, status: int, headers: List[Tuple[bytes, bytes]], body: bytes):
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body, "more_body": False})


def _text_headers(body: bytes) -> List[Tuple[bytes, bytes]]:
    return [
        (b"content-type", b"text/plain; charset=utf-8"),
        (b"content-length", str(len(body)).encode("ascii")),
    ]


class BootDispatchMiddleware:
    """Chooses between machine-specific boot content and the generic menu."""

    def __init__(
        self,
        app: ASGIApp,
        dns_store: DNSRecordStore,
        controlplane: str,
        server_ip: str,
        http_port: int = 8080,
    ):
        self.app = app
        self.dns_store = dns_store
        self.controlplane = controlplane
        self.server_ip = str(server_ip)
        self.http_port = http_port

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or scope.get("path") not in DISPATCH_PATHS:
            await self.app(scope, receive, send)
            return

        captured = await capture(self.app, scope, receive)

        try:
            selection = BootSelection.from_query(scope.get("query_string", b""))
        except ValueError as e:
            logger.error("boot_query_decode_error", error=str(e), status=captured.status)
            if captured.status == 404:
                metrics.boot_requests.labels(decision="rejected").inc()
                await _respond(send, 400, _text_headers(b""), b"")
                return
            selection = BootSelection()

        decision = decide(captured, selection)

        if isinstance(decision, RenderMenu):
            await self._send_menu(send, selection)
        else:
            await self._relay(send, decision, selection)

    async def _send_menu(self, send: Send, selection: BootSelection):
        logger.info("serving_boot_menu", mac=selection.mac, ip=selection.ip)
        try:
            body = render_menu(self.server_ip, self.http_port).encode("utf-8")
        except jinja2.TemplateError as e:
            logger.error("boot_menu_render_error", error=str(e))
            metrics.boot_requests.labels(decision="error").inc()
            await _respond(send, 500, _text_headers(b""), b"")
            return

        metrics.boot_requests.labels(decision="menu").inc()
        await _respond(send, 200, _text_headers(body), body)

    async def _relay(self, send: Send, decision: Relay, selection: BootSelection):
        response = decision.response
        logger.info(
            "boot_selection",
            type=selection.type.value,
            ip=selection.ip,
            mac=selection.mac,
            status=response.status,
        )

        if decision.register is not None:
            self.dns_store.register(self.controlplane, decision.register)
        elif response.status == 200 and selection.type.elects_controlplane:
            logger.warning("controlplane_address_missing", type=selection.type.value, ip=selection.ip)

        metrics.boot_requests.labels(decision="relay").inc()
        await _respond(send, response.status, list(response.headers), response.body)
