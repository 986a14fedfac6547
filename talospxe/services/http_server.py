"""
HTTP boot server for iPXE scripts and boot assets.

Serves machine profiles from the file-backed profile store. Requests for
/ipxe pass through the boot dispatch filter, which substitutes the boot
menu when no profile matches.
"""

import asyncio

import jinja2
import structlog
from hypercorn.asyncio import serve
from hypercorn.config import Config
from quart import Quart, Response, jsonify, request, send_from_directory

from talospxe.models import HostBootConfig
from talospxe.records import DNSRecordStore
from talospxe.services.dispatch import BootDispatchMiddleware
from talospxe.services.ipxe_handler import render_chain, render_error, render_profile
from talospxe.services.listener import Listener, tcp_socket
from talospxe.services.profiles import ProfileStore

logger = structlog.get_logger()


def create_app(store: ProfileStore) -> Quart:
    """Profile-serving application, without the dispatch filter."""
    app = Quart(__name__)

    @app.route("/health")
    async def health():
        """Health check endpoint."""
        return jsonify({"status": "healthy", "service": "talospxe"})

    @app.route("/boot.ipxe")
    async def boot_script():
        """Entry point for iPXE; chains to /ipxe with the machine's identity."""
        return Response(render_chain(), mimetype="text/plain")

    @app.route("/ipxe")
    async def ipxe_script():
        """
        Boot script of the profile matching the request's labels.

        404 when nothing matches; the dispatch filter turns that into the
        boot menu.
        """
        labels = request.args.to_dict()
        group = store.match(labels)
        if group is None:
            logger.info("no_profile_matched", labels=labels)
            return Response("", status=404, mimetype="text/plain")

        profile = store.profile(group.profile)
        if profile is None:
            logger.error("profile_not_found", group=group.id, profile=group.profile)
            return Response("", status=404, mimetype="text/plain")

        try:
            script = render_profile(profile.get("boot") or {})
        except jinja2.TemplateError as e:
            logger.error("profile_render_error", profile=group.profile, error=str(e))
            return Response(render_error(f"Invalid profile {group.profile}"), mimetype="text/plain", status=500)

        logger.info("profile_matched", group=group.id, profile=group.profile)
        return Response(script, mimetype="text/plain")

    @app.route("/assets/<path:asset>")
    async def assets(asset: str):
        """Kernels, initrds and other files referenced by profiles."""
        logger.info("asset_request", path=asset)
        return await send_from_directory(store.assets, asset)

    return app


class HTTPBootServer(Listener):
    """HTTP server for boot scripts and assets."""

    name = "http"

    def __init__(self, host: HostBootConfig, dns_store: DNSRecordStore):
        super().__init__()
        self.host = host
        self.store = ProfileStore(host.server_root)
        self.app = create_app(self.store)
        self.app.asgi_app = BootDispatchMiddleware(
            self.app.asgi_app,
            dns_store=dns_store,
            controlplane=host.controlplane,
            server_ip=str(host.ip),
            http_port=host.http_port,
        )

    @property
    def address(self):
        return str(self.host.ip), self.host.http_port

    def bind(self):
        self.sock = tcp_socket(*self.address)

    async def start(self):
        """Start HTTP server."""
        if self.sock is None:
            self.bind()

        # hypercorn owns and closes the descriptor from here on
        fd = self.sock.detach()
        self.sock = None

        config = Config()
        config.bind = [f"fd://{fd}"]
        config.accesslog = "-"
        config.errorlog = "-"

        self.running = True
        logger.info("listener_started", listener=self.name, host=self.address[0], port=self.address[1])

        try:
            # runs until cancelled; hypercorn installs no signal handlers given a trigger
            await serve(self.app, config, shutdown_trigger=asyncio.Event().wait)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("http_server_error", error=str(e))
            raise
        finally:
            self.running = False
            logger.info("listener_stopped", listener=self.name)
