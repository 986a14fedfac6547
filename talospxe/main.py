"""
talos-pxe main entry point.

Selects the bootstrap mode, then starts all services (PXE, TFTP, HTTP,
DHCP, DNS) and runs until one of them stops or a signal arrives.
"""

import asyncio
import logging
import signal
import sys
import structlog
from prometheus_client import start_http_server

from talospxe.bootstrap import BootstrapSelector
from talospxe.config import BootConfig
from talospxe.errors import BootError
from talospxe.models import AuthoritativeMode, HostBootConfig
from talospxe.records import DHCPRecordStore, DNSRecordStore
from talospxe.services.dhcp_proxy import PXEServer
from talospxe.services.dhcp_server import DHCPServer
from talospxe.services.dns_server import DNSServer
from talospxe.services.http_server import HTTPBootServer
from talospxe.services.tftp_server import TFTPServer
from talospxe.supervisor import ListenerSupervisor

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def build_supervisor(host: HostBootConfig, dns_store: DNSRecordStore) -> ListenerSupervisor:
    """Wire the five services to the host configuration and shared stores."""
    dhcp_store = None
    if isinstance(host.mode, AuthoritativeMode):
        dhcp_store = DHCPRecordStore(host.mode.allocator, lease_time=host.lease_time)

    return ListenerSupervisor([
        PXEServer(host),
        TFTPServer(host),
        HTTPBootServer(host, dns_store),
        DHCPServer(host, dhcp_store),
        DNSServer(host, dns_store),
    ])


async def run(config: BootConfig):
    """Bootstrap the host and serve until shutdown or the first listener failure."""
    host = await BootstrapSelector(config).select()
    logger.info(
        "host_configured",
        ip=str(host.ip),
        gateway=str(host.gateway),
        forwarders=list(host.forwarders),
        proxy_dhcp=host.proxy,
        controlplane=host.controlplane,
    )

    supervisor = build_supervisor(host, DNSRecordStore())

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        supervisor.shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await loop.run_in_executor(None, supervisor.serve)
    logger.info("talospxe_stopped")


async def main():
    """Main entry point."""
    # Load configuration
    try:
        config = BootConfig.from_env()
    except ValueError as e:
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    # Set log level
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )

    # Start Prometheus metrics server
    if config.metrics_enabled:
        start_http_server(config.metrics_port)
        logger.info("prometheus_metrics_enabled", port=config.metrics_port)

    try:
        await run(config)
    except BootError as e:
        logger.error("talospxe_fatal_error", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
