"""
Prometheus metrics exported on METRICS_PORT.
"""

from prometheus_client import Counter, Gauge

boot_requests = Counter(
    "talospxe_boot_requests_total",
    "iPXE boot requests by dispatch decision",
    ["decision"],
)

dns_registrations = Counter(
    "talospxe_dns_registrations_total",
    "Control-plane addresses registered in the local DNS store",
)

dns_queries = Counter(
    "talospxe_dns_queries_total",
    "DNS queries by outcome",
    ["outcome"],
)

dhcp_messages = Counter(
    "talospxe_dhcp_messages_total",
    "DHCP replies sent by service and message type",
    ["service", "message_type"],
)

dhcp_leases_active = Gauge(
    "talospxe_dhcp_leases_active",
    "Leases currently held in the authoritative DHCP record store",
)
