"""
DNS server on port 53.

Answers names held in the DNS record store (the control-plane name once
a node has elected itself) and forwards everything else upstream.
"""

import asyncio
from typing import List, Optional, Sequence, Set, Tuple

import dns.asyncquery
import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import structlog

from talospxe import metrics
from talospxe.models import HostBootConfig
from talospxe.records import DNSRecordStore
from talospxe.services.listener import DatagramListener, udp_socket

logger = structlog.get_logger()

FORWARD_TIMEOUT = 2.0


def _split_forwarder(forwarder: str) -> Tuple[str, int]:
    host, _, port = forwarder.rpartition(":")
    if not host:
        return port, 53
    return host, int(port)


class DNSResponder:
    """Builds the answer to one DNS query."""

    def __init__(
        self,
        store: DNSRecordStore,
        forwarders: Sequence[str],
        ttl: int = 60,
        timeout: float = FORWARD_TIMEOUT,
    ):
        self.store = store
        self.forwarders = [_split_forwarder(f) for f in forwarders]
        self.ttl = ttl
        self.timeout = timeout

    def _local_values(self, name: str, rdtype: int) -> List[str]:
        if rdtype == dns.rdatatype.A:
            return [str(ip) for ip in self.store.resolve_v4(name)]
        if rdtype == dns.rdatatype.AAAA:
            return [str(ip) for ip in self.store.resolve_v6(name)]

        values = []
        for record in self.store.raw_records(name):
            record_type, _, rdata = record.partition(" ")
            try:
                if dns.rdatatype.from_text(record_type) == rdtype:
                    values.append(rdata.strip())
            except dns.rdatatype.UnknownRdatatype:
                logger.warning("dns_raw_record_invalid", name=name, record=record)
        return values

    def answer_local(self, query: dns.message.Message) -> dns.message.Message:
        question = query.question[0]
        name = question.name.to_text()

        response = dns.message.make_response(query)
        response.flags |= dns.flags.AA

        values = self._local_values(name, question.rdtype)
        if values:
            response.answer.append(
                dns.rrset.from_text_list(question.name, self.ttl, dns.rdataclass.IN, question.rdtype, values)
            )
        return response

    async def forward(self, query: dns.message.Message) -> dns.message.Message:
        for host, port in self.forwarders:
            try:
                return await dns.asyncquery.udp(query, host, port=port, timeout=self.timeout)
            except (dns.exception.DNSException, OSError) as e:
                logger.warning("dns_forward_failed", forwarder=f"{host}:{port}", error=str(e) or type(e).__name__)

        response = dns.message.make_response(query)
        response.set_rcode(dns.rcode.SERVFAIL)
        return response

    async def resolve(self, data: bytes) -> Optional[bytes]:
        """Wire-format answer to a wire-format query, or None to drop it."""
        try:
            query = dns.message.from_wire(data)
        except dns.exception.DNSException as e:
            logger.warning("dns_malformed_query", error=str(e))
            metrics.dns_queries.labels(outcome="malformed").inc()
            return None

        if not query.question:
            response = dns.message.make_response(query)
            response.set_rcode(dns.rcode.FORMERR)
            return response.to_wire()

        question = query.question[0]
        name = question.name.to_text()

        if self.store.knows(name):
            logger.debug("dns_local_answer", name=name, type=dns.rdatatype.to_text(question.rdtype))
            metrics.dns_queries.labels(outcome="local").inc()
            return self.answer_local(query).to_wire()

        response = await self.forward(query)
        outcome = "servfail" if response.rcode() == dns.rcode.SERVFAIL else "forwarded"
        metrics.dns_queries.labels(outcome=outcome).inc()
        return response.to_wire()


class DNSServer(DatagramListener):
    """UDP DNS listener."""

    name = "dns"

    def __init__(self, host: HostBootConfig, store: DNSRecordStore):
        super().__init__()
        self.host = host
        self.responder = DNSResponder(store, host.forwarders, ttl=host.dns_ttl)
        self._pending: Set[asyncio.Task] = set()

    @property
    def address(self):
        return str(self.host.ip), self.host.dns_port

    def bind(self):
        self.sock = udp_socket(*self.address)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        task = asyncio.get_running_loop().create_task(self._respond(data, addr))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _respond(self, data: bytes, addr: Tuple[str, int]):
        try:
            payload = await self.responder.resolve(data)
        except Exception as e:
            logger.error("dns_query_error", client=addr[0], error=str(e))
            return
        if payload is not None:
            self.send(payload, addr)
