"""
Dynamic record stores shared across listener threads.

DHCPRecordStore owns lease state for authoritative DHCP. DNSRecordStore
holds the names the DNS service answers locally, written to by the boot
dispatch filter when a node elects itself into the control plane.
"""

import ipaddress
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Union

import structlog

from talospxe import metrics
from talospxe.errors import DuplicateClientError
from talospxe.ipam import BitmapAllocator
from talospxe.models import DHCPRecord

logger = structlog.get_logger()

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers are preferred."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DHCPRecordStore:
    """Client leases backed by a BitmapAllocator, guarded by one mutex."""

    def __init__(
        self,
        allocator: BitmapAllocator,
        lease_time: int = 3600,
        strict: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._allocator = allocator
        self._lease_time = timedelta(seconds=lease_time)
        self._strict = strict
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, DHCPRecord] = {}

    @property
    def lease_time(self) -> int:
        return int(self._lease_time.total_seconds())

    def _reap(self, now: datetime):
        for client_id, record in list(self._records.items()):
            if record.expired(now):
                del self._records[client_id]
                self._allocator.free(record.ip)
                logger.debug("dhcp_lease_expired", client=client_id, ip=str(record.ip))

    def allocate(
        self,
        client_id: str,
        requested: Optional[ipaddress.IPv4Address] = None,
    ) -> ipaddress.IPv4Address:
        """
        Lease an address to client_id.

        A live lease for the same client is renewed in place. Expired
        leases are reclaimed before a new address is chosen.

        Raises:
            PoolExhaustedError: no free address remains.
            DuplicateClientError: strict mode and the client holds a live lease.
        """
        with self._lock:
            now = self._clock()
            self._reap(now)
            metrics.dhcp_leases_active.set(len(self._records))

            record = self._records.get(client_id)
            if record is not None:
                if self._strict:
                    raise DuplicateClientError(f"{client_id} already holds {record.ip}")
                record.expires = now + self._lease_time
                return record.ip

            ip = self._allocator.allocate(hint=requested)
            self._records[client_id] = DHCPRecord(ip=ip, expires=now + self._lease_time)
            metrics.dhcp_leases_active.set(len(self._records))

        logger.info("dhcp_lease_allocated", client=client_id, ip=str(ip))
        return ip

    def release(self, ip: ipaddress.IPv4Address) -> bool:
        """Free an address and drop the record holding it."""
        ip = ipaddress.IPv4Address(ip)
        with self._lock:
            for client_id, record in list(self._records.items()):
                if record.ip == ip:
                    del self._records[client_id]
            released = self._allocator.free(ip)
            metrics.dhcp_leases_active.set(len(self._records))

        if released:
            logger.info("dhcp_lease_released", ip=str(ip))
        return released

    def lookup(self, client_id: str) -> Optional[DHCPRecord]:
        """Live record for client_id, or None."""
        with self._lock:
            record = self._records.get(client_id)
            if record is None or record.expired(self._clock()):
                return None
            return DHCPRecord(ip=record.ip, expires=record.expires)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _canonical(name: str) -> str:
    name = name.strip().lower()
    return name if name.endswith(".") else name + "."


class DNSRecordStore:
    """
    Name to address bindings answered by the local DNS service.

    Queries share a read lock; registration takes the write lock. An
    address registered twice under one name is kept once, at its first
    position.
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._v4: Dict[str, List[ipaddress.IPv4Address]] = {}
        self._v6: Dict[str, List[ipaddress.IPv6Address]] = {}
        self._raw: Dict[str, List[str]] = {}

    def register(self, name: str, ip: Union[str, IPAddress]) -> bool:
        """Append ip under name. Returns False if it was already there."""
        name = _canonical(name)
        ip = ipaddress.ip_address(ip)
        table = self._v4 if ip.version == 4 else self._v6

        with self._lock.write():
            addresses = table.setdefault(name, [])
            if ip in addresses:
                return False
            addresses.append(ip)

        metrics.dns_registrations.inc()
        logger.info("dns_record_registered", name=name, ip=str(ip))
        return True

    def register_raw(self, name: str, record: str) -> bool:
        """Append a raw "<TYPE> <rdata>" record under name."""
        name = _canonical(name)
        with self._lock.write():
            records = self._raw.setdefault(name, [])
            if record in records:
                return False
            records.append(record)
        return True

    def resolve(self, name: str) -> List[IPAddress]:
        """All addresses under name, IPv4 first, in registration order."""
        name = _canonical(name)
        with self._lock.read():
            return list(self._v4.get(name, ())) + list(self._v6.get(name, ()))

    def resolve_v4(self, name: str) -> List[ipaddress.IPv4Address]:
        with self._lock.read():
            return list(self._v4.get(_canonical(name), ()))

    def resolve_v6(self, name: str) -> List[ipaddress.IPv6Address]:
        with self._lock.read():
            return list(self._v6.get(_canonical(name), ()))

    def raw_records(self, name: str) -> List[str]:
        with self._lock.read():
            return list(self._raw.get(_canonical(name), ()))

    def knows(self, name: str) -> bool:
        name = _canonical(name)
        with self._lock.read():
            return name in self._v4 or name in self._v6 or name in self._raw
