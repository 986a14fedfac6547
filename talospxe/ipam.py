"""
IPv4 address management for authoritative DHCP.

Plans the assignable client range inside a prefix and tracks which of
those addresses are handed out using a bitmap.
"""

import ipaddress
from typing import Iterable, Optional, Union

from talospxe.errors import InvalidPrefixError, PoolExhaustedError
from talospxe.models import AddressRange

IPv4Like = Union[str, ipaddress.IPv4Address]


def plan_range(
    prefix: Union[str, ipaddress.IPv4Network],
    host_address: IPv4Like,
) -> AddressRange:
    """
    Compute the inclusive range of client-assignable addresses.

    The range never starts at the network address or ends at the broadcast
    address, and its bounds step past the host when the host sits on them.

    Raises:
        InvalidPrefixError: prefix too small, or host not a usable address in it.
    """
    network = ipaddress.IPv4Network(prefix, strict=False)
    host = ipaddress.IPv4Address(host_address)

    if network.num_addresses < 4:
        raise InvalidPrefixError(
            f"{network} has {network.num_addresses} addresses, at least 4 are required"
        )
    if host not in network or host in (network.network_address, network.broadcast_address):
        raise InvalidPrefixError(f"{host} is not a usable address in {network}")

    first = network.network_address + 1
    if first == host:
        first += 1

    last = network.broadcast_address - 1
    if last == host:
        last -= 1

    return AddressRange(first=first, last=last)


class BitmapAllocator:
    """
    Bitmap-backed allocator over an AddressRange.

    Not thread-safe; DHCPRecordStore serializes access.
    """

    def __init__(self, address_range: AddressRange, reserved: Iterable[IPv4Like] = ()):
        self.range = address_range
        self.size = int(address_range.last) - int(address_range.first) + 1
        self._bits = bytearray((self.size + 7) // 8)
        self._used = 0

        for address in reserved:
            address = ipaddress.IPv4Address(address)
            if address in self:
                self._set(self._offset(address))

    def __contains__(self, address: ipaddress.IPv4Address) -> bool:
        return self.range.first <= address <= self.range.last

    def __len__(self) -> int:
        return self.size

    @property
    def available(self) -> int:
        return self.size - self._used

    def _offset(self, address: ipaddress.IPv4Address) -> int:
        return int(address) - int(self.range.first)

    def _test(self, offset: int) -> bool:
        return bool(self._bits[offset >> 3] & (1 << (offset & 7)))

    def _set(self, offset: int):
        if not self._test(offset):
            self._bits[offset >> 3] |= 1 << (offset & 7)
            self._used += 1

    def _clear(self, offset: int):
        if self._test(offset):
            self._bits[offset >> 3] &= ~(1 << (offset & 7)) & 0xFF
            self._used -= 1

    def is_allocated(self, address: IPv4Like) -> bool:
        address = ipaddress.IPv4Address(address)
        return address in self and self._test(self._offset(address))

    def allocate(self, hint: Optional[IPv4Like] = None) -> ipaddress.IPv4Address:
        """
        Take the hinted address if it is free, otherwise the lowest free one.

        Raises:
            PoolExhaustedError: every address in the range is taken.
        """
        if hint is not None:
            hint = ipaddress.IPv4Address(hint)
            if hint in self and not self._test(self._offset(hint)):
                self._set(self._offset(hint))
                return hint

        if self._used >= self.size:
            raise PoolExhaustedError(f"no free address in {self.range}")

        for index, byte in enumerate(self._bits):
            if byte == 0xFF:
                continue
            for bit in range(8):
                offset = (index << 3) + bit
                if offset >= self.size:
                    break
                if not byte & (1 << bit):
                    self._set(offset)
                    return self.range.first + offset

        raise PoolExhaustedError(f"no free address in {self.range}")

    def free(self, address: IPv4Like) -> bool:
        """Return an address to the pool. Returns False if it was not allocated."""
        address = ipaddress.IPv4Address(address)
        if not self.is_allocated(address):
            return False
        self._clear(self._offset(address))
        return True
