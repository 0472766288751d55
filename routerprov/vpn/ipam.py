"""VPN address pool.

The pool row caches the next candidate address. Advancing it is a
compare-and-set, so two allocators never both succeed from the same
counter value. When the cached address turns out to be taken the
allocator scans the whole network for a free host. The UNIQUE constraint
on a tunnel's ``assigned_ip`` settles any race the scan leaves open.
"""

import ipaddress
import logging
from typing import Iterator, Optional

from ..db import Database
from ..errors import IPPoolExhausted
from ..models import VPNIPPool

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 8


class VPNAddressAllocator:
    """Hands out /32 tunnel addresses from the management network."""

    def __init__(self, db: Database, network: str, server_ip: str):
        self.db = db
        self.network = ipaddress.ip_network(network)
        self.server_ip = ipaddress.ip_address(server_ip)
        self.key = str(self.network)

    def _usable(self, address: ipaddress.IPv4Address) -> bool:
        return (address in self.network
                and address != self.server_ip
                and address != self.network.network_address
                and address != self.network.broadcast_address)

    def hosts(self) -> Iterator[str]:
        for host in self.network.hosts():
            if host != self.server_ip:
                yield str(host)

    @property
    def capacity(self) -> int:
        total = self.network.num_addresses - 2
        if self.network.network_address < self.server_ip < self.network.broadcast_address:
            total -= 1
        return max(total, 0)

    def successor(self, address: str) -> Optional[str]:
        """The next usable address after ``address``, or None past the end."""
        candidate = ipaddress.ip_address(address) + 1
        while candidate <= self.network.broadcast_address:
            if self._usable(candidate):
                return str(candidate)
            candidate += 1
        return None

    async def ensure_pool(self) -> VPNIPPool:
        first = self.successor(str(self.server_ip)) if self.server_ip in self.network else None
        first = first or next(self.hosts(), None)
        if first is None:
            raise IPPoolExhausted(f"Network {self.key} has no usable host addresses")
        return await self.db.ensure_ip_pool(VPNIPPool(
            network=self.key,
            next_available=first,
            used_count=0,
            total_capacity=self.capacity,
        ))

    async def allocate(self) -> str:
        """Reserve the next unused address.

        Raises:
            IPPoolExhausted: if every host in the network is assigned.
        """
        pool = await self.ensure_pool()

        for _ in range(CAS_ATTEMPTS):
            candidate = pool.next_available
            if not self._usable(ipaddress.ip_address(candidate)) or await self.db.is_ip_assigned(candidate):
                break
            following = self.successor(candidate) or candidate
            if await self.db.compare_and_set_next_available(self.key, candidate, following, used_delta=1):
                logger.debug(f"Allocated {candidate} from pool counter")
                return candidate
            pool = await self.db.get_ip_pool(self.key)

        logger.info(f"Pool counter for {self.key} is stale, scanning for a free address")
        used = set(await self.db.assigned_ips())
        for host in self.hosts():
            if host in used:
                continue
            following = self.successor(host) or host
            if not await self.db.compare_and_set_next_available(
                self.key, pool.next_available, following, used_delta=1
            ):
                await self.db.adjust_pool_usage(self.key, 1)
            logger.debug(f"Allocated {host} by linear scan")
            return host

        raise IPPoolExhausted(f"VPN IP pool exhausted - no more addresses available in {self.key}")

    async def release(self, address: str) -> None:
        """Return an address whose reservation was rolled back."""
        await self.db.adjust_pool_usage(self.key, -1)
        logger.debug(f"Released {address}")
