"""
Peer registry — authoritative UUID -> address map held by the rendezvous server.

In-memory only; a server restart forgets every registration.

Eviction policy:
  - Capacity bound: once ``capacity`` entries exist, the oldest registration
    is evicted to make room (FIFO, OrderedDict).
  - Optional TTL: entries older than ``ttl`` seconds are swept lazily on
    register and treated as absent on lookup. Disabled by default.

Single writer: the rendezvous server handles one datagram at a time on its
event loop, so the registry takes no locks.
"""

from __future__ import annotations

import collections
import logging
import time
from dataclasses import dataclass
from typing import Callable
from uuid import UUID, uuid4

from rdv import REGISTRY_CAPACITY, REGISTRY_TTL_SECS
from rdv.protocol import NIL_UUID, Address

log = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    """A registered peer."""
    uuid: UUID
    address: Address
    registered_at: float


class PeerRegistry:
    """UUID -> address map with FIFO capacity eviction.

    Usage:
        registry = PeerRegistry()
        peer_id = registry.register(Address("127.0.0.1", 6000))
        registry.lookup(peer_id)   # -> Address("127.0.0.1", 6000)
    """

    def __init__(
        self,
        capacity: int = REGISTRY_CAPACITY,
        ttl: float | None = REGISTRY_TTL_SECS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be positive or None, got {ttl}")
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._entries: collections.OrderedDict[UUID, RegistryEntry] = collections.OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, peer_id: object) -> bool:
        return isinstance(peer_id, UUID) and self.lookup(peer_id) is not None

    def _expired(self, entry: RegistryEntry, now: float) -> bool:
        return self.ttl is not None and now - entry.registered_at > self.ttl

    def _sweep(self, now: float) -> None:
        """Drop expired entries from the old end of the map."""
        if self.ttl is None:
            return
        expired = 0
        while self._entries:
            oldest = next(iter(self._entries.values()))
            if not self._expired(oldest, now):
                break
            self._entries.popitem(last=False)
            expired += 1
        if expired:
            log.info("Expired %d registration(s)", expired)

    def _mint(self) -> UUID:
        peer_id = uuid4()
        while peer_id == NIL_UUID or peer_id in self._entries:
            peer_id = uuid4()
        return peer_id

    def register(self, address: Address) -> UUID:
        """Record ``address`` under a freshly minted identifier and return it."""
        now = self._clock()
        self._sweep(now)

        peer_id = self._mint()
        self._entries[peer_id] = RegistryEntry(peer_id, address, now)

        while len(self._entries) > self.capacity:
            evicted_id, evicted = self._entries.popitem(last=False)
            log.warning("Registry full (%d), evicted %s (%s)",
                        self.capacity, evicted_id, evicted.address)
        return peer_id

    def lookup(self, peer_id: UUID) -> Address | None:
        """Return the address on record, or None if the peer is unknown."""
        entry = self._entries.get(peer_id)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[peer_id]
            return None
        return entry.address

    def entries(self) -> list[RegistryEntry]:
        """Snapshot of live entries, oldest first."""
        now = self._clock()
        return [e for e in self._entries.values() if not self._expired(e, now)]
