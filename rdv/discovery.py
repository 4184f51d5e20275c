"""
Discovery cache — per-peer memo of UUID -> address lookups.

A hit costs no network round trip. A miss queries the rendezvous server
once; "not found" answers are never cached. Entries are never invalidated
for the lifetime of the process.

The lock covers only the map read and the insert, never the round trip, so
a slow lookup does not hold up resolutions of other identifiers. Two
concurrent misses for the same identifier may both query the server; the
answers are identical, so the last insert wins harmlessly.
"""

from __future__ import annotations

import logging
import threading
from uuid import UUID

from rdv.client import RendezvousClient
from rdv.protocol import Address

log = logging.getLogger(__name__)


class PeerNotFoundError(LookupError):
    """The rendezvous server has no address on record for this peer."""

    def __init__(self, peer_id: UUID) -> None:
        super().__init__(f"No peer registered as {peer_id}")
        self.peer_id = peer_id


class DiscoveryCache:
    """Lazily populated UUID -> address map.

    Usage:
        cache = DiscoveryCache(rendezvous_client)
        addr = await cache.resolve(peer_id)   # PeerNotFoundError if unknown
    """

    def __init__(self, rendezvous: RendezvousClient) -> None:
        self.rendezvous = rendezvous
        self._entries: dict[UUID, Address] = {}
        self._lock = threading.Lock()
        # Network round trips performed (hits don't count)
        self.lookups = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, peer_id: object) -> bool:
        with self._lock:
            return peer_id in self._entries

    def get(self, peer_id: UUID) -> Address | None:
        """Cached address, without going to the network."""
        with self._lock:
            return self._entries.get(peer_id)

    async def resolve(self, peer_id: UUID) -> Address:
        """Return ``peer_id``'s address, asking the rendezvous server on a miss.

        Raises PeerNotFoundError, or RendezvousError if the server does not
        answer in time.
        """
        cached = self.get(peer_id)
        if cached is not None:
            return cached

        self.lookups += 1
        address = await self.rendezvous.query(peer_id)
        if address is None:
            log.info("Peer %s not found", peer_id)
            raise PeerNotFoundError(peer_id)

        with self._lock:
            self._entries[peer_id] = address
        log.debug("Cached %s -> %s", peer_id, address)
        return address
