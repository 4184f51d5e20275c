"""
Rendezvous client — registration and lookup requests from a peer.

Every request carries a random ``req_id``; a response is only accepted if it
echoes the id of a request that is still waiting. Anything else arriving on
the control socket (late answers to timed-out requests, stray traffic) is
counted and dropped. Every wait is bounded by a timeout.

The client uses its own ephemeral UDP socket, separate from the peer's
listening socket, so lookups never compete with inbound peer messages.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from rdv import (
    LOOKUP_TIMEOUT_SECS,
    RDV_DEFAULT_HOST,
    REGISTRATION_ATTEMPTS,
    REGISTRATION_BACKOFF_SECS,
)
from rdv.protocol import (
    Address,
    ControlRequest,
    ControlResponse,
    DecodeError,
    LookupRequest,
    LookupResponse,
    Registration,
    RegistrationResponse,
    decode_response,
    encode,
    new_req_id,
)
from rdv.transport import DatagramEndpoint, SendError, TransportError

log = logging.getLogger(__name__)


class RendezvousError(TransportError):
    """Rendezvous server unreachable or did not answer in time."""


class RegistrationError(RendezvousError):
    """Registration refused, or not answered after every retry."""


class RendezvousClient:
    """Correlated request/response client.

    Usage:
        client = RendezvousClient(Address("127.0.0.1", 50000))
        await client.open()
        my_id = await client.register(Address("127.0.0.1", 6000))
        addr = await client.query(peer_id)   # None if the peer is unknown
        client.close()
    """

    def __init__(
        self,
        server: Address,
        host: str = RDV_DEFAULT_HOST,
        timeout: float = LOOKUP_TIMEOUT_SECS,
    ) -> None:
        self.server = server
        self.host = host
        self.timeout = timeout
        self.endpoint: DatagramEndpoint | None = None

        # req_id -> future resolved by _on_datagram
        self._pending: dict[str, asyncio.Future] = {}
        self.stray = 0

    @property
    def is_open(self) -> bool:
        return self.endpoint is not None and self.endpoint.is_open

    async def open(self) -> None:
        """Bind the control socket on an ephemeral port. Raises CreationError."""
        if self.is_open:
            return
        self.endpoint = await DatagramEndpoint.open(self.host, 0, on_datagram=self._on_datagram)

    def close(self) -> None:
        """Close the socket and fail every pending request."""
        if self.endpoint is not None:
            self.endpoint.close()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RendezvousError("Rendezvous client closed"))
        self._pending.clear()

    def _on_datagram(self, data: bytes, sender: Address) -> None:
        try:
            response = decode_response(data)
        except DecodeError as e:
            self.stray += 1
            log.debug("Dropped undecodable datagram from %s: %s", sender, e)
            return

        future = self._pending.get(response.req_id) if response.req_id else None
        if future is None or future.done():
            self.stray += 1
            log.debug("Dropped uncorrelated response from %s: %r", sender, response)
            return
        future.set_result(response)

    async def _request(self, request: ControlRequest, timeout: float) -> ControlResponse:
        if not self.is_open:
            raise RendezvousError("Rendezvous client is not open")

        payload = encode(request)
        future = asyncio.get_running_loop().create_future()
        self._pending[request.req_id] = future
        try:
            try:
                await self.endpoint.send(payload, self.server)
            except SendError as e:
                raise RendezvousError(f"Unable to reach rendezvous server {self.server}: {e}") from e
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                raise RendezvousError(
                    f"No response from rendezvous server {self.server} within {timeout:.1f}s"
                ) from None
        finally:
            self._pending.pop(request.req_id, None)

    async def query(self, peer_id: UUID, timeout: float | None = None) -> Address | None:
        """Ask the server for ``peer_id``'s address. None means not on record."""
        request = LookupRequest(peer_id, new_req_id())
        response = await self._request(request, timeout or self.timeout)
        if not isinstance(response, LookupResponse) or response.uuid != peer_id:
            raise RendezvousError(f"Mismatched lookup response: {response!r}")
        return response.address

    async def register(self, reply_addr: Address, timeout: float | None = None) -> UUID:
        """Register ``reply_addr`` and return the identifier the server minted.

        Raises RegistrationError if the server refuses, RendezvousError if it
        does not answer.
        """
        request = Registration(reply_addr, new_req_id())
        response = await self._request(request, timeout or self.timeout)
        if not isinstance(response, RegistrationResponse) or not response.ok:
            raise RegistrationError(f"Registration refused: {response!r}")
        log.info("Registered %s as %s", reply_addr, response.uuid)
        return response.uuid

    async def register_with_retry(
        self,
        reply_addr: Address,
        attempts: int = REGISTRATION_ATTEMPTS,
        backoff: float = REGISTRATION_BACKOFF_SECS,
        timeout: float | None = None,
    ) -> UUID:
        """register() with exponential backoff on unanswered attempts.

        A refusal is final; only timeouts and send failures are retried.
        """
        delay = backoff
        last_error: RendezvousError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.register(reply_addr, timeout)
            except RegistrationError:
                raise
            except RendezvousError as e:
                last_error = e
                if attempt == attempts:
                    break
                log.warning(
                    "Registration attempt %d/%d failed: %s (retrying in %.1fs)",
                    attempt, attempts, e, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise RegistrationError(
            f"Registration failed after {attempts} attempt(s): {last_error}"
        ) from last_error
