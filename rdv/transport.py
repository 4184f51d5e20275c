"""
UDP endpoint — a bound datagram socket with awaitable receive and send.

Wraps asyncio's DatagramTransport/DatagramProtocol pair. Inbound datagrams
are either handed to a callback (rendezvous server, rendezvous client) or
buffered for ``recv()`` (peer receive loop).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable

from rdv.protocol import Address

log = logging.getLogger(__name__)

# Datagrams buffered for recv() before new arrivals are dropped
RECV_BACKLOG = 4096


class CreationError(Exception):
    """Socket could not be bound."""


class TransportError(Exception):
    """Send or receive failed on a UDP endpoint."""


class SendError(TransportError):
    """A datagram could not be handed to the OS for delivery."""


class _EndpointProtocol(asyncio.DatagramProtocol):
    def __init__(self, endpoint: DatagramEndpoint) -> None:
        self.endpoint = endpoint

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.endpoint._deliver(data, Address.from_sockaddr(addr))

    def error_received(self, exc: Exception) -> None:
        self.endpoint._error_received(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc:
            log.warning("UDP endpoint %s lost: %s", self.endpoint.local_address, exc)
        self.endpoint._mark_closed()


class DatagramEndpoint:
    """A bound UDP socket.

    Usage:
        ep = await DatagramEndpoint.open("127.0.0.1", 6000)
        await ep.send(b"...", Address("127.0.0.1", 50000))
        data, sender = await ep.recv()
        ep.close()

    Pass ``on_datagram`` to receive datagrams through a callback instead of
    ``recv()``; the callback runs on the event loop and must not block.
    """

    def __init__(
        self,
        on_datagram: Callable[[bytes, Address], None] | None = None,
        backlog: int = RECV_BACKLOG,
    ) -> None:
        self.on_datagram = on_datagram
        self.backlog = backlog
        self.local_address: Address | None = None
        self.dropped = 0

        self._transport: asyncio.DatagramTransport | None = None
        self._inbox: deque[tuple[bytes, Address]] = deque()
        self._readable = asyncio.Event()
        self._closed = False
        self._send_error: Exception | None = None

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        on_datagram: Callable[[bytes, Address], None] | None = None,
    ) -> DatagramEndpoint:
        """Bind a new endpoint. Raises CreationError if the bind fails."""
        endpoint = cls(on_datagram=on_datagram)
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _EndpointProtocol(endpoint),
                local_addr=(host, port),
            )
        except (OSError, ValueError) as e:
            raise CreationError(f"Cannot bind UDP {host}:{port}: {e}") from e

        endpoint._transport = transport
        endpoint.local_address = Address.from_sockaddr(transport.get_extra_info("sockname"))
        log.debug("UDP endpoint bound on %s", endpoint.local_address)
        return endpoint

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._closed

    def _deliver(self, data: bytes, addr: Address) -> None:
        if self.on_datagram is not None:
            try:
                self.on_datagram(data, addr)
            except Exception:
                log.exception("Datagram handler failed for %d bytes from %s", len(data), addr)
            return

        if len(self._inbox) >= self.backlog:
            self.dropped += 1
            log.warning("Receive backlog full on %s, dropping datagram from %s",
                        self.local_address, addr)
            return
        self._inbox.append((data, addr))
        self._readable.set()

    def _error_received(self, exc: Exception) -> None:
        # Called synchronously from sendto() when the OS rejects a datagram,
        # and asynchronously for ICMP errors on some platforms.
        self._send_error = exc
        log.debug("UDP error on %s: %s", self.local_address, exc)

    def _mark_closed(self) -> None:
        self._closed = True
        self._readable.set()

    async def recv(self) -> tuple[bytes, Address]:
        """Wait for the next datagram. Raises TransportError once closed."""
        while not self._inbox:
            if self._closed or self._transport is None:
                raise TransportError("Endpoint closed")
            self._readable.clear()
            await self._readable.wait()
        return self._inbox.popleft()

    async def send(self, data: bytes, addr: Address) -> None:
        """Hand one datagram to the OS. Raises SendError on failure."""
        self.send_nowait(data, addr)

    def send_nowait(self, data: bytes, addr: Address) -> None:
        """Synchronous form of send(), for use inside datagram callbacks.

        DatagramTransport.sendto never blocks: the OS either takes the
        datagram or the error is reported back through error_received()
        before sendto returns.
        """
        if not self.is_open:
            raise SendError("Endpoint closed")
        self._send_error = None
        try:
            self._transport.sendto(data, tuple(addr))
        except (OSError, ValueError, TypeError) as e:
            raise SendError(f"Send to {addr} failed: {e}") from e
        if self._send_error is not None:
            exc, self._send_error = self._send_error, None
            raise SendError(f"Send to {addr} failed: {exc}") from exc

    def close(self) -> None:
        """Close the socket and wake any pending recv()."""
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
        self._readable.set()
        log.debug("UDP endpoint %s closed", self.local_address)
