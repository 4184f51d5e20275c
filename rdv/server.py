"""
Rendezvous server — assigns peer identifiers and answers address lookups.

One UDP socket, one request per datagram, at most one response per request.
Each datagram is handled to completion on the event loop before the next one,
so the registry has a single writer.

    Registration   -> RegistrationResponse{status: "OK", uuid}
    LookupRequest  -> LookupResponse{uuid, address | "nil"}
    anything else  -> dropped, no response

Start with: ``rdv server``
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

from rdv import RDV_DEFAULT_HOST, RDV_DEFAULT_PORT
from rdv.config import configure_logging, load_config
from rdv.protocol import (
    STATUS_OK,
    Address,
    ControlResponse,
    DecodeError,
    EncodeError,
    LookupRequest,
    LookupResponse,
    Registration,
    RegistrationResponse,
    decode_request,
    encode,
)
from rdv.registry import PeerRegistry
from rdv.transport import CreationError, DatagramEndpoint, SendError

log = logging.getLogger(__name__)


class RendezvousServer:
    """The central index.

    Usage:
        server = RendezvousServer(port=50000)
        await server.start()
        ...
        await server.stop()

    ``handle_datagram`` is the whole protocol state machine and needs no
    socket, which keeps it easy to drive from tests.
    """

    def __init__(
        self,
        host: str = RDV_DEFAULT_HOST,
        port: int = RDV_DEFAULT_PORT,
        registry: PeerRegistry | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.registry = registry if registry is not None else PeerRegistry()
        self.endpoint: DatagramEndpoint | None = None

        # Counters
        self.handled = 0
        self.dropped = 0

        self._shutdown_event = asyncio.Event()

    @property
    def address(self) -> Address | None:
        """Bound address (useful when started on port 0)."""
        return self.endpoint.local_address if self.endpoint else None

    # --- Protocol ---

    def handle_datagram(self, data: bytes, sender: Address) -> bytes | None:
        """Run one request through the state machine.

        Returns the encoded response, or None when the datagram is dropped.
        Never raises on bad input.
        """
        try:
            request = decode_request(data)
        except DecodeError as e:
            self.dropped += 1
            log.debug("Dropped %d bytes from %s: %s", len(data), sender, e)
            return None

        if isinstance(request, Registration):
            response: ControlResponse = self._handle_registration(request, sender)
        elif isinstance(request, LookupRequest):
            response = self._handle_lookup(request, sender)
        else:
            self.dropped += 1
            log.debug("Dropped unsupported request %r from %s", request, sender)
            return None

        try:
            payload = encode(response)
        except EncodeError as e:
            self.dropped += 1
            log.error("Cannot encode response to %s: %s", sender, e)
            return None
        self.handled += 1
        return payload

    def _handle_registration(self, req: Registration, sender: Address) -> RegistrationResponse:
        addr = req.addr
        if addr.is_unspecified:
            # Peer bound to a wildcard address; keep its port, use the IP we saw
            addr = Address(sender.host, addr.port)
        peer_id = self.registry.register(addr)
        log.info("REGISTER %s -> %s (from %s)", peer_id, addr, sender)
        return RegistrationResponse(STATUS_OK, peer_id, req.req_id)

    def _handle_lookup(self, req: LookupRequest, sender: Address) -> LookupResponse:
        found = self.registry.lookup(req.queried_uuid)
        log.info("QUERY %s -> %s (from %s)", req.queried_uuid, found or "not found", sender)
        return LookupResponse(req.queried_uuid, found, req.req_id)

    def _on_datagram(self, data: bytes, sender: Address) -> None:
        response = self.handle_datagram(data, sender)
        if response is None or self.endpoint is None:
            return
        try:
            self.endpoint.send_nowait(response, sender)
        except SendError as e:
            log.warning("Failed to answer %s: %s", sender, e)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind the socket and begin answering. Raises CreationError."""
        self._shutdown_event.clear()
        self.endpoint = await DatagramEndpoint.open(
            self.host, self.port, on_datagram=self._on_datagram,
        )
        log.info("Rendezvous server listening on %s", self.address)

    async def stop(self) -> None:
        """Close the socket. Registrations are discarded."""
        self._shutdown_event.set()
        if self.endpoint is None or not self.endpoint.is_open:
            return
        self.endpoint.close()
        log.info(
            "Rendezvous server stopped (%d handled, %d dropped, %d registered)",
            self.handled, self.dropped, len(self.registry),
        )

    def _signal_shutdown(self) -> None:
        log.info("Received shutdown signal")
        self._shutdown_event.set()

    async def serve_forever(self) -> None:
        """Start, then run until SIGINT/SIGTERM or stop()."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig_name in ("SIGINT", "SIGTERM"):
            sig = getattr(signal, sig_name, None)
            if sig:
                try:
                    loop.add_signal_handler(sig, self._signal_shutdown)
                except NotImplementedError:
                    # Windows doesn't support add_signal_handler
                    pass

        print("Rendezvous server started")
        print(f"  listen: {self.address}")
        print()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


def run_server(
    host: str | None = None,
    port: int | None = None,
    config_path: Path | None = None,
    log_level: str | None = None,
) -> None:
    """Entry point for ``rdv server``. Runs the server in foreground."""
    config = load_config(config_path, server_host=host, server_port=port, log_level=log_level)
    configure_logging(config["log_level"])

    registry = PeerRegistry(
        capacity=config["registry_capacity"],
        ttl=config["registry_ttl"],
    )
    server = RendezvousServer(config["server_host"], config["server_port"], registry)

    try:
        asyncio.run(server.serve_forever())
    except CreationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
