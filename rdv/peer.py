"""
Peer node — registration plus three concurrent loops on one event loop.

    receive   listening socket -> decode -> InboundQueue
    send      submit() requests -> DiscoveryCache.resolve -> listening socket
    delivery  InboundQueue -> on_message consumer, FIFO

Registration happens once, before the loops start, and is retried with
exponential backoff; if it still fails the node does not start.

The loops are isolated: bad datagrams, failed sends and consumer errors are
logged (or reported to the submitter) and the loop carries on.

Start with: ``rdv peer <port>``
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

from rdv import (
    DELIVERY_INTERVAL_SECS,
    INBOUND_QUEUE_MAX,
    LOOKUP_TIMEOUT_SECS,
    RDV_DEFAULT_HOST,
    RDV_DEFAULT_PORT,
    REGISTRATION_ATTEMPTS,
    REGISTRATION_BACKOFF_SECS,
    REGISTRATION_TIMEOUT_SECS,
)
from rdv.client import RegistrationError, RendezvousClient
from rdv.config import configure_logging, load_config
from rdv.discovery import DiscoveryCache
from rdv.protocol import (
    NIL_UUID,
    Address,
    DecodeError,
    MessageEnvelope,
    decode_message,
    encode,
)
from rdv.transport import CreationError, DatagramEndpoint, TransportError

log = logging.getLogger(__name__)

# Upper bound on the final delivery pass during stop()
STOP_DRAIN_TIMEOUT = 5.0


class InboundQueue:
    """Bounded FIFO of received messages.

    When full, the newest arrival is dropped and counted; messages already
    queued are never displaced.
    """

    def __init__(self, maxsize: int = INBOUND_QUEUE_MAX) -> None:
        self.maxsize = maxsize
        self.dropped = 0
        self._items: deque[MessageEnvelope] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def put(self, envelope: MessageEnvelope) -> bool:
        """Append; returns False if the queue is full and the message was dropped."""
        with self._lock:
            if len(self._items) >= self.maxsize:
                self.dropped += 1
                return False
            self._items.append(envelope)
            return True

    def drain(self) -> list[MessageEnvelope]:
        """Remove and return everything queued, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items


class PeerNode:
    """A registered peer exchanging messages with other peers.

    Usage:
        node = PeerNode(port=6000, on_message=print)
        await node.start()                    # RegistrationError is fatal
        await node.submit(other_id, "hello")  # PeerNotFoundError, SendError, ...
        await node.stop()

    ``on_message`` may be a plain callable or a coroutine function; it is
    called once per delivered MessageEnvelope, in arrival order.
    """

    def __init__(
        self,
        port: int = 0,
        host: str = RDV_DEFAULT_HOST,
        server: Address = Address(RDV_DEFAULT_HOST, RDV_DEFAULT_PORT),
        on_message: Callable[[MessageEnvelope], Any] | None = None,
        *,
        lookup_timeout: float = LOOKUP_TIMEOUT_SECS,
        registration_timeout: float = REGISTRATION_TIMEOUT_SECS,
        registration_attempts: int = REGISTRATION_ATTEMPTS,
        registration_backoff: float = REGISTRATION_BACKOFF_SECS,
        delivery_interval: float = DELIVERY_INTERVAL_SECS,
        inbound_queue_max: int = INBOUND_QUEUE_MAX,
        rendezvous: RendezvousClient | None = None,
    ) -> None:
        self.port = port
        self.host = host
        self.server = server
        self.on_message = on_message
        self.registration_timeout = registration_timeout
        self.registration_attempts = registration_attempts
        self.registration_backoff = registration_backoff
        self.delivery_interval = delivery_interval

        # Identity (set by registration)
        self.uuid: UUID = NIL_UUID

        self.endpoint: DatagramEndpoint | None = None
        self.rendezvous = rendezvous or RendezvousClient(server, host=host, timeout=lookup_timeout)
        self.cache = DiscoveryCache(self.rendezvous)
        self.inbox = InboundQueue(inbound_queue_max)

        self._outbox: asyncio.Queue[tuple[UUID, str, asyncio.Future]] = asyncio.Queue()
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._receive_task: asyncio.Task | None = None
        self._send_task: asyncio.Task | None = None
        self._delivery_task: asyncio.Task | None = None

        # Counters
        self.received = 0
        self.delivered = 0
        self.undecodable = 0
        self.misaddressed = 0

    @property
    def registered(self) -> bool:
        return self.uuid != NIL_UUID

    @property
    def is_running(self) -> bool:
        return self._receive_task is not None and not self._stopping.is_set()

    @property
    def address(self) -> Address | None:
        """Bound listening address (useful when started on port 0)."""
        return self.endpoint.local_address if self.endpoint else None

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind, register, and start the loops.

        Raises CreationError if the listening socket cannot be bound and
        RegistrationError if the rendezvous server never confirms.
        """
        if self.is_running:
            return

        self.endpoint = await DatagramEndpoint.open(self.host, self.port)
        try:
            await self.rendezvous.open()
            self.uuid = await self.rendezvous.register_with_retry(
                self.endpoint.local_address,
                attempts=self.registration_attempts,
                backoff=self.registration_backoff,
                timeout=self.registration_timeout,
            )
        except BaseException:
            self.endpoint.close()
            self.rendezvous.close()
            raise

        self._stopping.clear()
        self._receive_task = asyncio.create_task(self._receive_loop(), name="rdv-receive")
        self._send_task = asyncio.create_task(self._send_loop(), name="rdv-send")
        self._delivery_task = asyncio.create_task(self._delivery_loop(), name="rdv-delivery")
        for task in (self._receive_task, self._send_task, self._delivery_task):
            task.add_done_callback(self._task_done)

        log.info("Peer %s listening on %s", self.uuid, self.address)

    async def stop(self) -> None:
        """Stop the loops, delivering everything already queued first."""
        if self._receive_task is None or self._stopping.is_set():
            return
        self._stopping.set()
        self._wakeup.set()

        for task in (self._receive_task, self._send_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._delivery_task and not self._delivery_task.done():
            try:
                await asyncio.wait_for(self._delivery_task, timeout=STOP_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                log.warning("Consumer did not finish the final delivery pass in %.0fs",
                            STOP_DRAIN_TIMEOUT)

        while not self._outbox.empty():
            _, _, future = self._outbox.get_nowait()
            if not future.done():
                future.set_exception(TransportError("Peer stopped before sending"))

        if self.endpoint is not None:
            self.endpoint.close()
        self.rendezvous.close()
        log.info(
            "Peer %s stopped (%d received, %d delivered, %d dropped)",
            self.uuid, self.received, self.delivered,
            self.undecodable + self.misaddressed + self.inbox.dropped,
        )

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Loop %s crashed: %r", task.get_name(), exc)

    # --- Sending ---

    async def send(self, dst: UUID, data: str) -> MessageEnvelope:
        """Resolve ``dst`` and send it one message, bypassing the send loop.

        Resolution failures raise PeerNotFoundError or RendezvousError;
        delivery failures raise SendError; oversized messages raise
        EncodeError.
        """
        if not self.registered or self.endpoint is None:
            raise TransportError("Peer is not registered")

        address = await self.cache.resolve(dst)
        envelope = MessageEnvelope.create(self.uuid, dst, data)
        await self.endpoint.send(encode(envelope), address)
        log.debug("Sent %d chars to %s at %s", len(data), dst, address)
        return envelope

    async def submit(self, dst: UUID, data: str) -> MessageEnvelope:
        """Hand a message to the send loop and wait for the outcome.

        Raises whatever send() would have raised.
        """
        if not self.is_running:
            raise TransportError("Peer is not running")
        future = asyncio.get_running_loop().create_future()
        self._outbox.put_nowait((dst, data, future))
        return await future

    # --- Loops ---

    async def _receive_loop(self) -> None:
        while True:
            try:
                data, sender = await self.endpoint.recv()
            except TransportError:
                log.debug("Listening socket closed, receive loop exiting")
                return

            try:
                envelope = decode_message(data)
            except DecodeError as e:
                self.undecodable += 1
                log.debug("Dropped %d bytes from %s: %s", len(data), sender, e)
                continue

            if envelope.dst != self.uuid:
                # Sender holds a stale address for another peer
                self.misaddressed += 1
                log.warning("Dropped message for %s from %s (we are %s)",
                            envelope.dst, sender, self.uuid)
                continue

            self.received += 1
            if self.inbox.put(envelope):
                self._wakeup.set()
            else:
                log.warning("Inbound queue full (%d), dropped message from %s",
                            self.inbox.maxsize, envelope.src)

    async def _send_loop(self) -> None:
        while True:
            dst, data, future = await self._outbox.get()
            if future.done():
                continue  # submitter gave up
            try:
                envelope = await self.send(dst, data)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(TransportError("Peer stopped while sending"))
                raise
            except Exception as e:
                log.warning("Send to %s failed: %s", dst, e)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(envelope)

    async def _delivery_loop(self) -> None:
        while not self._stopping.is_set():
            await self._deliver_pending()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.delivery_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

        # Final pass: nothing already queued is lost on shutdown
        await self._deliver_pending()

    async def _deliver_pending(self) -> None:
        for envelope in self.inbox.drain():
            self.delivered += 1
            if self.on_message is None:
                log.info("Message from %s: %s", envelope.src, envelope.data)
                continue
            try:
                result = self.on_message(envelope)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                log.error("Consumer error for message from %s: %s", envelope.src, e)


async def _run_peer_async(node: PeerNode) -> None:
    from rdv.console import console_loop

    await node.start()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig_name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, sig_name, None)
        if sig:
            try:
                loop.add_signal_handler(sig, shutdown_event.set)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

    print("Peer started")
    print(f"  uuid:   {node.uuid}")
    print(f"  listen: {node.address}")
    print(f"  server: {node.server}")
    print("Send with: <uuid> <message>   (/id, /quit)")
    print()

    console_task = asyncio.create_task(console_loop(node))
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    try:
        await asyncio.wait({console_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if console_task.done() and not console_task.cancelled():
            exc = console_task.exception()
            if exc is not None:
                log.error("Console loop failed: %r", exc)
        for task in (console_task, shutdown_task):
            task.cancel()
        await node.stop()


def run_peer(
    port: int,
    host: str | None = None,
    server: Address | None = None,
    config_path: Path | None = None,
    log_level: str | None = None,
) -> None:
    """Entry point for ``rdv peer``. Runs the peer in foreground."""
    from rdv.console import print_message

    config = load_config(
        config_path,
        listen_host=host,
        server_host=server.host if server else None,
        server_port=server.port if server else None,
        log_level=log_level,
    )
    configure_logging(config["log_level"])

    node = PeerNode(
        port=port,
        host=config["listen_host"],
        server=Address(config["server_host"], config["server_port"]),
        on_message=print_message,
        lookup_timeout=config["lookup_timeout"],
        registration_timeout=config["registration_timeout"],
        registration_attempts=config["registration_attempts"],
        registration_backoff=config["registration_backoff"],
        delivery_interval=config["delivery_interval"],
        inbound_queue_max=config["inbound_queue_max"],
    )

    try:
        asyncio.run(_run_peer_async(node))
    except CreationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except RegistrationError as e:
        print(f"Error: could not register with {node.server}: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
