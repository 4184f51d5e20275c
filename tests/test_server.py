"""
Tests for the rendezvous server, rendezvous client and discovery cache.

The server's state machine is exercised directly through handle_datagram;
client tests run against a real server on a loopback UDP port.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from rdv.client import RegistrationError, RendezvousClient, RendezvousError
from rdv.discovery import DiscoveryCache, PeerNotFoundError
from rdv.protocol import (
    STATUS_OK,
    Address, LookupRequest, LookupResponse, Registration, RegistrationResponse,
    decode, encode,
)
from rdv.registry import PeerRegistry
from rdv.server import RendezvousServer
from rdv.transport import CreationError, DatagramEndpoint, SendError

SENDER = Address("127.0.0.1", 41000)


async def _start_server() -> RendezvousServer:
    server = RendezvousServer("127.0.0.1", 0)
    await server.start()
    return server


async def _silent_endpoint() -> DatagramEndpoint:
    """A bound socket that never answers."""
    return await DatagramEndpoint.open("127.0.0.1", 0, on_datagram=lambda data, addr: None)


# ---------------------------------------------------------------------------
# TestHandleDatagram
# ---------------------------------------------------------------------------

class TestHandleDatagram:
    """Request -> response state machine, no sockets."""

    def test_registration(self):
        server = RendezvousServer()
        out = server.handle_datagram(encode(Registration(Address("127.0.0.1", 6000))), SENDER)
        resp = decode(out)
        assert isinstance(resp, RegistrationResponse)
        assert resp.status == STATUS_OK
        assert server.registry.lookup(resp.uuid) == Address("127.0.0.1", 6000)
        assert server.handled == 1

    def test_registrations_get_distinct_ids(self):
        server = RendezvousServer()
        req = encode(Registration(Address("127.0.0.1", 6000)))
        first = decode(server.handle_datagram(req, SENDER)).uuid
        second = decode(server.handle_datagram(req, SENDER)).uuid
        assert first != second
        assert len(server.registry) == 2

    def test_unspecified_host_uses_sender_ip(self):
        server = RendezvousServer()
        out = server.handle_datagram(
            encode(Registration(Address("0.0.0.0", 6000))), Address("10.0.0.9", 41000),
        )
        assert server.registry.lookup(decode(out).uuid) == Address("10.0.0.9", 6000)

    def test_lookup_found(self):
        registry = PeerRegistry()
        peer_id = registry.register(Address("127.0.0.1", 6000))
        server = RendezvousServer(registry=registry)
        resp = decode(server.handle_datagram(encode(LookupRequest(peer_id)), SENDER))
        assert resp == LookupResponse(peer_id, Address("127.0.0.1", 6000))

    def test_lookup_not_found_is_nil(self):
        server = RendezvousServer()
        peer_id = uuid4()
        out = server.handle_datagram(encode(LookupRequest(peer_id)), SENDER)
        assert json.loads(out) == {"address": "nil", "uuid": str(peer_id)}

    def test_lookup_idempotent(self):
        registry = PeerRegistry()
        peer_id = registry.register(Address("127.0.0.1", 6000))
        server = RendezvousServer(registry=registry)
        req = encode(LookupRequest(peer_id))
        answers = {server.handle_datagram(req, SENDER) for _ in range(3)}
        assert len(answers) == 1

    def test_req_id_echoed(self):
        server = RendezvousServer()
        out = server.handle_datagram(encode(LookupRequest(uuid4(), "feedface")), SENDER)
        assert decode(out).req_id == "feedface"
        out = server.handle_datagram(
            encode(Registration(Address("127.0.0.1", 6000), "cafe")), SENDER,
        )
        assert decode(out).req_id == "cafe"

    def test_garbage_dropped(self):
        server = RendezvousServer()
        assert server.handle_datagram(b"not json", SENDER) is None
        assert server.handle_datagram(b"\xff" * 2000, SENDER) is None
        assert server.dropped == 2
        assert server.handled == 0

    def test_response_shaped_datagram_dropped(self):
        server = RendezvousServer()
        data = encode(RegistrationResponse(STATUS_OK, uuid4()))
        assert server.handle_datagram(data, SENDER) is None

    def test_malformed_query_dropped(self):
        server = RendezvousServer()
        data = json.dumps({"req_type": "query", "queried_uuid": "zzz"}).encode()
        assert server.handle_datagram(data, SENDER) is None

    def test_on_datagram_send_failure_logged(self):
        server = RendezvousServer()
        server.endpoint = MagicMock()
        server.endpoint.send_nowait.side_effect = SendError("unreachable")
        # Must not raise
        server._on_datagram(encode(LookupRequest(uuid4())), SENDER)
        assert server.endpoint.send_nowait.called


# ---------------------------------------------------------------------------
# TestServerLifecycle
# ---------------------------------------------------------------------------

class TestServerLifecycle:

    @pytest.mark.asyncio
    async def test_start_binds_ephemeral_port(self):
        server = await _start_server()
        try:
            assert server.address.host == "127.0.0.1"
            assert server.address.port > 0
        finally:
            await server.stop()
        assert not server.endpoint.is_open

    @pytest.mark.asyncio
    async def test_stop_idempotent(self):
        server = await _start_server()
        await server.stop()
        await server.stop()

    @pytest.mark.asyncio
    async def test_port_in_use(self):
        server = await _start_server()
        try:
            other = RendezvousServer("127.0.0.1", server.address.port)
            with pytest.raises(CreationError):
                await other.start()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_serve_forever_returns_on_stop(self):
        server = RendezvousServer("127.0.0.1", 0)
        task = asyncio.create_task(server.serve_forever())
        for _ in range(100):
            if server.endpoint is not None:
                break
            await asyncio.sleep(0.01)
        await server.stop()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_serve_again_after_stop(self):
        server = await _start_server()
        await server.stop()

        task = asyncio.create_task(server.serve_forever())
        for _ in range(100):
            if server.endpoint.is_open:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert server.endpoint.is_open
        assert not task.done()

        await server.stop()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_garbage_then_registration(self):
        """Non-protocol bytes get no answer and do not stop the server."""
        server = await _start_server()
        raw = await DatagramEndpoint.open("127.0.0.1", 0)
        try:
            await raw.send(b"not json", server.address)
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(raw.recv(), timeout=0.2)

            await raw.send(encode(Registration(raw.local_address)), server.address)
            data, sender = await asyncio.wait_for(raw.recv(), timeout=2.0)
            resp = decode(data)
            assert sender == server.address
            assert resp.ok
            assert server.registry.lookup(resp.uuid) == raw.local_address
            assert server.dropped == 1
        finally:
            raw.close()
            await server.stop()


# ---------------------------------------------------------------------------
# TestRendezvousClient
# ---------------------------------------------------------------------------

class TestRendezvousClient:

    @pytest.mark.asyncio
    async def test_register_and_query(self):
        server = await _start_server()
        client = RendezvousClient(server.address, timeout=2.0)
        await client.open()
        try:
            my_addr = Address("127.0.0.1", 6000)
            peer_id = await client.register(my_addr)
            assert await client.query(peer_id) == my_addr
            assert await client.query(uuid4()) is None
        finally:
            client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_concurrent_queries_get_own_answers(self):
        server = await _start_server()
        client = RendezvousClient(server.address, timeout=2.0)
        await client.open()
        try:
            expected = {
                server.registry.register(Address("127.0.0.1", 6000 + i)): Address("127.0.0.1", 6000 + i)
                for i in range(20)
            }
            unknown = [uuid4() for _ in range(5)]
            peer_ids = list(expected) + unknown

            results = await asyncio.gather(*(client.query(p) for p in peer_ids))

            for peer_id, result in zip(peer_ids, results):
                assert result == expected.get(peer_id)
            assert client._pending == {}
            assert client.stray == 0
        finally:
            client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_query_timeout(self):
        silent = await _silent_endpoint()
        client = RendezvousClient(silent.local_address, timeout=0.1)
        await client.open()
        try:
            with pytest.raises(RendezvousError, match="No response"):
                await client.query(uuid4())
            assert client._pending == {}
        finally:
            client.close()
            silent.close()

    @pytest.mark.asyncio
    async def test_not_open(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        with pytest.raises(RendezvousError):
            await client.query(uuid4())

    @pytest.mark.asyncio
    async def test_uncorrelated_response_counted_as_stray(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        client._on_datagram(encode(LookupResponse(uuid4(), None, "unknown")), SENDER)
        client._on_datagram(encode(LookupResponse(uuid4(), None)), SENDER)
        client._on_datagram(b"not json", SENDER)
        assert client.stray == 3

    @pytest.mark.asyncio
    async def test_response_resolves_matching_request_only(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        future = asyncio.get_running_loop().create_future()
        client._pending["abc"] = future
        peer_id = uuid4()
        client._on_datagram(encode(LookupResponse(peer_id, None, "other")), SENDER)
        assert not future.done()
        client._on_datagram(encode(LookupResponse(peer_id, None, "abc")), SENDER)
        assert future.result() == LookupResponse(peer_id, None, "abc")

    @pytest.mark.asyncio
    async def test_close_fails_pending(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        future = asyncio.get_running_loop().create_future()
        client._pending["abc"] = future
        client.close()
        with pytest.raises(RendezvousError):
            future.result()

    @pytest.mark.asyncio
    async def test_register_refused(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        client._request = AsyncMock(return_value=RegistrationResponse("FULL", None))
        with pytest.raises(RegistrationError, match="refused"):
            await client.register(Address("127.0.0.1", 6000))

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        peer_id = uuid4()
        client.register = AsyncMock(side_effect=[
            RendezvousError("timeout"), RendezvousError("timeout"), peer_id,
        ])
        result = await client.register_with_retry(
            Address("127.0.0.1", 6000), attempts=3, backoff=0.01,
        )
        assert result == peer_id
        assert client.register.call_count == 3

    @pytest.mark.asyncio
    async def test_retry_exhausted(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        client.register = AsyncMock(side_effect=RendezvousError("timeout"))
        with pytest.raises(RegistrationError, match="after 2 attempt"):
            await client.register_with_retry(
                Address("127.0.0.1", 6000), attempts=2, backoff=0.01,
            )
        assert client.register.call_count == 2

    @pytest.mark.asyncio
    async def test_refusal_not_retried(self):
        client = RendezvousClient(Address("127.0.0.1", 50000))
        client.register = AsyncMock(side_effect=RegistrationError("refused"))
        with pytest.raises(RegistrationError):
            await client.register_with_retry(
                Address("127.0.0.1", 6000), attempts=5, backoff=0.01,
            )
        assert client.register.call_count == 1


# ---------------------------------------------------------------------------
# TestDiscoveryCache
# ---------------------------------------------------------------------------

class TestDiscoveryCache:

    def _rendezvous(self, result):
        rendezvous = MagicMock()
        rendezvous.query = AsyncMock(return_value=result)
        return rendezvous

    @pytest.mark.asyncio
    async def test_miss_then_hit(self):
        addr = Address("127.0.0.1", 6000)
        rendezvous = self._rendezvous(addr)
        cache = DiscoveryCache(rendezvous)
        peer_id = uuid4()

        assert await cache.resolve(peer_id) == addr
        assert await cache.resolve(peer_id) == addr
        assert await cache.resolve(peer_id) == addr

        rendezvous.query.assert_awaited_once_with(peer_id)
        assert cache.lookups == 1
        assert peer_id in cache
        assert cache.get(peer_id) == addr

    @pytest.mark.asyncio
    async def test_not_found_not_cached(self):
        rendezvous = self._rendezvous(None)
        cache = DiscoveryCache(rendezvous)
        peer_id = uuid4()

        with pytest.raises(PeerNotFoundError) as exc_info:
            await cache.resolve(peer_id)
        assert exc_info.value.peer_id == peer_id
        assert len(cache) == 0

        # Asked again, not answered from cache
        with pytest.raises(PeerNotFoundError):
            await cache.resolve(peer_id)
        assert rendezvous.query.await_count == 2

    @pytest.mark.asyncio
    async def test_rendezvous_error_propagates(self):
        rendezvous = MagicMock()
        rendezvous.query = AsyncMock(side_effect=RendezvousError("timeout"))
        cache = DiscoveryCache(rendezvous)
        with pytest.raises(RendezvousError):
            await cache.resolve(uuid4())
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_against_real_server(self):
        server = await _start_server()
        client = RendezvousClient(server.address, timeout=2.0)
        await client.open()
        try:
            peer_id = server.registry.register(Address("127.0.0.1", 6000))
            cache = DiscoveryCache(client)
            assert await cache.resolve(peer_id) == Address("127.0.0.1", 6000)
            with pytest.raises(PeerNotFoundError):
                await cache.resolve(uuid4())
            assert len(cache) == 1
        finally:
            client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_concurrent_resolves(self):
        server = await _start_server()
        client = RendezvousClient(server.address, timeout=2.0)
        await client.open()
        try:
            expected = {
                server.registry.register(Address("127.0.0.1", 7000 + i)): Address("127.0.0.1", 7000 + i)
                for i in range(20)
            }
            cache = DiscoveryCache(client)
            # Every identifier resolved twice at once
            peer_ids = list(expected) * 2

            results = await asyncio.gather(*(cache.resolve(p) for p in peer_ids))

            assert results == [expected[p] for p in peer_ids]
            assert len(cache) == 20
            assert all(cache.get(p) == addr for p, addr in expected.items())
            assert 20 <= cache.lookups <= 40
        finally:
            client.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_concurrent_resolves_ignore_stray_responses(self):
        server = await _start_server()
        client = RendezvousClient(server.address, timeout=2.0)
        await client.open()
        stray = await DatagramEndpoint.open("127.0.0.1", 0)
        try:
            expected = {
                server.registry.register(Address("127.0.0.1", 8000 + i)): Address("127.0.0.1", 8000 + i)
                for i in range(10)
            }
            cache = DiscoveryCache(client)
            bogus = Address("10.9.9.9", 9)

            async def send_strays():
                for peer_id in expected:
                    # Same identifier, wrong address, req_id nobody is waiting on
                    await stray.send(
                        encode(LookupResponse(peer_id, bogus, "deadbeefdeadbeef")),
                        client.endpoint.local_address,
                    )
                    await asyncio.sleep(0)

            results = await asyncio.gather(
                send_strays(), *(cache.resolve(p) for p in expected),
            )

            assert results[1:] == list(expected.values())
            assert all(cache.get(p) == addr for p, addr in expected.items())
            for _ in range(200):
                if client.stray == len(expected):
                    break
                await asyncio.sleep(0.01)
            assert client.stray == len(expected)
        finally:
            stray.close()
            client.close()
            await server.stop()
