"""
Console collaborators for ``rdv peer``.

Consumer: prints each delivered message to stdout.
Producer: reads ``<uuid> <text>`` lines from stdin and submits them.

stdin is read on a daemon thread so a blocked read never holds up
interpreter shutdown; lines are handed to the event loop with
call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import TYPE_CHECKING, TextIO
from uuid import UUID

from rdv.client import RendezvousError
from rdv.discovery import PeerNotFoundError
from rdv.protocol import EncodeError, MessageEnvelope
from rdv.transport import TransportError

if TYPE_CHECKING:
    from rdv.peer import PeerNode

log = logging.getLogger(__name__)

QUIT_COMMANDS = ("/quit", "/exit")


class CommandError(ValueError):
    """Console line is not ``<uuid> <text>``."""


def format_message(envelope: MessageEnvelope) -> str:
    stamp = envelope.creation_time.strftime("%H:%M:%S")
    return f"[{stamp}] {envelope.src}: {envelope.data}"


def print_message(envelope: MessageEnvelope) -> None:
    print(format_message(envelope), flush=True)


def parse_line(line: str) -> tuple[UUID, str]:
    """Split a console line into (destination, text). Raises CommandError."""
    target, _, text = line.strip().partition(" ")
    if not target:
        raise CommandError("Empty line")
    try:
        dst = UUID(target)
    except ValueError:
        raise CommandError(f"Not a peer id: {target!r}") from None
    text = text.strip()
    if not text:
        raise CommandError("Message text is empty")
    return dst, text


def _read_lines(stream: TextIO, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    try:
        for line in stream:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        # EOF
        loop.call_soon_threadsafe(queue.put_nowait, None)
    except RuntimeError:
        # Event loop closed while we were blocked on input
        return


async def console_loop(node: PeerNode, stream: TextIO | None = None) -> None:
    """Submit messages typed on ``stream`` (default stdin) until EOF or /quit."""
    lines: asyncio.Queue[str | None] = asyncio.Queue()
    reader = threading.Thread(
        target=_read_lines,
        args=(stream or sys.stdin, asyncio.get_running_loop(), lines),
        name="rdv-stdin",
        daemon=True,
    )
    reader.start()

    while True:
        line = await lines.get()
        if line is None:
            log.debug("stdin closed")
            return
        line = line.strip()
        if not line:
            continue
        if line in QUIT_COMMANDS:
            return
        if line == "/id":
            print(f"{node.uuid} at {node.address}", flush=True)
            continue

        try:
            dst, text = parse_line(line)
        except CommandError as e:
            print(f"Usage: <uuid> <message>  ({e})", flush=True)
            continue

        try:
            await node.submit(dst, text)
        except PeerNotFoundError:
            print(f"Unknown peer: {dst}", flush=True)
        except RendezvousError as e:
            print(f"Lookup failed: {e}", flush=True)
        except EncodeError as e:
            print(f"Message not sent: {e}", flush=True)
        except TransportError as e:
            print(f"Send failed: {e}", flush=True)
