"""Bidirectional message channel between the supervisor and a child.

Messages are JSON values, one per line, over a Unix socket pair. The child
end of the pair is inherited by the child process and its file descriptor
number is published in the ``FOX_CHANNEL_FD`` environment variable.

Supervisor side (asyncio):
    parent_sock, child_sock = create_socket_pair()
    channel = await MessageChannel.open(parent_sock)
    await channel.send({"type": "ping"})
    async for message in channel.messages():
        ...

Child side (blocking):
    with connect_parent() as channel:
        channel.send({"type": "ready"})
        for message in channel:
            ...

Channels rely on file descriptor inheritance and are POSIX only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from collections.abc import AsyncIterator, Iterator, Mapping
from typing import Any

__all__ = [
    "CHANNEL_FD_ENV",
    "MessageChannel",
    "ParentChannel",
    "connect_parent",
    "create_socket_pair",
]

logger = logging.getLogger(__name__)

CHANNEL_FD_ENV = "FOX_CHANNEL_FD"

# Per-message line limit for the asyncio reader
CHANNEL_LINE_LIMIT = 4 * 1024 * 1024  # 4MB


def _encode(payload: Any) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def create_socket_pair() -> tuple[socket.socket, socket.socket]:
    """Create a connected (parent, child) socket pair.

    The child socket is inheritable so it can be passed via ``pass_fds``.
    """
    parent_sock, child_sock = socket.socketpair()
    child_sock.set_inheritable(True)
    return parent_sock, child_sock


class MessageChannel:
    """Supervisor side of a message channel."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    @classmethod
    async def open(cls, sock: socket.socket) -> "MessageChannel":
        """Wrap a connected socket in asyncio streams."""
        reader, writer = await asyncio.open_connection(sock=sock, limit=CHANNEL_LINE_LIMIT)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, payload: Any) -> None:
        """Write one message."""
        if self._closed:
            raise ConnectionResetError("Message channel is closed")
        self._writer.write(_encode(payload))
        await self._writer.drain()

    async def messages(self) -> AsyncIterator[Any]:
        """Yield inbound messages in arrival order until the child hangs up.

        Lines that are not valid JSON are logged and skipped.
        """
        while True:
            try:
                line = await self._reader.readline()
            except (ConnectionResetError, asyncio.LimitOverrunError, ValueError) as e:
                logger.warning(f"Message channel read failed: {e}")
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError as e:
                logger.warning(f"Dropping malformed channel message: {e} (line={text[:200]!r})")
                continue
            yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass


class ParentChannel:
    """Child side of a message channel (blocking I/O)."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._reader = sock.makefile("r", encoding="utf-8")
        self._writer = sock.makefile("w", encoding="utf-8")

    def send(self, payload: Any) -> None:
        self._writer.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self._writer.flush()

    def receive(self) -> Any | None:
        """Read the next message; None when the supervisor has hung up."""
        while True:
            line = self._reader.readline()
            if not line:
                return None
            line = line.strip()
            if line:
                return json.loads(line)

    def __iter__(self) -> Iterator[Any]:
        while True:
            message = self.receive()
            if message is None:
                return
            yield message

    def close(self) -> None:
        for stream in (self._writer, self._reader):
            try:
                stream.close()
            except OSError:
                pass
        self._sock.close()

    def __enter__(self) -> "ParentChannel":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def connect_parent(environ: Mapping[str, str] | None = None) -> ParentChannel:
    """Open the channel inherited from the supervisor.

    Raises:
        RuntimeError: if the process was not launched with a channel
    """
    env = os.environ if environ is None else environ
    value = env.get(CHANNEL_FD_ENV)
    if not value:
        raise RuntimeError(f"{CHANNEL_FD_ENV} is not set; not launched with a message channel")
    sock = socket.socket(fileno=int(value))
    return ParentChannel(sock)
