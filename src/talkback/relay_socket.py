"""Loopback datagram relay between the track relay and the transcoder input.

The relay socket is bound to a local port and connected to the relay port the
transcoder listens on (the port named in its session description).
``RelayPortAllocator`` hands out both ports so that concurrently active
sessions on the same host never share one, on either side of the relay.
"""

import asyncio
import logging
import socket
from collections.abc import Iterator

from src.talkback.errors import RelaySocketError, StreamWriteError

logger = logging.getLogger(__name__)


class RelayPortAllocator:
    """Allocates loopback UDP ports unique among active sessions.

    With a configured range, ports are taken from that range in order; without
    one, the OS picks an ephemeral port. Either way a candidate must be bindable
    at allocation time and must not be held by another session.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port_range: tuple[int, int] | None = None,
        max_attempts: int = 32,
    ) -> None:
        self._host = host
        self._port_range = port_range
        self._max_attempts = max_attempts
        self._reserved: dict[int, str] = {}

    @property
    def reserved(self) -> dict[int, str]:
        """Mapping of reserved port to owning session id."""
        return dict(self._reserved)

    def acquire(self, session_id: str) -> int:
        """Reserve a relay port for ``session_id``.

        Raises:
            RelaySocketError: If no free port could be found
        """
        for port in self._candidates():
            if port in self._reserved:
                continue
            if not self._is_bindable(port):
                continue
            self._reserved[port] = session_id
            logger.debug(
                "Relay port reserved", extra={"session_id": session_id, "port": port}
            )
            return port

        raise RelaySocketError("No free relay port available", session_id=session_id)

    def release(self, port: int) -> None:
        """Return ``port`` to the pool. Unknown ports are ignored."""
        session_id = self._reserved.pop(port, None)
        if session_id is not None:
            logger.debug(
                "Relay port released", extra={"session_id": session_id, "port": port}
            )

    def _candidates(self) -> Iterator[int]:
        if self._port_range is not None:
            start, end = self._port_range
            yield from range(start, end + 1)
            return

        for _ in range(self._max_attempts):
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                    s.bind((self._host, 0))
                    port: int = s.getsockname()[1]
            except OSError as e:
                raise RelaySocketError(f"Cannot probe ephemeral port: {e}") from e
            yield port

    def _is_bindable(self, port: int) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.bind((self._host, port))
        except OSError:
            return False
        return True


class _RelayProtocol(asyncio.DatagramProtocol):
    """Datagram protocol tracking write flow control and ICMP errors."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self.writable = asyncio.Event()
        self.writable.set()
        self.closed = asyncio.Event()

    def pause_writing(self) -> None:
        self.writable.clear()

    def resume_writing(self) -> None:
        self.writable.set()

    def error_received(self, exc: Exception) -> None:
        # The transcoder is not listening yet (ICMP port unreachable) or went away.
        logger.debug(
            "Relay socket error received",
            extra={"session_id": self._session_id, "error": str(exc)},
        )

    def connection_lost(self, exc: Exception | None) -> None:
        self.writable.set()
        self.closed.set()


class LocalRelaySocket:
    """Connected loopback UDP socket with bounded writes."""

    def __init__(
        self,
        transport: asyncio.DatagramTransport,
        protocol: _RelayProtocol,
        relay_port: int,
        session_id: str,
        write_timeout_s: float,
    ) -> None:
        self._transport = transport
        self._protocol = protocol
        self._relay_port = relay_port
        self._session_id = session_id
        self._write_timeout_s = write_timeout_s
        self._closed = False

    @classmethod
    async def open(
        cls,
        relay_port: int,
        *,
        host: str = "127.0.0.1",
        local_port: int = 0,
        session_id: str = "",
        write_timeout_s: float = 1.0,
    ) -> "LocalRelaySocket":
        """Bind ``local_port`` (0 for ephemeral) and connect it to ``relay_port``.

        Raises:
            RelaySocketError: If the socket cannot be created or connected
        """
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _RelayProtocol(session_id),
                local_addr=(host, local_port),
                remote_addr=(host, relay_port),
            )
        except OSError as e:
            raise RelaySocketError(
                f"Failed to open relay socket to {host}:{relay_port}: {e}",
                session_id=session_id,
            ) from e

        relay = cls(transport, protocol, relay_port, session_id, write_timeout_s)
        logger.info(
            "Relay socket opened",
            extra={
                "session_id": session_id,
                "local_port": relay.local_port,
                "relay_port": relay_port,
            },
        )
        return relay

    @property
    def relay_port(self) -> int:
        return self._relay_port

    @property
    def local_port(self) -> int:
        sockname = self._transport.get_extra_info("sockname")
        return int(sockname[1]) if sockname else 0

    @property
    def is_closed(self) -> bool:
        return self._closed or self._transport.is_closing()

    async def write(self, data: bytes) -> None:
        """Send one datagram, waiting at most the write deadline for buffer space.

        Raises:
            StreamWriteError: If the socket is closed or the deadline elapsed
        """
        if self.is_closed:
            raise StreamWriteError("Relay socket is closed", session_id=self._session_id)

        if not self._protocol.writable.is_set():
            try:
                await asyncio.wait_for(
                    self._protocol.writable.wait(), self._write_timeout_s
                )
            except TimeoutError as e:
                raise StreamWriteError(
                    f"Relay write stalled for {self._write_timeout_s}s",
                    session_id=self._session_id,
                ) from e
            if self.is_closed:
                raise StreamWriteError(
                    "Relay socket is closed", session_id=self._session_id
                )

        try:
            self._transport.sendto(data)
        except OSError as e:
            raise StreamWriteError(
                f"Relay write failed: {e}", session_id=self._session_id
            ) from e

    async def close(self) -> None:
        """Close the socket. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._transport.close()
        await self._protocol.closed.wait()
        logger.info(
            "Relay socket closed",
            extra={"session_id": self._session_id, "relay_port": self._relay_port},
        )
