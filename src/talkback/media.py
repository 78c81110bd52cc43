"""Peer media interfaces consumed by the track relay.

The media engine that negotiates the peer connection and exposes the inbound
track lives outside this package. It is consumed through two narrow protocols:
``PeerTrack`` for reading packets and ``FeedbackSender`` for loss indications.

``RtpSocketTrack`` is a minimal implementation of both that receives plain RTP
over UDP, for driving a session from any RTP sender.
"""

import asyncio
import logging
import struct
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

RTP_HEADER_SIZE = 12
RTCP_PT_PSFB = 206
RTCP_PSFB_PLI = 1


class MediaKind(str, Enum):
    """Media kind of a track."""

    AUDIO = "audio"
    VIDEO = "video"


@runtime_checkable
class PeerTrack(Protocol):
    """Inbound media track.

    ``read()`` returns the next packet and raises ``EOFError`` once the track
    has ended. Other exceptions are read failures.
    """

    @property
    def kind(self) -> MediaKind: ...

    @property
    def ssrc(self) -> int: ...

    async def read(self) -> bytes: ...


@runtime_checkable
class FeedbackSender(Protocol):
    """Sends feedback packets to the peer connection."""

    async def send_loss_indication(self, media_ssrc: int) -> None: ...


def parse_rtp_ssrc(packet: bytes) -> int | None:
    """Return the SSRC of an RTP packet, or None if it is not RTP."""
    if len(packet) < RTP_HEADER_SIZE or packet[0] >> 6 != 2:
        return None
    return int(struct.unpack("!I", packet[8:12])[0])


def build_pli_packet(media_ssrc: int, sender_ssrc: int = 0) -> bytes:
    """Build an RTCP picture-loss indication (RFC 4585, section 6.3.1)."""
    first_byte = (2 << 6) | RTCP_PSFB_PLI
    return struct.pack("!BBHII", first_byte, RTCP_PT_PSFB, 2, sender_ssrc, media_ssrc)


class _RtpReceiverProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: asyncio.Queue[bytes | None], max_queue: int) -> None:
        self._queue = queue
        self._max_queue = max_queue
        self.transport: asyncio.DatagramTransport | None = None
        self.remote_addr: tuple[str, int] | None = None
        self.dropped = 0

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if parse_rtp_ssrc(data) is None:
            return
        self.remote_addr = addr
        if self._queue.qsize() >= self._max_queue:
            self.dropped += 1
            return
        self._queue.put_nowait(data)

    def connection_lost(self, exc: Exception | None) -> None:
        self._queue.put_nowait(None)


class RtpSocketTrack:
    """Audio track fed by plain RTP datagrams on a local UDP port.

    Loss indications are sent as RTCP PLI packets back to the address the most
    recent RTP packet came from (RTP/RTCP multiplexed on one port).
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 5004, max_queue: int = 256) -> None:  # noqa: S104
        self._host = host
        self._port = port
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._protocol = _RtpReceiverProtocol(self._queue, max_queue)
        self._ssrc = 0
        self._ended = False

    async def start(self) -> None:
        """Bind the UDP port."""
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: self._protocol, local_addr=(self._host, self._port)
        )
        logger.info("RTP track listening", extra={"host": self._host, "port": self._port})

    @property
    def kind(self) -> MediaKind:
        return MediaKind.AUDIO

    @property
    def ssrc(self) -> int:
        return self._ssrc

    async def read(self) -> bytes:
        if self._ended:
            raise EOFError("RTP track closed")
        packet = await self._queue.get()
        if packet is None:
            self._ended = True
            raise EOFError("RTP track closed")
        self._ssrc = parse_rtp_ssrc(packet) or self._ssrc
        return packet

    async def send_loss_indication(self, media_ssrc: int) -> None:
        transport = self._protocol.transport
        addr = self._protocol.remote_addr
        if transport is None or addr is None or media_ssrc == 0:
            return
        transport.sendto(build_pli_packet(media_ssrc), addr)

    def close(self) -> None:
        if self._protocol.transport is not None:
            self._protocol.transport.close()
