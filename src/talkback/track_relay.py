"""Relay from the inbound peer track to the local relay socket."""

import asyncio
import logging

from src.talkback.errors import StreamReadError, StreamWriteError
from src.talkback.gate import ReadinessGate
from src.talkback.media import FeedbackSender, MediaKind, PeerTrack
from src.talkback.relay_socket import LocalRelaySocket
from src.talkback.scope import CancelScope
from src.talkback.session import TalkbackMetrics

logger = logging.getLogger(__name__)


class TrackRelay:
    """Forwards audio packets from the peer track once the gate is open.

    Two loops run in the session scope: the read loop, which drops packets
    until the readiness gate opens and forwards them afterwards, and the
    feedback loop, which asks the sender for a recovery point at a fixed
    interval regardless of readiness.
    """

    def __init__(
        self,
        track: PeerTrack,
        feedback: FeedbackSender,
        relay_socket: LocalRelaySocket,
        gate: ReadinessGate,
        metrics: TalkbackMetrics,
        *,
        session_id: str = "",
        read_timeout_s: float = 1.0,
        feedback_interval_s: float = 3.0,
    ) -> None:
        self._track = track
        self._feedback = feedback
        self._relay_socket = relay_socket
        self._gate = gate
        self._metrics = metrics
        self._session_id = session_id
        self._read_timeout_s = read_timeout_s
        self._feedback_interval_s = feedback_interval_s
        self.error: StreamReadError | None = None

    def start(self, scope: CancelScope) -> None:
        """Spawn the read and feedback loops into ``scope``."""
        logger.info(
            "Track relay started",
            extra={
                "session_id": self._session_id,
                "kind": str(self._track.kind),
                "ssrc": self._track.ssrc,
            },
        )
        scope.spawn(self.run_reader(scope), "track-reader")
        scope.spawn(self.run_feedback(scope), "track-feedback")

    async def run_reader(self, scope: CancelScope) -> None:
        """Read packets until end of stream, a read error, or cancellation."""
        while not scope.cancelled:
            try:
                packet = await asyncio.wait_for(self._track.read(), self._read_timeout_s)
            except TimeoutError:
                continue
            except EOFError:
                logger.info("Peer track ended", extra={"session_id": self._session_id})
                return
            except Exception as e:
                self.error = StreamReadError(
                    f"Peer track read failed: {e}", session_id=self._session_id
                )
                logger.error(
                    "Peer track read failed, stopping track relay",
                    extra={"session_id": self._session_id, "error": str(e)},
                )
                return

            await self._forward(packet)

    async def _forward(self, packet: bytes) -> None:
        if self._track.kind != MediaKind.AUDIO:
            return

        if not self._gate.is_open:
            self._metrics.record_frame_dropped()
            return

        try:
            await self._relay_socket.write(packet)
        except StreamWriteError as e:
            self._metrics.record_write_error()
            logger.warning(
                "Relay write failed, retrying with next frame",
                extra={"session_id": self._session_id, "error": str(e)},
            )
            return

        self._metrics.record_frame_forwarded(len(packet))

    async def run_feedback(self, scope: CancelScope) -> None:
        """Send a loss indication every interval until cancellation."""
        while not await scope.sleep(self._feedback_interval_s):
            try:
                await self._feedback.send_loss_indication(self._track.ssrc)
            except Exception as e:
                logger.warning(
                    "Loss indication failed",
                    extra={"session_id": self._session_id, "error": str(e)},
                )
                continue
            self._metrics.feedback_sent += 1
