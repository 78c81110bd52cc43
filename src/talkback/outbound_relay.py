"""Relay from transcoder output to the signaling socket."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from src.talkback.errors import StreamReadError, StreamWriteError
from src.talkback.scope import CancelScope
from src.talkback.session import TalkbackMetrics
from src.talkback.signaling import SignalingChannel

logger = logging.getLogger(__name__)


class OutboundRelay:
    """Best-effort forwarder of encoded audio chunks.

    Each chunk read from the transcoder is sent as one binary message. End of
    stream stops the relay; failed reads and sends are logged and the loop
    carries on, since a lost chunk of real-time audio is not worth a session.
    """

    def __init__(
        self,
        read_output: Callable[[int], Awaitable[bytes]],
        signaling: SignalingChannel,
        metrics: TalkbackMetrics,
        *,
        session_id: str = "",
        chunk_size: int = 5000,
        read_timeout_s: float = 1.0,
        error_backoff_s: float = 0.05,
    ) -> None:
        self._read_output = read_output
        self._signaling = signaling
        self._metrics = metrics
        self._session_id = session_id
        self._chunk_size = chunk_size
        self._read_timeout_s = read_timeout_s
        self._error_backoff_s = error_backoff_s

    def start(self, scope: CancelScope) -> None:
        scope.spawn(self.run(scope), "outbound-relay")

    async def run(self, scope: CancelScope) -> None:
        while not scope.cancelled:
            try:
                chunk = await asyncio.wait_for(
                    self._read_output(self._chunk_size), self._read_timeout_s
                )
            except TimeoutError:
                continue
            except Exception as e:
                error = StreamReadError(
                    f"Transcoder output read failed: {e}", session_id=self._session_id
                )
                self._metrics.read_errors += 1
                logger.warning(str(error), extra={"session_id": self._session_id})
                await scope.sleep(self._error_backoff_s)
                continue

            if not chunk:
                logger.info(
                    "Transcoder output ended", extra={"session_id": self._session_id}
                )
                return

            try:
                await self._signaling.send_binary(chunk)
            except StreamWriteError as e:
                self._metrics.send_errors += 1
                logger.warning(
                    "Signaling send failed",
                    extra={"session_id": self._session_id, "error": str(e)},
                )
                await scope.sleep(self._error_backoff_s)
                continue

            self._metrics.record_chunk_sent(len(chunk))
