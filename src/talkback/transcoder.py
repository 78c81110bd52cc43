"""Transcoder process abstraction and supervision.

The transcoder turns the relayed RTP audio into ADTS-framed AAC. It is an
opaque external process behind the ``Transcoder`` interface: the supervisor
only starts it, writes the session description to its input, reads its output
and scans its diagnostic stream for the readiness marker.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import suppress

from src.talkback.config import TranscoderConfig
from src.talkback.errors import StreamReadError, TranscoderStartError
from src.talkback.gate import ReadinessGate
from src.talkback.scope import CancelScope
from src.talkback.sdp import build_session_description

logger = logging.getLogger(__name__)


class Transcoder(ABC):
    """Narrow interface over the external transcoding process."""

    @abstractmethod
    async def start(self) -> None:
        """Launch the process with its input, output and diagnostic pipes.

        Raises:
            TranscoderStartError: If the process or its pipes cannot be created
        """

    @abstractmethod
    async def write_config(self, data: bytes) -> None:
        """Write the session description to the input stream and close it.

        Raises:
            TranscoderStartError: If the input stream is unavailable or broken
        """

    @abstractmethod
    async def read_output(self, max_bytes: int) -> bytes:
        """Read up to ``max_bytes`` of encoded output. ``b""`` at end of stream."""

    @abstractmethod
    async def read_diagnostic_line(self) -> bytes:
        """Read one line of the diagnostic stream. ``b""`` at end of stream."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the process. Idempotent, and a no-op if it never started."""

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        """Exit status, or None while running or before start."""


def build_ffmpeg_command(config: TranscoderConfig) -> list[str]:
    """Build the ffmpeg invocation for the talkback output profile.

    Input is an SDP read from stdin; output is mono 22.05 kHz, 16 kbit/s
    AAC-LC in ADTS framing on stdout, with buffering disabled throughout.
    """
    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-nostats",
        "-protocol_whitelist", "file,pipe,udp,rtp,crypto",
        "-analyzeduration", "0",
        "-f", "sdp",
        "-i", "pipe:0",
        "-vn",
        "-avioflags", "direct",
        "-fflags", "nobuffer",
        "-flags", "low_delay",
        "-acodec", "aac",
        "-profile:a", "aac_low",
        "-fflags", "+flush_packets",
        "-fflags", "discardcorrupt",
        "-flush_packets", "1",
        "-flags", "+global_header",
        "-reset_timestamps", "1",
        "-ar", "22050",
        "-b:a", "16000",
        "-map", "0:a:0",
        "-ac", "1",
        "-muxdelay", "0",
        "-f", "adts",
        "pipe:1",
    ]  # fmt: skip


class FFmpegTranscoder(Transcoder):
    """Transcoder backed by an asyncio subprocess."""

    def __init__(
        self, command: list[str], session_id: str = "", stop_timeout_s: float = 3.0
    ) -> None:
        self._command = command
        self._session_id = session_id
        self._stop_timeout_s = stop_timeout_s
        self._process: asyncio.subprocess.Process | None = None
        self._stopped = False

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise RuntimeError("Transcoder process not started")
        return self._process

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("Transcoder process already started")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise TranscoderStartError(
                f"Failed to launch {self._command[0]}: {e}", session_id=self._session_id
            ) from e

        logger.info(
            "Transcoder process started",
            extra={"session_id": self._session_id, "pid": self._process.pid},
        )

    async def write_config(self, data: bytes) -> None:
        stdin = self._require_process().stdin
        if stdin is None:
            raise TranscoderStartError(
                "Transcoder stdin pipe unavailable", session_id=self._session_id
            )

        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TranscoderStartError(
                f"Transcoder rejected session description: {e}",
                session_id=self._session_id,
            ) from e
        finally:
            stdin.close()
            with suppress(BrokenPipeError, ConnectionResetError):
                await stdin.wait_closed()

    async def read_output(self, max_bytes: int) -> bytes:
        stdout = self._require_process().stdout
        if stdout is None:
            return b""
        return await stdout.read(max_bytes)

    async def read_diagnostic_line(self) -> bytes:
        stderr = self._require_process().stderr
        if stderr is None:
            return b""
        return await stderr.readline()

    async def stop(self) -> None:
        process = self._process
        if process is None or self._stopped:
            return
        self._stopped = True

        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), self._stop_timeout_s)
            except TimeoutError:
                logger.warning(
                    "Transcoder did not exit, killing",
                    extra={"session_id": self._session_id, "pid": process.pid},
                )
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        logger.info(
            "Transcoder process stopped",
            extra={"session_id": self._session_id, "returncode": process.returncode},
        )


def create_ffmpeg_transcoder(config: TranscoderConfig, session_id: str) -> Transcoder:
    """Default transcoder factory used by the session controller."""
    return FFmpegTranscoder(
        build_ffmpeg_command(config),
        session_id=session_id,
        stop_timeout_s=config.stop_timeout_s,
    )


class TranscoderSupervisor:
    """Starts a transcoder for one session and watches it become ready.

    The supervisor writes the session description for the relay port, then
    scans the diagnostic stream in the session scope. The first line containing
    the marker opens the readiness gate; later occurrences are ignored. If the
    stream ends before the marker appears, the gate fails.
    """

    def __init__(
        self,
        transcoder: Transcoder,
        gate: ReadinessGate,
        config: TranscoderConfig,
        session_id: str = "",
        relay_host: str = "127.0.0.1",
    ) -> None:
        self._transcoder = transcoder
        self._gate = gate
        self._config = config
        self._session_id = session_id
        self._relay_host = relay_host
        self.diagnostic_lines = 0

    @property
    def transcoder(self) -> Transcoder:
        return self._transcoder

    async def start(self, relay_port: int, scope: CancelScope) -> None:
        """Launch the process, hand it the session description, start scanning.

        Raises:
            TranscoderStartError: If the process cannot be started or configured
        """
        session_description = build_session_description(
            relay_port,
            marker=self._config.marker,
            payload_type=self._config.payload_type,
            rtpmap=self._config.rtpmap,
            host=self._relay_host,
        )

        await self._transcoder.start()
        await self._transcoder.write_config(session_description.encode("ascii"))

        scope.spawn(self._scan_diagnostics(scope), "transcoder-diagnostics")

        logger.info(
            "Transcoder configured",
            extra={"session_id": self._session_id, "relay_port": relay_port},
        )

    async def read_output(self, max_bytes: int) -> bytes:
        return await self._transcoder.read_output(max_bytes)

    async def stop(self) -> None:
        await self._transcoder.stop()

    async def _scan_diagnostics(self, scope: CancelScope) -> None:
        marker_seen = False
        try:
            while not scope.cancelled:
                try:
                    line = await self._transcoder.read_diagnostic_line()
                except ValueError as e:
                    # Over-long line; the rest of the stream is still readable.
                    logger.warning(
                        "Transcoder diagnostic line skipped",
                        extra={"session_id": self._session_id, "error": str(e)},
                    )
                    continue
                except Exception as e:
                    error = StreamReadError(
                        f"Transcoder diagnostic stream failed: {e}",
                        session_id=self._session_id,
                    )
                    logger.error(str(error), extra={"session_id": self._session_id})
                    break

                if not line:
                    break

                self.diagnostic_lines += 1
                text = line.decode("utf-8", errors="replace").rstrip()
                logger.debug(
                    "Transcoder: %s", text, extra={"session_id": self._session_id}
                )

                if not marker_seen and self._config.marker in text:
                    marker_seen = True
                    self._gate.open()
        finally:
            if not marker_seen:
                self._gate.fail()

        logger.info(
            "Transcoder diagnostic stream ended",
            extra={
                "session_id": self._session_id,
                "returncode": self._transcoder.returncode,
            },
        )
