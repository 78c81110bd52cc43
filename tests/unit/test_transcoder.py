"""Unit tests for the transcoder supervisor, ffmpeg process wrapper and SDP."""

import asyncio
import sys
import textwrap

import pytest

from src.talkback.config import TranscoderConfig
from src.talkback.errors import TranscoderStartError
from src.talkback.gate import ReadinessGate, ReadinessState
from src.talkback.scope import CancelScope
from src.talkback.sdp import build_session_description
from src.talkback.transcoder import (
    FFmpegTranscoder,
    TranscoderSupervisor,
    build_ffmpeg_command,
    create_ffmpeg_transcoder,
)
from tests.helpers.talkback_fakes import FakeTranscoder, wait_until


def python_transcoder(script: str) -> list[str]:
    """Command running ``script`` with the current interpreter in place of ffmpeg."""
    return [sys.executable, "-c", textwrap.dedent(script)]


class TestSessionDescription:
    """Test SDP generation."""

    def test_template(self) -> None:
        sdp = build_session_description(40123)
        assert sdp.splitlines() == [
            "v=0",
            "o=- 0 0 IN IP4 127.0.0.1",
            "s=TalkbackRelay",
            "c=IN IP4 127.0.0.1",
            "t=0 0",
            "m=audio 40123 RTP/AVP 111",
            "a=rtpmap:111 opus/48000/2",
        ]

    def test_custom_marker_and_payload(self) -> None:
        sdp = build_session_description(5000, marker="CamTalk", payload_type=100, rtpmap="PCMU/8000")
        assert "s=CamTalk\r\n" in sdp
        assert "m=audio 5000 RTP/AVP 100\r\n" in sdp
        assert "a=rtpmap:100 PCMU/8000\r\n" in sdp

    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_invalid_port(self, port: int) -> None:
        with pytest.raises(ValueError, match="Invalid relay port"):
            build_session_description(port)


class TestFFmpegCommand:
    """Test the fixed output profile."""

    def test_reads_sdp_from_stdin_and_writes_adts_to_stdout(self) -> None:
        cmd = build_ffmpeg_command(TranscoderConfig())
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "pipe:0"
        assert cmd[cmd.index("-i") - 1] == "sdp"
        assert cmd[-1] == "pipe:1"
        assert cmd[-2] == "adts"

    def test_output_profile(self) -> None:
        cmd = build_ffmpeg_command(TranscoderConfig())
        assert cmd[cmd.index("-ac") + 1] == "1"
        assert cmd[cmd.index("-ar") + 1] == "22050"
        assert cmd[cmd.index("-acodec") + 1] == "aac"
        assert cmd[cmd.index("-profile:a") + 1] == "aac_low"
        assert cmd[cmd.index("-b:a") + 1] == "16000"
        assert "pipe" in cmd[cmd.index("-protocol_whitelist") + 1].split(",")

    def test_configured_executable(self) -> None:
        cmd = build_ffmpeg_command(TranscoderConfig(ffmpeg_path="/usr/local/bin/ffmpeg"))
        assert cmd[0] == "/usr/local/bin/ffmpeg"

    def test_factory(self) -> None:
        transcoder = create_ffmpeg_transcoder(TranscoderConfig(), "cam-1")
        assert isinstance(transcoder, FFmpegTranscoder)
        assert transcoder.returncode is None


class TestFFmpegTranscoder:
    """Test the subprocess wrapper against a stand-in process."""

    @pytest.mark.asyncio
    async def test_config_output_and_diagnostics(self) -> None:
        transcoder = FFmpegTranscoder(
            python_transcoder(
                """
                import sys
                sdp = sys.stdin.read()
                name = [l[2:] for l in sdp.splitlines() if l.startswith("s=")][0]
                sys.stderr.write("Input #0, sdp, from 'pipe:0':\\n")
                sys.stderr.write("    title           : " + name + "\\n")
                sys.stderr.flush()
                sys.stdout.buffer.write(b"\\xff\\xf1encoded")
                sys.stdout.flush()
                """
            )
        )
        await transcoder.start()
        await transcoder.write_config(build_session_description(40000).encode())

        assert await transcoder.read_diagnostic_line() == b"Input #0, sdp, from 'pipe:0':\n"
        assert b"TalkbackRelay" in await transcoder.read_diagnostic_line()

        output = b""
        while chunk := await transcoder.read_output(4):
            output += chunk
        assert output == b"\xff\xf1encoded"

        assert await wait_until(lambda: transcoder.returncode is not None, timeout=5.0)
        await transcoder.stop()
        assert transcoder.returncode == 0

    @pytest.mark.asyncio
    async def test_missing_executable(self) -> None:
        transcoder = FFmpegTranscoder(["/nonexistent/ffmpeg"], session_id="cam-1")
        with pytest.raises(TranscoderStartError) as exc_info:
            await transcoder.start()
        assert exc_info.value.session_id == "cam-1"
        await transcoder.stop()  # never started: no-op

    @pytest.mark.asyncio
    async def test_stop_terminates_running_process(self) -> None:
        transcoder = FFmpegTranscoder(
            python_transcoder("import time; time.sleep(60)"), stop_timeout_s=5.0
        )
        await transcoder.start()
        assert transcoder.returncode is None

        await transcoder.stop()
        assert transcoder.returncode is not None

        await transcoder.stop()  # idempotent

    @pytest.mark.asyncio
    async def test_stop_kills_process_ignoring_terminate(self) -> None:
        transcoder = FFmpegTranscoder(
            python_transcoder(
                """
                import signal, sys, time
                signal.signal(signal.SIGTERM, signal.SIG_IGN)
                sys.stderr.write("ready\\n")
                sys.stderr.flush()
                time.sleep(60)
                """
            ),
            stop_timeout_s=0.2,
        )
        await transcoder.start()
        assert await transcoder.read_diagnostic_line() == b"ready\n"

        await transcoder.stop()
        assert transcoder.returncode is not None
        assert transcoder.returncode < 0

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self) -> None:
        transcoder = FFmpegTranscoder(python_transcoder("pass"))
        await transcoder.start()
        try:
            with pytest.raises(RuntimeError, match="already started"):
                await transcoder.start()
        finally:
            await transcoder.stop()


class TestTranscoderSupervisor:
    """Test readiness detection on the diagnostic stream."""

    @pytest.mark.asyncio
    async def test_marker_opens_gate(self) -> None:
        fake = FakeTranscoder([b"Input #0, sdp, from 'pipe:0':\n"])
        gate = ReadinessGate()
        scope = CancelScope()
        supervisor = TranscoderSupervisor(fake, gate, TranscoderConfig())

        await supervisor.start(40000, scope)
        assert fake.config_written is not None
        assert b"m=audio 40000 RTP/AVP 111" in fake.config_written
        assert b"s=TalkbackRelay" in fake.config_written

        await asyncio.sleep(0.01)
        assert gate.state is ReadinessState.PENDING

        fake.diagnostics.put_nowait(b"    title           : TalkbackRelay\n")
        assert await gate.wait(timeout=1.0) is ReadinessState.READY

        scope.cancel()
        await scope.wait(1.0)

    @pytest.mark.asyncio
    async def test_repeated_marker_opens_once(self) -> None:
        fake = FakeTranscoder(
            [b"title: TalkbackRelay\n", b"TalkbackRelay again\n", b"TalkbackRelay\n", b"size=1kB\n"]
        )
        gate = ReadinessGate()
        opens: list[bool] = []
        unpatched_open = gate.open

        def counting_open() -> bool:
            result = unpatched_open()
            opens.append(result)
            return result

        gate.open = counting_open  # type: ignore[method-assign]
        scope = CancelScope()
        supervisor = TranscoderSupervisor(fake, gate, TranscoderConfig())
        await supervisor.start(40000, scope)

        assert await wait_until(lambda: supervisor.diagnostic_lines == 4)
        assert opens == [True]
        assert gate.is_open

        scope.cancel()
        await scope.wait(1.0)

    @pytest.mark.asyncio
    async def test_stream_end_before_marker_fails_gate(self) -> None:
        fake = FakeTranscoder([b"pipe:0: Invalid data found when processing input\n", None])  # type: ignore[list-item]
        gate = ReadinessGate()
        scope = CancelScope()
        await TranscoderSupervisor(fake, gate, TranscoderConfig()).start(40000, scope)

        assert await gate.wait(timeout=1.0) is ReadinessState.FAILED
        await scope.wait(1.0)

    @pytest.mark.asyncio
    async def test_diagnostic_read_error_fails_gate(self) -> None:
        fake = FakeTranscoder()
        fake.diagnostics.put_nowait(OSError("pipe broken"))
        gate = ReadinessGate()
        scope = CancelScope()
        await TranscoderSupervisor(fake, gate, TranscoderConfig()).start(40000, scope)

        assert await gate.wait(timeout=1.0) is ReadinessState.FAILED

    @pytest.mark.asyncio
    async def test_overlong_line_skipped(self) -> None:
        fake = FakeTranscoder()
        fake.diagnostics.put_nowait(ValueError("Separator is found, but chunk is longer than limit"))
        fake.diagnostics.put_nowait(b"TalkbackRelay\n")
        gate = ReadinessGate()
        scope = CancelScope()
        await TranscoderSupervisor(fake, gate, TranscoderConfig()).start(40000, scope)

        assert await gate.wait(timeout=1.0) is ReadinessState.READY
        scope.cancel()
        await scope.wait(1.0)

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self) -> None:
        fake = FakeTranscoder(fail_start=True)
        scope = CancelScope()
        supervisor = TranscoderSupervisor(fake, ReadinessGate(), TranscoderConfig())

        with pytest.raises(TranscoderStartError):
            await supervisor.start(40000, scope)
        assert scope.tasks == frozenset()

    @pytest.mark.asyncio
    async def test_read_output_delegates(self) -> None:
        fake = FakeTranscoder()
        fake.output.put_nowait(b"abcdef")
        supervisor = TranscoderSupervisor(fake, ReadinessGate(), TranscoderConfig())
        assert await supervisor.read_output(3) == b"abc"

        await supervisor.stop()
        assert fake.stop_calls == 1
