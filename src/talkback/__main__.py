"""Command-line entry point: run one talkback session from a plain RTP source.

Example:
    python -m src.talkback --camera-id front-door --rtp-port 5004
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from src.talkback.config import TalkbackConfig
from src.talkback.controller import SessionLifecycleController
from src.talkback.errors import SessionSetupError
from src.talkback.media import RtpSocketTrack
from src.talkback.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def run_talkback(config: TalkbackConfig, camera_id: str, rtp_host: str, rtp_port: int) -> int:
    """Run a session until interrupted or the track ends.

    Returns:
        Process exit code
    """
    track = RtpSocketTrack(host=rtp_host, port=rtp_port)
    await track.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    controller = SessionLifecycleController(config)
    try:
        session = await controller.open(camera_id, track, track)
    except SessionSetupError as e:
        logger.error("Could not start talkback", extra={"session_id": camera_id, "error": str(e)})
        track.close()
        return 1

    stop_waiter = asyncio.create_task(stop_event.wait())
    try:
        # Any relay finishing (track ended, transcoder exited) ends the run.
        await asyncio.wait(
            [stop_waiter, *session.scope.tasks], return_when=asyncio.FIRST_COMPLETED
        )
        if session.track_error is not None:
            logger.warning(
                "Talkback ended on track failure",
                extra={"session_id": camera_id, "error": str(session.track_error)},
            )
    finally:
        stop_waiter.cancel()
        await controller.close_all()
        track.close()

    return 0


def main() -> None:
    """Entry point for the talkback CLI."""
    parser = argparse.ArgumentParser(description="Talkback session orchestrator")
    parser.add_argument("--camera-id", required=True, help="Camera to talk back to")
    parser.add_argument("--rtp-host", default="0.0.0.0", help="Address to receive RTP on")  # noqa: S104
    parser.add_argument("--rtp-port", type=int, default=5004, help="UDP port to receive RTP on")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "talkback.yaml",
        help="Path to talkback config YAML file",
    )
    parser.add_argument("--log-level", default=None, help="Override configured log level")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    args = parser.parse_args()

    config = TalkbackConfig.from_yaml_with_defaults(args.config)
    setup_logging(args.log_level or config.log_level, json_format=args.json_logs)

    try:
        exit_code = asyncio.run(
            run_talkback(config, args.camera_id, args.rtp_host, args.rtp_port)
        )
    except KeyboardInterrupt:
        logger.info("Talkback interrupted")
        exit_code = 130
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
