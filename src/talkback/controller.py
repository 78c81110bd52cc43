"""Session lifecycle controller.

Opens talkback sessions by acquiring their resources in a fixed order:

1. Resolve the signaling URL (discovery)
2. Connect the signaling socket
3. Reserve the relay and local ports and open the local relay socket
4. Start the transcoder and the outbound relay
5. Start the track relay

Any failure rolls back everything acquired so far before the error reaches
the caller. Closing cancels the session scope and waits for its tasks before
any handle is closed, so relays never see their pipes disappear underneath
them.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from src.talkback.config import TalkbackConfig, TranscoderConfig, TwoWayAudioMode
from src.talkback.discovery import DiscoveryClient
from src.talkback.errors import (
    RelaySocketError,
    SessionSetupError,
    SignalingConnectError,
    TalkbackDisabledError,
    TranscoderStartError,
)
from src.talkback.media import FeedbackSender, PeerTrack
from src.talkback.outbound_relay import OutboundRelay
from src.talkback.relay_socket import LocalRelaySocket, RelayPortAllocator
from src.talkback.session import SessionState, TalkbackSession
from src.talkback.signaling import SignalingChannel, connect_signaling
from src.talkback.track_relay import TrackRelay
from src.talkback.transcoder import (
    Transcoder,
    TranscoderSupervisor,
    create_ffmpeg_transcoder,
)

logger = logging.getLogger(__name__)

SignalingConnector = Callable[[str, str], Awaitable[SignalingChannel]]
TranscoderFactory = Callable[[TranscoderConfig, str], Transcoder]


class SessionLifecycleController:
    """Opens and closes talkback sessions.

    Collaborators default to the production implementations and can be
    replaced for tests.
    """

    def __init__(
        self,
        config: TalkbackConfig,
        *,
        discovery: DiscoveryClient | None = None,
        signaling_connector: SignalingConnector | None = None,
        transcoder_factory: TranscoderFactory | None = None,
        port_allocator: RelayPortAllocator | None = None,
    ) -> None:
        self.config = config
        self.discovery = discovery or DiscoveryClient(config.discovery, config.two_way_audio)
        self._connect_signaling = signaling_connector or self._default_signaling_connector
        self._transcoder_factory = transcoder_factory or create_ffmpeg_transcoder

        if port_allocator is None:
            start, end = config.relay.port_range_start, config.relay.port_range_end
            port_range = (start, end) if start is not None and end is not None else None
            port_allocator = RelayPortAllocator(config.relay.host, port_range)
        self.port_allocator = port_allocator

        self._sessions: dict[str, TalkbackSession] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    @property
    def active_sessions(self) -> dict[str, TalkbackSession]:
        return dict(self._sessions)

    def _open_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._open_locks.get(session_id)
        if lock is None:
            lock = self._open_locks[session_id] = asyncio.Lock()
        return lock

    async def _default_signaling_connector(self, url: str, session_id: str) -> SignalingChannel:
        return await connect_signaling(url, self.config.signaling, session_id=session_id)

    async def open(
        self, session_id: str, track: PeerTrack, feedback: FeedbackSender
    ) -> TalkbackSession:
        """Open a talkback session for ``session_id``.

        Args:
            session_id: Identifier of the camera being talked back to
            track: Inbound peer audio track
            feedback: Feedback sender of the peer connection

        Returns:
            Active session

        Raises:
            SessionSetupError: A setup step failed; nothing acquired is left open
        """
        if self.config.two_way_audio is TwoWayAudioMode.DISABLED:
            raise TalkbackDisabledError("Two-way audio is disabled", session_id=session_id)

        # Discovery happens before any resource is acquired.
        signaling_url = await self.discovery.resolve(session_id)

        # Held from the supersede check until registration, so concurrent
        # opens for one id run one after the other.
        async with self._open_lock(session_id):
            previous = self._sessions.get(session_id)
            if previous is not None:
                logger.info(
                    "Replacing active talkback session", extra={"session_id": session_id}
                )
                await self.close(previous)

            session = TalkbackSession.create(session_id)
            logger.info("Opening talkback session", extra={"session_id": session_id})

            try:
                await self._acquire(session, signaling_url, track, feedback)
            except BaseException as e:
                logger.error(
                    "Talkback session setup failed, rolling back",
                    extra={"session_id": session_id, "error": str(e)},
                )
                await self._close_now(session)
                if isinstance(e, Exception) and not isinstance(e, SessionSetupError):
                    raise SessionSetupError(
                        f"Talkback session setup failed: {e}", session_id=session_id
                    ) from e
                raise

            session.state = SessionState.ACTIVE
            self._sessions[session_id] = session

        logger.info(
            "Talkback session active",
            extra={"session_id": session_id, "relay_port": session.relay_port},
        )
        return session

    async def _acquire(
        self,
        session: TalkbackSession,
        signaling_url: str,
        track: PeerTrack,
        feedback: FeedbackSender,
    ) -> None:
        session_id = session.session_id
        relay_config = self.config.relay

        try:
            session.signaling = await self._connect_signaling(signaling_url, session_id)
        except SessionSetupError:
            raise
        except Exception as e:
            raise SignalingConnectError(
                f"Signaling connect failed: {e}", session_id=session_id
            ) from e

        try:
            session.relay_port = self.port_allocator.acquire(session_id)
            # The sending side is reserved too, so no other session picks it as
            # its relay port.
            session.local_port = self.port_allocator.acquire(session_id)
            session.relay_socket = await LocalRelaySocket.open(
                session.relay_port,
                host=relay_config.host,
                local_port=session.local_port,
                session_id=session_id,
                write_timeout_s=relay_config.write_timeout_s,
            )
        except SessionSetupError:
            raise
        except Exception as e:
            raise RelaySocketError(
                f"Relay socket setup failed: {e}", session_id=session_id
            ) from e

        try:
            session.transcoder = TranscoderSupervisor(
                self._transcoder_factory(self.config.transcoder, session_id),
                session.gate,
                self.config.transcoder,
                session_id=session_id,
                relay_host=relay_config.host,
            )
            await session.transcoder.start(session.relay_port, session.scope)
        except SessionSetupError:
            raise
        except Exception as e:
            raise TranscoderStartError(
                f"Transcoder start failed: {e}", session_id=session_id
            ) from e

        outbound_config = self.config.outbound_relay
        OutboundRelay(
            session.transcoder.read_output,
            session.signaling,
            session.metrics,
            session_id=session_id,
            chunk_size=outbound_config.chunk_size,
            read_timeout_s=outbound_config.read_timeout_s,
            error_backoff_s=outbound_config.error_backoff_s,
        ).start(session.scope)

        track_config = self.config.track_relay
        session.track_relay = TrackRelay(
            track,
            feedback,
            session.relay_socket,
            session.gate,
            session.metrics,
            session_id=session_id,
            read_timeout_s=track_config.read_timeout_s,
            feedback_interval_s=track_config.feedback_interval_s,
        )
        session.track_relay.start(session.scope)

    async def close(self, session: TalkbackSession | None) -> None:
        """Close ``session``. Idempotent and safe on partially-open sessions.

        Concurrent callers all wait for the same teardown.
        """
        if session is None:
            return
        await self._close_now(session)

    async def _close_now(self, session: TalkbackSession) -> None:
        if session.close_task is None:
            session.close_task = asyncio.create_task(
                self._teardown(session), name=f"{session.session_id}:close"
            )
        # Shielded so a cancelled caller cannot abort a teardown others rely on.
        await asyncio.shield(session.close_task)

    async def _teardown(self, session: TalkbackSession) -> None:
        session_id = session.session_id
        session.state = SessionState.CLOSING

        session.scope.cancel()
        await session.scope.wait(self.config.close_timeout_s)

        transcoder, session.transcoder = session.transcoder, None
        relay_socket, session.relay_socket = session.relay_socket, None
        relay_port, session.relay_port = session.relay_port, None
        local_port, session.local_port = session.local_port, None
        signaling, session.signaling = session.signaling, None

        if transcoder is not None:
            try:
                await transcoder.stop()
            except Exception as e:
                logger.error(
                    "Error stopping transcoder",
                    extra={"session_id": session_id, "error": str(e)},
                )

        if relay_socket is not None:
            await relay_socket.close()
        for port in (relay_port, local_port):
            if port is not None:
                self.port_allocator.release(port)

        if signaling is not None:
            try:
                await signaling.close()
            except Exception as e:
                logger.error(
                    "Error closing signaling socket",
                    extra={"session_id": session_id, "error": str(e)},
                )

        if self._sessions.get(session_id) is session:
            del self._sessions[session_id]

        if session.gate.opened_at is not None:
            session.metrics.record_ready(session.gate.opened_at)
        session.metrics.finalize()
        session.state = SessionState.CLOSED
        logger.info(
            "Talkback session closed",
            extra={"session_id": session_id, **session.metrics.summary()},
        )

    async def close_all(self) -> None:
        """Close every active session."""
        sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(*(self.close(s) for s in sessions))
