"""Per-session state for talkback.

A ``TalkbackSession`` holds every resource acquired for one talkback request.
It is owned by the ``SessionLifecycleController``; relays receive the pieces
they use but never close them.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from src.talkback.errors import StreamReadError
from src.talkback.gate import ReadinessGate, ReadinessState
from src.talkback.relay_socket import LocalRelaySocket
from src.talkback.scope import CancelScope
from src.talkback.signaling import SignalingChannel
from src.talkback.transcoder import TranscoderSupervisor

if TYPE_CHECKING:
    from src.talkback.track_relay import TrackRelay


class SessionState(Enum):
    """Session lifecycle states.

    State Transitions:
    - OPENING → ACTIVE (all resources acquired)
    - OPENING → CLOSING (setup step failed, rollback)
    - ACTIVE → CLOSING (caller-initiated close)
    - CLOSING → CLOSED
    """

    OPENING = "opening"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class TalkbackMetrics:
    """Session activity counters."""

    frames_forwarded: int = 0
    frames_dropped: int = 0  # Audio received before the gate opened
    bytes_forwarded: int = 0
    write_errors: int = 0

    chunks_sent: int = 0
    bytes_sent: int = 0
    read_errors: int = 0
    send_errors: int = 0

    feedback_sent: int = 0

    session_start_ts: float = field(default_factory=time.monotonic)
    ready_ts: float | None = None
    first_frame_forwarded_ts: float | None = None
    session_end_ts: float | None = None

    def record_frame_forwarded(self, size: int) -> None:
        self.frames_forwarded += 1
        self.bytes_forwarded += size
        if self.first_frame_forwarded_ts is None:
            self.first_frame_forwarded_ts = time.monotonic()

    def record_frame_dropped(self) -> None:
        self.frames_dropped += 1

    def record_write_error(self) -> None:
        self.write_errors += 1

    def record_chunk_sent(self, size: int) -> None:
        self.chunks_sent += 1
        self.bytes_sent += size

    def record_ready(self, opened_at: float) -> None:
        if self.ready_ts is None:
            self.ready_ts = opened_at

    @property
    def time_to_ready_s(self) -> float | None:
        """Seconds from session start until the readiness gate opened."""
        if self.ready_ts is None:
            return None
        return self.ready_ts - self.session_start_ts

    def finalize(self) -> None:
        """Mark session as complete and record end time."""
        if self.session_end_ts is None:
            self.session_end_ts = time.monotonic()

    @property
    def duration_s(self) -> float:
        end = self.session_end_ts if self.session_end_ts is not None else time.monotonic()
        return end - self.session_start_ts

    def summary(self) -> dict[str, float | int | None]:
        """Flat view for structured log records."""
        return {
            "frames_forwarded": self.frames_forwarded,
            "frames_dropped": self.frames_dropped,
            "write_errors": self.write_errors,
            "chunks_sent": self.chunks_sent,
            "bytes_sent": self.bytes_sent,
            "read_errors": self.read_errors,
            "send_errors": self.send_errors,
            "feedback_sent": self.feedback_sent,
            "time_to_ready_s": (
                round(self.time_to_ready_s, 3) if self.time_to_ready_s is not None else None
            ),
            "duration_s": round(self.duration_s, 3),
        }


@dataclass
class TalkbackSession:
    """Resources and state of one talkback session.

    Resource fields are None until acquired and are reset to None when
    released, so each handle is closed at most once.
    """

    session_id: str
    scope: CancelScope
    gate: ReadinessGate
    metrics: TalkbackMetrics = field(default_factory=TalkbackMetrics)
    state: SessionState = SessionState.OPENING

    signaling: SignalingChannel | None = None
    relay_port: int | None = None
    local_port: int | None = None
    relay_socket: LocalRelaySocket | None = None
    transcoder: TranscoderSupervisor | None = None
    track_relay: "TrackRelay | None" = field(default=None, repr=False)

    close_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @classmethod
    def create(cls, session_id: str) -> "TalkbackSession":
        return cls(
            session_id=session_id,
            scope=CancelScope(name=session_id),
            gate=ReadinessGate(session_id),
        )

    @property
    def ready(self) -> ReadinessState:
        return self.gate.state

    @property
    def track_error(self) -> StreamReadError | None:
        """Read failure that stopped the track relay, if any."""
        return self.track_relay.error if self.track_relay is not None else None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE and not self.scope.cancelled

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED
