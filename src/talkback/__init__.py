"""Talkback session orchestrator.

Bridges an inbound peer audio track to a camera's signaling websocket through
an external transcoder, with readiness gating and rollback on partial failure.
"""

from src.talkback.config import TalkbackConfig, TwoWayAudioMode
from src.talkback.controller import SessionLifecycleController
from src.talkback.errors import (
    DiscoveryError,
    RelaySocketError,
    SessionSetupError,
    SignalingConnectError,
    StreamError,
    StreamReadError,
    StreamWriteError,
    TalkbackDisabledError,
    TalkbackError,
    TranscoderStartError,
)
from src.talkback.gate import ReadinessGate, ReadinessState
from src.talkback.media import FeedbackSender, MediaKind, PeerTrack
from src.talkback.session import SessionState, TalkbackSession

__all__ = [
    "DiscoveryError",
    "FeedbackSender",
    "MediaKind",
    "PeerTrack",
    "ReadinessGate",
    "ReadinessState",
    "RelaySocketError",
    "SessionLifecycleController",
    "SessionSetupError",
    "SessionState",
    "SignalingConnectError",
    "StreamError",
    "StreamReadError",
    "StreamWriteError",
    "TalkbackConfig",
    "TalkbackDisabledError",
    "TalkbackError",
    "TalkbackSession",
    "TranscoderStartError",
    "TwoWayAudioMode",
]
