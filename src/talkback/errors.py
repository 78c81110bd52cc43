"""Error taxonomy for talkback sessions.

Setup errors are raised from ``SessionLifecycleController.open`` and always
follow a full rollback of the resources acquired so far. Stream errors are
raised and handled inside the relays; they are logged per occurrence and never
reach the caller.
"""


class TalkbackError(Exception):
    """Base class for all talkback errors."""

    def __init__(self, message: str, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionSetupError(TalkbackError):
    """A step of session open failed. Fatal to that open attempt."""


class TalkbackDisabledError(SessionSetupError):
    """Two-way audio is disabled in configuration."""


class DiscoveryError(SessionSetupError):
    """Signaling endpoint lookup failed or returned failure."""


class SignalingConnectError(SessionSetupError):
    """Signaling socket dial or handshake failed."""


class RelaySocketError(SessionSetupError):
    """Local datagram relay setup failed."""


class TranscoderStartError(SessionSetupError):
    """Transcoder process failed to launch or its pipes could not be used."""


class StreamError(TalkbackError):
    """Steady-state stream failure. Recovered locally."""


class StreamReadError(StreamError):
    """Reading from a track or transcoder stream failed."""


class StreamWriteError(StreamError):
    """Writing to the relay socket or signaling socket failed."""
