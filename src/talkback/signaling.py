"""Signaling socket carrying transcoded audio to the camera.

The signaling endpoint is a websocket. The orchestrator only ever sends binary
frames on it, one per transcoder output chunk, in read order.
"""

import logging
import ssl
from abc import ABC, abstractmethod

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from src.talkback.config import SignalingConfig
from src.talkback.errors import SignalingConnectError, StreamWriteError

logger = logging.getLogger(__name__)


class SignalingChannel(ABC):
    """Outbound message socket owned by a talkback session."""

    @abstractmethod
    async def send_binary(self, data: bytes) -> None:
        """Send ``data`` as one binary message.

        Raises:
            StreamWriteError: If the message could not be sent
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the socket. Idempotent."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether messages can currently be sent."""


class WebSocketSignalingChannel(SignalingChannel):
    """Signaling channel over a ``websockets`` client connection."""

    def __init__(
        self, websocket: ClientConnection, url: str, session_id: str = ""
    ) -> None:
        self._websocket = websocket
        self._url = url
        self._session_id = session_id
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return not self._closed and self._websocket.state == State.OPEN

    async def send_binary(self, data: bytes) -> None:
        if self._closed:
            raise StreamWriteError("Signaling socket is closed", session_id=self._session_id)

        try:
            await self._websocket.send(data)
        except ConnectionClosed as e:
            raise StreamWriteError(
                f"Signaling connection closed: {e}", session_id=self._session_id
            ) from e
        except (OSError, WebSocketException) as e:
            raise StreamWriteError(
                f"Signaling send failed: {e}", session_id=self._session_id
            ) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        try:
            await self._websocket.close()
        except (OSError, WebSocketException) as e:
            logger.warning(
                "Error during signaling close",
                extra={"session_id": self._session_id, "error": str(e)},
            )

        logger.info("Signaling socket closed", extra={"session_id": self._session_id})


def build_ssl_context(verify_tls: bool) -> ssl.SSLContext:
    """TLS context for ``wss://`` endpoints, optionally without verification."""
    context = ssl.create_default_context()
    if not verify_tls:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def connect_signaling(
    url: str, config: SignalingConfig, session_id: str = ""
) -> SignalingChannel:
    """Dial the signaling websocket.

    Args:
        url: ``ws://`` or ``wss://`` URL returned by discovery
        config: Signaling configuration
        session_id: Session identifier for logging

    Returns:
        Connected signaling channel

    Raises:
        SignalingConnectError: If the dial or handshake fails or times out
    """
    logger.info("Connecting signaling socket", extra={"session_id": session_id, "url": url})

    ssl_context = build_ssl_context(config.verify_tls) if url.startswith("wss://") else None

    try:
        websocket = await connect(
            url,
            ssl=ssl_context,
            open_timeout=config.connect_timeout_s,
            close_timeout=config.close_timeout_s,
            max_size=config.max_message_size,
        )
    except (OSError, TimeoutError, WebSocketException) as e:
        raise SignalingConnectError(
            f"Failed to connect signaling socket {url}: {e}", session_id=session_id
        ) from e

    logger.info("Signaling socket connected", extra={"session_id": session_id, "url": url})
    return WebSocketSignalingChannel(websocket, url, session_id=session_id)
