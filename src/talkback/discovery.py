"""Signaling endpoint discovery over HTTP."""

import logging

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from src.talkback.config import DiscoveryConfig, TwoWayAudioMode
from src.talkback.errors import DiscoveryError

logger = logging.getLogger(__name__)


class DiscoveryResponse(BaseModel):
    """Discovery service reply.

    ``data`` holds the signaling URL when ``success`` is true, ``error`` a
    human-readable reason otherwise.
    """

    success: bool
    data: str = Field(default="", description="Signaling websocket URL")
    error: str = Field(default="", description="Failure reason")


class DiscoveryClient:
    """Looks up the signaling URL for a camera."""

    def __init__(
        self, config: DiscoveryConfig, mode: TwoWayAudioMode = TwoWayAudioMode.UNIFI
    ) -> None:
        self.config = config
        self.mode = mode

    @property
    def url(self) -> str:
        return f"{self.config.base_url}{self.config.path}"

    async def resolve(self, session_id: str) -> str:
        """Return the signaling URL for ``session_id``.

        Raises:
            DiscoveryError: On transport failure, a non-2xx status, a malformed
                body, or a reply with ``success`` false
        """
        params = {"cameraId": session_id, "vendor": self.mode.value}
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_s)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.get(self.url, params=params) as response:
                    if response.status >= 400:
                        raise DiscoveryError(
                            f"Discovery returned HTTP {response.status}",
                            session_id=session_id,
                        )
                    payload = await response.json(content_type=None)
        except DiscoveryError:
            raise
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise DiscoveryError(
                f"Discovery request failed: {e}", session_id=session_id
            ) from e

        try:
            reply = DiscoveryResponse.model_validate(payload)
        except ValidationError as e:
            raise DiscoveryError(
                f"Malformed discovery response: {e}", session_id=session_id
            ) from e

        if not reply.success:
            raise DiscoveryError(
                f"Discovery failed: {reply.error or 'unknown error'}", session_id=session_id
            )
        if not reply.data:
            raise DiscoveryError("Discovery returned no signaling URL", session_id=session_id)

        logger.info(
            "Signaling URL discovered", extra={"session_id": session_id, "url": reply.data}
        )
        return reply.data
