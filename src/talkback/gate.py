"""Readiness gate between transcoder startup and audio forwarding."""

import asyncio
import logging
import time
from enum import Enum

logger = logging.getLogger(__name__)


class ReadinessState(Enum):
    """Gate states. Transitions are PENDING → READY or PENDING → FAILED only."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class ReadinessGate:
    """One-shot latch that flips the pipeline from dropping to forwarding audio.

    A single writer (the transcoder diagnostic scanner) resolves the gate; any
    number of relay tasks read it. The resolution is published through an
    ``asyncio.Event`` so readers can either poll ``is_open`` or await
    ``wait()``.
    """

    def __init__(self, session_id: str = "") -> None:
        self._session_id = session_id
        self._state = ReadinessState.PENDING
        self._resolved = asyncio.Event()
        self.opened_at: float | None = None

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ReadinessState.READY

    def open(self) -> bool:
        """Transition PENDING → READY.

        Returns:
            True if this call opened the gate, False if it was already resolved
        """
        if self._state is not ReadinessState.PENDING:
            return False

        self._state = ReadinessState.READY
        self.opened_at = time.monotonic()
        self._resolved.set()
        logger.info("Readiness gate opened", extra={"session_id": self._session_id})
        return True

    def fail(self) -> bool:
        """Transition PENDING → FAILED. No effect once resolved."""
        if self._state is not ReadinessState.PENDING:
            return False

        self._state = ReadinessState.FAILED
        self._resolved.set()
        logger.warning("Readiness gate failed", extra={"session_id": self._session_id})
        return True

    async def wait(self, timeout: float | None = None) -> ReadinessState:
        """Wait until the gate leaves PENDING.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely

        Returns:
            The state after waiting (PENDING if the timeout elapsed)
        """
        try:
            await asyncio.wait_for(self._resolved.wait(), timeout)
        except TimeoutError:
            pass
        return self._state
