"""Cooperative cancellation for discovery loops and queue waves."""

import asyncio
from typing import Optional

from utils.logger import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Flag checked by long-running loops between iterations.

    Cancelling never interrupts an in-flight fetch; loops observe the token
    at their next check point and stop there.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.warning(f"Cancellation requested: {reason}")


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled
