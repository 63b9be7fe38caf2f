"""
Cancellation tokens and cancellable suspension.

Backoff delays and poll intervals suspend through ``sleep`` so that a
caller can abandon an in-flight operation without waiting for the
current delay to run out.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from .errors import OperationCancelled


logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Signal shared between a caller and the operation it started.

    Tokens are one-shot: once cancelled they stay cancelled. The
    underlying ``asyncio.Event`` is created lazily so that a token can be
    built outside a running event loop.
    """

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Whether ``cancel`` has been called."""
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Operation cancelled") -> None:
        """Trigger the token; repeated calls are ignored."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")
        self._callbacks.clear()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> bool:
        """Forget a callback that has not run yet."""
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason or "Operation cancelled")

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def child(self) -> "CancellationToken":
        """Create a token that is cancelled whenever this one is."""
        token = CancellationToken()
        self.add_callback(lambda: token.cancel(self._reason or "Operation cancelled"))
        return token


async def sleep(delay: float, token: Optional[CancellationToken] = None) -> None:
    """
    Suspend for ``delay`` seconds, waking early on cancellation.

    Raises:
        OperationCancelled: If the token is (or becomes) cancelled
    """
    if token is None:
        await asyncio.sleep(delay)
        return

    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=max(delay, 0.0))
    except asyncio.TimeoutError:
        return
    token.raise_if_cancelled()


__all__ = ["CancellationToken", "sleep"]
