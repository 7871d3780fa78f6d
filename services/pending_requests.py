"""In-flight webhook requests and their cancellation.

A CancelScope merges the two ways a call can be cut short (the user
pressing cancel and the internal timeout) into one arbiter. The first
reason to trip wins and is remembered, so classification does not depend
on which signal arrives last.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelReason(str, Enum):
    USER = "user"
    TIMEOUT = "timeout"


class RequestAborted(Exception):
    """Raised by CancelScope.run when the scope tripped before the work finished."""

    def __init__(self, reason: CancelReason):
        super().__init__(f"Request aborted: {reason.value}")
        self.reason = reason


class DuplicateRequestError(ValueError):
    pass


class CancelScope:
    def __init__(self):
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    @property
    def tripped(self) -> bool:
        return self._reason is not None

    def trip(self, reason: CancelReason) -> bool:
        """Signal cancellation. Returns False if the scope had already tripped."""
        if self._reason is not None:
            return False
        self._reason = reason
        self._event.set()
        return True

    async def run(self, work: Awaitable[T]) -> T:
        """Await ``work`` unless the scope trips first.

        When the scope trips, the work is cancelled and awaited before
        RequestAborted is raised with the winning reason.
        """
        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if not task.cancelled():
            return task.result()
        raise RequestAborted(self._reason or CancelReason.USER)


class PendingRequestRegistry:
    """Maps caller-supplied request ids to the CancelScope of their in-flight call."""

    def __init__(self):
        self._pending: dict[str, CancelScope] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, request_id: str, scope: CancelScope) -> None:
        if request_id in self._pending:
            raise DuplicateRequestError(f"Request {request_id} is already in flight")
        self._pending[request_id] = scope

    def cancel(self, request_id: str) -> bool:
        """Trip the scope registered under ``request_id``.

        Returns True if a pending request existed and was signaled.
        """
        scope = self._pending.get(request_id)
        if scope is None:
            return False
        scope.trip(CancelReason.USER)
        logger.info("Cancel requested for %s", request_id)
        return True

    def release(self, request_id: str) -> None:
        self._pending.pop(request_id, None)
