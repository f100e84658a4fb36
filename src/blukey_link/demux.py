"""
Inbound frame demultiplexer.

Every decoded frame is offered to the single registered waiter; frames the
waiter does not want (or that arrive with no waiter) go to a FIFO backlog.
A new wait checks the backlog oldest-first before arming its timeout.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from .framing import Frame

logger = logging.getLogger(__name__)

FramePredicate = Callable[[Frame], bool]


def opcode_in(*opcodes: int) -> FramePredicate:
    """Predicate matching frames with any of the given opcodes."""
    wanted = frozenset(int(op) for op in opcodes)
    return lambda frame: frame.opcode in wanted


@dataclass
class RxWaiter:
    """The one outstanding wait: a predicate and the future it resolves."""
    predicate: FramePredicate
    future: "asyncio.Future[Optional[Frame]]"


class RxDemux:
    """Routes decoded frames to the waiting consumer or the backlog."""

    def __init__(self) -> None:
        self._backlog: deque[Frame] = deque()
        self._waiter: Optional[RxWaiter] = None

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    @property
    def waiting(self) -> bool:
        return self._waiter is not None

    def deliver(self, frame: Frame) -> None:
        """Offer a decoded frame to the waiter, else buffer it."""
        waiter = self._waiter
        if waiter is not None and not waiter.future.done() and waiter.predicate(frame):
            self._waiter = None
            waiter.future.set_result(frame)
            return
        self._backlog.append(frame)

    def _take_from_backlog(self, predicate: FramePredicate) -> Optional[Frame]:
        for index, frame in enumerate(self._backlog):
            if predicate(frame):
                del self._backlog[index]
                return frame
        return None

    async def next_frame(self, predicate: FramePredicate, timeout: float) -> Optional[Frame]:
        """
        Wait for the next frame matching predicate.

        Args:
            predicate: Frame filter
            timeout: Seconds to wait if nothing in the backlog matches

        Returns:
            The matching frame, or None on timeout or sequencing violation
        """
        frame = self._take_from_backlog(predicate)
        if frame is not None:
            return frame

        if self._waiter is not None:
            logger.error("BUG: overlapping next_frame() - sequencing violated")
            return None

        if timeout <= 0:
            return None

        future: asyncio.Future[Optional[Frame]] = asyncio.get_running_loop().create_future()
        waiter = RxWaiter(predicate=predicate, future=future)
        self._waiter = waiter
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            if self._waiter is waiter:
                self._waiter = None

    def reset(self) -> None:
        """Drop the backlog and cancel any outstanding waiter."""
        self._backlog.clear()
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.future.done():
            waiter.future.cancel()
