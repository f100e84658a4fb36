"""
Command sequencer.

High-level operations are submitted as named units and run strictly one at
a time in FIFO order. A unit completes when its coroutine returns or raises;
only then does the next unit start. This keeps at most one protocol
exchange in flight, which the single RX waiter slot and the session's
sequence counter depend on.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

CommandWork = Callable[[], Awaitable[Any]]


@dataclass
class PendingCommand:
    """A queued unit of work and the future its caller awaits."""
    name: str
    work: CommandWork
    future: "asyncio.Future[Any]"
    generation: int


class CommandSequencer:
    """FIFO of named commands with at most one running."""

    def __init__(self) -> None:
        self._queue: deque[PendingCommand] = deque()
        self._running = False
        self._current: Optional[asyncio.Task] = None
        self._current_command: Optional[PendingCommand] = None
        # Bumped by cancel_all() so units from before a cancel cannot restart the queue
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def current(self) -> Optional[str]:
        """Name of the running command, if any."""
        return self._current_command.name if self._current_command else None

    @property
    def pending(self) -> int:
        return len(self._queue)

    def submit(self, name: str, work: CommandWork) -> "asyncio.Future[Any]":
        """
        Queue a command.

        Args:
            name: Label used in logs
            work: Zero-argument coroutine function performing the command

        Returns:
            Future resolved with the command's result (or exception)
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.append(PendingCommand(name, work, future, self._generation))
        logger.debug(f"CMD: queued {name} (pending={len(self._queue)})")
        if not self._running:
            self._start_next()
        return future

    async def run(self, name: str, work: CommandWork) -> Any:
        """Submit a command and wait for its result."""
        return await self.submit(name, work)

    def _start_next(self) -> None:
        if not self._queue:
            self._running = False
            self._current = None
            self._current_command = None
            return

        command = self._queue.popleft()
        self._running = True
        self._current_command = command
        self._current = asyncio.create_task(self._execute(command), name=f"cmd:{command.name}")

    async def _execute(self, command: PendingCommand) -> None:
        logger.debug(f"CMD: begin {command.name}")
        try:
            result = await command.work()
        except asyncio.CancelledError:
            if not command.future.done():
                command.future.cancel()
            raise
        except Exception as e:
            if not command.future.done():
                command.future.set_exception(e)
        else:
            if not command.future.done():
                command.future.set_result(result)
        finally:
            logger.debug(f"CMD: end {command.name}")
            self._finish(command)

    def _finish(self, command: PendingCommand) -> None:
        if command.generation != self._generation:
            return
        self._start_next()

    def cancel_all(self) -> None:
        """
        Drop every queued command and abandon the running one.

        Callers see their futures cancelled. Takes effect synchronously:
        nothing queued before the call will start afterwards.
        """
        self._generation += 1
        dropped = len(self._queue)
        while self._queue:
            command = self._queue.popleft()
            if not command.future.done():
                command.future.cancel()

        task, self._current = self._current, None
        command, self._current_command = self._current_command, None
        self._running = False

        # A task cancelled before its first step never runs _execute's cleanup
        if command is not None and not command.future.done():
            command.future.cancel()
        if task is not None and not task.done():
            task.cancel()

        if dropped or command is not None:
            logger.info(f"CMD: cancelled {command.name if command else 'nothing'} and {dropped} queued")
