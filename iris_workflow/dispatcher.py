"""
Per-channel sequential execution of collaborator calls.

Each channel name owns one FIFO lane: a call submitted to a busy channel
waits behind the call in flight, while calls on different channels run
concurrently on the event loop. Outcomes are funnelled into the state
store: the success continuation patches content, failures land in the
error list and are returned as ``Err`` rather than raised.
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from iris_workflow.collaborators import Err, ErrorRecord, Ok
from iris_workflow.state import StateStore
from iris_workflow.utils.datetime_utils import format_duration
from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.dispatcher")

Operation = Callable[[], Union[Awaitable[Any], Any]]
SuccessHandler = Callable[[Any], None]
ErrorHandler = Callable[[ErrorRecord], None]


def failure_message(record: ErrorRecord) -> str:
    """Human-readable message recorded in the state's error list."""
    return record.message or record.name or "Unknown error"


class TaskDispatcher:
    """Runs operations one at a time per channel and records their outcome."""

    def __init__(self, store: StateStore):
        self.store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Set[str] = set()

    def active_channels(self) -> Set[str]:
        return set(self._active)

    def is_active(self, channel: str) -> bool:
        return channel in self._active

    async def run(
        self,
        channel: str,
        operation: Operation,
        on_success: Optional[SuccessHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> Union[Ok, Err]:
        """Run ``operation`` on ``channel`` once the channel is free.

        Returns the operation's outcome as ``Ok`` or ``Err``. Errors from the
        awaited operation are recorded, never raised; an exception raised by
        ``operation()`` before it hands back an awaitable propagates.
        """
        lock = self._locks.setdefault(channel, asyncio.Lock())
        async with lock:
            self._mark_active(channel)
            started = time.monotonic()
            try:
                pending = operation()
                outcome = await self._settle(channel, pending)
                elapsed = format_duration(time.monotonic() - started)

                if isinstance(outcome, Err):
                    message = failure_message(outcome.error)
                    logger.error(
                        "dispatch_failed",
                        channel=channel,
                        error=message,
                        code=outcome.error.code,
                        duration=elapsed,
                    )
                    self.store.append_error(message)
                    if on_error is not None:
                        on_error(outcome.error)
                else:
                    logger.info("dispatch_succeeded", channel=channel, duration=elapsed)
                    if on_success is not None:
                        on_success(outcome.value)
                return outcome
            finally:
                self._mark_idle(channel)

    @staticmethod
    async def _settle(channel: str, pending: Any) -> Union[Ok, Err]:
        try:
            value = await pending if inspect.isawaitable(pending) else pending
        except Exception as exc:
            logger.error("dispatch_raised", channel=channel, error=str(exc), exc_type=type(exc).__name__)
            return Err(ErrorRecord.from_exception(exc))
        if isinstance(value, (Ok, Err)):
            return value
        return Ok(value)

    def _mark_active(self, channel: str) -> None:
        self._active.add(channel)
        logger.debug("dispatch_started", channel=channel, active=sorted(self._active))
        self.store.patch(is_busy=True)

    def _mark_idle(self, channel: str) -> None:
        self._active.discard(channel)
        self.store.patch(is_busy=bool(self._active))
