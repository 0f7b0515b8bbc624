"""A single long-lived asyncio loop for synchronous callers.

Flask views are synchronous, while the LLM clients are async and keep
pooled connections bound to the loop that opened them. Every coroutine
a service awaits is therefore submitted to one loop running on a
daemon thread instead of a fresh ``asyncio.run`` loop per request.
"""
import asyncio
import logging
import threading
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


class BackgroundEventLoop:
    """Event loop running forever on its own daemon thread."""

    def __init__(self, name: str = "kintsugi-async"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._loop = asyncio.new_event_loop()
                self._thread = threading.Thread(
                    target=self._loop.run_forever, name=self.name, daemon=True
                )
                self._thread.start()
                logger.info("EVENT_LOOP_STARTED", extra={"thread_name": self.name})
            return self._loop

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run ``coro`` on the shared loop and block for its result.

        Exceptions raised by the coroutine propagate to the caller.
        """
        loop = self._ensure_started()
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        return future.result(timeout)

    def close(self) -> None:
        """Stop the loop and wait for its thread."""
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None

        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join()
        loop.close()
        logger.info("EVENT_LOOP_STOPPED", extra={"thread_name": self.name})
