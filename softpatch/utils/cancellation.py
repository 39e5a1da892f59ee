import threading
from typing import Optional

from softpatch.utils.exception import OperationCancelledError


class CancellationToken:
    """
    Cooperative pause and cancel signal shared between a controlling thread
    and the worker that runs a download or a patch chain.

    The worker calls `check()` at its cancellation points. A paused token
    blocks the worker there until resumed, a cancelled token raises.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._running = threading.Event()
        self._running.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        # Wake a paused worker so it observes the cancellation
        self._running.set()

    def pause(self) -> None:
        if not self.cancelled:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def check(self, timeout: Optional[float] = None) -> None:
        """
        Block while paused, then raise if cancelled.

        :param timeout: longest time to stay blocked while paused, None to wait for resume
        :raises OperationCancelledError: if the token was cancelled
        """
        self._running.wait(timeout)
        if self._cancelled.is_set():
            raise OperationCancelledError("Operation cancelled")
