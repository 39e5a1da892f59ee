import threading
import time
from collections import deque
from typing import Callable, Optional

from softpatch.utils.constants import SPEED_AVERAGE_WINDOW


class DownloadProgressUtil:
    """
    Tracks downloaded bytes and estimates speed over a sliding time window.

    :param average_window: seconds of history used for the speed estimate
    :param clock: monotonic clock, injectable for tests
    """

    def __init__(
        self,
        average_window: float = SPEED_AVERAGE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if average_window <= 0:
            raise ValueError("average_window should be > 0")
        self._average_window = average_window
        self._clock = clock
        self._downloaded_size = 0
        self._total_size = 0
        self._records: deque[tuple[float, int]] = deque()
        self._speed = 0.0
        self._lock = threading.Lock()

    @property
    def downloaded_size(self) -> int:
        return self._downloaded_size

    @downloaded_size.setter
    def downloaded_size(self, value: int) -> None:
        if value < 0:
            raise ValueError("downloaded_size should be >= 0")
        self._downloaded_size = value

    @property
    def total_size(self) -> int:
        return self._total_size

    @total_size.setter
    def total_size(self, value: int) -> None:
        if value < 0:
            raise ValueError("total_size should be >= 0")
        self._total_size = value

    @property
    def average_window(self) -> float:
        return self._average_window

    @average_window.setter
    def average_window(self, value: float) -> None:
        if value <= 0:
            raise ValueError("average_window should be > 0")
        with self._lock:
            self._average_window = value
            self._update_speed()

    @property
    def speed(self) -> float:
        """Bytes per second over the window."""
        return self._speed

    @property
    def time_remaining(self) -> Optional[float]:
        """Seconds until total_size is reached at the current speed, None if stalled."""
        if self._speed == 0:
            return None
        return max(self._total_size - self._downloaded_size, 0) / self._speed

    def feed(self, bytes_downloaded: int) -> None:
        if bytes_downloaded < 0:
            raise ValueError("bytes_downloaded should be >= 0")
        with self._lock:
            self._downloaded_size += bytes_downloaded
            self._records.append((self._clock(), bytes_downloaded))
            self._update_speed()

    def _update_speed(self) -> None:
        now = self._clock()
        while self._records and now - self._records[0][0] > self._average_window:
            self._records.popleft()
        if not self._records:
            self._speed = 0.0
            return
        oldest = self._records[0][0]
        span = now - oldest
        total = sum(n for _, n in self._records)
        self._speed = 0.0 if span <= 0 else total / span
