"""Throughput and ETA estimation over a short moving window."""

from collections import deque

from config import PROGRESS_WINDOW


class ProgressEstimator:
    """Moving-average speed over the last few observations.

    Each ``observe`` call turns the bytes delivered since the previous
    observation into one rate sample; ``speed`` is the mean of the samples
    still in the window.
    """

    def __init__(self, total_bytes: int, window: int = PROGRESS_WINDOW) -> None:
        self.total_bytes = total_bytes
        self.bytes_so_far = 0
        self._rates: deque[float] = deque(maxlen=window)
        self._last_ts: float | None = None
        self._pending_bytes = 0
        self.last_time_delta = 0.0

    def start(self, timestamp: float) -> None:
        """Set the reference time the first observation is measured from."""
        self._last_ts = timestamp

    def observe(self, bytes_delta: int, timestamp: float) -> None:
        self.bytes_so_far += bytes_delta
        if self._last_ts is None:
            self._last_ts = timestamp
            self.last_time_delta = 0.0
            return

        time_delta = timestamp - self._last_ts
        self.last_time_delta = max(time_delta, 0.0)
        self._pending_bytes += bytes_delta
        if time_delta <= 0:
            # Same clock tick: carry the bytes into the next rate sample
            return
        self._rates.append(self._pending_bytes / time_delta)
        self._pending_bytes = 0
        self._last_ts = timestamp

    def speed(self) -> float:
        """Mean rate in bytes/sec, 0.0 with no samples."""
        if not self._rates:
            return 0.0
        return max(sum(self._rates) / len(self._rates), 0.0)

    def eta(self) -> float | None:
        """Seconds remaining, or None when the speed is unknown."""
        speed = self.speed()
        if speed <= 0:
            return None
        return max((self.total_bytes - self.bytes_so_far) / speed, 0.0)

    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return min(self.bytes_so_far / self.total_bytes * 100, 100.0)
