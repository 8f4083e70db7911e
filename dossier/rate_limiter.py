"""Sliding-window rate limiting for quota-bound external APIs.

An API such as Companies House enforces both a burst ceiling (N calls per window)
and a sustained rate. Every caller in the process shares one limiter per API, and
slots are granted strictly in the order callers asked for them: a single ordered
waiter queue sits behind one condition variable, and only the head of the queue
may take a slot. Granted tasks then run concurrently; the limiter never
serialises their execution.
"""

from collections import deque
from collections.abc import Callable
import math
from threading import Condition, Lock
import time
from types import TracebackType
from typing import TypeVar

from dossier.config import Settings
from dossier.constants import MIN_LIMITER_WAIT_SECONDS
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

T = TypeVar("T")

COMPANIES_HOUSE = "companies-house"


class RateLimiter:
    """Grant at most `max_per_window` slots per sliding window, spaced by `min_interval_seconds`."""

    def __init__(
        self,
        window_seconds: float,
        max_per_window: int,
        min_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        if min_interval_seconds is not None and min_interval_seconds < 0:
            raise ValueError("min_interval_seconds cannot be negative")

        self.window_seconds = window_seconds
        self.max_per_window = max_per_window
        self.min_interval_seconds = (
            min_interval_seconds if min_interval_seconds is not None else window_seconds / max_per_window
        )

        self._clock = clock
        # Timestamps of the most recent grants, oldest first
        self._grants: deque[float] = deque()
        # Tickets of callers waiting for a slot, in arrival order
        self._waiters: deque[object] = deque()
        self._condition = Condition()

    @classmethod
    def from_policy(
        cls,
        window_seconds: float | None = None,
        max_per_window: int | None = None,
        min_interval_seconds: float | None = None,
    ) -> "RateLimiter":
        """Build a limiter from any two of window, max-per-window and minimum interval.

        @param window_seconds: Length of the sliding window
        @param max_per_window: Maximum grants inside any window
        @param min_interval_seconds: Minimum gap between consecutive grants
        @return: A limiter; the missing parameter is derived from the other two
        """

        if window_seconds is None:
            if max_per_window is None or min_interval_seconds is None:
                raise ValueError("Rate limit policy needs at least two of window, max and min interval")
            window_seconds = max_per_window * min_interval_seconds

        elif max_per_window is None:
            if min_interval_seconds is None or min_interval_seconds <= 0:
                raise ValueError("Rate limit policy needs at least two of window, max and min interval")
            max_per_window = max(1, math.floor(window_seconds / min_interval_seconds))

        return cls(window_seconds, max_per_window, min_interval_seconds)

    def _evict(self, now: float) -> None:
        while self._grants and now - self._grants[0] >= self.window_seconds:
            self._grants.popleft()

    def _time_until_grant(self, now: float) -> float:
        """How long the head of the queue must wait before it may take a slot. Zero means now."""

        self._evict(now)
        since_last = now - self._grants[-1] if self._grants else math.inf

        if len(self._grants) < self.max_per_window and since_last >= self.min_interval_seconds:
            return 0.0

        wait_for_interval = max(0.0, self.min_interval_seconds - since_last)
        wait_for_window = (
            self.window_seconds - (now - self._grants[0]) if len(self._grants) >= self.max_per_window else 0.0
        )
        return max(wait_for_interval, wait_for_window, MIN_LIMITER_WAIT_SECONDS)

    def acquire(self) -> float:
        """Block until this caller is granted a slot.

        @return: The limiter-clock timestamp of the grant
        """

        ticket = object()

        with self._condition:
            self._waiters.append(ticket)
            try:
                while True:
                    if self._waiters[0] is not ticket:
                        # not our turn; the head notifies when it leaves
                        self._condition.wait()
                        continue

                    now = self._clock()
                    wait = self._time_until_grant(now)
                    if wait == 0.0:
                        self._grants.append(now)
                        return now

                    log.debug(f"Rate limiter waiting {wait:.3f}s ({len(self._waiters)} queued)")
                    self._condition.wait(timeout=wait)
            finally:
                self._waiters.remove(ticket)
                self._condition.notify_all()

    def schedule(self, task: Callable[[], T]) -> T:
        """Run `task` once a slot is granted and return its result.

        Exceptions raised by the task propagate unchanged; the slot it used stays counted.
        """

        self.acquire()
        return task()

    def pending(self) -> int:
        """Number of callers currently queued for a slot."""

        with self._condition:
            return len(self._waiters)

    def __enter__(self) -> "RateLimiter":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        return None


_shared_limiters: dict[str, RateLimiter] = {}
_shared_lock = Lock()


def companies_house_limiter(settings: Settings) -> RateLimiter:
    return RateLimiter(
        window_seconds=settings.ch_window_ms / 1000,
        max_per_window=settings.ch_max_per_window,
        min_interval_seconds=settings.ch_min_interval_seconds,
    )


def shared_limiter(
    name: str = COMPANIES_HOUSE,
    settings: Settings | None = None,
    factory: Callable[[], RateLimiter] | None = None,
) -> RateLimiter:
    """Get the process-wide limiter for an external service, creating it on first use.

    @param name: The external service name
    @param settings: Settings used to configure the Companies House limiter
    @param factory: Builds the limiter for services other than Companies House
    @return: The same limiter instance for every caller in the process
    """

    with _shared_lock:
        limiter = _shared_limiters.get(name)
        if limiter is not None:
            return limiter

        if factory is not None:
            limiter = factory()
        elif name == COMPANIES_HOUSE:
            limiter = companies_house_limiter(settings or Settings.from_env())
        else:
            raise KeyError(f"No rate limit policy known for {name!r}; pass a factory")

        log.info(
            f"Rate limiter {name}: {limiter.max_per_window} per {limiter.window_seconds}s, "
            f"min interval {limiter.min_interval_seconds:.3f}s"
        )
        _shared_limiters[name] = limiter
        return limiter
