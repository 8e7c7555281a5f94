"""
Concurrent request dispatch and throughput reporting.
"""

import io
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, List, Optional

import numpy as np

from rpcspam.generator import EndOfInput, QueryRegistry
from rpcspam.state import LatestState

logger = logging.getLogger(__name__)


class RequestCounter:
    """Counts dispatch attempts across all workers."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class RateLimiter:
    """Token bucket gate shared by all workers."""

    def __init__(self, rate: float, burst: int = 10, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = rate
        self.burst = burst
        self.clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def _reserve(self) -> float:
        """Take a token, returning how long the caller must wait for it."""
        with self._lock:
            now = self.clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.rate)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def wait(self, stop: threading.Event) -> bool:
        """Block until a token is available. Returns False if stopped first."""
        delay = self._reserve()
        if delay > 0:
            return not stop.wait(delay)
        return not stop.is_set()


# =============================================================================
# Worker Pool
# =============================================================================

class Dispatcher:
    """Fixed pool of workers turning generated queries into requests."""

    def __init__(
        self, registry: QueryRegistry, cell: LatestState, send: Callable[[bytes], object],
        counter: RequestCounter, stop: threading.Event, num_workers: int = 250,
        limiter: Optional[RateLimiter] = None
    ):
        self.registry = registry
        self.cell = cell
        self.send = send
        self.counter = counter
        self.stop = stop
        self.num_workers = num_workers
        self.limiter = limiter
        self.failure: Optional[BaseException] = None
        self._attempts: List[int] = [0] * num_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures = []

    def start(self):
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_workers, thread_name_prefix="rpcspam-worker"
        )
        self._futures = [self._executor.submit(self._work, i) for i in range(self.num_workers)]

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for workers to finish. Returns True if all of them did."""
        done, not_done = wait(self._futures, timeout=timeout)
        for f in done:
            if f.exception() is not None:
                self._fail(f.exception())
        if not_done:
            return False
        self._executor.shutdown(wait=False)
        return True

    def running(self) -> int:
        return sum(1 for f in self._futures if not f.done())

    def attempts(self, worker: int) -> int:
        return self._attempts[worker]

    def _fail(self, exc: BaseException):
        if self.failure is None:
            self.failure = exc
        self.stop.set()

    def _work(self, worker: int):
        state = self.cell.wait(self.stop)
        buf = io.BytesIO()

        while state is not None and not self.stop.is_set():
            # Keep the current snapshot until a newer one lands
            state = self.cell.get() or state

            try:
                self.registry.query(buf, state)
            except EndOfInput as e:
                logger.info("worker %d: query generation done: %s", worker, e)
                return
            except Exception as e:
                logger.error("worker %d: failed to write generated query: %s", worker, e)
                self._fail(e)
                return

            if self.limiter is not None and not self.limiter.wait(self.stop):
                return

            try:
                self.send(buf.getvalue())
            except Exception as e:
                logger.warning("worker %d: request failed: %s", worker, e)

            self._attempts[worker] += 1
            self.counter.increment()

            buf.seek(0)
            buf.truncate()


# =============================================================================
# Throughput
# =============================================================================

class ThroughputReporter:
    """Samples the request counter and reports the per-interval rate."""

    TOTAL_EVERY = 100

    def __init__(self, counter: RequestCounter, interval: float = 1.0):
        self.counter = counter
        self.interval = interval
        self.prev = counter.value
        self.samples: List[int] = []

    def sample(self) -> int:
        current = self.counter.value
        delta = current - self.prev
        if current // self.TOTAL_EVERY > self.prev // self.TOTAL_EVERY:
            logger.info("sent %d requests", current)
        self.prev = current
        self.samples.append(delta)
        logger.info("req/s :: %d", round(delta / self.interval))
        return delta

    def run(self, stop: threading.Event, duration: float = 0,
            alive: Optional[Callable[[], bool]] = None):
        """
        Sample once per interval until `stop` is set, `duration` elapses or
        `alive` reports that nothing is left sending.
        """
        end = time.monotonic() + duration if duration > 0 else None
        while not stop.wait(self.interval):
            self.sample()
            if end is not None and time.monotonic() >= end:
                break
            if alive is not None and not alive():
                logger.info("all workers finished")
                break

    def summary(self) -> dict:
        """Aggregate per-interval rates collected so far."""
        if not self.samples:
            return {"total": self.counter.value, "mean": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
        rates = np.array(self.samples, dtype=float) / self.interval
        return {
            "total": self.counter.value,
            "mean": float(rates.mean()),
            "p50": float(np.percentile(rates, 50)),
            "p95": float(np.percentile(rates, 95)),
            "max": float(rates.max()),
        }
