"""Cross-thread coordination primitives shared by the harness workers."""
import threading
from dataclasses import dataclass
from typing import Optional, Tuple


class ReadinessBarrier:
    """Countdown latch: the orchestrator waits until every worker has arrived.

    Each worker calls arrive() exactly once, after its connection, session and
    producer/consumer exist and before it enters its main loop.
    """

    def __init__(self, parties: int):
        self._cond = threading.Condition()
        self._parties = 0
        self._remaining = 0
        self.reset(parties)

    def reset(self, parties: int):
        if parties < 0:
            raise ValueError(f"parties must be >= 0, got {parties}")
        with self._cond:
            self._parties = parties
            self._remaining = parties
            self._cond.notify_all()

    @property
    def parties(self) -> int:
        return self._parties

    @property
    def remaining(self) -> int:
        with self._cond:
            return self._remaining

    def arrive(self):
        with self._cond:
            if self._remaining > 0:
                self._remaining -= 1
                if self._remaining == 0:
                    self._cond.notify_all()

    def await_all(self, timeout: float) -> bool:
        """Block until the count reaches zero. False if timeout elapsed first."""
        with self._cond:
            return self._cond.wait_for(lambda: self._remaining == 0, timeout=timeout)


class FailureSignal:
    """Set-once flag raised by any worker that sees a corrupt delivery."""

    def __init__(self):
        self._event = threading.Event()

    def set(self):
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class StreakSummary:
    message_id: str
    count: int


class DeliveryTracker:
    """Shared cursor counting consecutive deliveries of the same message id.

    A fan-out copy of one message reaches every consumer queue with the same id,
    so back-to-back receipts of that id across consumers form a streak. Purely
    diagnostic: nothing here affects the verdict.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.last_message_id: Optional[str] = None
        self.repeat_count = 0
        self.max_repeat_count = 0

    def record(self, message_id: Optional[str]) -> Optional[StreakSummary]:
        """Record one delivery. Returns the streak that just ended, if any.

        A delivery without an id never extends a streak.
        """
        with self._lock:
            previous = self.last_message_id
            if previous is not None and message_id is not None and previous.lower() == message_id.lower():
                self.repeat_count += 1
                ended = None
            else:
                ended = StreakSummary(previous, self.repeat_count) if previous is not None else None
                self.last_message_id = message_id
                self.repeat_count = 1
            self.max_repeat_count = max(self.max_repeat_count, self.repeat_count)
            return ended

    def snapshot(self) -> Tuple[Optional[str], int]:
        with self._lock:
            return self.last_message_id, self.repeat_count


class IndexAllocator:
    """Hands out dense, unique consumer indices starting at zero."""

    def __init__(self):
        self._lock = threading.Lock()
        self._next = 0

    def allocate(self) -> int:
        with self._lock:
            index = self._next
            self._next += 1
            return index

    @property
    def allocated(self) -> int:
        with self._lock:
            return self._next
