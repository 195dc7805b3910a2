"""
Timer Service — one cancellable timer per key (the orchestrator keys by offer id).

Behavioral Contract:
- schedule() replaces any existing timer under the same key
- cancel() guarantees the callback will not run afterwards
- A timer whose fire time is already past fires as soon as possible
- Callbacks run outside the service's own lock and may schedule new timers
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from order_kernel.timing.clock import Clock, ManualClock

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


class TimerService(ABC):
    """Arena of live timers keyed by an opaque string."""

    @abstractmethod
    def schedule(self, key: str, fire_at: datetime, callback: TimerCallback) -> None:
        ...

    @abstractmethod
    def cancel(self, key: str) -> bool:
        """Cancel a timer. Returns False when no live timer exists for `key`."""

    @abstractmethod
    def pending(self) -> List[str]:
        ...

    def is_scheduled(self, key: str) -> bool:
        return key in self.pending()


class ManualTimerService(TimerService):
    """
    Deterministic timer service driven by a ManualClock.
    Due timers fire in (fire_at, key) order when the clock is advanced.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._timers: Dict[str, Tuple[datetime, TimerCallback]] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, fire_at: datetime, callback: TimerCallback) -> None:
        with self._lock:
            self._timers[key] = (fire_at, callback)

    def cancel(self, key: str) -> bool:
        with self._lock:
            return self._timers.pop(key, None) is not None

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def fire_at_of(self, key: str) -> Optional[datetime]:
        with self._lock:
            entry = self._timers.get(key)
            return entry[0] if entry else None

    def advance(self, seconds: float) -> int:
        """Move the clock forward and fire everything that became due."""
        self.clock.advance(seconds)
        return self.fire_due()

    def fire_due(self) -> int:
        fired = 0
        while True:
            with self._lock:
                now = self.clock.now()
                due = sorted(
                    ((fire_at, key) for key, (fire_at, _) in self._timers.items() if fire_at <= now)
                )
                if not due:
                    return fired
                _, key = due[0]
                _, callback = self._timers.pop(key)
            callback()
            fired += 1


class AsyncioTimerService(TimerService):
    """
    Timers backed by `loop.call_later` on a single event loop, so thousands of
    outstanding offers cost one handle each rather than one thread each.
    Safe to call from any thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, clock: Clock):
        self._loop = loop
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, object] = {}
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, fire_at: datetime, callback: TimerCallback) -> None:
        token = object()
        with self._lock:
            self._tokens[key] = token
            stale = self._handles.pop(key, None)
        if stale is not None:
            self._loop.call_soon_threadsafe(stale.cancel)
        delay = max(0.0, (fire_at - self._clock.now()).total_seconds())
        self._loop.call_soon_threadsafe(self._arm, key, token, delay, callback)

    def cancel(self, key: str) -> bool:
        with self._lock:
            existed = self._tokens.pop(key, None) is not None
            handle = self._handles.pop(key, None)
        if handle is not None:
            self._loop.call_soon_threadsafe(handle.cancel)
        return existed

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._tokens)

    def _arm(self, key: str, token: object, delay: float, callback: TimerCallback) -> None:
        with self._lock:
            if self._tokens.get(key) is not token:
                return
            self._handles[key] = self._loop.call_later(delay, self._fire, key, token, callback)

    def _fire(self, key: str, token: object, callback: TimerCallback) -> None:
        with self._lock:
            if self._tokens.get(key) is not token:
                return
            del self._tokens[key]
            self._handles.pop(key, None)
        try:
            callback()
        except Exception:
            logger.exception("Timer callback failed", extra={"timer_key": key})
