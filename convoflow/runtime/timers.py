# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Auto-resume timers for suspended runs.

Timers live in process memory only. They are best-effort and do not
survive a restart; the expiry sweep is the durable fallback for runs whose
timer was lost.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


@runtime_checkable
class Scheduler(Protocol):
    """Keyed one-shot timers. Scheduling a key again replaces its timer."""

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        ...

    def cancel(self, key: str) -> bool:
        ...

    def cancel_all(self) -> None:
        ...

    def pending(self) -> list[str]:
        ...


class TimerScheduler:
    """Threading-based scheduler.

    Each timer is a daemon ``threading.Timer``; callbacks run on the timer
    thread. A callback that raises is logged.
    """

    def __init__(self) -> None:
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        def fire() -> None:
            with self._lock:
                if self._timers.get(key) is not timer:
                    return
                del self._timers[key]
            try:
                callback()
            except Exception:
                logger.exception("Timer callback failed: key=%s", key)

        timer = threading.Timer(max(0.0, delay_seconds), fire)
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
        timer.start()
        logger.debug("Timer scheduled: key=%s delay_seconds=%s", key, delay_seconds)

    def cancel(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Timer cancelled: key=%s", key)
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._timers)


@dataclass
class _ManualTimer:
    key: str
    due_at: float
    callback: TimerCallback


class ManualScheduler:
    """Deterministic scheduler driven by an explicit clock.

    Nothing fires until ``advance`` or ``fire`` is called, which makes
    timer-driven behavior testable and lets the CLI simulator fast-forward.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: dict[str, _ManualTimer] = {}

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        self._timers[key] = _ManualTimer(key, self.now + max(0.0, delay_seconds), callback)

    def cancel(self, key: str) -> bool:
        return self._timers.pop(key, None) is not None

    def cancel_all(self) -> None:
        self._timers.clear()

    def pending(self) -> list[str]:
        return list(self._timers)

    def delay_of(self, key: str) -> float | None:
        """Seconds until ``key`` fires, or None if not scheduled."""
        timer = self._timers.get(key)
        return None if timer is None else timer.due_at - self.now

    def fire(self, key: str) -> bool:
        """Fire one timer now, regardless of its due time."""
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.callback()
        return True

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers in due order.

        Returns:
            Number of timers fired
        """
        target = self.now + seconds
        fired = 0
        while True:
            due = [t for t in self._timers.values() if t.due_at <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due_at)
            self.now = max(self.now, timer.due_at)
            del self._timers[timer.key]
            timer.callback()
            fired += 1
        self.now = target
        return fired

    def run_all(self, limit: int = 1000) -> int:
        """Fire pending timers (including ones they schedule) until none remain."""
        fired = 0
        while self._timers and fired < limit:
            timer = min(self._timers.values(), key=lambda t: t.due_at)
            self.now = max(self.now, timer.due_at)
            del self._timers[timer.key]
            timer.callback()
            fired += 1
        return fired
