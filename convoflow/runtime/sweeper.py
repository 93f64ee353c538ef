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

"""Periodic expiry sweep.

Closes runs whose deadline passed while nobody was talking to them,
including runs whose in-memory timer was lost to a restart.
"""

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Calls ``Orchestrator.expire_due`` on a fixed interval.

    ``start(block=False)`` runs the sweep on a daemon thread;
    ``start(block=True)`` sweeps on the calling thread until ``stop()``.
    """

    def __init__(self, orchestrator: "Orchestrator", interval_seconds: float | None = None):
        self._orchestrator = orchestrator
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else orchestrator.config.sweep_interval_seconds
        )
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False
        self.sweeps = 0
        self.expired_total = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, block: bool = False) -> None:
        """Start sweeping."""
        if self._running:
            return
        self._running = True
        self._stopping.clear()
        logger.info("Expiry sweeper started: interval_seconds=%s", self._interval)
        if block:
            try:
                self._loop()
            finally:
                self._running = False
            return
        self._thread = threading.Thread(target=self._loop, name="convoflow-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the sweep to stop and wait for the thread."""
        logger.info("Expiry sweeper stopping")
        self._stopping.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        self._running = False

    def run_once(self) -> int:
        """Run a single sweep.

        Returns:
            Number of runs expired
        """
        expired = self._orchestrator.expire_due()
        self.sweeps += 1
        self.expired_total += len(expired)
        return len(expired)

    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed")
            self._stopping.wait(self._interval)
