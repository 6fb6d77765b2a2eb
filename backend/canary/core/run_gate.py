"""
Single-flight gate for canary runs.

At most one run may be in flight. A trigger that arrives while a run is
active is dropped, not queued.
"""
import threading
from typing import Callable, Optional, Tuple


class RunGate:
    """
    Binary, non-blocking try-lock around the "run in progress" flag.

    Thread-safe: triggers may arrive from the event loop or from worker
    threads. The lock is only held for the flag read/write.
    """

    def __init__(self):
        self._running = False
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def try_acquire(self) -> Tuple[bool, Optional[Callable[[], None]]]:
        """
        Try to mark the gate busy.

        Returns:
            (True, None) if a run is already active. Otherwise (False, release)
            where release clears the busy flag. Calling release more than once
            has no further effect.
        """
        with self._lock:
            if self._running:
                return True, None
            self._running = True

        released = False

        def release() -> None:
            nonlocal released
            with self._lock:
                if released:
                    return
                released = True
                self._running = False

        return False, release
