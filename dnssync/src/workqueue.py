from __future__ import annotations

import threading
import time
from collections.abc import Callable


class ReconcileQueue:
    """A work queue holding a single logical item: "run a full pass".

    Every pass recomputes the desired state from scratch, so there is no
    value in tracking which object changed.  Adding while a pass is already
    pending is a no-op; adding while a pass is running marks the queue dirty
    so exactly one more pass follows.  ``add_after`` schedules a retry; a
    pass that starts before the retry is due supersedes it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._dirty = False
        self._processing = False
        self._due_at: float | None = None
        self._shutdown = False
        self.adds = 0

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._dirty or self._due_at is not None

    @property
    def processing(self) -> bool:
        with self._cond:
            return self._processing

    def add(self) -> None:
        with self._cond:
            self.adds += 1
            self._dirty = True
            self._cond.notify_all()

    def add_after(self, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add()
            return
        with self._cond:
            due_at = self._clock() + delay_seconds
            if self._due_at is None or due_at < self._due_at:
                self._due_at = due_at
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> bool:
        """Block until a pass should run. Returns False on timeout or shutdown.

        A True return must be paired with :meth:`done`.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return False
                now = self._clock()
                if self._due_at is not None and self._due_at <= now:
                    self._dirty = True
                    self._due_at = None
                if self._dirty and not self._processing:
                    self._dirty = False
                    self._due_at = None
                    self._processing = True
                    return True

                waits = []
                if self._due_at is not None:
                    waits.append(self._due_at - now)
                if deadline is not None:
                    if deadline <= now:
                        return False
                    waits.append(deadline - now)
                self._cond.wait(timeout=max(0.0, min(waits)) if waits else None)

    def done(self) -> None:
        with self._cond:
            self._processing = False
            self._cond.notify_all()

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
