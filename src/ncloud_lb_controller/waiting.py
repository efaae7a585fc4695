# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Cancellable waits used for every backoff in a reconcile."""

from __future__ import annotations

import logging
import threading
import time

from ncloud_lb_controller.errors import Cancelled

logger = logging.getLogger(__name__)


class Waiter:
    """Sleeps that end early when the controller stops or a deadline passes.

    One `Waiter` is shared by the whole process for shutdown; `with_deadline`
    derives a per-reconcile copy bound to the same stop event.
    """

    def __init__(self, stop: threading.Event | None = None, deadline: float | None = None):
        self.stop = stop or threading.Event()
        self.deadline = deadline

    def with_deadline(self, timeout: float | None) -> "Waiter":
        if timeout is None:
            return Waiter(self.stop, self.deadline)
        deadline = time.monotonic() + timeout
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return Waiter(self.stop, deadline)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise `Cancelled` if the wait context is no longer live."""
        if self.stop.is_set():
            raise Cancelled("controller is shutting down")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise Cancelled("reconcile deadline exceeded")

    def sleep(self, seconds: float) -> None:
        self.check()
        timeout = seconds
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            timeout = remaining
        logger.debug("waiting %.1fs", timeout)
        if self.stop.wait(timeout):
            raise Cancelled("controller is shutting down")
        if remaining is not None and remaining < seconds:
            raise Cancelled("reconcile deadline exceeded")
