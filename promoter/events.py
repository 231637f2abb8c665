"""
Wake events for the control loop.

Signal handlers never touch daemon state. They only post a WakeReason
onto a SimpleQueue (re-entrant, safe to call from a signal handler) and
the control loop consumes the queue at its single suspension point.

Several deliveries before the loop looks are coalesced: the loop sees
one wake with the most urgent pending reason.
"""

import os
import queue
import signal
import time
from enum import Enum
from typing import Optional
import structlog

logger = structlog.get_logger(__name__)


class WakeReason(Enum):
    """Why the wait returned. Higher priority wins when several are pending."""
    TIMER = 0
    RELOAD = 1
    SHUTDOWN = 2
    SUPERVISOR_DEATH = 3

    @property
    def priority(self) -> int:
        return self.value


class SupervisorWatch:
    """
    Detects that our supervisor has gone away.

    The supervisor is gone when we have been re-parented (our parent
    died and init adopted us), or when an explicitly configured
    supervisor pid no longer exists.
    """

    def __init__(self, supervisor_pid: Optional[int] = None, parent_pid: Optional[int] = None):
        self.supervisor_pid = supervisor_pid
        self.parent_pid = parent_pid if parent_pid is not None else os.getppid()

    def is_gone(self) -> bool:
        if os.getppid() != self.parent_pid:
            return True

        if self.supervisor_pid:
            try:
                os.kill(self.supervisor_pid, 0)
            except ProcessLookupError:
                return True
            except PermissionError:
                # Exists, just owned by someone else
                return False

        return False


class EventChannel:
    """
    Interruptible wait for the next tick.

    Usage:
        events = EventChannel(SupervisorWatch())
        events.install()

        reason = events.wait(config.poll_interval_seconds)
    """

    # Upper bound on how long a supervisor death can go unnoticed
    POLL_SLICE_SECONDS = 0.5

    SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)
    RELOAD_SIGNALS = (signal.SIGHUP,)

    def __init__(self, supervisor_watch: Optional[SupervisorWatch] = None):
        self.supervisor_watch = supervisor_watch
        self._queue: "queue.SimpleQueue[WakeReason]" = queue.SimpleQueue()
        self._previous_handlers: dict = {}

    def install(self) -> None:
        """
        Install signal handlers.

        - SIGTERM / SIGINT: shutdown
        - SIGHUP: reload configuration
        """
        for signum in self.SHUTDOWN_SIGNALS + self.RELOAD_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

        logger.info("signal_handlers_installed")

    def uninstall(self) -> None:
        """Restore the handlers that were active before install()."""
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame) -> None:
        # Runs at arbitrary points of the main thread: enqueue only
        if signum in self.RELOAD_SIGNALS:
            self.notify(WakeReason.RELOAD)
        else:
            self.notify(WakeReason.SHUTDOWN)

    def notify(self, reason: WakeReason) -> None:
        """Post a wake event. Safe from signal handlers and other threads."""
        self._queue.put(reason)

    def request_shutdown(self) -> None:
        self.notify(WakeReason.SHUTDOWN)

    def request_reload(self) -> None:
        self.notify(WakeReason.RELOAD)

    def wait(self, timeout: float) -> WakeReason:
        """
        Block for up to ``timeout`` seconds.

        Returns early on any posted event or on supervisor death. Returns
        TIMER only when the full timeout elapsed with nothing pending.
        """
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            reasons = self._collect(min(self.POLL_SLICE_SECONDS, max(remaining, 0.0)))

            if self.supervisor_watch is not None and self.supervisor_watch.is_gone():
                reasons.add(WakeReason.SUPERVISOR_DEATH)

            if reasons:
                reason = max(reasons, key=lambda r: r.priority)
                if len(reasons) > 1:
                    logger.debug(
                        "wake_events_coalesced",
                        pending=sorted(r.name for r in reasons),
                        chosen=reason.name,
                    )
                return reason

            if remaining <= 0:
                return WakeReason.TIMER

    def _collect(self, timeout: float) -> set:
        """Take every pending event, blocking up to ``timeout`` for the first."""
        reasons = set()
        try:
            if timeout > 0:
                reasons.add(self._queue.get(timeout=timeout))
            else:
                reasons.add(self._queue.get_nowait())
        except queue.Empty:
            return reasons

        while True:
            try:
                reasons.add(self._queue.get_nowait())
            except queue.Empty:
                return reasons
