"""
Promotion executor.

Promotion is the point of no return. The sequence is strictly:

1. Create (truncate) the trigger file under the data directory
2. Flush + fsync + close it
3. Send SIGUSR1 to the postmaster

The postmaster checks for the trigger file when it receives the
signal, so the file MUST be durable before the signal goes out.

Any failing step aborts the sequence with a PromotionError naming the
step. Nothing is retried: a half-applied promotion is for a human to
look at.
"""

import os
import signal
from enum import Enum
from pathlib import Path
from typing import Optional
import structlog

logger = structlog.get_logger(__name__)

PROMOTE_SIGNAL = signal.SIGUSR1


class PromotionStep(Enum):
    """Steps of the promotion sequence, for error reporting."""
    PID_LOOKUP = "pid_lookup"
    FILE_CREATE = "file_create"
    FILE_CLOSE = "file_close"
    SIGNAL = "signal"


class PromotionError(Exception):
    """A promotion step failed. Fatal to the watchdog."""

    def __init__(self, step: PromotionStep, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.step = step
        self.cause = cause


def read_supervisor_pid(pid_file: Path) -> int:
    """
    Read the postmaster pid from the first line of postmaster.pid.

    Raises:
        PromotionError: file missing, unreadable or without a valid pid
    """
    try:
        with open(pid_file) as f:
            first_line = f.readline().strip()
    except OSError as e:
        raise PromotionError(
            PromotionStep.PID_LOOKUP, f"Could not open pid file {pid_file}: {e}", e
        ) from e

    try:
        pid = int(first_line)
    except ValueError as e:
        raise PromotionError(
            PromotionStep.PID_LOOKUP, f"Could not parse pid from {pid_file}: {first_line!r}", e
        ) from e

    if pid <= 0:
        raise PromotionError(PromotionStep.PID_LOOKUP, f"Invalid pid {pid} in {pid_file}")

    return pid


class PromotionExecutor:
    """Runs the trigger-file-then-signal promotion sequence."""

    def __init__(self, kill=None):
        """
        Args:
            kill: Signal sender (defaults to os.kill)
        """
        self._kill = kill or os.kill

    def promote(self, trigger_path: Path, supervisor_pid: int) -> None:
        """
        Promote the local standby.

        Args:
            trigger_path: Trigger file to create
            supervisor_pid: Postmaster to signal

        Raises:
            PromotionError: the failing step, with the cause attached
        """
        trigger_path = Path(trigger_path)
        logger.warning(
            "promotion_starting",
            trigger_file=str(trigger_path),
            supervisor_pid=supervisor_pid,
        )

        # Step 1: create/truncate
        try:
            trigger = open(trigger_path, "w")
        except OSError as e:
            logger.error("trigger_file_create_failed", path=str(trigger_path), error=str(e))
            raise PromotionError(
                PromotionStep.FILE_CREATE, f"Could not create trigger file {trigger_path}: {e}", e
            ) from e

        # Step 2: make it durable before anyone looks for it
        try:
            try:
                trigger.flush()
                os.fsync(trigger.fileno())
            finally:
                trigger.close()
        except OSError as e:
            logger.error("trigger_file_close_failed", path=str(trigger_path), error=str(e))
            raise PromotionError(
                PromotionStep.FILE_CLOSE, f"Could not close trigger file {trigger_path}: {e}", e
            ) from e

        logger.info("trigger_file_written", path=str(trigger_path))

        # Step 3: tell the postmaster
        try:
            self._kill(supervisor_pid, PROMOTE_SIGNAL)
        except ProcessLookupError as e:
            logger.error("supervisor_not_running", pid=supervisor_pid)
            raise PromotionError(
                PromotionStep.SIGNAL, f"No process with pid {supervisor_pid}", e
            ) from e
        except PermissionError as e:
            logger.error("permission_denied_signalling_supervisor", pid=supervisor_pid)
            raise PromotionError(
                PromotionStep.SIGNAL, f"Not allowed to signal pid {supervisor_pid}", e
            ) from e
        except OSError as e:
            logger.error("supervisor_signal_failed", pid=supervisor_pid, error=str(e))
            raise PromotionError(
                PromotionStep.SIGNAL, f"Failed to send SIGUSR1 to {supervisor_pid}: {e}", e
            ) from e

        logger.info("promotion_initiated", supervisor_pid=supervisor_pid)
