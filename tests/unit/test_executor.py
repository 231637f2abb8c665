"""
Tests for the promotion executor.

The ordering matters: the trigger file must exist (and be closed)
before the postmaster is signalled, and any failure must stop the
sequence where it happened.
"""

import signal
import pytest
from unittest.mock import Mock, patch

from promoter.executor import (
    PromotionError,
    PromotionExecutor,
    PromotionStep,
    read_supervisor_pid,
)


class TestPromotionExecutor:
    """Tests for PromotionExecutor.promote."""

    def test_successful_promotion(self, temp_dir):
        kill = Mock()
        trigger = temp_dir / "promote"

        PromotionExecutor(kill=kill).promote(trigger, 4242)

        assert trigger.exists()
        kill.assert_called_once_with(4242, signal.SIGUSR1)

    def test_file_exists_before_signal(self, temp_dir):
        """The postmaster must find the file when the signal lands."""
        trigger = temp_dir / "promote"
        seen = []
        kill = Mock(side_effect=lambda pid, sig: seen.append(trigger.exists()))

        PromotionExecutor(kill=kill).promote(trigger, 4242)

        assert seen == [True]

    def test_existing_trigger_truncated(self, temp_dir):
        trigger = temp_dir / "promote"
        trigger.write_text("stale content")

        PromotionExecutor(kill=Mock()).promote(trigger, 4242)

        assert trigger.read_text() == ""

    def test_create_failure_aborts_before_signal(self, temp_dir):
        """Missing directory: FILE_CREATE, postmaster never signalled."""
        kill = Mock()

        with pytest.raises(PromotionError) as exc_info:
            PromotionExecutor(kill=kill).promote(temp_dir / "missing" / "promote", 4242)

        assert exc_info.value.step is PromotionStep.FILE_CREATE
        assert isinstance(exc_info.value.cause, OSError)
        kill.assert_not_called()

    def test_close_failure_aborts_before_signal(self, temp_dir):
        """An unflushed trigger file is not trusted."""
        kill = Mock()

        with patch("promoter.executor.os.fsync", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(PromotionError) as exc_info:
                PromotionExecutor(kill=kill).promote(temp_dir / "promote", 4242)

        assert exc_info.value.step is PromotionStep.FILE_CLOSE
        kill.assert_not_called()

    @pytest.mark.parametrize("error", [
        ProcessLookupError(3, "No such process"),
        PermissionError(1, "Operation not permitted"),
        OSError(22, "Invalid argument"),
    ])
    def test_signal_failure(self, temp_dir, error):
        kill = Mock(side_effect=error)

        with pytest.raises(PromotionError) as exc_info:
            PromotionExecutor(kill=kill).promote(temp_dir / "promote", 4242)

        assert exc_info.value.step is PromotionStep.SIGNAL
        assert exc_info.value.cause is error
        # The file stays: the half-applied state is left for an operator
        assert (temp_dir / "promote").exists()


class TestReadSupervisorPid:
    """Tests for reading postmaster.pid."""

    def test_reads_first_line(self, data_dir):
        assert read_supervisor_pid(data_dir / "postmaster.pid") == 4242

    def test_missing_file(self, temp_dir):
        with pytest.raises(PromotionError) as exc_info:
            read_supervisor_pid(temp_dir / "postmaster.pid")

        assert exc_info.value.step is PromotionStep.PID_LOOKUP

    @pytest.mark.parametrize("content", ["", "not-a-pid\n", "0\n", "-12\n"])
    def test_invalid_pid(self, temp_dir, content):
        pid_file = temp_dir / "postmaster.pid"
        pid_file.write_text(content)

        with pytest.raises(PromotionError) as exc_info:
            read_supervisor_pid(pid_file)

        assert exc_info.value.step is PromotionStep.PID_LOOKUP
