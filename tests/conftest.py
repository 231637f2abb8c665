"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import pytest
import os
from pathlib import Path
import tempfile
import shutil

from promoter.config import PromoterConfig
from promoter.events import WakeReason
from promoter.prober import ProbeResult

# Never post to a real webhook from tests
os.environ.pop("SLACK_WEBHOOK_URL", None)

POSTMASTER_PID = 4242


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def data_dir(temp_dir):
    """Standby data directory with a postmaster.pid in it."""
    (temp_dir / "postmaster.pid").write_text(
        f"{POSTMASTER_PID}\n{temp_dir}\n1700000000\n5432\n"
    )
    return temp_dir


@pytest.fixture
def make_config(data_dir):
    """Factory for PromoterConfig pointing at the temp data directory."""
    def _make(**overrides):
        values = {
            "primary_conninfo": "host=primary.test dbname=postgres user=replicator password=secret",
            "data_directory": str(data_dir),
            "poll_interval_seconds": 1,
            "failure_threshold": 5,
        }
        values.update(overrides)
        return PromoterConfig(**values)
    return _make


class ScriptedEvents:
    """Event channel that replays wake reasons and records each wait."""

    def __init__(self, reasons, default=WakeReason.SHUTDOWN):
        self.reasons = list(reasons)
        self.default = default
        self.timeouts = []

    def wait(self, timeout):
        self.timeouts.append(timeout)
        if self.reasons:
            return self.reasons.pop(0)
        return self.default


class ScriptedProber:
    """Prober that replays up/down results. Runs dry -> test bug."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def probe(self, conninfo, timeout_seconds=None):
        self.calls.append((conninfo, timeout_seconds))
        if not self.results:
            raise AssertionError("probe called more often than scripted")
        if self.results.pop(0):
            return ProbeResult.ok()
        return ProbeResult.failed("connection refused")


class StaticLoader:
    """
    Config loader returning scripted snapshots.

    The last entry repeats forever. Exception entries are raised.
    """

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.loads = 0

    def load(self):
        self.loads += 1
        snapshot = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(snapshot, Exception):
            raise snapshot
        return snapshot


@pytest.fixture
def scripted_events():
    return ScriptedEvents


@pytest.fixture
def scripted_prober():
    return ScriptedProber


@pytest.fixture
def static_loader():
    return StaticLoader
