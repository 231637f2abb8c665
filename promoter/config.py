"""
Configuration for the promoter.

The daemon works on an immutable PromoterConfig snapshot. A reload
(SIGHUP) builds a brand new snapshot from the config file and swaps it
in between ticks - a snapshot is never modified in place.

Config file layout (YAML):

    promoter:
      primary_conninfo: "host=primary.internal user=replicator dbname=postgres"
      poll_interval_seconds: 3
      failure_threshold: 5
      trigger_file: promote
      data_directory: ${PGDATA}
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath
from typing import Optional
import structlog
import yaml

logger = structlog.get_logger(__name__)


class ConfigError(ValueError):
    """Raised when the promoter configuration is missing or invalid."""


class CountingPolicy(Enum):
    """How a successful probe affects the failure count."""
    # Successes leave the count alone; failures accumulate for the whole run
    STICKY = "sticky"
    # A success resets the count to zero
    CONSECUTIVE = "consecutive"


@dataclass(frozen=True)
class PromoterConfig:
    """
    Promoter settings. FROZEN - a reload replaces the whole snapshot.
    """

    # Connection string (libpq DSN or URI) of the primary being watched
    primary_conninfo: str

    # Standby data directory; trigger file and postmaster.pid live here
    data_directory: str

    # Seconds between liveness probes
    poll_interval_seconds: int = 3

    # Failed probes required before promotion (1 = promote on first failure)
    failure_threshold: int = 5

    # File name created under data_directory to request promotion
    trigger_file: str = "promote"

    # Connect + statement timeout for a single probe
    probe_timeout_seconds: int = 5

    counting_policy: CountingPolicy = CountingPolicy.STICKY

    def __post_init__(self):
        if not isinstance(self.primary_conninfo, str) or not self.primary_conninfo.strip():
            raise ConfigError("primary_conninfo must be a non-empty string")

        if not self.data_directory:
            raise ConfigError(
                "data_directory is not set. Configure it or export PGDATA."
            )
        if not isinstance(self.data_directory, str):
            raise ConfigError(f"data_directory must be a path string, got {self.data_directory!r}")

        for name in ("poll_interval_seconds", "failure_threshold", "probe_timeout_seconds"):
            value = getattr(self, name)
            # bool is an int subclass; "true" is not a valid interval
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")

        if not isinstance(self.trigger_file, str):
            raise ConfigError(f"trigger_file must be a string, got {self.trigger_file!r}")

        trigger = PurePath(self.trigger_file) if self.trigger_file else None
        if trigger is None or trigger.is_absolute() or ".." in trigger.parts:
            raise ConfigError(
                f"trigger_file must be a relative name inside the data directory, got {self.trigger_file!r}"
            )

        if not isinstance(self.counting_policy, CountingPolicy):
            raise ConfigError(f"counting_policy must be a CountingPolicy, got {self.counting_policy!r}")

    @property
    def trigger_path(self) -> Path:
        """Absolute location of the trigger file."""
        return Path(self.data_directory) / self.trigger_file

    @property
    def pid_file_path(self) -> Path:
        """postmaster.pid of the local standby."""
        return Path(self.data_directory) / "postmaster.pid"

    def describe(self) -> dict:
        """Loggable view of the config (connection string masked)."""
        return {
            "primary": mask_conninfo(self.primary_conninfo),
            "data_directory": self.data_directory,
            "poll_interval_seconds": self.poll_interval_seconds,
            "failure_threshold": self.failure_threshold,
            "trigger_file": self.trigger_file,
            "probe_timeout_seconds": self.probe_timeout_seconds,
            "counting_policy": self.counting_policy.value,
        }


_PASSWORD_KV = re.compile(r"(password\s*=\s*)('(?:[^'\\]|\\.)*'|\S+)", re.IGNORECASE)
_PASSWORD_URI = re.compile(r"(://[^:/@]+:)([^@]*)(@)")


def mask_conninfo(conninfo: str) -> str:
    """Hide the password in a DSN or URI before it goes to the log."""
    masked = _PASSWORD_KV.sub(r"\1****", conninfo)
    return _PASSWORD_URI.sub(r"\1****\3", masked)


def expand_env_vars(value):
    """Expand ${VAR} references; unknown variables are left untouched."""
    if isinstance(value, str) and "${" in value:
        def replace_env(match):
            return os.environ.get(match.group(1), match.group(0))
        return re.sub(r"\$\{([^}]+)\}", replace_env, value)
    return value


def config_from_dict(raw: dict) -> PromoterConfig:
    """
    Build a PromoterConfig from the ``promoter`` section of a config file.

    Raises:
        ConfigError: unknown keys, missing keys or invalid values
    """
    if not isinstance(raw, dict):
        raise ConfigError("promoter section must be a mapping")

    values = {key: expand_env_vars(value) for key, value in raw.items()}

    known = set(PromoterConfig.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown promoter settings: {', '.join(unknown)}")

    for key, value in values.items():
        if isinstance(value, str) and re.search(r"\$\{[^}]+\}", value):
            raise ConfigError(f"{key} references an unset environment variable: {value}")

    if not values.get("data_directory"):
        values["data_directory"] = os.environ.get("PGDATA", "")

    policy = values.get("counting_policy")
    if policy is not None and not isinstance(policy, CountingPolicy):
        try:
            values["counting_policy"] = CountingPolicy(str(policy).lower())
        except ValueError:
            raise ConfigError(
                f"counting_policy must be one of: {', '.join(p.value for p in CountingPolicy)}"
            ) from None

    if "primary_conninfo" not in values:
        raise ConfigError("primary_conninfo is required")

    return PromoterConfig(**values)


class ConfigLoader:
    """
    Reads PromoterConfig snapshots from a YAML file.

    Each load() re-reads the file, so the same loader serves both the
    initial load and every SIGHUP reload.
    """

    def __init__(self, path: str, overrides: Optional[dict] = None):
        """
        Args:
            path: YAML config file
            overrides: Settings that win over the file (e.g. from CLI flags)
        """
        self.path = Path(path)
        self.overrides = dict(overrides or {})

    def load(self) -> PromoterConfig:
        """
        Load a fresh snapshot.

        Raises:
            ConfigError: file missing, unparsable or invalid
        """
        if not self.path.exists():
            raise ConfigError(f"Config file not found: {self.path}")

        try:
            with open(self.path) as f:
                document = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read config file {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise ConfigError(f"Config file {self.path} must contain a mapping")

        section = document.get("promoter", {}) or {}
        if not isinstance(section, dict):
            raise ConfigError("promoter section must be a mapping")
        section = {**section, **self.overrides}

        config = config_from_dict(section)
        logger.info("config_loaded", path=str(self.path), **config.describe())
        return config
