"""
Promoter daemon.

Runs next to a streaming-replication standby and watches the primary.
When enough probes have failed it promotes the local standby and exits.

Lifecycle:
    STARTING    load config, one probe to validate the connection string
    MONITORING  wait -> probe -> count, until a terminal condition
    PROMOTING   trigger file + SIGUSR1, exactly once
    TERMINATED  process exits with a meaningful code

Exit codes:
    0  promotion completed
    1  fatal: bad config, unreachable primary at startup, supervisor
       gone, or promotion failed
    3  shut down on request without promoting
"""

import argparse
import logging
import sys
from enum import Enum, IntEnum
from pathlib import Path
from typing import Optional
import structlog
from dotenv import load_dotenv

from promoter.accumulator import FailureAccumulator
from promoter.alert_dispatcher import AlertDispatcher
from promoter.config import ConfigError, ConfigLoader, PromoterConfig, mask_conninfo
from promoter.events import EventChannel, SupervisorWatch, WakeReason
from promoter.executor import PromotionError, PromotionExecutor, read_supervisor_pid
from promoter.prober import LivenessProber

logger = structlog.get_logger(__name__)


class DaemonState(Enum):
    STARTING = "starting"
    MONITORING = "monitoring"
    PROMOTING = "promoting"
    TERMINATED = "terminated"


class PromotionState(Enum):
    """Only ever moves forward: NOT_PROMOTED -> PROMOTING -> PROMOTED."""
    NOT_PROMOTED = "not_promoted"
    PROMOTING = "promoting"
    PROMOTED = "promoted"


class ExitCode(IntEnum):
    PROMOTED = 0
    FATAL = 1
    SHUTDOWN = 3


class PromoterDaemon:
    """
    Failover watchdog for a standby server.

    Single-threaded: config, failure count and states are only touched
    from the loop. Signals reach the loop through the EventChannel.
    """

    def __init__(
        self,
        config_loader: ConfigLoader,
        prober: Optional[LivenessProber] = None,
        executor: Optional[PromotionExecutor] = None,
        events: Optional[EventChannel] = None,
        alerter: Optional[AlertDispatcher] = None,
    ):
        """
        Args:
            config_loader: Source of config snapshots (initial + reloads)
            prober: Liveness prober for the primary
            executor: Promotion executor
            events: Wake-event channel fed by signal handlers
            alerter: Operator alert dispatcher
        """
        self.config_loader = config_loader
        self.prober = prober or LivenessProber()
        self.executor = executor or PromotionExecutor()
        self.events = events or EventChannel(SupervisorWatch())
        self.alerter = alerter or AlertDispatcher()

        self.config: Optional[PromoterConfig] = None
        self.accumulator: Optional[FailureAccumulator] = None
        self.state = DaemonState.STARTING
        self.promotion_state = PromotionState.NOT_PROMOTED
        self.exit_code: Optional[ExitCode] = None

    def run(self) -> ExitCode:
        """Run until a terminal condition, return the exit code."""
        if self.state is DaemonState.STARTING:
            self.start()

        while self.state is DaemonState.MONITORING:
            self.step()

        return self.exit_code

    def start(self) -> None:
        """
        Load config and check the primary once.

        A primary we cannot reach at startup means a bad connection
        string, not a failover, so this exits instead of monitoring.
        """
        if self.state is not DaemonState.STARTING:
            return

        try:
            self.config = self.config_loader.load()
        except ConfigError as e:
            logger.error("config_invalid", error=str(e))
            self.alerter.send_critical(f"Promoter failed to start: {e}")
            self._terminate(ExitCode.FATAL)
            return

        result = self.prober.probe(
            self.config.primary_conninfo, self.config.probe_timeout_seconds
        )
        if not result.reachable:
            logger.error(
                "initial_connection_check_failed",
                primary=mask_conninfo(self.config.primary_conninfo),
                reason=result.reason,
            )
            self.alerter.send_critical(
                "Promoter failed to start: primary not reachable with the configured connection info",
                reason=result.reason,
            )
            self._terminate(ExitCode.FATAL)
            return

        self.accumulator = FailureAccumulator(self.config.counting_policy)
        self.state = DaemonState.MONITORING
        logger.info("monitoring_started", **self.config.describe())
        self.alerter.send_info(
            "Promoter monitoring primary",
            threshold=self.config.failure_threshold,
            interval=self.config.poll_interval_seconds,
        )

    def step(self) -> None:
        """One pass of the monitoring loop: wait, then act on the wake reason."""
        if self.state is not DaemonState.MONITORING:
            return

        reason = self.events.wait(self.config.poll_interval_seconds)

        if reason is WakeReason.SUPERVISOR_DEATH:
            logger.critical("supervisor_gone_emergency_exit")
            self.alerter.send_critical("Promoter supervisor died; exiting without promoting")
            self._terminate(ExitCode.FATAL)
        elif reason is WakeReason.SHUTDOWN:
            logger.info("shutdown_requested", failures=self.accumulator.count)
            self._terminate(ExitCode.SHUTDOWN)
        elif reason is WakeReason.RELOAD:
            self.reload_config()
        else:
            self.tick()

    def tick(self) -> DaemonState:
        """
        Probe once and act on the result.

        No-op outside MONITORING, so nothing can start a second
        promotion once one has begun.
        """
        if self.state is not DaemonState.MONITORING:
            logger.debug("tick_ignored", state=self.state.value)
            return self.state

        # Snapshot for the whole tick; a reload only lands between ticks
        config = self.config

        result = self.prober.probe(config.primary_conninfo, config.probe_timeout_seconds)
        count = self.accumulator.record_result(result)

        if result.reachable:
            logger.debug("primary_probe_ok", failures=count)
        else:
            logger.warning(
                "primary_probe_failed",
                primary=mask_conninfo(config.primary_conninfo),
                reason=result.reason,
                failures=count,
                threshold=config.failure_threshold,
            )
            if count < config.failure_threshold:
                self.alerter.send_warning(
                    "Primary probe failing",
                    failures=count,
                    threshold=config.failure_threshold,
                )

        # Never promote on the back of a probe that just reached the primary,
        # even if a reload lowered the threshold below the current count
        if not result.reachable and self.accumulator.threshold_crossed(config.failure_threshold):
            logger.warning(
                "failure_threshold_reached",
                failures=count,
                threshold=config.failure_threshold,
            )
            self._promote(config)

        return self.state

    def reload_config(self) -> None:
        """
        Swap in a freshly loaded config snapshot.

        A broken config file keeps the current snapshot running.
        """
        try:
            new_config = self.config_loader.load()
        except ConfigError as e:
            logger.error("config_reload_failed_keeping_previous", error=str(e))
            self.alerter.send_warning(f"Promoter config reload failed: {e}")
            return

        previous = self.config.describe()
        changed = {
            key: value
            for key, value in new_config.describe().items()
            if previous.get(key) != value
        }
        self.config = new_config
        self.accumulator.policy = new_config.counting_policy

        logger.info("config_reloaded", changed=changed, failures=self.accumulator.count)

        if self.accumulator.threshold_crossed(new_config.failure_threshold):
            logger.warning(
                "failure_count_at_new_threshold",
                failures=self.accumulator.count,
                threshold=new_config.failure_threshold,
                message="Next failed probe promotes",
            )

    def _promote(self, config: PromoterConfig) -> None:
        self.state = DaemonState.PROMOTING
        self.promotion_state = PromotionState.PROMOTING
        logger.critical(
            "PROMOTING_STANDBY",
            primary=mask_conninfo(config.primary_conninfo),
            failures=self.accumulator.count,
        )

        try:
            supervisor_pid = read_supervisor_pid(config.pid_file_path)
            self.executor.promote(config.trigger_path, supervisor_pid)
        except PromotionError as e:
            logger.critical(
                "promotion_failed",
                step=e.step.value,
                error=str(e),
                trigger_file=str(config.trigger_path),
            )
            self.alerter.send_critical(
                f"PROMOTION FAILED at step {e.step.value}: {e}. Manual intervention required."
            )
            self._terminate(ExitCode.FATAL)
            return

        self.promotion_state = PromotionState.PROMOTED
        self.alerter.send_critical(
            "Standby promoted: primary unreachable",
            failures=self.accumulator.count,
            data_directory=config.data_directory,
        )
        self._terminate(ExitCode.PROMOTED)

    def _terminate(self, code: ExitCode) -> None:
        self.state = DaemonState.TERMINATED
        self.exit_code = code
        logger.info(
            "promoter_terminated",
            exit_code=int(code),
            reason=code.name.lower(),
            promotion_state=self.promotion_state.value,
        )


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure structured JSON logging to stdout (and optionally a file)."""
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="pg_promoter - promote this standby when the primary dies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Signals:
    SIGHUP   reload the config file
    SIGTERM  stop without promoting (exit code 3)

Examples:
    pg-promoter --config /etc/pg_promoter.yaml
    pg-promoter --config promoter.yaml --supervisor-pid 4242 --log-level DEBUG
        """,
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/promoter.yaml",
        help="Path to the YAML config file",
    )
    parser.add_argument(
        "--supervisor-pid",
        type=int,
        default=None,
        help="Exit immediately if this process goes away",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Poll interval in seconds (wins over the config file, also on reload)",
    )
    parser.add_argument(
        "--failure-threshold",
        type=int,
        default=None,
        help="Failed probes before promotion (wins over the config file, also on reload)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )
    return parser


def cli_overrides(args: argparse.Namespace) -> dict:
    """Config settings given on the command line."""
    overrides = {}
    if args.interval is not None:
        overrides["poll_interval_seconds"] = args.interval
    if args.failure_threshold is not None:
        overrides["failure_threshold"] = args.failure_threshold
    return overrides


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the promoter process."""
    args = build_parser().parse_args(argv)

    load_dotenv()
    setup_logging(args.log_level, args.log_file)

    logger.info("starting_promoter", config=args.config, supervisor_pid=args.supervisor_pid)

    events = EventChannel(SupervisorWatch(supervisor_pid=args.supervisor_pid))
    events.install()

    try:
        daemon = PromoterDaemon(
            config_loader=ConfigLoader(args.config, overrides=cli_overrides(args)),
            events=events,
        )
        return int(daemon.run())
    except Exception as e:
        logger.exception("promoter_crashed", error=str(e))
        return int(ExitCode.FATAL)
    finally:
        events.uninstall()


if __name__ == "__main__":
    sys.exit(main())
