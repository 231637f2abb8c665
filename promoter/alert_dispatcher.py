"""
Operator alerts for the promoter.

A promotion (or a failed one) needs a human to look at the cluster, so
these events are pushed beyond the log when a Slack webhook is set.
"""

import os
import socket
from datetime import datetime
from enum import Enum
from typing import Optional
import httpx
import structlog

logger = structlog.get_logger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertDispatcher:
    """
    Logs every alert; forwards warnings and criticals to Slack.

    Warnings repeat while a link flaps, so non-critical alerts with the
    same text are suppressed inside ``dedup_window_seconds``. Critical
    alerts always go out.
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        dedup_window_seconds: int = 300,
        timeout_seconds: float = 10,
    ):
        self.slack_webhook_url = slack_webhook_url or os.environ.get("SLACK_WEBHOOK_URL")
        self.dedup_window_seconds = dedup_window_seconds
        self.timeout_seconds = timeout_seconds
        self.hostname = socket.gethostname()
        self.sent_alerts: dict[str, datetime] = {}

        logger.info("alert_dispatcher_initialized", has_slack=bool(self.slack_webhook_url))

    def send_info(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.INFO, message, context)

    def send_warning(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.WARNING, message, context)

    def send_critical(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.CRITICAL, message, context)

    def _dispatch(self, severity: AlertSeverity, message: str, context: dict) -> None:
        if not self._should_send(message, severity):
            logger.debug("alert_deduplicated", message=message[:50])
            return

        log_method = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.CRITICAL: logger.critical,
        }[severity]
        log_method("alert_dispatched", severity=severity.value, message=message, **context)

        if self.slack_webhook_url and severity in (AlertSeverity.WARNING, AlertSeverity.CRITICAL):
            self._send_slack(severity, message, context)

        self.sent_alerts[message] = datetime.now()

    def _should_send(self, message: str, severity: AlertSeverity) -> bool:
        if severity == AlertSeverity.CRITICAL:
            return True

        last_sent = self.sent_alerts.get(message)
        if last_sent is None:
            return True

        return (datetime.now() - last_sent).total_seconds() > self.dedup_window_seconds

    def _send_slack(self, severity: AlertSeverity, message: str, context: dict) -> None:
        """Post to the Slack webhook. Failures are logged, never raised."""
        emoji = ":rotating_light:" if severity == AlertSeverity.CRITICAL else ":warning:"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{emoji} {severity.value.upper()}: pg_promoter on {self.hostname}",
                },
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": message}},
        ]
        if context:
            context_text = "\n".join(f"- *{k}*: {v}" for k, v in context.items())
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": context_text}})

        try:
            response = httpx.post(
                self.slack_webhook_url,
                json={"text": f"{emoji} pg_promoter: {message}", "blocks": blocks},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            logger.debug("slack_alert_sent")
        except httpx.HTTPError as e:
            logger.error("slack_alert_failed", error=str(e))
