"""
Liveness prober for the primary server.

Every probe opens a NEW connection and runs a trivial query. A pooled
or reused connection could stay "up" on our side while the primary is
gone, so nothing is kept between probes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import structlog

import psycopg2
import psycopg2.extensions

from promoter.config import mask_conninfo

logger = structlog.get_logger(__name__)

PROBE_QUERY = "SELECT 1"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single probe. Consumed immediately, never stored."""
    reachable: bool
    timestamp: datetime = field(default_factory=datetime.now)
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ProbeResult":
        return cls(reachable=True)

    @classmethod
    def failed(cls, reason: str) -> "ProbeResult":
        return cls(reachable=False, reason=reason)


class LivenessProber:
    """
    Checks that the primary accepts connections AND answers queries.

    The probe is bounded: the connect timeout and the server-side
    statement timeout both come from ``timeout_seconds``, so a hung
    primary turns into a failed probe instead of a hung watchdog.
    """

    def __init__(self, timeout_seconds: int = 5, connect=None):
        """
        Args:
            timeout_seconds: Connect and statement timeout
            connect: Connection factory (defaults to psycopg2.connect)
        """
        self.timeout_seconds = timeout_seconds
        self._connect = connect or psycopg2.connect

    def probe(self, conninfo: str, timeout_seconds: Optional[int] = None) -> ProbeResult:
        """
        Probe the primary. Never raises.

        Success requires a connection AND exactly one row back from
        the probe query. Anything else is a failure with a reason.

        Args:
            conninfo: Primary connection string
            timeout_seconds: Overrides the prober's default timeout
        """
        timeout = timeout_seconds or self.timeout_seconds
        conn = None
        try:
            conn = self._connect(
                conninfo,
                connect_timeout=timeout,
                options=session_options(conninfo, timeout),
                application_name="pg_promoter",
                # Client-side deadline: a primary that vanishes mid-query
                # must not leave us blocked in recv() for the kernel TCP timeout
                keepalives=1,
                keepalives_idle=1,
                keepalives_interval=1,
                keepalives_count=timeout,
                tcp_user_timeout=timeout * 1000,
            )
            with conn.cursor() as cursor:
                cursor.execute(PROBE_QUERY)

                # description is None when the statement returned no tuples
                if cursor.description is None:
                    return self._failure(conninfo, "query returned no tuples")

                rows = cursor.fetchall()
                if len(rows) != 1:
                    return self._failure(conninfo, f"expected 1 row, got {len(rows)}")

            return ProbeResult.ok()

        except psycopg2.extensions.QueryCanceledError as e:
            # statement_timeout fired: the primary accepted us but is not answering
            return self._failure(conninfo, f"query timed out: {_first_line(e)}")
        except psycopg2.OperationalError as e:
            return self._failure(conninfo, f"connection failed: {_first_line(e)}")
        except psycopg2.Error as e:
            return self._failure(conninfo, f"query failed: {_first_line(e)}")
        except Exception as e:
            # Driver/socket level surprises must not escape the probe
            return self._failure(conninfo, f"unexpected probe error: {type(e).__name__}: {e}")
        finally:
            if conn is not None:
                _close_quietly(conn)

    def _failure(self, conninfo: str, reason: str) -> ProbeResult:
        logger.debug("probe_failed", primary=mask_conninfo(conninfo), reason=reason)
        return ProbeResult.failed(reason)


def _first_line(error: Exception) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__


def _close_quietly(conn) -> None:
    try:
        conn.close()
    except Exception as e:
        logger.debug("probe_connection_close_failed", error=str(e))


def session_options(conninfo: str, timeout_seconds: int) -> str:
    """
    Server options for a probe connection.

    Keyword arguments win over the DSN in psycopg2, so any ``options``
    already in the connection string are kept and the statement
    timeout is appended after them.
    """
    timeout_option = f"-c statement_timeout={timeout_seconds * 1000}"
    try:
        existing = psycopg2.extensions.parse_dsn(conninfo).get("options")
    except psycopg2.ProgrammingError:
        # Unparsable DSN: the connect call reports it as the probe failure
        existing = None

    if existing:
        return f"{existing} {timeout_option}"
    return timeout_option
