"""
Standby failover promoter.

CRITICAL: This runs on the STANDBY, as its own process.

It watches the primary and, once enough probes have failed:
- Writes the trigger file into the standby's data directory
- Sends SIGUSR1 to the local postmaster to start promotion
- Exits

Promotion is one-way. The promoter never retries a failed promotion
and never promotes twice; an operator takes over from there.
"""

from promoter.config import PromoterConfig, ConfigLoader
from promoter.daemon import PromoterDaemon

__all__ = ["PromoterDaemon", "PromoterConfig", "ConfigLoader"]
