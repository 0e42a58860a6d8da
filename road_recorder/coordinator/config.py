"""
Clock Synchronization Configuration
Network time servers, timeouts and resync cadence
"""

from dataclasses import dataclass
from typing import Tuple


@dataclass
class ClockConfig:
    """Network time synchronization parameters"""

    # Servers - primary pool first, then fallbacks in order
    primary_server: str = 'pool.ntp.org'
    fallback_servers: Tuple[str, ...] = (
        'time.google.com',
        'time.apple.com',
        'time.windows.com',
    )

    # Timing
    lookup_timeout_s: float = 5.0  # per-server lookup bound
    server_retry_delay_s: float = 0.1  # pause before trying the next server
    sync_interval_s: float = 600.0  # periodic resync, 10 minutes
    max_offset_age_s: float = 3600.0  # force a refresh after 1 hour

    # |offset| below this counts as synchronized
    sync_tolerance_ms: int = 50

    @property
    def servers(self) -> Tuple[str, ...]:
        """
        All servers in lookup order.

        Returns:
            Tuple with the primary server followed by the fallbacks.
        """
        return (self.primary_server,) + tuple(self.fallback_servers)

    @classmethod
    def with_servers(cls, *servers: str) -> 'ClockConfig':
        """
        Build a configuration for an explicit server list.

        Args:
            servers: Server addresses, first one is the primary.

        Returns:
            ClockConfig using the given servers.
        """
        if not servers:
            raise ValueError("At least one time server is required")
        return cls(primary_server=servers[0], fallback_servers=tuple(servers[1:]))
