"""
Network Time Provider
Queries an NTP server for the offset between the device clock and network time
"""

import asyncio
import logging

import ntplib

logger = logging.getLogger(__name__)


class NtpTimeProvider:
    """
    ntplib-backed network time lookup

    ntplib performs a blocking UDP exchange, so each request runs in a
    worker thread to keep the event loop free.
    """

    def __init__(self, version: int = 3):
        self.version = version
        self._client = ntplib.NTPClient()

    async def get_offset_ms(self, server: str, timeout_s: float) -> int:
        """
        Look up the clock offset against one server.

        Args:
            server:    NTP server address.
            timeout_s: Socket timeout for the request.

        Returns:
            Signed offset in milliseconds (network time minus device time).

        Raises:
            ntplib.NTPException or OSError if the server cannot be reached.
        """
        response = await asyncio.to_thread(
            self._client.request, server, self.version, 123, timeout_s
        )
        offset_ms = int(round(response.offset * 1000))
        logger.debug(
            f"NTP response from {server}: offset={offset_ms} ms, "
            f"delay={response.delay * 1000:.1f} ms, stratum={response.stratum}"
        )
        return offset_ms

    def __repr__(self):
        return f"<NtpTimeProvider(version={self.version})>"
