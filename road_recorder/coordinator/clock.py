"""
Hybrid Clock System
Network-time offset tracking plus monotonic session anchors for the recorder
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Protocol

from road_recorder.errors import ClockSyncError, SessionStateError
from .config import ClockConfig

logger = logging.getLogger(__name__)


def monotonic_ms() -> int:
    """Device monotonic clock in milliseconds"""
    return time.monotonic_ns() // 1_000_000


def wall_clock_ms() -> int:
    """Device wall clock in milliseconds since the epoch"""
    return time.time_ns() // 1_000_000


def epoch_ms_to_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc)


class NetworkTimeProvider(Protocol):
    """Anything that can measure the network - device clock offset"""

    def get_offset_ms(self, server: str, timeout_s: float) -> Awaitable[int]:
        ...


@dataclass
class SessionClockAnchor:
    """
    Network and monotonic timestamps bracketing one recording session

    Created when collection starts and sealed once when it stops. All
    relative sample timestamps are measured from monotonic_start_time_ms.
    """
    monotonic_start_time_ms: int
    ntp_start_time: Optional[datetime] = None
    ntp_end_time: Optional[datetime] = None
    monotonic_end_time_ms: Optional[int] = None
    used_device_time: bool = False
    sync_warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_device_clock(
            cls,
            monotonic_clock_ms: Callable[[], int] = monotonic_ms,
            wall_clock: Callable[[], int] = wall_clock_ms,
    ) -> 'SessionClockAnchor':
        """
        Anchor a session on the device clock alone (no synchronizer available).

        Returns:
            Unsealed anchor flagged as using device time.
        """
        return cls(
            monotonic_start_time_ms=monotonic_clock_ms(),
            ntp_start_time=epoch_ms_to_datetime(wall_clock()),
            used_device_time=True,
        )

    @property
    def is_sealed(self) -> bool:
        return self.monotonic_end_time_ms is not None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.monotonic_end_time_ms is None:
            return None
        return self.monotonic_end_time_ms - self.monotonic_start_time_ms

    def record_warning(self, message: str):
        self.sync_warnings.append(message)

    def seal(self, monotonic_end_time_ms: int, ntp_end_time: Optional[datetime]):
        """
        Close the anchor at session stop.

        Args:
            monotonic_end_time_ms: Device monotonic time at stop.
            ntp_end_time:          Network (or fallback device) time at stop.

        Raises:
            SessionStateError if the anchor is already sealed.
            ValueError if the end precedes the start.
        """
        if self.is_sealed:
            raise SessionStateError("Clock anchor is already sealed")
        if monotonic_end_time_ms < self.monotonic_start_time_ms:
            raise ValueError(
                f"Monotonic end {monotonic_end_time_ms} precedes start {self.monotonic_start_time_ms}"
            )
        self.monotonic_end_time_ms = monotonic_end_time_ms
        self.ntp_end_time = ntp_end_time

    def relative_timestamp_ms(self, device_timestamp_ms: int) -> int:
        return device_timestamp_ms - self.monotonic_start_time_ms

    def to_network_timestamp_ms(self, relative_timestamp_ms: int) -> Optional[int]:
        """Absolute network time (epoch ms) of a session-relative timestamp"""
        if self.ntp_start_time is None:
            return None
        return int(self.ntp_start_time.timestamp() * 1000) + relative_timestamp_ms

    def sampling_rate_hz(self, sample_count: int) -> Optional[float]:
        """
        Actual sampling rate over the sealed session window.

        Returns:
            sample_count per second of monotonic session time, or None if the
            anchor is not sealed or the window is empty.
        """
        duration = self.duration_ms
        if duration is None or duration <= 0:
            return None
        return sample_count / (duration / 1000.0)

    def to_dict(self) -> dict:
        return {
            'ntp_start_time': self.ntp_start_time.isoformat() if self.ntp_start_time else None,
            'ntp_end_time': self.ntp_end_time.isoformat() if self.ntp_end_time else None,
            'monotonic_start_time_ms': self.monotonic_start_time_ms,
            'monotonic_end_time_ms': self.monotonic_end_time_ms,
            'duration_ms': self.duration_ms,
            'used_device_time': self.used_device_time,
            'sync_warnings': list(self.sync_warnings),
        }


class ClockSynchronizer:
    """
    Tracks the offset between the device clock and network time

    - One lookup at a time: concurrent callers share the in-flight lookup,
      timer-driven resyncs are skipped while one is running
    - Servers are tried in order, each bounded by a timeout
    - After the first success, later failures keep the previous offset
    """

    def __init__(
            self,
            time_provider: NetworkTimeProvider,
            config: Optional[ClockConfig] = None,
            wall_clock: Callable[[], int] = wall_clock_ms,
            monotonic_clock_ms: Callable[[], int] = monotonic_ms,
    ):
        """
        Args:
            time_provider:      Network time lookup collaborator.
            config:             ClockConfig, defaults to ClockConfig().
            wall_clock:         Device wall clock in epoch ms.
            monotonic_clock_ms: Device monotonic clock in ms.
        """
        self.time_provider = time_provider
        self.config = config if config else ClockConfig()
        self._wall_clock = wall_clock
        self._monotonic = monotonic_clock_ms

        self._offset_ms = 0
        self._last_sync_ms: Optional[int] = None  # monotonic time of last success
        self._last_server: Optional[str] = None
        self._inflight: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._initialized = False

        self._sync_count = 0
        self._failure_count = 0
        self._skipped_resyncs = 0

        logger.info(f"Clock synchronizer initialized ({len(self.config.servers)} servers)")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def has_offset(self) -> bool:
        return self._last_sync_ms is not None

    async def initialize(self):
        """
        Perform the initial lookup and start periodic resynchronization.

        A failed initial lookup is logged, not raised; later calls to
        get_offset() retry it.
        """
        if self._initialized:
            return

        try:
            await self._update_offset()
        except ClockSyncError as e:
            logger.warning(f"⚠ Initial network time sync failed: {e}")

        self._resync_task = asyncio.create_task(self._resync_loop(), name='clock-resync')
        self._initialized = True

    async def get_offset(self) -> int:
        """
        Current offset (network - device) in milliseconds.

        Refreshes the cached offset when none exists or it is older than
        config.max_offset_age_s.

        Raises:
            ClockSyncError if no offset has ever been obtained.
        """
        if self._is_stale():
            await self._update_offset()
        return self._offset_ms

    async def current_network_time(self) -> datetime:
        offset = await self.get_offset()
        return epoch_ms_to_datetime(self._wall_clock() + offset)

    def device_timestamp_to_network_timestamp(self, device_timestamp_ms: int) -> int:
        """Apply the cached offset to a device epoch timestamp"""
        return device_timestamp_ms + self._offset_ms

    async def is_synchronized(self) -> bool:
        try:
            offset = await self.get_offset()
        except ClockSyncError:
            return False
        return abs(offset) < self.config.sync_tolerance_ms

    async def resync(self) -> int:
        """Force a lookup regardless of the cached offset's age"""
        return await self._update_offset()

    async def start_anchor(self) -> SessionClockAnchor:
        """
        Create the clock anchor for a session that is starting now.

        Falls back to device time when no network offset is available and
        records a warning on the anchor for later audit.
        """
        offset, warning = await self._offset_or_warning('start')
        monotonic_now = self._monotonic()
        anchor = SessionClockAnchor(
            monotonic_start_time_ms=monotonic_now,
            ntp_start_time=epoch_ms_to_datetime(self._wall_clock() + (offset or 0)),
            used_device_time=offset is None,
        )
        if warning:
            anchor.record_warning(warning)

        logger.info(
            f"SESSION START: {'device' if offset is None else 'network'} time "
            f"{anchor.ntp_start_time.isoformat()}, monotonic {monotonic_now} ms"
        )
        return anchor

    async def seal_anchor(self, anchor: SessionClockAnchor) -> SessionClockAnchor:
        """Seal an anchor with the current network and monotonic times"""
        offset, warning = await self._offset_or_warning('stop')
        monotonic_now = self._monotonic()
        ntp_end = epoch_ms_to_datetime(self._wall_clock() + (offset or 0))
        anchor.seal(monotonic_now, ntp_end)
        if warning:
            anchor.used_device_time = True
            anchor.record_warning(warning)

        logger.info(
            f"SESSION STOP: time {ntp_end.isoformat()}, monotonic {monotonic_now} ms "
            f"(duration {anchor.duration_ms / 1000:.2f}s)"
        )
        return anchor

    async def dispose(self):
        """Cancel periodic resynchronization"""
        if self._resync_task is not None:
            self._resync_task.cancel()
            try:
                await self._resync_task
            except asyncio.CancelledError:
                pass
            self._resync_task = None
        self._initialized = False

    def get_stats(self) -> dict:
        return {
            'offset_ms': self._offset_ms,
            'has_offset': self.has_offset,
            'last_server': self._last_server,
            'sync_count': self._sync_count,
            'failure_count': self._failure_count,
            'skipped_resyncs': self._skipped_resyncs,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _is_stale(self) -> bool:
        if self._last_sync_ms is None:
            return True
        age_ms = self._monotonic() - self._last_sync_ms
        return age_ms > self.config.max_offset_age_s * 1000

    async def _offset_or_warning(self, phase: str):
        try:
            return await self.get_offset(), None
        except ClockSyncError as e:
            message = f"Network time unavailable at session {phase}, using device time: {e}"
            logger.warning(f"⚠ {message}")
            return None, message

    async def _update_offset(self) -> int:
        # Join the in-flight lookup instead of starting a second one
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._lookup(), name='clock-lookup')
        return await asyncio.shield(self._inflight)

    async def _lookup(self) -> int:
        servers = self.config.servers
        timeout = self.config.lookup_timeout_s
        last_error: Optional[BaseException] = None

        for index, server in enumerate(servers):
            try:
                offset = await asyncio.wait_for(
                    self.time_provider.get_offset_ms(server, timeout),
                    timeout=timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"Network time sync failed with server {server}: {e!r}")
                if index < len(servers) - 1:
                    await asyncio.sleep(self.config.server_retry_delay_s)
                continue

            self._offset_ms = int(offset)
            self._last_sync_ms = self._monotonic()
            self._last_server = server
            self._sync_count += 1
            logger.info(f"✓ Network time sync via {server}: offset {self._offset_ms} ms")
            return self._offset_ms

        self._failure_count += 1
        if self._last_sync_ms is None:
            raise ClockSyncError(
                f"Failed to synchronize with any of {len(servers)} time servers"
            ) from last_error

        logger.warning(f"⚠ All time servers failed, keeping previous offset {self._offset_ms} ms")
        return self._offset_ms

    async def _resync_loop(self):
        while True:
            await asyncio.sleep(self.config.sync_interval_s)
            if self._inflight is not None and not self._inflight.done():
                self._skipped_resyncs += 1
                logger.debug("Lookup already in flight, skipping periodic resync")
                continue
            try:
                await self._update_offset()
            except ClockSyncError as e:
                logger.warning(f"⚠ Periodic network time sync failed: {e}")

    def __repr__(self):
        return f"<ClockSynchronizer(offset={self._offset_ms}ms, syncs={self._sync_count})>"
