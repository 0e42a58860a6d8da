"""
IMU Fusion Collector
Sample-and-hold fusion of accelerometer and gyroscope feeds at a fixed rate
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Protocol, Set

import numpy as np

from road_recorder.channels import Broadcast
from road_recorder.coordinator.clock import SessionClockAnchor, monotonic_ms
from road_recorder.errors import AcquisitionError
from road_recorder.models import AxisReading, ProcessedSample, RawSample
from .calibration import CalibrationParameters
from .config import ImuConfig
from .detector import SpikeDetector
from .feeds import FEED_ACCELEROMETER, FEED_GYROSCOPE, FEEDS, SensorFeedProvider
from .processor import SampleCorrector

logger = logging.getLogger(__name__)

# Emission intervals kept for get_status() statistics
INTERVAL_HISTORY = 1000


class SampleSink(Protocol):
    def append(self, sample: ProcessedSample) -> None:
        ...


class ImuCollector:
    """
    IMU collector - fuses two raw feeds into calibrated samples

    One pump task per feed keeps the latest reading of that feed. A tick task
    runs at the configured rate; each tick pairs the latest accelerometer and
    gyroscope readings, corrects them, runs the spike detector and hands the
    sample to the processed channel and the sink.

    Ticks are skipped until both feeds have delivered, and while either feed
    is in error.
    """

    def __init__(
            self,
            feed_provider: SensorFeedProvider,
            calibration: CalibrationParameters,
            detector: SpikeDetector,
            anchor: SessionClockAnchor,
            config: Optional[ImuConfig] = None,
            sink: Optional[SampleSink] = None,
            processed: Optional[Broadcast] = None,
            monotonic_clock_ms: Callable[[], int] = monotonic_ms,
    ):
        """
        Initialize IMU collector

        Args:
            feed_provider:      Source of the accelerometer and gyroscope feeds.
            calibration:        Calibration snapshot for this session.
            detector:           Initialized spike detector.
            anchor:             Clock anchor of the running session.
            config:             IMU configuration.
            sink:               Receives every emitted sample (the writer).
            processed:          Channel for emitted samples and feed errors.
            monotonic_clock_ms: Device monotonic clock in ms.
        """
        self.feed_provider = feed_provider
        self.calibration = calibration
        self.detector = detector
        self.anchor = anchor
        self.config = config if config else ImuConfig.for_session()
        self.sink = sink
        self.processed = processed if processed is not None else Broadcast(
            'processed', maxsize=self.config.channel_size)
        self._monotonic = monotonic_clock_ms

        self.corrector = SampleCorrector(
            calibration,
            magnitude_basis=self.config.magnitude_basis,
            ema_alpha=self.config.ema_alpha,
        )

        # Sample-and-hold state
        self._latest: Dict[str, Optional[AxisReading]] = {name: None for name in FEEDS}
        self._feed_errors: Set[str] = set()
        self._last_relative_ms = 0

        # Task management
        self.is_running = False
        self._tasks: List[asyncio.Task] = []

        # Counters
        self.emitted_count = 0
        self.skipped_ticks = 0
        self.feed_error_count = 0
        self.bump_count = 0
        self._last_emit_ms: Optional[int] = None
        self._intervals: Deque[int] = deque(maxlen=INTERVAL_HISTORY)

        logger.info(f"IMU Collector initialized at {self.config.sample_rate} Hz")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """
        Start the feed pumps and the fixed-rate tick loop.

        Returns:
            None.
        """
        if self.is_running:
            logger.warning("IMU collector already running")
            return

        self._reset_state()
        self.is_running = True
        self._tasks = [
            asyncio.create_task(
                self._pump(FEED_ACCELEROMETER, self.feed_provider.subscribe_accelerometer),
                name='imu-accelerometer-pump',
            ),
            asyncio.create_task(
                self._pump(FEED_GYROSCOPE, self.feed_provider.subscribe_gyroscope),
                name='imu-gyroscope-pump',
            ),
            asyncio.create_task(self._tick_loop(), name='imu-tick'),
        ]
        logger.info("✓ IMU data collection started")

    async def stop(self):
        """
        Cancel the pumps and the tick loop and drop last-known readings.

        Raises:
            Any programming error that terminated the tick loop.
        """
        if not self.is_running:
            logger.warning("IMU collector not running")
            return

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        self.is_running = False
        self._latest = {name: None for name in FEEDS}
        self._feed_errors.clear()

        logger.info(
            f"✓ IMU data collection stopped: {self.emitted_count} samples, "
            f"{self.bump_count} bumps, {self.skipped_ticks} skipped ticks"
        )

        for result in results:
            if isinstance(result, Exception):
                raise result

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    def tick(self) -> Optional[ProcessedSample]:
        """
        Fuse the latest readings into one sample and emit it.

        Returns:
            The emitted sample, or None when the tick was skipped.
        """
        accel = self._latest[FEED_ACCELEROMETER]
        gyro = self._latest[FEED_GYROSCOPE]
        if accel is None or gyro is None or self._feed_errors:
            self.skipped_ticks += 1
            return None

        now = self._monotonic()
        raw = RawSample.from_readings(accel, gyro, now)

        # Relative time never goes negative or backwards within a session
        relative = max(self.anchor.relative_timestamp_ms(now), self._last_relative_ms)
        self._last_relative_ms = relative

        sample = self.corrector.correct(raw, relative)
        if self.detector.detect_spike(sample):
            sample = sample.with_bump(True)
            self.bump_count += 1

        self._record_emission(now)
        self.processed.publish(sample)
        if self.sink is not None:
            self.sink.append(sample)
        return sample

    def on_reading(self, feed: str, reading: AxisReading):
        """Hold the latest reading of a feed; a reading clears that feed's error"""
        self._latest[feed] = reading
        if feed in self._feed_errors:
            self._feed_errors.discard(feed)
            logger.info(f"✓ {feed} feed recovered")

    def on_feed_error(self, feed: str, error: BaseException):
        """Pause emission and surface the failure on the processed channel"""
        self._feed_errors.add(feed)
        self.feed_error_count += 1
        logger.error(f"✗ {feed} feed error: {error!r}")
        self.processed.publish_error(AcquisitionError(feed, error))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _pump(self, feed: str, subscribe: Callable):
        while True:
            try:
                async for reading in subscribe():
                    self.on_reading(feed, reading)
                logger.info(f"{feed} feed ended")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.on_feed_error(feed, e)
                await asyncio.sleep(self.config.feed_retry_interval)
                logger.info(f"Resubscribing to {feed} feed")

    async def _tick_loop(self):
        loop = asyncio.get_running_loop()
        interval = self.config.collection_interval
        next_tick = loop.time() + interval

        logger.debug("IMU tick loop started")
        while True:
            delay = next_tick - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            elif delay < -interval:
                # Fell behind by more than a tick: resume from now instead of bursting
                next_tick = loop.time()
            else:
                await asyncio.sleep(0)

            self.tick()
            next_tick += interval

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _record_emission(self, now: int):
        if self._last_emit_ms is not None:
            self._intervals.append(now - self._last_emit_ms)
        self._last_emit_ms = now
        self.emitted_count += 1

        if self.emitted_count % self.config.interval_check_every == 0 and self._intervals:
            self._check_interval(self._intervals[-1])

    def _check_interval(self, interval_ms: int):
        target = self.config.target_interval_ms
        deviation = abs(interval_ms - target) / target
        if deviation > self.config.interval_tolerance:
            logger.warning(
                f"⚠ Emission interval {interval_ms} ms deviates {deviation * 100:.0f}% "
                f"from target {target:.0f} ms"
            )

    def _reset_state(self):
        self._latest = {name: None for name in FEEDS}
        self._feed_errors.clear()
        self._last_relative_ms = 0
        self._last_emit_ms = None
        self._intervals.clear()
        self.emitted_count = 0
        self.skipped_ticks = 0
        self.feed_error_count = 0
        self.bump_count = 0
        self.corrector.reset()

    def get_status(self) -> dict:
        """
        Return the current collector state.

        Returns:
            Dict with running state, sample counters and emission interval
            statistics (ms) over the recent history.
        """
        status = {
            'sensor_type': 'IMU',
            'mode': self.config.mode,
            'is_running': self.is_running,
            'samples_emitted': self.emitted_count,
            'bumps_detected': self.bump_count,
            'skipped_ticks': self.skipped_ticks,
            'feed_errors': self.feed_error_count,
            'feeds_in_error': sorted(self._feed_errors),
        }
        if self._intervals:
            intervals = np.array(self._intervals, dtype=float)
            status['interval_ms'] = {
                'mean': float(np.mean(intervals)),
                'std': float(np.std(intervals)),
                'min': float(np.min(intervals)),
                'max': float(np.max(intervals)),
            }
        return status

    def __repr__(self):
        status = "running" if self.is_running else "stopped"
        return f"<ImuCollector(status={status}, samples={self.emitted_count})>"
