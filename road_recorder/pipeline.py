"""
Road Recorder - Recording Pipeline
==================================
Central module that owns the lifecycle of one recording session at a time.

Usage in sensor_runner.py:
    pipeline = RecordingPipeline(feed, CsvFileStorage(), clock)
    await pipeline.initialize()
    pipeline.set_calibration(calibration)
    await pipeline.start('/data/sessions/2024-06-01_0930')
    # ... drive ...
    await pipeline.stop()
    await pipeline.dispose()

Components wired per session:
    - ClockSynchronizer      : session anchor at start, sealed at stop
    - ImuCollector           : 100 Hz fusion, correction and spike detection
    - BufferedSampleWriter   : ordered, retried persistence to sensors.csv

Failure policy:
    Feed errors pause emission and are surfaced on the processed stream.
    Storage failures are retried, then reported through the write error
    callback; the session keeps recording.
    Network time failures fall back to device time and are written to
    clock_warnings.log in the session directory.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from road_recorder.channels import Broadcast, Subscription
from road_recorder.coordinator.clock import (
    ClockSynchronizer,
    SessionClockAnchor,
    monotonic_ms,
    wall_clock_ms,
    epoch_ms_to_datetime,
)
from road_recorder.errors import SessionStateError
from road_recorder.models import ProcessedSample, WriteResult
from road_recorder.sensors.imu.calibration import CalibrationParameters
from road_recorder.sensors.imu.collector import ImuCollector
from road_recorder.sensors.imu.config import ImuConfig
from road_recorder.sensors.imu.detector import SpikeDetector
from road_recorder.sensors.imu.feeds import SensorFeedProvider
from road_recorder.storage.csv_storage import StorageProvider
from road_recorder.storage.writer import BufferedSampleWriter

logger = logging.getLogger(__name__)


class RecordingPipeline:
    """
    Owns collection, detection and persistence for one session at a time.

    Responsibilities:
      - Hold the calibration snapshot applied to the next session
      - Anchor each session on the clock synchronizer (or the device clock)
      - Start / stop the collector and the writer in the right order
      - Expose the processed and write-status streams
      - Report session aggregates via get_status()
    """

    def __init__(
        self,
        feed_provider: SensorFeedProvider,
        storage: StorageProvider,
        clock: Optional[ClockSynchronizer] = None,
        config: Optional[ImuConfig] = None,
        monotonic_clock_ms: Callable[[], int] = monotonic_ms,
        wall_clock: Callable[[], int] = wall_clock_ms,
    ):
        """
        Args:
            feed_provider      : Source of raw accelerometer/gyroscope feeds
            storage            : Blocking storage provider for session files
            clock              : Network clock synchronizer; None records on
                                 device time only
            config             : ImuConfig, defaults to ImuConfig.for_session()
            monotonic_clock_ms : Device monotonic clock in ms
            wall_clock         : Device wall clock in epoch ms
        """
        self.feed_provider = feed_provider
        self.storage = storage
        self.clock = clock
        self.config = config if config else ImuConfig.for_session()
        self._monotonic = monotonic_clock_ms
        self._wall_clock = wall_clock

        self.processed: Broadcast[ProcessedSample] = Broadcast('processed', self.config.channel_size)
        self.write_status: Broadcast[WriteResult] = Broadcast('write_status', self.config.channel_size)

        self.detector = SpikeDetector(
            noise_floor=self.config.noise_floor,
            required_consecutive=self.config.required_consecutive_readings,
            min_magnitude_difference=self.config.min_magnitude_difference,
        )
        self.writer = BufferedSampleWriter(storage, self.config, status=self.write_status)

        self.calibration = CalibrationParameters()
        self.collector: Optional[ImuCollector] = None
        self.anchor: Optional[SessionClockAnchor] = None

        self.is_active = False
        self._disposed = False
        self._initialized = False
        self._warnings_persisted = 0
        self._session_count = 0

        logger.info(f"RecordingPipeline created ({self.config.mode} mode, {self.config.sample_rate} Hz)")

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def initialize(self):
        """Perform the initial network time sync (failure is not fatal)."""
        if self._initialized:
            return
        if self.clock is not None:
            await self.clock.initialize()
        self._initialized = True

    def set_session_directory(self, path: Union[str, Path]):
        if self.is_active:
            raise SessionStateError("Cannot change the session directory while recording")
        self.writer.set_session_directory(path)

    def set_calibration(self, calibration: Union[CalibrationParameters, Mapping[str, Any]]):
        """
        Replace the calibration snapshot used by the next session.

        Raises:
            SessionStateError while a session is active.
            CalibrationError if a mapping fails validation.
        """
        if self.is_active:
            raise SessionStateError("Calibration cannot change while a session is active")
        if not isinstance(calibration, CalibrationParameters):
            calibration = CalibrationParameters.from_mapping(calibration)

        if calibration.is_stale(self._wall_clock()):
            logger.warning("⚠ Calibration is older than an hour or undated, consider recalibrating")
        self.calibration = calibration
        logger.info(
            f"Calibration set: threshold={calibration.bump_threshold:.3f}, "
            f"swap_xy={calibration.axis_swap_xy}"
        )

    def set_write_error_callback(self, callback: Optional[Callable[[str], None]]):
        self.writer.set_write_error_callback(callback)

    async def start(self, session_directory: Union[str, Path, None] = None):
        """
        Start a new session.

        Args:
            session_directory : Directory for this session's files; defaults
                                to the one set with set_session_directory()

        Raises:
            SessionStateError if a session is already active, the pipeline
            was disposed, or the directory already holds a recording.
        """
        if self._disposed:
            raise SessionStateError("Pipeline has been disposed")
        if self.is_active:
            raise SessionStateError("A session is already active")

        if session_directory is not None:
            self.writer.set_session_directory(session_directory)
        directory = self.writer.session_directory
        sensor_file = self.writer.sensor_file
        if sensor_file is not None and await asyncio.to_thread(self.storage.exists, sensor_file):
            raise SessionStateError(f"{sensor_file} already holds a recording, use a new session directory")

        logger.info("=" * 55)
        logger.info("  Road Recorder: starting session")
        logger.info("=" * 55)

        if directory is not None:
            await asyncio.to_thread(self.storage.create_directory, directory)

        if self.clock is not None:
            anchor = await self.clock.start_anchor()
        else:
            anchor = SessionClockAnchor.from_device_clock(self._monotonic, self._wall_clock)
        self.anchor = anchor
        self._warnings_persisted = 0

        self.detector.initialize(self.calibration.bump_threshold, self.config.refractory_period_ms)
        self.writer.start(anchor)
        self.collector = ImuCollector(
            feed_provider=self.feed_provider,
            calibration=self.calibration,
            detector=self.detector,
            anchor=anchor,
            config=self.config,
            sink=self.writer,
            processed=self.processed,
            monotonic_clock_ms=self._monotonic,
        )

        await self._persist_clock_warnings()
        await self.collector.start()
        self.is_active = True
        self._session_count += 1

        logger.info(f"✓ Session {self._session_count} recording (directory={directory})")

    async def stop(self) -> bool:
        """
        Stop the active session.

        Stops collection, seals the clock anchor and lets the writer finish
        every pending segment plus the residual buffer.

        Returns:
            True if a session was stopped, False if none was active.
        """
        if not self.is_active:
            logger.warning("No active session to stop")
            return False

        logger.info("Stopping recording session...")
        try:
            await self.collector.stop()
        finally:
            try:
                await self._seal_anchor()
                await self.writer.stop()
                await self._persist_clock_warnings()
            finally:
                self.is_active = False

        rate = self.calculate_actual_sampling_rate_hz()
        logger.info(
            f"✓ Session stopped: {self.writer.get_total_rows_written()} rows written, "
            f"{self.detector.spike_count} bumps"
            + (f", {rate:.1f} Hz actual" if rate is not None else "")
        )
        return True

    async def dispose(self):
        """Stop any active session, cancel clock resync, and close streams."""
        if self._disposed:
            return
        if self.is_active:
            await self.stop()
        if self.clock is not None:
            await self.clock.dispose()
        self.processed.close()
        self.write_status.close()
        self._disposed = True
        logger.info("✓ Recording pipeline disposed")

    # -----------------------------------------------------------------------
    # Streams and annotations
    # -----------------------------------------------------------------------

    def subscribe_processed(self, maxsize: Optional[int] = None) -> Subscription[ProcessedSample]:
        return self.processed.subscribe(maxsize)

    def subscribe_write_status(self, maxsize: Optional[int] = None) -> Subscription[WriteResult]:
        return self.write_status.subscribe(maxsize)

    async def log_annotation(self, timestamp_ms: int, feedback_type: str) -> bool:
        """
        Append one '<timestampMs>,<feedbackType>' line to annotations.log.

        Returns:
            False when no session directory is set.
        """
        directory = self.writer.session_directory
        if directory is None:
            logger.warning(f"⚠ No session directory, annotation {feedback_type!r} at {timestamp_ms} not logged")
            return False

        line = f"{int(timestamp_ms)},{feedback_type}"
        await asyncio.to_thread(
            self.storage.append_log, directory / self.config.annotation_file_name, line)
        logger.debug(f"Annotation logged: {line}")
        return True

    async def annotate_window(
        self,
        start_ms: int,
        end_ms: int,
        is_bump: Optional[bool] = None,
        user_feedback: Optional[str] = None,
    ) -> int:
        """Update bump flag / feedback of samples in a session-relative window."""
        return await self.writer.annotate_window(start_ms, end_ms, is_bump, user_feedback)

    # -----------------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------------

    def get_total_rows_written(self) -> int:
        return self.writer.get_total_rows_written()

    def get_total_processed_samples(self) -> int:
        return self.writer.get_total_processed_samples()

    def calculate_actual_sampling_rate_hz(self) -> Optional[float]:
        return self.writer.calculate_actual_sampling_rate_hz()

    def get_clock_anchor(self) -> Optional[SessionClockAnchor]:
        return self.anchor

    def get_status(self) -> dict:
        """
        Return a summary of pipeline state for logging / display.
        """
        return {
            'is_active'       : self.is_active,
            'sessions'        : self._session_count,
            'calibration'     : self.calibration.to_dict(),
            'anchor'          : self.anchor.to_dict() if self.anchor else None,
            'collector'       : self.collector.get_status() if self.collector else None,
            'writer'          : self.writer.get_status(),
            'clock'           : self.clock.get_stats() if self.clock else None,
            'sampling_rate_hz': self.calculate_actual_sampling_rate_hz(),
        }

    # -----------------------------------------------------------------------
    # Private: clock anchor helpers
    # -----------------------------------------------------------------------

    async def _seal_anchor(self):
        if self.anchor is None or self.anchor.is_sealed:
            return
        if self.clock is not None:
            await self.clock.seal_anchor(self.anchor)
        else:
            self.anchor.seal(self._monotonic(), epoch_ms_to_datetime(self._wall_clock()))

    async def _persist_clock_warnings(self):
        """
        Append the anchor's new synchronization warnings to clock_warnings.log.
        """
        if self.anchor is None:
            return
        pending = self.anchor.sync_warnings[self._warnings_persisted:]
        directory = self.writer.session_directory
        if not pending or directory is None:
            return

        path = directory / self.config.clock_warning_file_name
        for message in pending:
            line = f"{epoch_ms_to_datetime(self._wall_clock()).isoformat()},{message}"
            try:
                await asyncio.to_thread(self.storage.append_log, path, line)
            except Exception as e:
                # Don't let a warning-log failure end the session
                logger.warning(f"Could not write clock warning to {path}: {e}")
                return
            self._warnings_persisted += 1

    # -----------------------------------------------------------------------
    # Dunder helpers
    # -----------------------------------------------------------------------

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.dispose()

    def __repr__(self):
        return (
            f"<RecordingPipeline("
            f"active={self.is_active}, "
            f"rows={self.writer.get_total_rows_written()})>"
        )
