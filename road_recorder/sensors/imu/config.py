"""
IMU Recording Configuration
Fusion rate, correction options, spike detection and persistence parameters
"""

from dataclasses import dataclass
from typing import Optional


MAGNITUDE_BASES = ('corrected', 'raw')


@dataclass
class ImuConfig:
    """Accelerometer + gyroscope recording parameters"""

    # Operating mode
    mode: str = 'session'  # 'calibration' or 'session'

    # Fusion settings
    sample_rate: int = 100  # Hz, fixed fusion tick rate
    collection_interval: float = 0.01  # 1/100 = 10ms between ticks
    interval_check_every: int = 100  # emissions between rate-deviation checks
    interval_tolerance: float = 0.5  # allowed +/- fraction of the target interval
    feed_retry_interval: float = 1.0  # seconds before resubscribing a failed feed

    # Correction settings
    magnitude_basis: str = 'corrected'  # 'corrected' or 'raw' accelerometer axes
    ema_alpha: Optional[float] = None  # accelerometer smoothing, None disables

    # Spike detection
    refractory_period_ms: int = 8000
    min_magnitude_difference: float = 4.0  # margin to override the refractory window
    noise_floor: float = 0.05  # readings closer than this to the previous one are noise
    required_consecutive_readings: int = 2

    # Persistence settings
    buffer_high_water: int = 150  # flush when the buffer reaches this many samples
    write_max_attempts: int = 3  # 1 attempt + 2 retries
    write_backoff_s: float = 0.5
    write_backoff_multiplier: float = 2.0
    persistent_failure_threshold: int = 3  # consecutive exhausted flushes
    backlog_warning_segments: int = 20  # pending write jobs before a backlog warning
    channel_size: int = 1000  # per-subscriber queue bound on observable streams

    # File names inside the session directory
    sensor_file_name: str = 'sensors.csv'
    annotation_file_name: str = 'annotations.log'
    clock_warning_file_name: str = 'clock_warnings.log'

    def __post_init__(self):
        """Validate option values that would otherwise fail deep in the pipeline."""
        if self.magnitude_basis not in MAGNITUDE_BASES:
            raise ValueError(f"magnitude_basis must be one of {MAGNITUDE_BASES}, got {self.magnitude_basis!r}")
        if self.ema_alpha is not None and not (0 < self.ema_alpha <= 1):
            raise ValueError("ema_alpha must be between 0 (exclusive) and 1 (inclusive)")
        if self.buffer_high_water < 1:
            raise ValueError("buffer_high_water must be positive")
        if self.write_max_attempts < 1:
            raise ValueError("write_max_attempts must be at least 1")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")

    @property
    def target_interval_ms(self) -> float:
        """
        Target interval between fusion ticks in milliseconds.

        Returns:
            Tick period derived from collection_interval.
        """
        return self.collection_interval * 1000.0

    @classmethod
    def for_calibration(cls) -> 'ImuConfig':
        """
        Create a configuration for a calibration run.

        Smooths the accelerometer the way the calibration screens expect and
        keeps the buffer small so results reach storage quickly.

        Returns:
            ImuConfig with mode='calibration'.
        """
        return cls(
            mode='calibration',
            ema_alpha=0.15,
            buffer_high_water=50,
        )

    @classmethod
    def for_session(cls) -> 'ImuConfig':
        """
        Create a configuration for a recording session.

        Returns:
            ImuConfig with mode='session' and unsmoothed corrections.
        """
        return cls(mode='session')

    @classmethod
    def for_rate(cls, sample_rate: int, **overrides) -> 'ImuConfig':
        """
        Create a session configuration for a different fusion rate.

        Args:
            sample_rate: Target fusion rate in Hz.
            overrides:   Any other ImuConfig field.

        Returns:
            ImuConfig whose collection_interval matches sample_rate.
        """
        return cls(
            sample_rate=sample_rate,
            collection_interval=1.0 / sample_rate,
            **overrides,
        )
