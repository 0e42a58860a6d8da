"""
Bump Spike Detector
Threshold detector with a consecutive-reading gate and refractory suppression
"""

import logging
from typing import Optional

from road_recorder.errors import DetectorNotInitializedError
from road_recorder.models import ProcessedSample

logger = logging.getLogger(__name__)


class SpikeDetector:
    """
    Stateful bump detector over corrected acceleration magnitude

    A bump is confirmed when:
    - at least `required_consecutive` successive readings exceed the threshold
      and each differs from the one before by at least `noise_floor`
    - and it is the first spike, or falls outside the refractory window, or
      beats the last spike's magnitude by more than `min_magnitude_difference`
    """

    def __init__(
            self,
            noise_floor: float = 0.05,
            required_consecutive: int = 2,
            min_magnitude_difference: float = 4.0,
    ):
        self.noise_floor = noise_floor
        self.required_consecutive = required_consecutive
        self.min_magnitude_difference = min_magnitude_difference

        self.threshold = 0.0
        self.refractory_period_ms = 8000
        self.last_spike_timestamp_ms: Optional[int] = None
        self.last_spike_magnitude: Optional[float] = None
        self.consecutive_above_count = 0
        self.previous_magnitude: Optional[float] = None

        self._initialized = False
        self.spike_count = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, threshold: float, refractory_period_ms: int = 8000):
        """
        Reset all state and arm the detector.

        Args:
            threshold:            Magnitude above which a reading counts.
            refractory_period_ms: Suppression window after a confirmed spike.
        """
        self.threshold = threshold
        self.refractory_period_ms = refractory_period_ms
        self.reset()
        self._initialized = True

        logger.info(f"Spike detector armed: threshold={threshold:.3f}, refractory={refractory_period_ms} ms")

    def reset(self):
        """Clear transient state, keeping threshold and refractory period"""
        self.last_spike_timestamp_ms = None
        self.last_spike_magnitude = None
        self.consecutive_above_count = 0
        self.previous_magnitude = None
        self.spike_count = 0

    def detect_spike(self, sample: ProcessedSample) -> bool:
        """
        Feed one sample through the detector.

        Args:
            sample: Corrected sample; uses accel_magnitude and relative_timestamp_ms.

        Returns:
            True iff this sample confirms a new bump.

        Raises:
            DetectorNotInitializedError if initialize() was never called.
        """
        if not self._initialized:
            raise DetectorNotInitializedError("SpikeDetector must be initialized before use")

        timestamp = sample.relative_timestamp_ms
        magnitude = sample.accel_magnitude

        previous = self.previous_magnitude
        self.previous_magnitude = magnitude

        if magnitude <= self.threshold or (
                previous is not None and abs(magnitude - previous) < self.noise_floor):
            self.consecutive_above_count = 0
            return False

        self.consecutive_above_count += 1
        if self.consecutive_above_count < self.required_consecutive:
            return False

        if (self.last_spike_timestamp_ms is None
                or timestamp - self.last_spike_timestamp_ms >= self.refractory_period_ms):
            return self._confirm(timestamp, magnitude)

        # Inside the refractory window only a markedly stronger event counts
        if (self.last_spike_magnitude is not None
                and magnitude > self.last_spike_magnitude + self.min_magnitude_difference):
            return self._confirm(timestamp, magnitude)

        return False

    def get_last_spike_timestamp(self) -> Optional[int]:
        return self.last_spike_timestamp_ms

    def _confirm(self, timestamp: int, magnitude: float) -> bool:
        self.last_spike_timestamp_ms = timestamp
        self.last_spike_magnitude = magnitude
        self.spike_count += 1
        logger.debug(f"Bump detected at {timestamp} ms (magnitude {magnitude:.3f})")
        return True

    def __repr__(self):
        return f"<SpikeDetector(threshold={self.threshold}, spikes={self.spike_count})>"
