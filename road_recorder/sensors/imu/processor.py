"""
IMU Sample Processor
Calibration corrections, axis transforms and magnitude for fused samples
"""

import logging
from typing import Optional

import numpy as np

from road_recorder.models import ProcessedSample, RawSample
from .calibration import CalibrationParameters

logger = logging.getLogger(__name__)


class EMAFilter:
    """Exponential moving average over a scalar signal"""

    def __init__(self, alpha: float):
        if alpha <= 0 or alpha > 1:
            raise ValueError("Alpha must be between 0 (exclusive) and 1 (inclusive)")
        self.alpha = alpha
        self._previous: Optional[float] = None

    def filter(self, value: float) -> float:
        if self._previous is None:
            self._previous = value
        else:
            self._previous = self.alpha * value + (1 - self.alpha) * self._previous
        return self._previous

    def reset(self):
        self._previous = None


class SampleCorrector:
    """
    Turns fused raw samples into calibrated samples

    Per sample:
    - Optional EMA smoothing of the raw accelerometer axes
    - X/Y swap when the calibrated orientation requires it
    - Subtraction of per-axis offsets (plus session Z offset and gyro Z drift)
    - Acceleration magnitude on a basis fixed for the whole session

    The calibration snapshot is never modified here.
    """

    def __init__(
            self,
            calibration: CalibrationParameters,
            magnitude_basis: str = 'corrected',
            ema_alpha: Optional[float] = None,
    ):
        """
        Args:
            calibration:     Calibration snapshot for the session.
            magnitude_basis: 'corrected' (after offsets) or 'raw' (before offsets).
            ema_alpha:       Accelerometer smoothing factor, None disables it.
        """
        self.calibration = calibration
        self.magnitude_basis = magnitude_basis
        self._filters = None
        if ema_alpha is not None:
            self._filters = (EMAFilter(ema_alpha), EMAFilter(ema_alpha), EMAFilter(ema_alpha))

        logger.debug(
            f"Sample corrector ready (swap_xy={calibration.axis_swap_xy}, "
            f"magnitude={magnitude_basis}, ema={ema_alpha})"
        )

    def reset(self):
        """Forget smoothing history (new session)"""
        if self._filters:
            for f in self._filters:
                f.reset()

    def correct(self, raw: RawSample, relative_timestamp_ms: int) -> ProcessedSample:
        """
        Apply calibration to one fused sample.

        Args:
            raw:                   Fused accelerometer + gyroscope sample.
            relative_timestamp_ms: Offset from the session's monotonic start.

        Returns:
            ProcessedSample with is_bump=False; the detector annotates it later.
        """
        cal = self.calibration

        ax, ay, az = raw.accel_x, raw.accel_y, raw.accel_z
        if self._filters:
            ax = self._filters[0].filter(ax)
            ay = self._filters[1].filter(ay)
            az = self._filters[2].filter(az)

        if cal.axis_swap_xy:
            ax, ay = ay, ax

        accel_x = ax - cal.accel_offset_x
        accel_y = ay - cal.accel_offset_y
        accel_z = az - cal.accel_offset_z - cal.session_accel_offset_z

        gyro_x = raw.gyro_x - cal.gyro_offset_x
        gyro_y = raw.gyro_y - cal.gyro_offset_y
        gyro_z = raw.gyro_z - cal.gyro_offset_z - cal.gyro_z_drift

        if self.magnitude_basis == 'raw':
            magnitude = accel_magnitude(ax, ay, az)
        else:
            magnitude = accel_magnitude(accel_x, accel_y, accel_z)

        return ProcessedSample(
            relative_timestamp_ms=relative_timestamp_ms,
            accel_x=accel_x,
            accel_y=accel_y,
            accel_z=accel_z,
            accel_magnitude=magnitude,
            gyro_x=gyro_x,
            gyro_y=gyro_y,
            gyro_z=gyro_z,
        )


def accel_magnitude(x: float, y: float, z: float) -> float:
    """Euclidean norm of an acceleration vector"""
    return float(np.sqrt(x ** 2 + y ** 2 + z ** 2))
