"""
IMU Calibration Parameters
Validated, immutable calibration snapshot applied for one recording session
"""

import logging
import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Mapping, Optional

from road_recorder.errors import CalibrationError

logger = logging.getLogger(__name__)

# Orientations in which the device's X and Y axes are exchanged
SWAPPED_ORIENTATIONS = ('landscapeLeft', 'landscapeRight')
KNOWN_ORIENTATIONS = ('portrait', 'landscapeLeft', 'landscapeRight', 'flat', 'unknown')

# Calibration older than this should be redone before recording
MAX_CALIBRATION_AGE_MS = 3_600_000

_REQUIRED_FLOATS = (
    'accel_offset_x',
    'accel_offset_y',
    'accel_offset_z',
    'gyro_offset_x',
    'gyro_offset_y',
    'gyro_offset_z',
    'bump_threshold',
)
_OPTIONAL_FLOATS = ('gyro_z_drift', 'session_accel_offset_z')


def _as_float(payload: Mapping[str, Any], key: str) -> float:
    value = payload[key]
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CalibrationError(f"'{key}' must be a number, got {type(value).__name__}")
    value = float(value)
    if not math.isfinite(value):
        raise CalibrationError(f"'{key}' must be finite, got {value}")
    return value


@dataclass(frozen=True)
class CalibrationParameters:
    """
    Per-device corrections and session thresholds

    Offsets are subtracted from the matching raw axis after the optional X/Y
    swap. gyro_z_drift and session_accel_offset_z come from the
    pre-recording calibration and are applied on top of the device offsets.
    """
    accel_offset_x: float = 0.0
    accel_offset_y: float = 0.0
    accel_offset_z: float = 0.0
    gyro_offset_x: float = 0.0
    gyro_offset_y: float = 0.0
    gyro_offset_z: float = 0.0
    axis_swap_xy: bool = False
    bump_threshold: float = 0.0
    gyro_z_drift: float = 0.0
    session_accel_offset_z: float = 0.0
    calibration_timestamp_ms: Optional[int] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> 'CalibrationParameters':
        """
        Build parameters from a loosely-typed mapping (e.g. decoded JSON).

        Args:
            payload: Mapping with the field names of this class.

        Returns:
            Validated CalibrationParameters.

        Raises:
            CalibrationError for missing, unknown or ill-typed fields.
        """
        if not isinstance(payload, Mapping):
            raise CalibrationError(f"Calibration payload must be a mapping, got {type(payload).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise CalibrationError(f"Unknown calibration fields: {', '.join(unknown)}")

        missing = [key for key in _REQUIRED_FLOATS + ('axis_swap_xy',) if key not in payload]
        if missing:
            raise CalibrationError(f"Missing calibration fields: {', '.join(missing)}")

        values = {key: _as_float(payload, key) for key in _REQUIRED_FLOATS}
        for key in _OPTIONAL_FLOATS:
            if key in payload:
                values[key] = _as_float(payload, key)

        if not isinstance(payload['axis_swap_xy'], bool):
            raise CalibrationError("'axis_swap_xy' must be a boolean")
        values['axis_swap_xy'] = payload['axis_swap_xy']

        timestamp = payload.get('calibration_timestamp_ms')
        if timestamp is not None:
            if isinstance(timestamp, bool) or not isinstance(timestamp, int):
                raise CalibrationError("'calibration_timestamp_ms' must be an integer")
            values['calibration_timestamp_ms'] = timestamp

        if values['bump_threshold'] < 0:
            raise CalibrationError("'bump_threshold' must not be negative")

        return cls(**values)

    @classmethod
    def from_calibration_results(
            cls,
            initial: Mapping[str, Any],
            pre_recording: Optional[Mapping[str, Any]] = None,
    ) -> 'CalibrationParameters':
        """
        Combine the stored initial calibration with a pre-recording result.

        Args:
            initial:       Initial calibration record (deviceOrientation,
                           accelerometer*Offset, gyroscope*Offset,
                           calibrationTimestamp).
            pre_recording: Optional pre-recording record (sessionAccelOffsetZ,
                           gyroZDrift, bumpThreshold, isCalibrationSuccessful).
                           Ignored when it reports an unsuccessful run.

        Returns:
            Validated CalibrationParameters.

        Raises:
            CalibrationError for missing or ill-typed fields.
        """
        try:
            orientation = initial['deviceOrientation']
        except (KeyError, TypeError) as e:
            raise CalibrationError("Initial calibration is missing 'deviceOrientation'") from e
        if orientation not in KNOWN_ORIENTATIONS:
            raise CalibrationError(f"Unknown device orientation {orientation!r}")

        try:
            payload = {
                'accel_offset_x': initial['accelerometerXOffset'],
                'accel_offset_y': initial['accelerometerYOffset'],
                'accel_offset_z': initial['accelerometerZOffset'],
                'gyro_offset_x': initial['gyroscopeXOffset'],
                'gyro_offset_y': initial['gyroscopeYOffset'],
                'gyro_offset_z': initial['gyroscopeZOffset'],
                'axis_swap_xy': orientation in SWAPPED_ORIENTATIONS,
                'bump_threshold': 0.0,
            }
        except KeyError as e:
            raise CalibrationError(f"Initial calibration is missing {e}") from e
        if 'calibrationTimestamp' in initial:
            payload['calibration_timestamp_ms'] = initial['calibrationTimestamp']

        if pre_recording is not None:
            if pre_recording.get('isCalibrationSuccessful') is True:
                try:
                    payload['bump_threshold'] = pre_recording['bumpThreshold']
                    payload['gyro_z_drift'] = pre_recording['gyroZDrift']
                    session_z = _as_float(pre_recording, 'sessionAccelOffsetZ')
                except KeyError as e:
                    raise CalibrationError(f"Pre-recording calibration is missing {e}") from e
                # The pre-recording Z offset already includes the initial one
                payload['session_accel_offset_z'] = session_z - _as_float(payload, 'accel_offset_z')
            else:
                logger.warning("Pre-recording calibration was not successful, using initial calibration only")

        return cls.from_mapping(payload)

    def is_stale(self, now_ms: int, max_age_ms: int = MAX_CALIBRATION_AGE_MS) -> bool:
        """
        Check whether recalibration is due.

        Args:
            now_ms:     Current wall-clock time in epoch ms.
            max_age_ms: Allowed calibration age.

        Returns:
            True if no calibration time is known or it is older than max_age_ms.
        """
        if self.calibration_timestamp_ms is None:
            return True
        return now_ms - self.calibration_timestamp_ms > max_age_ms

    def to_dict(self) -> dict:
        return asdict(self)
