"""
Road Recorder - Data Models
Sample, reading and write-result records passed between pipeline stages
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional


SENSOR_CSV_HEADER = [
    'timestamp_ms',
    'accel_x',
    'accel_y',
    'accel_z',
    'accel_magnitude',
    'gyro_x',
    'gyro_y',
    'gyro_z',
    'is_bump',
    'user_feedback',
]


@dataclass(frozen=True)
class AxisReading:
    """Single event from one raw feed (accelerometer or gyroscope)"""
    x: float
    y: float
    z: float
    device_timestamp_ms: int  # monotonic device clock


@dataclass(frozen=True)
class RawSample:
    """
    Fused accelerometer + gyroscope values at one tick.

    Built by sample-and-hold from the latest reading of each feed.
    """
    accel_x: float
    accel_y: float
    accel_z: float
    gyro_x: float
    gyro_y: float
    gyro_z: float
    device_timestamp_ms: int

    @classmethod
    def from_readings(cls, accel: AxisReading, gyro: AxisReading, device_timestamp_ms: int) -> 'RawSample':
        return cls(
            accel_x=accel.x,
            accel_y=accel.y,
            accel_z=accel.z,
            gyro_x=gyro.x,
            gyro_y=gyro.y,
            gyro_z=gyro.z,
            device_timestamp_ms=device_timestamp_ms,
        )


@dataclass(frozen=True)
class ProcessedSample:
    """
    Calibrated sample ready for persistence

    relative_timestamp_ms is the offset from the session's monotonic start.
    Accelerometer axes and gyro_z carry calibration corrections.
    """
    relative_timestamp_ms: int
    accel_x: float
    accel_y: float
    accel_z: float
    accel_magnitude: float
    gyro_x: float
    gyro_y: float
    gyro_z: float
    is_bump: bool = False
    user_feedback: Optional[str] = None

    def with_bump(self, is_bump: bool) -> 'ProcessedSample':
        return replace(self, is_bump=is_bump)

    def with_annotation(self, is_bump: Optional[bool] = None, user_feedback: Optional[str] = None) -> 'ProcessedSample':
        """Return a copy with the given annotation fields overridden"""
        return replace(
            self,
            is_bump=self.is_bump if is_bump is None else is_bump,
            user_feedback=self.user_feedback if user_feedback is None else user_feedback,
        )

    def to_csv_row(self) -> List[str]:
        """
        Render this sample as one row of the sensor CSV.

        Returns:
            List of column values in SENSOR_CSV_HEADER order. is_bump is '1'
            when set and empty otherwise.
        """
        return [
            str(self.relative_timestamp_ms),
            repr(float(self.accel_x)),
            repr(float(self.accel_y)),
            repr(float(self.accel_z)),
            repr(float(self.accel_magnitude)),
            repr(float(self.gyro_x)),
            repr(float(self.gyro_y)),
            repr(float(self.gyro_z)),
            '1' if self.is_bump else '',
            self.user_feedback or '',
        ]


@dataclass(frozen=True)
class WriteResult:
    """Outcome of one storage write attempt for a flushed segment"""
    success: bool
    attempt: int
    error: Optional[str] = None
    rows_written: int = 0
    segment_id: int = 0


class WriterState(str, Enum):
    """Persistence controller lifecycle"""
    IDLE = 'idle'
    COLLECTING = 'collecting'
    FLUSHING = 'flushing'
    STOPPED = 'stopped'
