"""
Road Recorder
Inertial road-surface recording with synchronized timing and bump detection

Packages:
- coordinator: Network time offset tracking and session clock anchors
- sensors.imu: Accelerometer + gyroscope fusion, calibration, spike detection
- storage:     Buffered, retried persistence to session CSV files
"""

from .errors import (
    RecorderError,
    AcquisitionError,
    ClockSyncError,
    PersistenceError,
    CalibrationError,
    SessionStateError,
    DetectorNotInitializedError,
)
from .models import AxisReading, RawSample, ProcessedSample, WriteResult, WriterState
from .pipeline import RecordingPipeline

__all__ = [
    'RecordingPipeline',

    # Data model
    'AxisReading',
    'RawSample',
    'ProcessedSample',
    'WriteResult',
    'WriterState',

    # Errors
    'RecorderError',
    'AcquisitionError',
    'ClockSyncError',
    'PersistenceError',
    'CalibrationError',
    'SessionStateError',
    'DetectorNotInitializedError',
]

__version__ = '1.0.0'
