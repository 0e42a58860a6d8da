"""
Road Recorder Sensors
Inertial data collection for road-surface recording

Available Sensors:
- IMU: 3-axis accelerometer and gyroscope (100 Hz fused)

All sensors support:
- Dual-mode operation (calibration and session)
- Session clock anchors for relative timestamps
- Calibration corrections applied before persistence
"""

from .imu import ImuCollector, ImuConfig, SampleCorrector, SpikeDetector

__all__ = [
    # IMU (Accelerometer + Gyroscope)
    'ImuCollector',
    'ImuConfig',
    'SampleCorrector',
    'SpikeDetector',
]

__version__ = '1.0.0'
