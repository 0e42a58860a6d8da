"""
IMU Sensor Module for Road Recorder
Accelerometer and gyroscope fusion with bump detection

Architecture:
- Feeds: Push-based raw accelerometer and gyroscope readings
- Collector: Sample-and-hold fusion at a fixed rate (100 Hz by default)
- Processor: Calibration corrections, axis swap and magnitude
- Detector: Threshold spike detection with refractory suppression

Dual-mode operation:
- Calibration mode: Smoothed accelerometer, small flush segments
- Session mode: Exact corrections, 150-sample flush segments

Usage:
    detector = SpikeDetector()
    detector.initialize(calibration.bump_threshold)
    collector = ImuCollector(feed, calibration, detector, anchor, sink=writer)
    await collector.start()
    # ... record ...
    await collector.stop()
"""

from .calibration import CalibrationParameters
from .collector import ImuCollector
from .config import ImuConfig
from .detector import SpikeDetector
from .feeds import CsvReplayFeed, QueueSensorFeed, SensorFeedProvider
from .processor import SampleCorrector, accel_magnitude

__all__ = [
    'CalibrationParameters',
    'ImuCollector',
    'ImuConfig',
    'SpikeDetector',
    'CsvReplayFeed',
    'QueueSensorFeed',
    'SensorFeedProvider',
    'SampleCorrector',
    'accel_magnitude',
]

__version__ = '1.0.0'
