"""
Road Recorder - Error Types
Exception hierarchy shared by the acquisition, clock and storage layers
"""


class RecorderError(Exception):
    """Base class for all recorder errors"""


class AcquisitionError(RecorderError):
    """A raw sensor feed reported a failure"""

    def __init__(self, feed: str, cause: BaseException):
        self.feed = feed
        self.cause = cause
        super().__init__(f"{feed} feed error: {cause}")


class ClockSyncError(RecorderError):
    """No network time offset could be obtained from any server"""


class PersistenceError(RecorderError):
    """The storage provider failed to append rows"""


class CalibrationError(RecorderError, ValueError):
    """Calibration payload is missing fields or carries invalid values"""


class SessionStateError(RecorderError, RuntimeError):
    """Operation not allowed in the current session state"""


class DetectorNotInitializedError(RuntimeError):
    """
    Spike detector used before initialize() was called.

    This is a programming error upstream and is never caught by the pipeline.
    """
