"""
Shared test fakes: manual clocks, scripted time provider, in-memory storage
"""

import asyncio
import threading
from typing import Dict, List, Optional

import pytest

from road_recorder.models import AxisReading, ProcessedSample


class ManualClock:
    """Millisecond clock advanced explicitly by the test"""

    def __init__(self, start: int = 0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeTimeProvider:
    """
    Scripted network time lookups

    responses maps server -> offset (int), an exception instance, or 'hang'.
    Servers missing from the map are unreachable.
    """

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses = dict(responses or {})
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def get_offset_ms(self, server: str, timeout_s: float) -> int:
        self.calls.append(server)
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.get(server, OSError(f"{server} unreachable"))
        if response == 'hang':
            await asyncio.sleep(3600)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeStorage:
    """
    In-memory StorageProvider that can fail a number of appends

    Setting `gate` to a threading.Event holds every append in its worker
    thread until the event is set; `entered` is set once an append begins.
    """

    def __init__(self, fail_times: float = 0, error: Optional[Exception] = None):
        self.fail_times = fail_times
        self.error = error if error else OSError("disk full")
        self.files: Dict[str, List[List[str]]] = {}
        self.headers: Dict[str, Optional[List[str]]] = {}
        self.logs: Dict[str, List[str]] = {}
        self.directories = set()
        self.append_calls = 0
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def create_directory(self, path):
        self.directories.add(str(path))

    def exists(self, path) -> bool:
        key = str(path)
        return key in self.files or key in self.logs or key in self.directories

    def append_rows(self, path, rows, header=None) -> int:
        self.append_calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        key = str(path)
        if key not in self.files:
            self.files[key] = []
            self.headers[key] = list(header) if header is not None else None
        self.files[key].extend(list(row) for row in rows)
        return len(rows)

    def append_log(self, path, line: str):
        self.logs.setdefault(str(path), []).append(line)

    def read_rows(self, path) -> List[List[str]]:
        return [list(row) for row in self.files.get(str(path), [])]

    def write_rows(self, path, rows, header=None) -> int:
        self.files[str(path)] = [list(row) for row in rows]
        self.headers[str(path)] = list(header) if header is not None else None
        return len(rows)

    def rows(self, path) -> List[List[str]]:
        return self.files.get(str(path), [])


def make_sample(timestamp_ms: int, magnitude: float = 9.81, **overrides) -> ProcessedSample:
    values = dict(
        relative_timestamp_ms=timestamp_ms,
        accel_x=0.0,
        accel_y=0.0,
        accel_z=magnitude,
        accel_magnitude=magnitude,
        gyro_x=0.0,
        gyro_y=0.0,
        gyro_z=0.0,
    )
    values.update(overrides)
    return ProcessedSample(**values)


def reading(x: float, y: float, z: float, timestamp_ms: int = 0) -> AxisReading:
    return AxisReading(x=x, y=y, z=z, device_timestamp_ms=timestamp_ms)


@pytest.fixture
def manual_clock():
    return ManualClock(start=1_000)


@pytest.fixture
def storage():
    return FakeStorage()
