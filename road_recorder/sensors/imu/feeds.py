"""
Raw IMU Feed Adapters
Push-based accelerometer and gyroscope feeds consumed by the collector
"""

import asyncio
import csv
import logging
from pathlib import Path
from typing import AsyncIterator, Callable, List, Protocol, Tuple, Union

from road_recorder.coordinator.clock import monotonic_ms
from road_recorder.models import AxisReading

logger = logging.getLogger(__name__)

FEED_ACCELEROMETER = 'accelerometer'
FEED_GYROSCOPE = 'gyroscope'
FEEDS = (FEED_ACCELEROMETER, FEED_GYROSCOPE)


class SensorFeedProvider(Protocol):
    """Source of two independent raw feeds"""

    def subscribe_accelerometer(self) -> AsyncIterator[AxisReading]:
        ...

    def subscribe_gyroscope(self) -> AsyncIterator[AxisReading]:
        ...


class _EndOfFeed:
    """Marks a closed feed"""


_END = _EndOfFeed()


class QueueSensorFeed:
    """
    In-process feed provider backed by one bounded queue per sensor

    Producers call push_*() from the event loop; a full queue drops its
    oldest reading because the collector only ever holds the latest one.
    A failure pushed with fail_*() is raised from the subscriber's
    iterator; subscribing again resumes with the readings that follow it.
    """

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._queues = {name: asyncio.Queue(maxsize=maxsize) for name in FEEDS}
        self.dropped = {name: 0 for name in FEEDS}

    def push_accelerometer(self, reading: AxisReading):
        self._put(FEED_ACCELEROMETER, reading)

    def push_gyroscope(self, reading: AxisReading):
        self._put(FEED_GYROSCOPE, reading)

    def fail_accelerometer(self, error: BaseException):
        self._put(FEED_ACCELEROMETER, error)

    def fail_gyroscope(self, error: BaseException):
        self._put(FEED_GYROSCOPE, error)

    def close(self):
        """End both feeds; current subscribers finish their iteration"""
        for name in FEEDS:
            self._put(name, _END)

    def subscribe_accelerometer(self) -> AsyncIterator[AxisReading]:
        return self._iterate(FEED_ACCELEROMETER)

    def subscribe_gyroscope(self) -> AsyncIterator[AxisReading]:
        return self._iterate(FEED_GYROSCOPE)

    def _put(self, name: str, item):
        queue = self._queues[name]
        if queue.full():
            queue.get_nowait()
            self.dropped[name] += 1
        queue.put_nowait(item)

    async def _iterate(self, name: str) -> AsyncIterator[AxisReading]:
        queue = self._queues[name]
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


ReplayRow = Tuple[float, str, float, float, float]


def load_replay_rows(path: Union[str, Path]) -> List[ReplayRow]:
    """
    Read a raw IMU capture for replay.

    The file has a header row and the columns
    ``timestamp_ms,sensor,x,y,z`` where sensor is 'accelerometer' or
    'gyroscope' (or the short forms 'accel' / 'gyro').

    Returns:
        Rows sorted by timestamp.

    Raises:
        ValueError for unknown sensor names or malformed numbers.
    """
    aliases = {'accel': FEED_ACCELEROMETER, 'gyro': FEED_GYROSCOPE}
    rows: List[ReplayRow] = []
    with open(path, newline='') as f:
        reader = csv.DictReader(f)
        for line_no, record in enumerate(reader, start=2):
            sensor = aliases.get(record['sensor'].strip(), record['sensor'].strip())
            if sensor not in FEEDS:
                raise ValueError(f"{path}:{line_no}: unknown sensor {record['sensor']!r}")
            rows.append((
                float(record['timestamp_ms']),
                sensor,
                float(record['x']),
                float(record['y']),
                float(record['z']),
            ))
    rows.sort(key=lambda r: r[0])
    return rows


class CsvReplayFeed(QueueSensorFeed):
    """
    Replays a recorded raw capture through the queue feeds

    Readings are pushed at their recorded pace (scaled by `speed`) and
    stamped with the live monotonic clock, so the collector sees them as
    if they arrived from hardware.
    """

    def __init__(
            self,
            path: Union[str, Path],
            speed: float = 1.0,
            monotonic_clock_ms: Callable[[], int] = monotonic_ms,
            maxsize: int = 256,
    ):
        super().__init__(maxsize=maxsize)
        if speed <= 0:
            raise ValueError("speed must be positive")
        self.path = Path(path)
        self.speed = speed
        self._monotonic = monotonic_clock_ms
        self.rows = load_replay_rows(self.path)
        self.pushed = 0

        logger.info(f"Replay feed loaded {len(self.rows)} readings from {self.path}")

    @property
    def duration_s(self) -> float:
        if not self.rows:
            return 0.0
        return (self.rows[-1][0] - self.rows[0][0]) / 1000.0 / self.speed

    async def run(self, close_when_done: bool = True):
        """Push every reading at its recorded offset, then optionally close"""
        if not self.rows:
            logger.warning("Replay feed has no readings")
        else:
            loop = asyncio.get_running_loop()
            start = loop.time()
            first_ts = self.rows[0][0]
            for timestamp_ms, sensor, x, y, z in self.rows:
                due = start + (timestamp_ms - first_ts) / 1000.0 / self.speed
                delay = due - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                reading = AxisReading(x=x, y=y, z=z, device_timestamp_ms=self._monotonic())
                if sensor == FEED_ACCELEROMETER:
                    self.push_accelerometer(reading)
                else:
                    self.push_gyroscope(reading)
                self.pushed += 1
            logger.info(f"✓ Replay finished: {self.pushed} readings pushed")

        if close_when_done:
            self.close()
