"""
Raw feed adapter tests
"""

import asyncio

import pytest

from road_recorder.sensors.imu.feeds import CsvReplayFeed, QueueSensorFeed, load_replay_rows
from conftest import ManualClock, reading


async def take(iterator, n):
    items = []
    async for item in iterator:
        items.append(item)
        if len(items) == n:
            break
    return items


class TestQueueSensorFeed:

    def test_pushed_readings_are_delivered(self):
        async def scenario():
            feed = QueueSensorFeed()
            feed.push_accelerometer(reading(1, 2, 3))
            feed.push_gyroscope(reading(4, 5, 6))
            accel = await take(feed.subscribe_accelerometer(), 1)
            gyro = await take(feed.subscribe_gyroscope(), 1)
            return accel[0].x, gyro[0].z

        assert asyncio.run(scenario()) == (1, 6)

    def test_failure_raised_then_resubscribe_continues(self):
        async def scenario():
            feed = QueueSensorFeed()
            feed.fail_accelerometer(OSError('sensor unavailable'))
            feed.push_accelerometer(reading(7, 0, 0))
            with pytest.raises(OSError):
                await take(feed.subscribe_accelerometer(), 1)
            return await take(feed.subscribe_accelerometer(), 1)

        assert asyncio.run(scenario())[0].x == 7

    def test_close_ends_subscribers(self):
        async def scenario():
            feed = QueueSensorFeed()
            feed.push_gyroscope(reading(1, 1, 1))
            feed.close()
            return [r async for r in feed.subscribe_gyroscope()]

        assert len(asyncio.run(scenario())) == 1

    def test_full_queue_drops_oldest(self):
        async def scenario():
            feed = QueueSensorFeed(maxsize=2)
            for i in range(4):
                feed.push_accelerometer(reading(i, 0, 0))
            return await take(feed.subscribe_accelerometer(), 2), feed.dropped['accelerometer']

        items, dropped = asyncio.run(scenario())
        assert [r.x for r in items] == [2, 3]
        assert dropped == 2


class TestReplay:

    def write_capture(self, path):
        path.write_text(
            "timestamp_ms,sensor,x,y,z\n"
            "10,gyro,0.1,0.2,0.3\n"
            "0,accelerometer,0.0,0.0,9.8\n"
            "20,accel,0.0,0.1,9.7\n"
        )
        return path

    def test_rows_are_sorted_and_aliases_resolved(self, tmp_path):
        rows = load_replay_rows(self.write_capture(tmp_path / 'capture.csv'))
        assert [r[0] for r in rows] == [0.0, 10.0, 20.0]
        assert [r[1] for r in rows] == ['accelerometer', 'gyroscope', 'accelerometer']

    def test_unknown_sensor(self, tmp_path):
        path = tmp_path / 'bad.csv'
        path.write_text("timestamp_ms,sensor,x,y,z\n0,magnetometer,1,2,3\n")
        with pytest.raises(ValueError, match='magnetometer'):
            load_replay_rows(path)

    def test_replay_pushes_every_reading(self, tmp_path):
        feed = CsvReplayFeed(self.write_capture(tmp_path / 'capture.csv'), speed=100.0,
                             monotonic_clock_ms=ManualClock(500))

        async def scenario():
            await feed.run()
            accel = [r async for r in feed.subscribe_accelerometer()]
            gyro = [r async for r in feed.subscribe_gyroscope()]
            return accel, gyro

        accel, gyro = asyncio.run(scenario())
        assert feed.pushed == 3
        assert [r.y for r in accel] == [0.0, 0.1]
        assert gyro[0].device_timestamp_ms == 500

    def test_speed_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            CsvReplayFeed(self.write_capture(tmp_path / 'capture.csv'), speed=0)
