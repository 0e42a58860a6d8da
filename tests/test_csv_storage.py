"""
CSV file storage tests
"""

import asyncio
import os

import pytest

from road_recorder.coordinator.clock import SessionClockAnchor
from road_recorder.models import SENSOR_CSV_HEADER
from road_recorder.sensors.imu.config import ImuConfig
from road_recorder.storage.csv_storage import CsvFileStorage
from road_recorder.storage.writer import BufferedSampleWriter
from conftest import make_sample


class TestCsvFileStorage:

    def test_header_written_once(self, tmp_path):
        storage = CsvFileStorage()
        path = tmp_path / 'sensors.csv'
        storage.append_rows(path, [['0', '1.0']], SENSOR_CSV_HEADER)
        storage.append_rows(path, [['10', '2.0'], ['20', '3.0']], SENSOR_CSV_HEADER)

        lines = path.read_text().splitlines()
        assert lines[0] == ','.join(SENSOR_CSV_HEADER)
        assert lines[1:] == ['0,1.0', '10,2.0', '20,3.0']

    def test_read_rows_skips_header(self, tmp_path):
        storage = CsvFileStorage(fsync=False)
        path = tmp_path / 'sensors.csv'
        storage.append_rows(path, [['0', '', 'note, with comma']], ['a', 'b', 'c'])
        assert storage.read_rows(path) == [['0', '', 'note, with comma']]

    def test_read_missing_file(self, tmp_path):
        assert CsvFileStorage().read_rows(tmp_path / 'missing.csv') == []

    def test_write_rows_replaces_contents(self, tmp_path):
        storage = CsvFileStorage()
        path = tmp_path / 'sensors.csv'
        storage.append_rows(path, [['0'], ['1']], ['t'])
        storage.write_rows(path, [['9']], ['t'])

        assert path.read_text().splitlines() == ['t', '9']
        assert not (tmp_path / 'sensors.csv.tmp').exists()

    def test_append_log(self, tmp_path):
        storage = CsvFileStorage()
        path = tmp_path / 'annotations.log'
        storage.append_log(path, '1200,pothole')
        storage.append_log(path, '5400,speed_bump\n')
        assert path.read_text() == '1200,pothole\n5400,speed_bump\n'

    def test_directories(self, tmp_path):
        storage = CsvFileStorage()
        target = tmp_path / 'sessions' / 'run1'
        assert not storage.exists(target)
        storage.create_directory(target)
        storage.create_directory(target)
        assert storage.exists(target)


class TestFailedAppend:

    @staticmethod
    def fail_next_fsync(monkeypatch, times=1):
        real_fsync = os.fsync
        remaining = [times]

        def flaky_fsync(fd):
            if remaining[0] > 0:
                remaining[0] -= 1
                raise OSError(5, 'Input/output error')
            real_fsync(fd)

        monkeypatch.setattr(os, 'fsync', flaky_fsync)

    def test_rolled_back_on_existing_file(self, tmp_path, monkeypatch):
        storage = CsvFileStorage()
        path = tmp_path / 'sensors.csv'
        storage.append_rows(path, [['0'], ['10']], ['t'])
        before = path.read_bytes()

        self.fail_next_fsync(monkeypatch)
        with pytest.raises(OSError):
            storage.append_rows(path, [['20'], ['30']], ['t'])

        assert path.read_bytes() == before
        storage.append_rows(path, [['20'], ['30']], ['t'])
        assert storage.read_rows(path) == [['0'], ['10'], ['20'], ['30']]

    def test_new_file_removed_so_retry_writes_header(self, tmp_path, monkeypatch):
        storage = CsvFileStorage()
        path = tmp_path / 'sensors.csv'

        self.fail_next_fsync(monkeypatch)
        with pytest.raises(OSError):
            storage.append_rows(path, [['0'], ['10']], SENSOR_CSV_HEADER)
        assert not path.exists()

        storage.append_rows(path, [['0'], ['10']], SENSOR_CSV_HEADER)
        lines = path.read_text().splitlines()
        assert lines == [','.join(SENSOR_CSV_HEADER), '0', '10']

    def test_writer_retry_does_not_duplicate_rows(self, tmp_path, monkeypatch):
        storage = CsvFileStorage()
        path = tmp_path / 'sensors.csv'
        storage.append_rows(path, [], SENSOR_CSV_HEADER)

        async def scenario():
            writer = BufferedSampleWriter(storage, ImuConfig(write_backoff_s=0.0))
            writer.set_session_directory(tmp_path)
            writer.start(SessionClockAnchor(monotonic_start_time_ms=0))
            writer.append(make_sample(0))
            writer.append(make_sample(10))
            self.fail_next_fsync(monkeypatch)
            await writer.flush_buffer()
            await writer.stop()
            return writer

        writer = asyncio.run(scenario())
        assert [row[0] for row in storage.read_rows(path)] == ['0', '10']
        assert writer.get_total_rows_written() == 2
        assert writer.get_rows_dropped() == 0
