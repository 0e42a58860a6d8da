"""
Clock synchronizer and session anchor tests
"""

import asyncio
from datetime import datetime, timezone

import pytest

from road_recorder.coordinator.clock import ClockSynchronizer, SessionClockAnchor
from road_recorder.coordinator.config import ClockConfig
from road_recorder.errors import ClockSyncError, SessionStateError
from conftest import FakeTimeProvider, ManualClock


def make_config(*servers, **overrides):
    values = dict(primary_server=servers[0], fallback_servers=tuple(servers[1:]),
                  server_retry_delay_s=0.0, lookup_timeout_s=0.5)
    values.update(overrides)
    return ClockConfig(**values)


def make_sync(responses, *servers, wall=None, mono=None, **overrides):
    provider = FakeTimeProvider(responses)
    sync = ClockSynchronizer(
        provider,
        make_config(*servers, **overrides),
        wall_clock=wall or ManualClock(1_700_000_000_000),
        monotonic_clock_ms=mono or ManualClock(5_000),
    )
    return sync, provider


class TestClockConfig:

    def test_default_servers(self):
        assert ClockConfig().servers == (
            'pool.ntp.org', 'time.google.com', 'time.apple.com', 'time.windows.com')

    def test_with_servers(self):
        config = ClockConfig.with_servers('a', 'b')
        assert config.servers == ('a', 'b')

    def test_with_servers_requires_one(self):
        with pytest.raises(ValueError):
            ClockConfig.with_servers()


class TestOffsetLookup:

    def test_primary_server_offset(self):
        sync, provider = make_sync({'a': 120}, 'a', 'b')

        async def scenario():
            offset = await sync.get_offset()
            return offset

        assert asyncio.run(scenario()) == 120
        assert provider.calls == ['a']
        assert sync.get_stats()['last_server'] == 'a'

    def test_falls_back_in_order(self):
        sync, provider = make_sync({'c': -40}, 'a', 'b', 'c')
        assert asyncio.run(sync.get_offset()) == -40
        assert provider.calls == ['a', 'b', 'c']

    def test_timeout_moves_to_next_server(self):
        sync, provider = make_sync({'a': 'hang', 'b': 7}, 'a', 'b', lookup_timeout_s=0.05)
        assert asyncio.run(sync.get_offset()) == 7
        assert provider.calls == ['a', 'b']

    def test_total_failure_without_offset_raises(self):
        sync, _ = make_sync({}, 'a', 'b')
        with pytest.raises(ClockSyncError):
            asyncio.run(sync.get_offset())
        assert sync.get_stats()['failure_count'] == 1

    def test_total_failure_keeps_previous_offset(self):
        sync, provider = make_sync({'a': 25}, 'a')

        async def scenario():
            await sync.get_offset()
            provider.responses.clear()
            return await sync.resync()

        assert asyncio.run(scenario()) == 25
        assert sync.has_offset

    def test_cached_offset_is_reused(self):
        sync, provider = make_sync({'a': 25}, 'a')

        async def scenario():
            await sync.get_offset()
            await sync.get_offset()

        asyncio.run(scenario())
        assert provider.calls == ['a']

    def test_stale_offset_is_refreshed(self):
        mono = ManualClock(0)
        sync, provider = make_sync({'a': 25}, 'a', mono=mono, max_offset_age_s=10)

        async def scenario():
            await sync.get_offset()
            mono.advance(10_001)
            provider.responses['a'] = 30
            return await sync.get_offset()

        assert asyncio.run(scenario()) == 30
        assert provider.calls == ['a', 'a']

    def test_concurrent_callers_share_one_lookup(self):
        sync, provider = make_sync({'a': 60}, 'a')

        async def scenario():
            provider.gate = asyncio.Event()
            callers = [asyncio.create_task(sync.get_offset()) for _ in range(3)]
            await asyncio.sleep(0)
            provider.gate.set()
            return await asyncio.gather(*callers)

        assert asyncio.run(scenario()) == [60, 60, 60]
        assert provider.calls == ['a']


class TestSynchronizerApi:

    def test_initialize_failure_is_not_raised(self):
        sync, _ = make_sync({}, 'a')

        async def scenario():
            await sync.initialize()
            running = sync._resync_task is not None
            await sync.dispose()
            return running

        assert asyncio.run(scenario()) is True
        assert not sync.has_offset

    def test_dispose_cancels_resync(self):
        sync, _ = make_sync({'a': 1}, 'a')

        async def scenario():
            await sync.initialize()
            task = sync._resync_task
            await sync.dispose()
            return task

        assert asyncio.run(scenario()).cancelled()

    def test_is_synchronized(self):
        small, _ = make_sync({'a': 20}, 'a')
        large, _ = make_sync({'a': -80}, 'a')
        failing, _ = make_sync({}, 'a')
        assert asyncio.run(small.is_synchronized()) is True
        assert asyncio.run(large.is_synchronized()) is False
        assert asyncio.run(failing.is_synchronized()) is False

    def test_current_network_time(self):
        sync, _ = make_sync({'a': 500}, 'a', wall=ManualClock(1_700_000_000_000))
        now = asyncio.run(sync.current_network_time())
        assert now == datetime.fromtimestamp(1_700_000_000.5, tz=timezone.utc)

    def test_device_timestamp_translation(self):
        sync, _ = make_sync({'a': -250}, 'a')
        asyncio.run(sync.get_offset())
        assert sync.device_timestamp_to_network_timestamp(10_000) == 9_750

    def test_periodic_resync_skipped_while_lookup_in_flight(self):
        sync, provider = make_sync({'a': 1}, 'a', sync_interval_s=0.01)

        async def scenario():
            blocker = asyncio.get_running_loop().create_future()
            sync._inflight = blocker
            task = asyncio.create_task(sync._resync_loop())
            await asyncio.sleep(0.05)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            blocker.cancel()

        asyncio.run(scenario())
        assert sync.get_stats()['skipped_resyncs'] >= 1
        assert provider.calls == []


class TestSessionAnchor:

    def test_start_anchor_uses_network_time(self):
        mono = ManualClock(5_000)
        sync, _ = make_sync({'a': 1_000}, 'a', wall=ManualClock(1_700_000_000_000), mono=mono)
        anchor = asyncio.run(sync.start_anchor())
        assert anchor.monotonic_start_time_ms == 5_000
        assert anchor.ntp_start_time == datetime.fromtimestamp(1_700_000_001, tz=timezone.utc)
        assert anchor.used_device_time is False
        assert anchor.sync_warnings == []

    def test_start_anchor_falls_back_to_device_time(self):
        sync, _ = make_sync({}, 'a', wall=ManualClock(1_700_000_000_000))
        anchor = asyncio.run(sync.start_anchor())
        assert anchor.used_device_time is True
        assert anchor.ntp_start_time == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        assert len(anchor.sync_warnings) == 1
        assert 'start' in anchor.sync_warnings[0]

    def test_seal_anchor(self):
        mono = ManualClock(5_000)
        sync, _ = make_sync({'a': 0}, 'a', mono=mono)

        async def scenario():
            anchor = await sync.start_anchor()
            mono.advance(2_500)
            return await sync.seal_anchor(anchor)

        anchor = asyncio.run(scenario())
        assert anchor.is_sealed
        assert anchor.duration_ms == 2_500

    def test_sealing_twice_is_an_error(self):
        anchor = SessionClockAnchor(monotonic_start_time_ms=0)
        anchor.seal(1_000, None)
        with pytest.raises(SessionStateError):
            anchor.seal(2_000, None)

    def test_end_before_start_is_rejected(self):
        anchor = SessionClockAnchor(monotonic_start_time_ms=1_000)
        with pytest.raises(ValueError):
            anchor.seal(999, None)

    def test_sampling_rate(self):
        anchor = SessionClockAnchor(monotonic_start_time_ms=1_000)
        assert anchor.sampling_rate_hz(100) is None
        anchor.seal(2_000, None)
        assert anchor.sampling_rate_hz(100) == pytest.approx(100.0)

    def test_relative_and_network_timestamps(self):
        start = datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        anchor = SessionClockAnchor(monotonic_start_time_ms=4_000, ntp_start_time=start)
        assert anchor.relative_timestamp_ms(4_250) == 250
        assert anchor.to_network_timestamp_ms(250) == 1_700_000_000_250

    def test_device_clock_anchor(self):
        anchor = SessionClockAnchor.from_device_clock(ManualClock(42), ManualClock(1_700_000_000_000))
        assert anchor.monotonic_start_time_ms == 42
        assert anchor.used_device_time is True
        assert anchor.to_dict()['monotonic_start_time_ms'] == 42
