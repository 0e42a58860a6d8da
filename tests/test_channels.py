"""
Broadcast channel tests
"""

import asyncio

import pytest

from road_recorder.channels import Broadcast


class TestBroadcast:

    def test_items_reach_every_subscriber(self):
        async def scenario():
            channel = Broadcast('test')
            first, second = channel.subscribe(), channel.subscribe()
            channel.publish(1)
            channel.publish(2)
            return first.drain(), second.drain()

        assert asyncio.run(scenario()) == ([1, 2], [1, 2])

    def test_full_queue_drops_oldest(self):
        async def scenario():
            channel = Broadcast('test')
            sub = channel.subscribe(maxsize=2)
            for i in range(5):
                channel.publish(i)
            return sub.drain(), sub.dropped

        items, dropped = asyncio.run(scenario())
        assert items == [3, 4]
        assert dropped == 3

    def test_errors_are_raised_in_band(self):
        async def scenario():
            channel = Broadcast('test')
            sub = channel.subscribe()
            channel.publish('a')
            channel.publish_error(OSError('feed lost'))
            channel.publish('b')
            received = [await sub.__anext__()]
            with pytest.raises(OSError):
                await sub.__anext__()
            received.append(await sub.__anext__())
            return received

        assert asyncio.run(scenario()) == ['a', 'b']

    def test_close_ends_iteration(self):
        async def scenario():
            channel = Broadcast('test')
            sub = channel.subscribe()
            channel.publish('x')
            channel.close()
            channel.publish('y')
            return [item async for item in sub]

        assert asyncio.run(scenario()) == ['x']

    def test_subscribe_after_close(self):
        async def scenario():
            channel = Broadcast('test')
            channel.close()
            return [item async for item in channel.subscribe()]

        assert asyncio.run(scenario()) == []

    def test_cancelled_subscription_stops_receiving(self):
        async def scenario():
            channel = Broadcast('test')
            sub = channel.subscribe()
            sub.cancel()
            channel.publish('x')
            return [item async for item in sub], channel.subscriber_count

        assert asyncio.run(scenario()) == ([], 0)
