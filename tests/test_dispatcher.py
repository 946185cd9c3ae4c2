"""
tests/test_dispatcher.py
发布/订阅：顺序、类型检查、异常隔离、同频道重入
"""

import asyncio

import pytest

from radar.dispatcher import Channel, EventDispatcher
from radar.models import AlertSource, MetricBatch, TextEvent


def make_ev(i):
    return TextEvent(source="TWITTER", timestamp=i, id=str(i), author_id="1",
                     author_handle="a", body=f"event {i}")


def test_handlers_called_in_subscription_order():
    async def run():
        d = EventDispatcher()
        seen = []

        def sync_handler(ev):
            seen.append(("sync", ev.id))

        async def async_handler(ev):
            await asyncio.sleep(0)
            seen.append(("async", ev.id))

        d.subscribe(Channel.TEXT, async_handler)
        d.subscribe(Channel.TEXT, sync_handler)
        n = await d.publish(Channel.TEXT, make_ev(1))
        assert n == 2
        assert seen == [("async", "1"), ("sync", "1")]

    asyncio.run(run())


def empty_batch():
    return MetricBatch(AlertSource.DEFILLAMA, 0, [])


def test_wrong_payload_type_is_rejected():
    async def run():
        d = EventDispatcher()
        called = []
        d.subscribe(Channel.TVL, called.append)
        with pytest.raises(TypeError):
            await d.publish(Channel.TVL, make_ev(1))
        assert called == []
        assert await d.publish(Channel.TVL, empty_batch()) == 1
        assert await d.publish(Channel.PRICE, empty_batch()) == 0

    asyncio.run(run())


def test_failing_handler_does_not_stop_others():
    async def run():
        d = EventDispatcher()
        seen = []

        async def boom(ev):
            raise RuntimeError("handler broke")

        d.subscribe(Channel.TEXT, boom)
        d.subscribe(Channel.TEXT, lambda ev: seen.append(ev.id))
        assert await d.publish(Channel.TEXT, make_ev(7)) == 1
        assert seen == ["7"]

    asyncio.run(run())


def test_concurrent_publishes_are_not_interleaved():
    async def run():
        d = EventDispatcher()
        log = []

        async def slow(ev):
            log.append(("start", ev.id))
            await asyncio.sleep(0.01)
            log.append(("end", ev.id))

        d.subscribe(Channel.TEXT, slow)
        await asyncio.gather(*(d.publish(Channel.TEXT, make_ev(i)) for i in range(3)))
        assert log == [(k, str(i)) for i in range(3) for k in ("start", "end")]

    asyncio.run(run())


def test_republish_from_handler_does_not_deadlock():
    async def run():
        d = EventDispatcher()
        seen = []

        async def echo(ev):
            seen.append(ev.id)
            if ev.id == "1":
                await d.publish(Channel.TEXT, make_ev(2))

        d.subscribe(Channel.TEXT, echo)
        await asyncio.wait_for(d.publish(Channel.TEXT, make_ev(1)), timeout=1)
        assert seen == ["1", "2"]

    asyncio.run(run())


def test_unsubscribe():
    d = EventDispatcher()
    handler = print
    d.subscribe(Channel.ALERT, handler)
    assert d.subscriber_count(Channel.ALERT) == 1
    assert d.unsubscribe(Channel.ALERT, handler)
    assert not d.unsubscribe(Channel.ALERT, handler)
    assert d.subscriber_count(Channel.ALERT) == 0


def test_task_spawned_by_handler_waits_for_current_delivery():
    async def run():
        d = EventDispatcher()
        log = []
        spawned = []

        async def slow(ev):
            log.append(("start", ev.id))
            if ev.id == "1":
                spawned.append(asyncio.create_task(d.publish(Channel.TEXT, make_ev(3))))
            await asyncio.sleep(0.01)
            log.append(("end", ev.id))

        d.subscribe(Channel.TEXT, slow)
        await d.publish(Channel.TEXT, make_ev(1))
        await asyncio.gather(*spawned)
        assert log == [("start", "1"), ("end", "1"), ("start", "3"), ("end", "3")]

    asyncio.run(run())
