# -*- coding: utf-8 -*-
"""
radar/dispatcher.py
进程内发布/订阅：采集端 -> 分析端 -> 推送端。
- 频道是固定的 Channel 枚举，每个频道只承载一种 payload 类型
- publish 按订阅顺序逐个 await handler；同一频道的多次 publish 串行、按调用顺序送达
- 不缓存、不重放
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from radar.models import Alert, MetricBatch, TextEvent


class Channel(str, Enum):
    TEXT = "collector:text"
    TVL = "collector:tvl"
    PRICE = "collector:price"
    ALERT = "signal:alert"


PAYLOAD_TYPES: Dict[Channel, type] = {
    Channel.TEXT: TextEvent,
    Channel.TVL: MetricBatch,
    Channel.PRICE: MetricBatch,
    Channel.ALERT: Alert,
}

Handler = Callable[[Any], Union[None, Awaitable[None]]]

class EventDispatcher:
    def __init__(self):
        self._handlers: Dict[Channel, List[Handler]] = {c: [] for c in Channel}
        self._locks: Dict[Channel, asyncio.Lock] = {}
        # 持有频道锁、正在投递的 task；同一 task 内再向该频道 publish 时直接投递，避免死锁
        self._owners: Dict[Channel, Optional[asyncio.Task]] = {}

    def subscribe(self, channel: Channel, handler: Handler) -> None:
        self._handlers[Channel(channel)].append(handler)

    def unsubscribe(self, channel: Channel, handler: Handler) -> bool:
        handlers = self._handlers[Channel(channel)]
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscriber_count(self, channel: Channel) -> int:
        return len(self._handlers[Channel(channel)])

    def _lock_for(self, channel: Channel) -> asyncio.Lock:
        lock = self._locks.get(channel)
        if lock is None:
            lock = self._locks[channel] = asyncio.Lock()
        return lock

    async def publish(self, channel: Channel, payload: Any) -> int:
        """
        把 payload 投递给该频道当前的全部订阅者

        返回:
            成功处理的 handler 数
        """
        channel = Channel(channel)
        expected = PAYLOAD_TYPES[channel]
        if not isinstance(payload, expected):
            raise TypeError(
                f"channel {channel.value} expects {expected.__name__}, got {type(payload).__name__}"
            )

        task = asyncio.current_task()
        if task is not None and self._owners.get(channel) is task:
            return await self._deliver(channel, payload)

        # handler 里 create_task 出来的 publish 属于别的 task，照常排队
        async with self._lock_for(channel):
            self._owners[channel] = task
            try:
                return await self._deliver(channel, payload)
            finally:
                self._owners[channel] = None

    async def _deliver(self, channel: Channel, payload: Any) -> int:
        delivered = 0
        # 投递期间新增/移除的订阅者不影响本次
        for handler in list(self._handlers[channel]):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                name = getattr(handler, "__qualname__", repr(handler))
                print(f"[dispatcher] {channel.value} handler {name} 失败: {e!r}")
        return delivered
