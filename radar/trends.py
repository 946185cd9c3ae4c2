# -*- coding: utf-8 -*-
"""
radar/trends.py
按实体（协议 slug / 代币 id）维护两条滚动窗口：短窗口（默认 24h）与长窗口（默认 7d）。
- 每次 ingest 同时写入两条窗口，写入后立即按时长和条数裁剪
- 条数上限按“每 5 分钟一个点”估算：24h -> 288，7d -> 2016
- change_since 计算回看窗口内最早点到最新值的百分比变化
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from radar.models import AlertPriority, MetricBatch, TimeSeriesPoint, TrendChange
from radar.utils import HOUR_MS, now_ms

POINTS_PER_HOUR = 12  # 每 5 分钟一个点

CRITICAL_CHANGE_PERCENT = 100.0
HIGH_CHANGE_PERCENT = 50.0


class RollingWindow:
    """按插入顺序保存的有界快照序列"""

    def __init__(self, max_age_ms: int, max_count: int):
        if max_age_ms <= 0 or max_count <= 0:
            raise ValueError("RollingWindow: max_age_ms / max_count must be positive")
        self.max_age_ms = max_age_ms
        self.max_count = max_count
        self._points: List[TimeSeriesPoint] = []

    @classmethod
    def for_hours(cls, hours: int) -> "RollingWindow":
        return cls(hours * HOUR_MS, hours * POINTS_PER_HOUR)

    def __len__(self) -> int:
        return len(self._points)

    @property
    def points(self) -> List[TimeSeriesPoint]:
        return list(self._points)

    def append(self, point: TimeSeriesPoint) -> None:
        self._points.append(point)
        self._prune()

    def _prune(self) -> None:
        if not self._points:
            return
        # 以窗口内最新时间为基准，乱序写入也能保持时长上限
        newest = max(p.timestamp for p in self._points)
        cutoff = newest - self.max_age_ms
        self._points = [p for p in self._points if p.timestamp > cutoff]
        if len(self._points) > self.max_count:
            self._points = self._points[-self.max_count:]

    def earliest_since(self, cutoff: int) -> Optional[TimeSeriesPoint]:
        """时间戳 >= cutoff 的点里最早的一个"""
        inside = [p for p in self._points if p.timestamp >= cutoff]
        if not inside:
            return None
        return min(inside, key=lambda p: p.timestamp)


@dataclass
class _EntityState:
    name: str
    last_value: float
    last_by_dimension: Dict[str, float]
    last_timestamp: Optional[int]
    short: RollingWindow
    long: RollingWindow


def tier_for_change(change_percent: float) -> AlertPriority:
    """先判大阈值：>=100% CRITICAL，>=50% HIGH，否则 MEDIUM"""
    magnitude = abs(change_percent)
    if magnitude >= CRITICAL_CHANGE_PERCENT:
        return AlertPriority.CRITICAL
    if magnitude >= HIGH_CHANGE_PERCENT:
        return AlertPriority.HIGH
    return AlertPriority.MEDIUM


class TrendTracker:
    def __init__(
        self,
        short_window_hours: int = 24,
        long_window_hours: int = 168,
        clock: Callable[[], int] = now_ms,
        label: str = "trends",
    ):
        if short_window_hours > long_window_hours:
            raise ValueError("short window must not exceed long window")
        self.short_window_hours = short_window_hours
        self.long_window_hours = long_window_hours
        self._clock = clock
        self._label = label
        self._entities: Dict[str, _EntityState] = {}
        self._lock = threading.Lock()

    # --------------- 写入 ---------------

    def _new_state(self, name: str) -> _EntityState:
        return _EntityState(
            name=name,
            last_value=0.0,
            last_by_dimension={},
            last_timestamp=None,
            short=RollingWindow.for_hours(self.short_window_hours),
            long=RollingWindow.for_hours(self.long_window_hours),
        )

    def ingest(self, entity_id: str, name: str, value: float,
               value_by_dimension: Optional[Dict[str, float]] = None,
               timestamp: Optional[int] = None) -> None:
        ts = int(timestamp) if timestamp is not None else self._clock()
        dims = dict(value_by_dimension or {})
        point = TimeSeriesPoint(timestamp=ts, value=float(value), value_by_dimension=dims)
        with self._lock:
            st = self._entities.get(entity_id)
            if st is None:
                st = self._new_state(name or entity_id)
                self._entities[entity_id] = st
            st.name = name or st.name
            # 迟到的旧快照只进窗口，不覆盖最新值
            if st.last_timestamp is None or ts >= st.last_timestamp:
                st.last_value = float(value)
                st.last_by_dimension = dims
                st.last_timestamp = ts
            st.short.append(point)
            st.long.append(point)

    def ingest_batch(self, batch: MetricBatch) -> int:
        n = 0
        for snap in batch.snapshots:
            if not snap.entity_id:
                continue
            self.ingest(snap.entity_id, snap.entity_name, snap.value,
                        snap.value_by_dimension, snap.timestamp or batch.timestamp)
            n += 1
        return n

    # --------------- 查询 ---------------

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def entity_ids(self) -> List[str]:
        with self._lock:
            return list(self._entities)

    def current_value(self, entity_id: str) -> Optional[float]:
        with self._lock:
            st = self._entities.get(entity_id)
            return st.last_value if st else None

    def window(self, entity_id: str, lookback_hours: int) -> List[TimeSeriesPoint]:
        with self._lock:
            st = self._entities.get(entity_id)
            if st is None:
                return []
            return self._pick_window(st, lookback_hours).points

    def _pick_window(self, st: _EntityState, lookback_hours: int) -> RollingWindow:
        return st.short if lookback_hours <= self.short_window_hours else st.long

    def _change_locked(self, entity_id: str, lookback_hours: int) -> Optional[TrendChange]:
        st = self._entities.get(entity_id)
        if st is None:
            return None
        win = self._pick_window(st, lookback_hours)
        if len(win) < 2:
            return None

        cutoff = self._clock() - lookback_hours * HOUR_MS
        previous = win.earliest_since(cutoff)
        if previous is None:
            return None
        # 回看区间内出现过 0 值，视为历史不足
        if any(p.value == 0 for p in win.points if p.timestamp >= cutoff):
            return None

        current = st.last_value
        change_absolute = current - previous.value
        return TrendChange(
            entity_id=entity_id,
            name=st.name,
            previous_value=previous.value,
            current_value=current,
            change_percent=change_absolute / previous.value * 100,
            change_absolute=change_absolute,
            lookback_hours=lookback_hours,
        )

    def change_since(self, entity_id: str, lookback_hours: int = 24) -> Optional[TrendChange]:
        with self._lock:
            return self._change_locked(entity_id, lookback_hours)

    def significant_changes(self, min_change_percent: float, min_absolute_value: float,
                            lookback_hours: int = 24) -> List[TrendChange]:
        """
        当前值 >= min_absolute_value 且 |变化| >= min_change_percent 的实体，
        按 |变化| 降序
        """
        out: List[TrendChange] = []
        with self._lock:
            for entity_id, st in self._entities.items():
                if st.last_value < min_absolute_value:
                    continue
                change = self._change_locked(entity_id, lookback_hours)
                if change is not None and change.magnitude >= min_change_percent:
                    out.append(change)
        out.sort(key=lambda c: c.magnitude, reverse=True)
        if out:
            print(f"[{self._label}] {len(out)} 个实体 {lookback_hours}h 变化超过 {min_change_percent}%")
        return out

    # --------------- 状态导出/恢复（存 protocol_state 表） ---------------

    def export_state(self) -> Dict[str, Dict[str, Any]]:
        def dump(win: RollingWindow) -> List[Dict[str, Any]]:
            return [{"timestamp": p.timestamp, "value": p.value,
                     "value_by_dimension": p.value_by_dimension} for p in win.points]

        with self._lock:
            return {
                entity_id: {
                    "name": st.name,
                    "last_value": st.last_value,
                    "last_by_dimension": st.last_by_dimension,
                    "last_timestamp": st.last_timestamp,
                    "history_short": dump(st.short),
                    "history_long": dump(st.long),
                }
                for entity_id, st in self._entities.items()
            }

    def load_state(self, state: Dict[str, Dict[str, Any]]) -> int:
        """恢复导出的状态；单个实体数据损坏就跳过它"""
        loaded = 0
        with self._lock:
            for entity_id, raw in (state or {}).items():
                try:
                    st = self._new_state(str(raw.get("name") or entity_id))
                    for key, win in (("history_short", st.short), ("history_long", st.long)):
                        for p in raw.get(key) or []:
                            win.append(TimeSeriesPoint(
                                timestamp=int(p["timestamp"]),
                                value=float(p["value"]),
                                value_by_dimension=dict(p.get("value_by_dimension") or {}),
                            ))
                    st.last_value = float(raw.get("last_value", 0.0))
                    st.last_by_dimension = dict(raw.get("last_by_dimension") or {})
                    last_ts = raw.get("last_timestamp")
                    st.last_timestamp = int(last_ts) if last_ts is not None else None
                except (KeyError, TypeError, ValueError) as e:
                    print(f"[{self._label}] 跳过损坏的状态 {entity_id}: {e}")
                    continue
                self._entities[entity_id] = st
                loaded += 1
        return loaded
