"""
tests/test_trends.py
滚动窗口与 TVL 变化计算
"""

import random

import pytest

from radar.models import AlertPriority, MetricBatch, MetricSnapshot, AlertSource, TimeSeriesPoint
from radar.trends import RollingWindow, TrendTracker, tier_for_change
from radar.utils import HOUR_MS

T0 = 1_700_000_000_000


class Clock:
    def __init__(self, t):
        self.t = t

    def __call__(self):
        return self.t


def test_lendx_surge_is_high_tier():
    clock = Clock(T0)
    tr = TrendTracker(clock=clock)
    tr.ingest("lendx", "LendX", 10_000_000, {}, T0)
    clock.t = T0 + 20 * HOUR_MS
    tr.ingest("lendx", "LendX", 15_500_000, {}, clock.t)

    change = tr.change_since("lendx", 24)
    assert change is not None
    assert change.change_percent == pytest.approx(55.0)
    assert change.change_absolute == pytest.approx(5_500_000)
    assert tier_for_change(change.change_percent) is AlertPriority.HIGH

    [sig] = tr.significant_changes(10, 1_000_000, 24)
    assert sig.entity_id == "lendx"


def test_tiers_checked_widest_first():
    assert tier_for_change(150) is AlertPriority.CRITICAL
    assert tier_for_change(-100) is AlertPriority.CRITICAL
    assert tier_for_change(-60) is AlertPriority.HIGH
    assert tier_for_change(50) is AlertPriority.HIGH
    assert tier_for_change(49.9) is AlertPriority.MEDIUM


def test_insufficient_history():
    clock = Clock(T0)
    tr = TrendTracker(clock=clock)
    assert tr.change_since("nope", 24) is None
    tr.ingest("a", "A", 100, {}, T0)
    assert tr.change_since("a", 24) is None


def test_no_point_inside_lookback_returns_none():
    clock = Clock(T0)
    tr = TrendTracker(clock=clock)
    tr.ingest("a", "A", 100, {}, T0)
    tr.ingest("a", "A", 120, {}, T0 + HOUR_MS)
    # 两个点都早于 now - 2h
    clock.t = T0 + 10 * HOUR_MS
    assert tr.change_since("a", 2) is None
    assert tr.change_since("a", 24).change_percent == pytest.approx(20.0)


def test_previous_is_earliest_point_inside_lookback():
    clock = Clock(T0 + 30 * HOUR_MS)
    tr = TrendTracker(clock=clock)
    for h, v in [(0, 50), (10, 100), (20, 150), (30, 200)]:
        tr.ingest("a", "A", v, {}, T0 + h * HOUR_MS)
    # 24h 回看：最早的窗口内点是 t0+10h
    assert tr.change_since("a", 24).previous_value == 100
    # 48h 回看走长窗口：t0 的点
    assert tr.change_since("a", 48).previous_value == 50


def test_zero_inside_lookback_is_insufficient_history():
    clock = Clock(T0)
    tr = TrendTracker(clock=clock)
    tr.ingest("z", "Z", 1_000_000, {}, T0)

    # 1h 后掉到 0：不报 -100%
    clock.t = T0 + HOUR_MS
    tr.ingest("z", "Z", 0, {}, clock.t)
    assert tr.change_since("z", 24) is None

    # 之后不管怎么涨，0 仍在回看区间内
    for i, v in enumerate([5_000_000, 20_000_000], start=2):
        clock.t = T0 + i * HOUR_MS
        tr.ingest("z", "Z", v, {}, clock.t)
        assert tr.change_since("z", 24) is None
    assert tr.significant_changes(10, 1_000_000, 24) == []


def test_zero_baseline_after_window_slides():
    clock = Clock(T0)
    tr = TrendTracker(clock=clock)
    tr.ingest("z", "Z", 1_000_000, {}, T0)
    clock.t = T0 + 25 * HOUR_MS
    tr.ingest("z", "Z", 0, {}, clock.t)
    clock.t = T0 + 26 * HOUR_MS
    tr.ingest("z", "Z", 3_000_000, {}, clock.t)
    assert tr.change_since("z", 24) is None

    # 0 滑出回看区间后恢复计算
    clock.t = T0 + 49 * HOUR_MS
    tr.ingest("z", "Z", 6_000_000, {}, T0 + 49 * HOUR_MS)
    assert tr.change_since("z", 24).change_percent == pytest.approx(100.0)


def test_late_snapshot_does_not_replace_current_value():
    clock = Clock(T0 + 10 * HOUR_MS)
    tr = TrendTracker(clock=clock)
    tr.ingest("a", "A", 100, {"Ethereum": 100}, T0)
    tr.ingest("a", "A", 200, {"Ethereum": 200}, T0 + 10 * HOUR_MS)
    # 迟到的 t0+5h 快照
    tr.ingest("a", "A", 150, {"Ethereum": 150}, T0 + 5 * HOUR_MS)

    assert tr.current_value("a") == 200
    change = tr.change_since("a", 24)
    assert change.current_value == 200
    assert change.change_percent == pytest.approx(100.0)
    assert len(tr.window("a", 24)) == 3
    assert tr.export_state()["a"]["last_by_dimension"] == {"Ethereum": 200}


def test_timestamp_zero_is_a_real_timestamp():
    tr = TrendTracker(clock=lambda: T0)
    tr.ingest("a", "A", 1, {}, 0)
    assert tr.window("a", 24)[0].timestamp == 0
    tr.ingest("b", "B", 1, {})
    assert tr.window("b", 24)[0].timestamp == T0


def test_significant_changes_filters_and_sorts():
    clock = Clock(T0 + HOUR_MS)
    tr = TrendTracker(clock=clock)
    rows = {
        "small": (500_000, 900_000),        # 当前值不足 1M
        "flat": (10_000_000, 10_500_000),    # +5%
        "up": (10_000_000, 13_000_000),      # +30%
        "down": (10_000_000, 4_000_000),     # -60%
    }
    for slug, (a, b) in rows.items():
        tr.ingest(slug, slug.upper(), a, {}, T0)
        tr.ingest(slug, slug.upper(), b, {}, T0 + HOUR_MS)

    out = tr.significant_changes(10, 1_000_000, 24)
    assert [c.entity_id for c in out] == ["down", "up"]
    assert out[0].change_percent == pytest.approx(-60.0)


def test_window_caps_follow_five_minute_density():
    w = RollingWindow.for_hours(24)
    assert w.max_count == 288
    assert RollingWindow.for_hours(168).max_count == 2016


def test_rolling_window_bounds_hold_for_any_insert_order():
    rnd = random.Random(7)
    w = RollingWindow(max_age_ms=HOUR_MS, max_count=10)
    for _ in range(500):
        ts = T0 + rnd.randint(-3 * HOUR_MS, 3 * HOUR_MS)
        w.append(TimeSeriesPoint(ts, rnd.random()))
        pts = w.points
        assert len(pts) <= 10
        newest = max(p.timestamp for p in pts)
        assert all(newest - p.timestamp < HOUR_MS for p in pts)


def test_rolling_window_keeps_most_recent_inserts():
    w = RollingWindow(max_age_ms=10 * HOUR_MS, max_count=3)
    for i in range(5):
        w.append(TimeSeriesPoint(T0 + i, float(i)))
    assert [p.value for p in w.points] == [2.0, 3.0, 4.0]


def test_ingest_batch_and_state_round_trip():
    clock = Clock(T0 + HOUR_MS)
    tr = TrendTracker(clock=clock)
    tr.ingest_batch(MetricBatch(AlertSource.DEFILLAMA, T0, [
        MetricSnapshot("aave", "Aave", 100.0, {"Ethereum": 80.0, "Arbitrum": 20.0}, T0),
        MetricSnapshot("", "no id", 1.0, {}, T0),
    ]))
    tr.ingest("aave", "Aave", 150.0, {}, T0 + HOUR_MS)

    restored = TrendTracker(clock=clock)
    assert restored.load_state(tr.export_state()) == 1
    assert restored.entity_ids() == ["aave"]
    assert restored.current_value("aave") == 150.0
    assert restored.window("aave", 24)[0].value_by_dimension == {"Ethereum": 80.0, "Arbitrum": 20.0}
    assert restored.change_since("aave", 24).change_percent == pytest.approx(50.0)


def test_load_state_skips_broken_entities():
    tr = TrendTracker()
    n = tr.load_state({
        "ok": {"name": "OK", "last_value": 1, "history_short": [{"timestamp": T0, "value": 1}]},
        "bad": {"name": "Bad", "history_short": [{"value": 1}]},
    })
    assert n == 1
    assert "ok" in tr and "bad" not in tr
