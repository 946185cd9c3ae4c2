"""
tests/test_gate.py
放行状态机：去重 -> 分类开关 -> 全局冷却 -> 分类冷却
用可控时钟 + 内存去重表，不依赖真实时间。
"""

import asyncio
import dataclasses

from radar.config import AlertsConfig, CategorySettings
from radar.factory import AlertFactory
from radar.gate import AlertGate, RejectReason, destination_accepts, fingerprint, passes_custom_thresholds
from radar.models import (
    Alert,
    AlertCategory,
    AlertMetadata,
    AlertPriority,
    AlertSource,
    DestinationSettings,
    TextDetails,
    TrendChange,
)


class Clock:
    def __init__(self, t=0):
        self.t = t

    def __call__(self):
        return self.t


class MemoryDedup:
    def __init__(self):
        self.rows = {}

    async def exists_within(self, fp, window_ms, now):
        t = self.rows.get(fp)
        return t is not None and t > now - window_ms

    async def insert(self, fp, approval_time):
        self.rows[fp] = approval_time


class BrokenDedup:
    def __init__(self):
        self.inserts = 0

    async def exists_within(self, fp, window_ms, now):
        raise ConnectionError("db is gone")

    async def insert(self, fp, approval_time):
        self.inserts += 1
        raise ConnectionError("db is gone")


def make_alert(category=AlertCategory.INCENTIVE, title="airdrop live", handle="someone", created_at=0):
    return Alert(
        id=f"{category.value}-{title}-{created_at}",
        category=category,
        priority=AlertPriority.MEDIUM,
        source=AlertSource.TWITTER,
        title=title,
        summary=title,
        details=TextDetails(raw_content=title, source_url=""),
        metadata=AlertMetadata(twitter_handle=handle, tags=[category.value.lower()]),
        created_at=created_at,
    )


def make_config(global_ms=0, dedup_ms=86_400_000, cooldowns=None, disabled=()):
    cooldowns = cooldowns or {}
    return AlertsConfig(
        global_cooldown_ms=global_ms,
        dedup_window_ms=dedup_ms,
        categories={
            c: CategorySettings(enabled=c not in disabled, cooldown_ms=cooldowns.get(c, 0))
            for c in AlertCategory
        },
    )


def test_fingerprint_ignores_id_and_time_but_not_title():
    a = make_alert(created_at=1)
    b = dataclasses.replace(a, id="other", created_at=999)
    assert fingerprint(a) == fingerprint(b)
    assert len(fingerprint(a)) == 32
    assert fingerprint(make_alert(title="airdrop live!")) != fingerprint(a)
    assert fingerprint(make_alert(handle="other")) != fingerprint(a)


def test_duplicate_within_window_then_allowed_after():
    async def run():
        clock = Clock(1_000)
        store = MemoryDedup()
        gate = AlertGate(store, make_config(dedup_ms=10_000), clock=clock)

        first = await gate.admit(make_alert())
        assert first.approved and first.reason is None
        assert store.rows == {first.fingerprint: 1_000}

        clock.t = 5_000
        dup = await gate.admit(make_alert(created_at=5_000))
        assert not dup
        assert dup.reason is RejectReason.DUPLICATE

        clock.t = 11_000
        assert (await gate.admit(make_alert())).approved
        assert gate.stats["approved"] == 2
        assert gate.stats["duplicate"] == 1

    asyncio.run(run())


def test_global_cooldown_spans_categories():
    async def run():
        clock = Clock(0)
        gate = AlertGate(MemoryDedup(), make_config(global_ms=60_000), clock=clock)

        assert (await gate.admit(make_alert(AlertCategory.INCENTIVE))).approved
        clock.t = 30_000
        d = await gate.admit(make_alert(AlertCategory.SECURITY, title="exploit"))
        assert d.reason is RejectReason.GLOBAL_COOLDOWN
        clock.t = 60_000
        assert (await gate.admit(make_alert(AlertCategory.SECURITY, title="exploit"))).approved

    asyncio.run(run())


def test_category_cooldowns_are_independent():
    async def run():
        clock = Clock(0)
        cfg = make_config(cooldowns={
            AlertCategory.INCENTIVE: 300_000,
            AlertCategory.GOVERNANCE: 600_000,
        })
        gate = AlertGate(MemoryDedup(), cfg, clock=clock)

        assert (await gate.admit(make_alert(AlertCategory.INCENTIVE, "a"))).approved
        clock.t = 1
        assert (await gate.admit(make_alert(AlertCategory.GOVERNANCE, "g"))).approved

        clock.t = 1_000
        d = await gate.admit(make_alert(AlertCategory.INCENTIVE, "b"))
        assert d.reason is RejectReason.CATEGORY_COOLDOWN

        clock.t = 300_000
        assert (await gate.admit(make_alert(AlertCategory.INCENTIVE, "b"))).approved
        d = await gate.admit(make_alert(AlertCategory.GOVERNANCE, "g2"))
        assert d.reason is RejectReason.CATEGORY_COOLDOWN

    asyncio.run(run())


def test_disabled_category_rejected_without_side_effects():
    async def run():
        clock = Clock(500)
        store = MemoryDedup()
        gate = AlertGate(store, make_config(global_ms=60_000, disabled={AlertCategory.NARRATIVE}),
                         clock=clock)

        d = await gate.admit(make_alert(AlertCategory.NARRATIVE, "restaking"))
        assert d.reason is RejectReason.CATEGORY_DISABLED
        assert store.rows == {}
        assert gate.state.last_global_alert_time is None
        assert gate.state.last_category_alert_time == {}

        # 拒绝不占用全局冷却
        assert (await gate.admit(make_alert(AlertCategory.INCENTIVE))).approved

    asyncio.run(run())


def test_duplicate_checked_before_category_switch():
    async def run():
        store = MemoryDedup()
        alert = make_alert(AlertCategory.NARRATIVE, "restaking")
        await store.insert(fingerprint(alert), 0)
        gate = AlertGate(store, make_config(disabled={AlertCategory.NARRATIVE}), clock=Clock(10))
        assert (await gate.admit(alert)).reason is RejectReason.DUPLICATE

    asyncio.run(run())


def test_unconfigured_category_uses_defaults():
    async def run():
        clock = Clock(0)
        gate = AlertGate(MemoryDedup(), AlertsConfig(global_cooldown_ms=0, categories={}), clock=clock)
        assert (await gate.admit(make_alert(AlertCategory.TOKEN_EVENT, "tge"))).approved
        clock.t = 299_999
        d = await gate.admit(make_alert(AlertCategory.TOKEN_EVENT, "unlock"))
        assert d.reason is RejectReason.CATEGORY_COOLDOWN

    asyncio.run(run())


def test_store_failure_fails_open():
    async def run():
        store = BrokenDedup()
        gate = AlertGate(store, make_config(), clock=Clock(0))
        assert (await gate.admit(make_alert())).approved
        assert store.inserts == 1
        # 去重不可用时同一条也会再放行
        assert (await gate.admit(make_alert())).approved

    asyncio.run(run())


def test_concurrent_admits_of_same_alert_approve_once():
    async def run():
        gate = AlertGate(MemoryDedup(), make_config(), clock=Clock(0))
        decisions = await asyncio.gather(*[gate.admit(make_alert()) for _ in range(5)])
        assert sum(1 for d in decisions if d.approved) == 1
        assert gate.stats["duplicate"] == 4

    asyncio.run(run())


def test_destination_accepts():
    s = DestinationSettings(chat_id="1")
    assert destination_accepts(s, AlertCategory.SECURITY)
    s.subscribed_categories = [AlertCategory.TVL_CHANGE]
    assert not destination_accepts(s, AlertCategory.SECURITY)
    assert destination_accepts(s, AlertCategory.TVL_CHANGE)
    s.is_paused = True
    assert not destination_accepts(s, AlertCategory.TVL_CHANGE)


def test_custom_thresholds_apply_to_tvl_alerts_only():
    change = TrendChange("lendx", "LendX", 10_000_000, 15_500_000, 55.0, 5_500_000, 24)
    tvl = AlertFactory(clock=lambda: 0).from_trend_change(change)

    def s(**th):
        return DestinationSettings(chat_id="1", custom_thresholds=th)

    assert passes_custom_thresholds(s(), tvl)
    assert passes_custom_thresholds(s(tvl_min_change=55), tvl)
    assert not passes_custom_thresholds(s(tvl_min_change=60), tvl)
    assert not passes_custom_thresholds(s(tvl_min_usd=20_000_000), tvl)
    assert passes_custom_thresholds(s(tvl_min_change=60), make_alert())
