# -*- coding: utf-8 -*-
"""
radar/gate.py
告警放行状态机，每条 Alert 按固定顺序检查（首个失败即拒绝，拒绝不改状态）：
1) 指纹去重（dedup 窗口内已放行过）
2) 分类是否启用
3) 全局冷却
4) 分类冷却
5) 全部通过：更新冷却时间，放行
拒绝是普通返回值（RejectReason），不是异常。
去重存储不可用时放行（fail-open）：宁可多推一条，也不漏掉真告警。
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

from radar.config import AlertsConfig
from radar.models import Alert, AlertCategory, DestinationSettings, TvlChangeDetails
from radar.utils import now_ms


class DedupStore(Protocol):
    async def exists_within(self, fingerprint: str, window_ms: int, now: int) -> bool: ...

    async def insert(self, fingerprint: str, approval_time: int) -> None: ...


class RejectReason(str, Enum):
    DUPLICATE = "duplicate"
    CATEGORY_DISABLED = "category_disabled"
    GLOBAL_COOLDOWN = "global_cooldown"
    CATEGORY_COOLDOWN = "category_cooldown"


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    fingerprint: str
    reason: Optional[RejectReason] = None

    def __bool__(self) -> bool:
        return self.approved


@dataclass
class CooldownState:
    last_global_alert_time: Optional[int] = None
    last_category_alert_time: Dict[AlertCategory, int] = field(default_factory=dict)


def fingerprint(alert: Alert) -> str:
    """category:source:title:metadata 的 sha256 前 32 位；不含 id 与时间"""
    meta = json.dumps(alert.metadata.to_dict(), sort_keys=True, ensure_ascii=False)
    content = f"{alert.category.value}:{alert.source.value}:{alert.title}:{meta}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:32]


def destination_accepts(settings: DestinationSettings, category: AlertCategory) -> bool:
    """单个推送目标：未暂停且订阅了该分类"""
    if settings.is_paused:
        return False
    return category in settings.subscribed_categories


# /threshold 可设置的每 chat 阈值（只作用于 TVL 告警）
THRESHOLD_KEYS = {
    "tvl_min_change": "minimum TVL change, percent",
    "tvl_min_usd": "minimum current TVL, USD",
}


def passes_custom_thresholds(settings: DestinationSettings, alert: Alert) -> bool:
    """chat 自定义阈值；未设置的键不过滤"""
    d = alert.details
    if not isinstance(d, TvlChangeDetails):
        return True
    th = settings.custom_thresholds or {}
    min_change = th.get("tvl_min_change")
    if min_change is not None and abs(d.change_percent) < float(min_change):
        return False
    min_usd = th.get("tvl_min_usd")
    if min_usd is not None and d.current_value < float(min_usd):
        return False
    return True


class AlertGate:
    def __init__(
        self,
        dedup_store: DedupStore,
        config: AlertsConfig,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = dedup_store
        self._config = config
        self._clock = clock
        self._lock = asyncio.Lock()
        self.state = CooldownState()
        self.stats: Dict[str, int] = {"approved": 0, **{r.value: 0 for r in RejectReason}}

    async def _is_duplicate(self, fp: str, now: int) -> bool:
        try:
            return await self._store.exists_within(fp, self._config.dedup_window_ms, now)
        except Exception as e:
            print(f"[gate] 去重存储不可用，按非重复放行: {e!r}")
            return False

    def _check_rules(self, alert: Alert, now: int) -> Optional[RejectReason]:
        settings = self._config.category(alert.category)
        if not settings.enabled:
            return RejectReason.CATEGORY_DISABLED

        last_global = self.state.last_global_alert_time
        if last_global is not None and now - last_global < self._config.global_cooldown_ms:
            return RejectReason.GLOBAL_COOLDOWN

        last_cat = self.state.last_category_alert_time.get(alert.category)
        if last_cat is not None and now - last_cat < settings.cooldown_ms:
            return RejectReason.CATEGORY_COOLDOWN
        return None

    def _reject(self, alert: Alert, fp: str, reason: RejectReason) -> GateDecision:
        self.stats[reason.value] += 1
        print(f"[gate] 拒绝({reason.value}): [{alert.category.value}] {alert.title}")
        return GateDecision(approved=False, fingerprint=fp, reason=reason)

    async def admit(self, alert: Alert) -> GateDecision:
        fp = fingerprint(alert)
        async with self._lock:
            now = self._clock()

            if await self._is_duplicate(fp, now):
                return self._reject(alert, fp, RejectReason.DUPLICATE)

            reason = self._check_rules(alert, now)
            if reason is not None:
                return self._reject(alert, fp, reason)

            self.state.last_global_alert_time = now
            self.state.last_category_alert_time[alert.category] = now
            self.stats["approved"] += 1

            try:
                await self._store.insert(fp, now)
            except Exception as e:
                print(f"[gate] 写入去重记录失败（已放行）: {e!r}")

        print(f"[gate] 放行: [{alert.category.value}] {alert.title}")
        return GateDecision(approved=True, fingerprint=fp)
