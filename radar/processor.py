# -*- coding: utf-8 -*-
"""
radar/processor.py
串起分析链路：
  TEXT  -> KeywordScorer -> AlertFactory -> AlertGate -> ALERT
  TVL   -> TrendTracker(TVL) -> significant_changes -> AlertFactory -> AlertGate -> ALERT
  PRICE -> TrendTracker(价格)，只做记录，不出告警
"""

from __future__ import annotations

from typing import Dict, List

from radar.config import DEFAULT_TVL_THRESHOLDS, AlertsConfig
from radar.dispatcher import Channel, EventDispatcher
from radar.factory import AlertFactory
from radar.gate import AlertGate, GateDecision
from radar.models import Alert, AlertCategory, MetricBatch, TextEvent
from radar.scorer import KeywordScorer
from radar.trends import TrendTracker


class SignalProcessor:
    def __init__(
        self,
        dispatcher: EventDispatcher,
        scorer: KeywordScorer,
        tvl_tracker: TrendTracker,
        price_tracker: TrendTracker,
        factory: AlertFactory,
        gate: AlertGate,
        alerts_config: AlertsConfig,
    ):
        self.dispatcher = dispatcher
        self.scorer = scorer
        self.tvl_tracker = tvl_tracker
        self.price_tracker = price_tracker
        self.factory = factory
        self.gate = gate
        self.alerts_config = alerts_config
        self.stats: Dict[str, int] = {"text": 0, "tvl_batches": 0, "price_batches": 0,
                                      "candidates": 0, "approved": 0, "rejected": 0}

        dispatcher.subscribe(Channel.TEXT, self.process_text)
        dispatcher.subscribe(Channel.TVL, self.process_tvl)
        dispatcher.subscribe(Channel.PRICE, self.process_price)
        print("[processor] 已订阅 TEXT / TVL / PRICE")

    def _tvl_thresholds(self):
        th = {**DEFAULT_TVL_THRESHOLDS,
              **self.alerts_config.category(AlertCategory.TVL_CHANGE).thresholds}
        return (float(th["minChangePercent"]), float(th["minTvlUsd"]), int(th["timeframeHours"]))

    async def emit(self, alert: Alert) -> GateDecision:
        self.stats["candidates"] += 1
        decision = await self.gate.admit(alert)
        if decision.approved:
            self.stats["approved"] += 1
            await self.dispatcher.publish(Channel.ALERT, alert)
        else:
            self.stats["rejected"] += 1
        return decision

    async def process_text(self, event: TextEvent) -> List[GateDecision]:
        self.stats["text"] += 1
        if event.is_retweet:
            return []

        matches = self.scorer.score(event)
        if not matches:
            return []

        # 只取最高分分类
        alert = self.factory.from_text_match(event, matches[0])
        return [await self.emit(alert)]

    async def process_tvl(self, batch: MetricBatch) -> List[GateDecision]:
        self.stats["tvl_batches"] += 1
        n = self.tvl_tracker.ingest_batch(batch)
        print(f"[processor] TVL 批次: {n} 个协议")

        min_change, min_tvl, hours = self._tvl_thresholds()
        decisions = []
        for change in self.tvl_tracker.significant_changes(min_change, min_tvl, hours):
            decisions.append(await self.emit(self.factory.from_trend_change(change)))
        return decisions

    def process_price(self, batch: MetricBatch) -> None:
        self.stats["price_batches"] += 1
        self.price_tracker.ingest_batch(batch)
