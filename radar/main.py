# radar/main.py
# 串起：feed -> dispatcher -> processor(scorer/trends/factory/gate) -> storage + notifier
# 另有 Telegram 命令轮询与 housekeeper

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import aiosqlite

from radar.commands import CommandHandler, CommandPoller
from radar.config import ROOT, alerts_config, load_cfg, load_keyword_sets
from radar.dispatcher import Channel, EventDispatcher
from radar.factory import AlertFactory
from radar.feeds.dummy_gen import run_dummy_feed
from radar.gate import AlertGate, fingerprint
from radar.models import Alert
from radar.notifier import Notifier
from radar.processor import SignalProcessor
from radar.scorer import KeywordScorer
from radar.storage import (
    AlertStore,
    delete_old_alerts,
    get_or_create_settings,
    init_db,
    load_protocol_states,
    save_alert,
    save_protocol_states,
)
from radar.trends import TrendTracker
from radar.utils import now_ms


class Pipeline:
    """持有一次运行里的全部组件"""

    def __init__(self, cfg: Dict[str, Any], db: aiosqlite.Connection,
                 keywords_path: Optional[Path] = None):
        self.cfg = cfg
        self.db = db
        acfg = alerts_config(cfg)
        self.alerts_config = acfg
        trends_cfg = cfg.get("trends", {})
        scoring = cfg.get("scoring", {})

        self.dispatcher = EventDispatcher()
        self.tvl_tracker = TrendTracker(
            short_window_hours=int(trends_cfg.get("short_window_hours", 24)),
            long_window_hours=int(trends_cfg.get("long_window_hours", 168)),
            label="tvl",
        )
        self.price_tracker = TrendTracker(label="price")
        self.dedup_store = AlertStore(db)
        self.gate = AlertGate(self.dedup_store, acfg)
        self.processor = SignalProcessor(
            dispatcher=self.dispatcher,
            scorer=KeywordScorer(
                load_keyword_sets(keywords_path),
                retweet_threshold=int(scoring.get("retweet_threshold", 100)),
                like_threshold=int(scoring.get("like_threshold", 500)),
            ),
            tvl_tracker=self.tvl_tracker,
            price_tracker=self.price_tracker,
            factory=AlertFactory(acfg.categories),
            gate=self.gate,
            alerts_config=acfg,
        )
        self.notifier = Notifier(cfg, settings_lookup=lambda chat_id: get_or_create_settings(db, chat_id))
        self.commands = CommandHandler(db, status_provider=self.status)

        # 先入库再推送
        self.dispatcher.subscribe(Channel.ALERT, self.persist_alert)
        self.dispatcher.subscribe(Channel.ALERT, self.notifier.deliver)

    async def persist_alert(self, alert: Alert) -> None:
        await save_alert(self.db, alert, fingerprint(alert))

    def status(self) -> Dict[str, Dict[str, int]]:
        return {"processor": dict(self.processor.stats), "gate": dict(self.gate.stats)}

    async def housekeep(self, max_days: int = 30, now: Optional[int] = None) -> None:
        """清理过期告警与去重记录，落盘 TVL 历史"""
        now = now if now is not None else now_ms()
        await delete_old_alerts(self.db, max_days, now=now)
        purged = await self.dedup_store.purge(now - self.alerts_config.dedup_window_ms)
        if purged:
            print(f"[main] 清理 {purged} 条过期去重记录")
        await self.snapshot_state()

    async def restore_state(self) -> None:
        n = self.tvl_tracker.load_state(await load_protocol_states(self.db))
        print(f"[main] 恢复 {n} 个协议的 TVL 历史")

    async def snapshot_state(self) -> None:
        n = await save_protocol_states(self.db, self.tvl_tracker.export_state())
        print(f"[main] 保存 {n} 个协议的 TVL 历史")


async def run_housekeeper(pipeline: Pipeline, every_sec: int = 600, max_days: int = 30):
    """定期调用 Pipeline.housekeep。"""
    print("[housekeeper] started")
    try:
        while True:
            await asyncio.sleep(every_sec)
            try:
                await pipeline.housekeep(max_days)
            except (aiosqlite.Error, OSError) as e:
                print(f"[housekeeper] error: {e}")
    except asyncio.CancelledError:
        print("[housekeeper] cancelled")
        raise
    finally:
        print("[housekeeper] finished")


async def main(run_seconds: int = 30, config_path: Optional[str] = None,
               db_path: Optional[str] = None, dummy: Optional[bool] = None):
    cfg = load_cfg(config_path)
    app_cfg = cfg["app"]

    db = await init_db(db_path or ROOT / app_cfg["database_path"])
    pipeline = Pipeline(cfg, db)
    await pipeline.restore_state()

    tasks = []
    print("[main] creating tasks…")

    if dummy if dummy is not None else app_cfg.get("dummy_feed", False):
        tasks.append(asyncio.create_task(run_dummy_feed(pipeline.dispatcher)))

    tg_cfg = cfg["telegram"]
    if pipeline.notifier.channel == "telegram" and tg_cfg.get("commands_enabled", True):
        poller = CommandPoller(
            tg_cfg["token"],
            pipeline.commands,
            reply=pipeline.notifier.reply,
            allowed_chat_ids=pipeline.notifier.chat_ids,
            poll_timeout_sec=int(tg_cfg.get("poll_timeout_sec", 25)),
        )
        tasks.append(asyncio.create_task(poller.run()))

    tasks.append(asyncio.create_task(run_housekeeper(
        pipeline,
        every_sec=int(app_cfg.get("housekeeper_every_sec", 600)),
        max_days=int(app_cfg.get("max_alert_history_days", 30)),
    )))

    print(f"[main] running for {run_seconds}s …")
    try:
        if run_seconds and run_seconds > 0:
            await asyncio.sleep(run_seconds)
        else:
            # 0 或负数 => 永久运行
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        print("[main] cancelled")
        raise
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await pipeline.snapshot_state()
        print(f"[main] gate stats: {pipeline.gate.stats}")
        await pipeline.notifier.close()
        await db.close()
        print("[main] finished")


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser()
    parser.add_argument("--run-seconds", type=int, default=0)
    parser.add_argument("--config", default=None, help="默认 ops/config.yml")
    parser.add_argument("--db", default=None, help="默认取 app.database_path")
    parser.add_argument("--dummy", action="store_true", default=None, help="启用本地 dummy 数据源")
    args = parser.parse_args()

    asyncio.run(main(run_seconds=args.run_seconds, config_path=args.config,
                     db_path=args.db, dummy=args.dummy))
