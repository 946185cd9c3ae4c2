# 本地 dummy 数据源：没有真实采集器时用来跑通整条链路
# 生成随机推文与 TVL / 价格快照

import asyncio
import random
import uuid
from typing import Dict, List, Optional

from radar.dispatcher import Channel, EventDispatcher
from radar.models import AlertSource, MetricBatch, MetricSnapshot, TextEvent
from radar.utils import now_ms

# (作者, 正文, hashtags)：覆盖不同分类、负面词和无关内容
TWEET_TEMPLATES = [
    ("PeckShieldAlert", "Exploit on Radiant: attacker drained ~$4.5M from lending pools, funds at risk",
     ["exploit"]),
    ("layerzero_labs", "Snapshot for the airdrop is taken. Eligibility checker goes live tomorrow", ["airdrop"]),
    ("random_user", "Huge airdrop giveaway, retweet to win!!!", ["airdrop"]),
    ("AaveAave", "Governance proposal passed: fee update for GHO borrowing goes live after quorum", []),
    ("TokenUnlocks", "VC unlock: 12% of ARB supply unlocks next week, team tokens included", ["unlock"]),
    ("DefiIgnas", "Liquid restaking is the new meta, thesis thread on the sector below", ["DeFi"]),
    ("DefiLlama", "Total value locked across L2s hits all-time high, inflows keep coming", ["TVL"]),
    ("someone", "gm, coffee and charts this morning", []),
]

PROTOCOLS = [
    ("aave", "Aave", 11_000_000_000),
    ("lido", "Lido", 28_000_000_000),
    ("radiant", "Radiant", 150_000_000),
    ("pendle", "Pendle", 4_500_000_000),
]

TOKENS = [("ethereum", 3_200.0), ("bitcoin", 67_000.0), ("arbitrum", 0.8)]


def generate_tweet() -> TextEvent:
    author, body, tags = random.choice(TWEET_TEMPLATES)
    return TextEvent(
        source=AlertSource.TWITTER.value,
        timestamp=now_ms(),
        id=str(uuid.uuid4().int)[:19],
        author_id=author.lower(),
        author_handle=author,
        body=body,
        repost_count=random.randint(0, 300),
        like_count=random.randint(0, 1200),
        hashtags=list(tags),
    )


def generate_tvl_batch(levels: Dict[str, float]) -> MetricBatch:
    """随机游走；偶尔给某个协议一次大幅跳变"""
    ts = now_ms()
    snaps: List[MetricSnapshot] = []
    for slug, name, base in PROTOCOLS:
        v = levels.get(slug, float(base))
        v *= 1 + random.uniform(-0.02, 0.02)
        if random.random() < 0.05:
            v *= random.choice([0.4, 1.8])
        levels[slug] = v
        snaps.append(MetricSnapshot(slug, name, v, {"Ethereum": v * 0.7, "Arbitrum": v * 0.3}, ts))
    return MetricBatch(source=AlertSource.DEFILLAMA, timestamp=ts, snapshots=snaps)


def generate_price_batch() -> MetricBatch:
    ts = now_ms()
    snaps = [MetricSnapshot(tid, tid, p * (1 + random.uniform(-0.03, 0.03)), {}, ts) for tid, p in TOKENS]
    return MetricBatch(source=AlertSource.COINGECKO, timestamp=ts, snapshots=snaps)


async def run_dummy_feed(dispatcher: EventDispatcher, interval_sec: float = 5.0,
                         rounds: Optional[int] = None) -> None:
    """每 interval_sec 发一轮：1-2 条推文 + 一批 TVL + 一批价格"""
    print(f"[dummy] 启动，每 {interval_sec}s 一轮")
    levels: Dict[str, float] = {}
    n = 0
    try:
        while rounds is None or n < rounds:
            for _ in range(random.randint(1, 2)):
                await dispatcher.publish(Channel.TEXT, generate_tweet())
            await dispatcher.publish(Channel.TVL, generate_tvl_batch(levels))
            await dispatcher.publish(Channel.PRICE, generate_price_batch())
            n += 1
            await asyncio.sleep(interval_sec)
    except asyncio.CancelledError:
        print("[dummy] 已取消")
        raise
