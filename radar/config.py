# -*- coding: utf-8 -*-
"""
radar/config.py
读取 ops/config.yml 与 ops/keywords.yml：
- 文件可选；不存在或解析失败就用内置默认
- 按 section 做一层合并（避免过度魔法）
- ${VAR} 占位符从环境变量替换；TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID 覆盖 telegram 段
运行期间配置不变（不做热加载）。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from radar.models import AlertCategory, AlertPriority, CategoryKeywords
from radar.utils import resolve_env_vars

ROOT = Path(__file__).resolve().parents[1]
OPS_DIR = ROOT / "ops"

# TVL 分析的兜底阈值（分类未配置时）
DEFAULT_TVL_THRESHOLDS = {
    "minChangePercent": 10,
    "minTvlUsd": 1_000_000,
    "timeframeHours": 24,
}

DEFAULT_CFG: Dict[str, Any] = {
    "app": {
        "name": "DeFi Radar",
        "database_path": "data/radar.db",
        "max_alert_history_days": 30,
        "housekeeper_every_sec": 600,
        "dummy_feed": False,
    },
    "telegram": {
        "token": "",
        "chat_ids": [],
        "retry": {"max_times": 3, "backoff_sec": 2},
        "commands_enabled": True,
        "poll_timeout_sec": 25,
    },
    "trends": {
        "short_window_hours": 24,
        "long_window_hours": 168,
    },
    "scoring": {
        "retweet_threshold": 100,
        "like_threshold": 500,
    },
    "alerts": {
        "global_cooldown_ms": 60_000,
        "dedup_window_ms": 86_400_000,
        "categories": {
            "INCENTIVE": {"enabled": True, "priority": 3, "cooldown_ms": 300_000, "thresholds": {}},
            "TVL_CHANGE": {"enabled": True, "priority": 2, "cooldown_ms": 600_000,
                           "thresholds": dict(DEFAULT_TVL_THRESHOLDS)},
            "TOKEN_EVENT": {"enabled": True, "priority": 3, "cooldown_ms": 300_000,
                            "thresholds": {"minUnlockValueUsd": 1_000_000, "daysBeforeUnlock": 7}},
            "GOVERNANCE": {"enabled": True, "priority": 2, "cooldown_ms": 600_000, "thresholds": {}},
            "SECURITY": {"enabled": True, "priority": 4, "cooldown_ms": 0,
                         "thresholds": {"minLossValueUsd": 100_000}},
            "NARRATIVE": {"enabled": True, "priority": 1, "cooldown_ms": 3_600_000,
                          "thresholds": {"minMentions": 5}},
        },
    },
}

DEFAULT_KEYWORDS: Dict[str, Dict[str, List[str]]] = {
    "INCENTIVE": {
        "primary": ["airdrop", "points program", "season 1", "season 2", "snapshot", "incentive",
                    "rewards program", "XP system", "points multiplier", "eligibility", "claim now",
                    "token distribution"],
        "secondary": ["early adopter", "retroactive", "farming", "boost", "bonus", "multiplier"],
        "negative": ["scam", "fake airdrop", "giveaway", "retweet to win"],
        "accounts": ["layerzero_labs", "eigenlayer", "arbitrum", "Optimism", "StarkWareLtd"],
        "hashtags": ["#airdrop", "#points"],
    },
    "TVL_CHANGE": {
        "primary": ["TVL", "total value locked", "deposits surge", "inflows", "outflows",
                    "capital migration"],
        "secondary": ["billion", "million", "growth", "all-time high", "ATH"],
        "negative": ["prediction", "might", "could"],
        "accounts": ["DefiLlama"],
        "hashtags": ["#TVL", "#DeFi"],
    },
    "TOKEN_EVENT": {
        "primary": ["token launch", "TGE", "token generation", "vesting", "cliff", "unlock",
                    "emissions", "token release", "VC unlock", "team tokens"],
        "secondary": ["tokenomics", "supply", "circulating", "listing"],
        "negative": ["presale", "private sale", "whitelist"],
        "accounts": ["TokenUnlocks", "UnlocksCalendar"],
        "hashtags": ["#TGE", "#unlock"],
    },
    "GOVERNANCE": {
        "primary": ["governance proposal", "parameter change", "yield change", "collateral factor",
                    "LTV change", "fee update", "reward rate", "multiplier update", "voting",
                    "passed proposal"],
        "secondary": ["DAO", "vote", "quorum", "executed"],
        "negative": ["temperature check", "draft"],
        "accounts": ["MakerDAO", "AaveAave", "compikiyo", "CurveFinance"],
        "hashtags": ["#governance", "#DAO"],
    },
    "SECURITY": {
        "primary": ["exploit", "hack", "drained", "stolen", "vulnerability", "paused", "emergency",
                    "attack", "flash loan attack", "reentrancy", "oracle manipulation", "rug pull",
                    "audit", "critical"],
        "secondary": ["investigating", "funds at risk", "warning", "suspicious", "abnormal"],
        "negative": [],
        "accounts": ["PeckShieldAlert", "BlockSecTeam", "certikiAlert", "SlowMist_Team", "samczsun"],
        "hashtags": ["#exploit", "#hack", "#security"],
    },
    "NARRATIVE": {
        "primary": ["new meta", "emerging trend", "restaking", "liquid restaking", "RWA",
                    "real world assets", "AI crypto", "DePIN", "fund investing", "fund backed",
                    "pivot", "rebranding", "new direction"],
        "secondary": ["alpha", "thesis", "narrative", "sector", "category"],
        "negative": ["old news", "dead"],
        "accounts": ["DefiIgnas", "Defi_Made_Here", "Route2FI"],
        "hashtags": ["#DeFi", "#crypto"],
    },
}


# ------------------------------------------------------------
# 类型化视图
# ------------------------------------------------------------

@dataclass
class CategorySettings:
    enabled: bool = True
    priority: AlertPriority = AlertPriority.MEDIUM
    cooldown_ms: int = 300_000
    thresholds: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CategorySettings":
        raw = raw or {}
        try:
            priority = AlertPriority(int(raw.get("priority", AlertPriority.MEDIUM)))
        except (TypeError, ValueError):
            priority = AlertPriority.MEDIUM
        return cls(
            enabled=bool(raw.get("enabled", True)),
            priority=priority,
            cooldown_ms=max(0, int(raw.get("cooldown_ms", 300_000) or 0)),
            thresholds=dict(raw.get("thresholds") or {}),
        )


@dataclass
class AlertsConfig:
    global_cooldown_ms: int = 60_000
    dedup_window_ms: int = 86_400_000
    categories: Dict[AlertCategory, CategorySettings] = field(default_factory=dict)

    def category(self, category: AlertCategory) -> CategorySettings:
        """未配置的分类按默认值处理（启用、MEDIUM、5 分钟冷却）"""
        return self.categories.get(category) or CategorySettings()

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AlertsConfig":
        raw = raw or {}
        cats: Dict[AlertCategory, CategorySettings] = {}
        for name, c in (raw.get("categories") or {}).items():
            cat = AlertCategory.parse(name)
            if cat is None:
                print(f"[config] 忽略未知分类: {name}")
                continue
            cats[cat] = CategorySettings.from_dict(c)
        return cls(
            global_cooldown_ms=max(0, int(raw.get("global_cooldown_ms", 60_000) or 0)),
            dedup_window_ms=max(0, int(raw.get("dedup_window_ms", 86_400_000) or 0)),
            categories=cats,
        )


# ------------------------------------------------------------
# 加载
# ------------------------------------------------------------

def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        print(f"[config] 读取 {path} 失败，使用默认。err={e}")
        return {}


def load_cfg(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """ops/config.yml 可选；不存在就用默认。"""
    data = resolve_env_vars(_read_yaml(Path(path) if path else OPS_DIR / "config.yml"))
    if not isinstance(data, dict):
        data = {}
    out: Dict[str, Any] = {}
    for section, defaults in DEFAULT_CFG.items():
        override = data.get(section) or {}
        out[section] = {**defaults, **override}
    # 分类配置再合并一层，只写了 cooldown 的分类也能拿到其余默认值
    cats = {k: dict(v) for k, v in DEFAULT_CFG["alerts"]["categories"].items()}
    for name, c in ((data.get("alerts") or {}).get("categories") or {}).items():
        cats[str(name).upper()] = {**cats.get(str(name).upper(), {}), **(c or {})}
    out["alerts"]["categories"] = cats

    tg = out["telegram"]
    token = os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()
    chat_id = os.environ.get("TELEGRAM_CHAT_ID", "").strip()
    if token:
        tg["token"] = token
    if chat_id:
        tg["chat_ids"] = [chat_id]
    tg["chat_ids"] = [str(c) for c in (tg.get("chat_ids") or []) if str(c).strip()]
    return out


def load_keyword_sets(path: Optional[Union[str, Path]] = None) -> Dict[AlertCategory, CategoryKeywords]:
    """
    ops/keywords.yml:
        categories:
          SECURITY: {primary: [...], secondary: [...], negative: [...], accounts: [...], hashtags: [...]}
    文件缺失或为空时使用 DEFAULT_KEYWORDS。
    """
    data = _read_yaml(Path(path) if path else OPS_DIR / "keywords.yml")
    raw = data.get("categories") if isinstance(data, dict) else None
    if not raw:
        raw = DEFAULT_KEYWORDS

    out: Dict[AlertCategory, CategoryKeywords] = {}
    # 保证按分类声明顺序排列
    for cat in AlertCategory:
        entry = raw.get(cat.value) or raw.get(cat.value.lower())
        if entry is None:
            continue
        out[cat] = CategoryKeywords(
            primary=[str(k) for k in entry.get("primary") or []],
            secondary=[str(k) for k in entry.get("secondary") or []],
            negative=[str(k) for k in entry.get("negative") or []],
            accounts=[str(k) for k in entry.get("accounts") or []],
            hashtags=[str(k) for k in entry.get("hashtags") or []],
        )
    unknown = [k for k in raw if AlertCategory.parse(k) is None]
    if unknown:
        print(f"[config] keywords.yml 含未知分类，已忽略: {unknown}")
    return out


def alerts_config(cfg: Dict[str, Any]) -> AlertsConfig:
    return AlertsConfig.from_dict(cfg.get("alerts") or {})
