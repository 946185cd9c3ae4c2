# -*- coding: utf-8 -*-
"""
radar/factory.py
把打分结果 / 趋势变化组装成 Alert：
- 标题按分类套模板
- 分类专属字段靠关键词启发式抽取（尽力而为，抽不到就给默认值或 None）
- 安全类 + 可信账号 -> 强制 CRITICAL
不做任何冷却/去重判断。
"""

import re
import uuid
from typing import Callable, Dict, Optional, Tuple

from radar.config import CategorySettings
from radar.models import (
    Alert,
    AlertCategory,
    AlertDetails,
    AlertMetadata,
    AlertPriority,
    AlertSource,
    GovernanceDetails,
    IncentiveDetails,
    NarrativeDetails,
    ScoreResult,
    SecurityDetails,
    TextDetails,
    TextEvent,
    TokenEventDetails,
    TrendChange,
    TvlChangeDetails,
)
from radar.trends import tier_for_change
from radar.utils import now_ms

SUMMARY_LIMIT = 280

TITLE_TEMPLATES: Dict[AlertCategory, str] = {
    AlertCategory.INCENTIVE: "🎁 INCENTIVE SIGNAL - @{handle}",
    AlertCategory.SECURITY: "🚨 SECURITY ALERT - @{handle}",
    AlertCategory.TOKEN_EVENT: "🪙 TOKEN EVENT - @{handle}",
    AlertCategory.GOVERNANCE: "🏛 GOVERNANCE UPDATE - @{handle}",
    AlertCategory.NARRATIVE: "📊 NARRATIVE SIGNAL - @{handle}",
    AlertCategory.TVL_CHANGE: "📈 TVL UPDATE - @{handle}",
}
GENERIC_TITLE = "📢 DEFI SIGNAL - @{handle}"

# 协议名：'on Aave' / 'at Curve' / 'Radiant protocol' / 'Euler finance'
_PROTOCOL_PATTERNS = (
    re.compile(r"(?:on|at|from|@)\s+([A-Z][a-zA-Z0-9]+)"),
    re.compile(r"([A-Z][a-zA-Z0-9]+)\s+(?i:protocol|finance|swap|lend)"),
)


def _first_hit(lower_text: str, tiers: Tuple[Tuple[str, Tuple[str, ...]], ...], default: str) -> str:
    """按顺序检查各档关键词，命中即返回该档标签"""
    for label, words in tiers:
        if any(w in lower_text for w in words):
            return label
    return default


def detect_incentive_type(text: str) -> str:
    return _first_hit(text.lower(), (
        ("SNAPSHOT", ("snapshot",)),
        ("SEASON", ("season",)),
        ("POINTS", ("points", "xp")),
    ), "AIRDROP")


def detect_security_severity(text: str) -> str:
    return _first_hit(text.lower(), (
        ("CRITICAL", ("critical", "drained", "stolen")),
        ("HIGH", ("exploit", "hack", "attack")),
        ("WARNING", ("warning", "suspicious", "paused")),
    ), "INFO")


def detect_security_event_type(text: str) -> str:
    return _first_hit(text.lower(), (
        ("RUG_WARNING", ("rug", "scam")),
        ("EXPLOIT", ("exploit", "hack", "drained")),
        ("PAUSE", ("paused", "pause")),
        ("AUDIT_ISSUE", ("audit",)),
    ), "ABNORMAL_BEHAVIOR")


def detect_token_event_type(text: str) -> str:
    return _first_hit(text.lower(), (
        ("VC_UNLOCK", ("vc unlock", "team tokens", "investor unlock")),
        ("VESTING_CLIFF", ("cliff", "vesting")),
        ("EMISSION_END", ("emissions end", "emission end")),
        ("EMISSION_START", ("emission",)),
    ), "LAUNCH")


def detect_governance_change_type(text: str) -> str:
    return _first_hit(text.lower(), (
        ("FEE_CHANGE", ("fee",)),
        ("COLLATERAL_RULE", ("collateral", "ltv")),
        ("REWARD_MULTIPLIER", ("reward", "multiplier")),
    ), "YIELD_PARAM")


def detect_narrative_type(text: str) -> str:
    return _first_hit(text.lower(), (
        ("FUND_MENTION", ("fund investing", "fund backed", "led by", "raise")),
        ("PROTOCOL_PIVOT", ("pivot", "rebranding", "new direction")),
        ("NEW_SECTOR", ("new meta", "new sector")),
    ), "TREND_EMERGENCE")


def extract_protocol_name(text: str) -> Optional[str]:
    """从常见句式里抓首字母大写的协议名；抓不到返回 None"""
    for pattern in _PROTOCOL_PATTERNS:
        m = pattern.search(text or "")
        if m and m.group(1):
            return m.group(1)
    return None


def tweet_url(event: TextEvent) -> str:
    return f"https://twitter.com/{event.author_handle}/status/{event.id}"


class AlertFactory:
    def __init__(
        self,
        category_settings: Optional[Dict[AlertCategory, CategorySettings]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.category_settings = category_settings or {}
        self._clock = clock

    def _category_priority(self, category: AlertCategory) -> AlertPriority:
        settings = self.category_settings.get(category)
        return settings.priority if settings else AlertPriority.MEDIUM

    def _text_details(self, event: TextEvent, category: AlertCategory) -> AlertDetails:
        text = event.body or ""
        url = tweet_url(event)
        if category is AlertCategory.INCENTIVE:
            return IncentiveDetails(detect_incentive_type(text), text, url)
        if category is AlertCategory.SECURITY:
            return SecurityDetails(
                severity=detect_security_severity(text),
                event_type=detect_security_event_type(text),
                protocol=extract_protocol_name(text),
                raw_content=text,
                source_url=url,
            )
        if category is AlertCategory.TOKEN_EVENT:
            return TokenEventDetails(detect_token_event_type(text), text, url)
        if category is AlertCategory.GOVERNANCE:
            return GovernanceDetails(detect_governance_change_type(text), text, url)
        if category is AlertCategory.NARRATIVE:
            return NarrativeDetails(detect_narrative_type(text), text, url)
        return TextDetails(text, url)

    def from_text_match(self, event: TextEvent, result: ScoreResult) -> Alert:
        category = result.category
        title = TITLE_TEMPLATES.get(category, GENERIC_TITLE).format(handle=event.author_handle)

        priority = self._category_priority(category)
        if category is AlertCategory.SECURITY and result.is_trusted_account:
            priority = AlertPriority.CRITICAL

        tags = [category.value.lower(), *(event.hashtags or [])[:3]]
        if result.is_trusted_account:
            tags.append("priority")

        return Alert(
            id=str(uuid.uuid4()),
            category=category,
            priority=priority,
            source=AlertSource.TWITTER,
            title=title,
            summary=(event.body or "")[:SUMMARY_LIMIT],
            details=self._text_details(event, category),
            metadata=AlertMetadata(
                twitter_handle=event.author_handle,
                tweet_id=event.id,
                tags=[t for t in tags if t],
            ),
            created_at=self._clock(),
        )

    def from_trend_change(self, change: TrendChange) -> Alert:
        increase = change.change_percent > 0
        direction = "surge" if increase else "drop"
        emoji = "📈" if increase else "📉"
        verb = "increased" if increase else "decreased"

        return Alert(
            id=str(uuid.uuid4()),
            category=AlertCategory.TVL_CHANGE,
            priority=tier_for_change(change.change_percent),
            source=AlertSource.DEFILLAMA,
            title=f"{emoji} TVL {direction.upper()} - {change.name}",
            summary=(f"{change.name} TVL {verb} by {change.magnitude:.1f}% "
                     f"in the last {change.lookback_hours} hours."),
            details=TvlChangeDetails(
                protocol=change.name,
                chain="All",
                previous_value=change.previous_value,
                current_value=change.current_value,
                change_percent=change.change_percent,
                change_absolute=change.change_absolute,
                timeframe_hours=change.lookback_hours,
                source_url=f"https://defillama.com/protocol/{change.entity_id}",
            ),
            metadata=AlertMetadata(
                defillama_slug=change.entity_id,
                tags=["tvl", change.entity_id, "inflow" if increase else "outflow"],
            ),
            created_at=self._clock(),
        )
