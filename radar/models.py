# -*- coding: utf-8 -*-
"""
models.py
定义信号、时间序列与告警的数据模型。
- 原始事件：TextEvent（推文等文本）/ MetricSnapshot（TVL、价格快照）
- 打分结果：ScoreResult
- 告警：Alert + 按分类区分的 details（每个分类一个 dataclass）
时间一律为 UTC 毫秒（int）。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, List, Optional, Union


class AlertCategory(str, Enum):
    # 声明顺序即同分时的先后顺序
    INCENTIVE = "INCENTIVE"
    TVL_CHANGE = "TVL_CHANGE"
    TOKEN_EVENT = "TOKEN_EVENT"
    GOVERNANCE = "GOVERNANCE"
    SECURITY = "SECURITY"
    NARRATIVE = "NARRATIVE"

    @classmethod
    def parse(cls, value: Any) -> Optional["AlertCategory"]:
        """宽松解析：'security' / 'SECURITY' / AlertCategory.SECURITY；未知返回 None"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class AlertPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class AlertSource(str, Enum):
    DEFILLAMA = "DEFILLAMA"
    TWITTER = "TWITTER"
    COINGECKO = "COINGECKO"


# ------------------------------------------------------------
# 原始事件
# ------------------------------------------------------------

@dataclass
class TextEvent:
    # 来源与发现时间
    source: str
    timestamp: int

    # 推文ID、作者
    id: str
    author_id: str
    author_handle: str
    body: str

    is_retweet: bool = False
    is_reply: bool = False
    is_quote: bool = False

    # 互动计数：采集端缺失时一律按 0 处理
    reply_count: int = 0
    repost_count: int = 0
    like_count: int = 0

    hashtags: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TextEvent":
        """
        从采集器给出的原始 dict 构造；缺失字段给默认值。
        兼容 camelCase（retweetCount/authorUsername）与 snake_case。
        """
        def g(*keys: str, default=None):
            for k in keys:
                v = raw.get(k)
                if v not in (None, ""):
                    return v
            return default

        def count(*keys: str) -> int:
            try:
                return int(g(*keys, default=0) or 0)
            except (TypeError, ValueError):
                return 0

        return cls(
            source=str(g("source", default=AlertSource.TWITTER.value)),
            timestamp=int(g("timestamp", "ts", default=0) or 0),
            id=str(g("id", "tweet_id", "tweetId", default="")),
            author_id=str(g("author_id", "authorId", default="")),
            author_handle=str(g("author_handle", "authorUsername", "author", default="")),
            body=str(g("body", "text", default="")),
            is_retweet=bool(g("is_retweet", "isRetweet", default=False)),
            is_reply=bool(g("is_reply", "isReply", default=False)),
            is_quote=bool(g("is_quote", "isQuote", default=False)),
            reply_count=count("reply_count", "replyCount"),
            repost_count=count("repost_count", "retweet_count", "retweetCount"),
            like_count=count("like_count", "likeCount"),
            hashtags=list(g("hashtags", default=[]) or []),
            mentions=list(g("mentions", default=[]) or []),
            urls=list(g("urls", default=[]) or []),
        )


@dataclass
class MetricSnapshot:
    entity_id: str      # 如 DeFiLlama slug: "aave"
    entity_name: str
    value: float
    value_by_dimension: Dict[str, float] = field(default_factory=dict)  # 如按链拆分的 TVL
    timestamp: int = 0


@dataclass
class MetricBatch:
    """一次轮询得到的一批快照"""
    source: AlertSource
    timestamp: int
    snapshots: List[MetricSnapshot] = field(default_factory=list)


# ------------------------------------------------------------
# 关键词与打分
# ------------------------------------------------------------

@dataclass(frozen=True)
class CategoryKeywords:
    primary: List[str] = field(default_factory=list)
    secondary: List[str] = field(default_factory=list)
    negative: List[str] = field(default_factory=list)
    accounts: List[str] = field(default_factory=list)   # 可信账号
    hashtags: List[str] = field(default_factory=list)


@dataclass
class ScoreResult:
    category: AlertCategory
    score: int
    matched_primary: List[str] = field(default_factory=list)
    matched_secondary: List[str] = field(default_factory=list)
    matched_negative: List[str] = field(default_factory=list)
    matched_hashtags: List[str] = field(default_factory=list)
    is_trusted_account: bool = False


# ------------------------------------------------------------
# 时间序列
# ------------------------------------------------------------

@dataclass(frozen=True)
class TimeSeriesPoint:
    timestamp: int
    value: float
    value_by_dimension: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class TrendChange:
    entity_id: str
    name: str
    previous_value: float
    current_value: float
    change_percent: float
    change_absolute: float
    lookback_hours: int

    @property
    def magnitude(self) -> float:
        return abs(self.change_percent)


# ------------------------------------------------------------
# 告警 details：每个分类一个 case
# ------------------------------------------------------------

@dataclass(frozen=True)
class IncentiveDetails:
    kind: ClassVar[str] = "incentive"
    incentive_type: str          # AIRDROP / POINTS / SEASON / SNAPSHOT
    raw_content: str
    source_url: str


@dataclass(frozen=True)
class SecurityDetails:
    kind: ClassVar[str] = "security"
    severity: str                # INFO / WARNING / HIGH / CRITICAL
    event_type: str              # EXPLOIT / PAUSE / AUDIT_ISSUE / ABNORMAL_BEHAVIOR / RUG_WARNING
    protocol: Optional[str]
    raw_content: str
    source_url: str


@dataclass(frozen=True)
class TokenEventDetails:
    kind: ClassVar[str] = "token_event"
    event_type: str              # LAUNCH / EMISSION_START / VESTING_CLIFF / VC_UNLOCK
    raw_content: str
    source_url: str


@dataclass(frozen=True)
class GovernanceDetails:
    kind: ClassVar[str] = "governance"
    change_type: str             # YIELD_PARAM / COLLATERAL_RULE / REWARD_MULTIPLIER / FEE_CHANGE
    raw_content: str
    source_url: str


@dataclass(frozen=True)
class NarrativeDetails:
    kind: ClassVar[str] = "narrative"
    narrative_type: str          # NEW_SECTOR / FUND_MENTION / PROTOCOL_PIVOT / TREND_EMERGENCE
    raw_content: str
    source_url: str


@dataclass(frozen=True)
class TvlChangeDetails:
    kind: ClassVar[str] = "tvl_change"
    protocol: str
    chain: str
    previous_value: float
    current_value: float
    change_percent: float
    change_absolute: float
    timeframe_hours: int
    source_url: str


@dataclass(frozen=True)
class TextDetails:
    """没有专门抽取逻辑的文本命中（如推文里提到 TVL）"""
    kind: ClassVar[str] = "text"
    raw_content: str
    source_url: str


AlertDetails = Union[
    IncentiveDetails,
    SecurityDetails,
    TokenEventDetails,
    GovernanceDetails,
    NarrativeDetails,
    TvlChangeDetails,
    TextDetails,
]


@dataclass(frozen=True)
class AlertMetadata:
    twitter_handle: Optional[str] = None
    tweet_id: Optional[str] = None
    defillama_slug: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        # 只保留有值的字段，保证指纹稳定
        return {k: v for k, v in asdict(self).items() if v not in (None, [])}


@dataclass(frozen=True)
class Alert:
    id: str
    category: AlertCategory
    priority: AlertPriority
    source: AlertSource
    title: str
    summary: str
    details: AlertDetails
    metadata: AlertMetadata
    created_at: int

    @property
    def tags(self) -> List[str]:
        return list(self.metadata.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "priority": int(self.priority),
            "source": self.source.value,
            "title": self.title,
            "summary": self.summary,
            "details": {"kind": self.details.kind, **asdict(self.details)},
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
        }


# ------------------------------------------------------------
# 推送目标（每个 chat 的订阅/暂停）
# ------------------------------------------------------------

@dataclass
class DestinationSettings:
    chat_id: str
    subscribed_categories: List[AlertCategory] = field(default_factory=lambda: list(AlertCategory))
    is_paused: bool = False
    custom_thresholds: Dict[str, float] = field(default_factory=dict)
