# -*- coding: utf-8 -*-
"""
radar/scorer.py
关键词分类与打分：
- 每个分类有 primary / secondary / negative 词表、可信账号、hashtag
- 子串匹配（大小写不敏感），hashtag 去掉开头的 # 后整词比较
- 至少命中一个 primary 或来自可信账号才参与打分
- 任一 negative 命中即否决该分类
"""

from typing import Dict, List, Optional

from radar.models import AlertCategory, CategoryKeywords, ScoreResult, TextEvent
from radar.utils import norm_text_for_match, strip_hashtag

# 评分权重
W_PRIMARY = 10
W_SECONDARY = 5
W_HASHTAG = 3
W_TRUSTED = 20
W_ENGAGEMENT = 5
W_NEGATIVE = -50


def _substring_hits(keywords: List[str], lower_text: str) -> List[str]:
    return [kw for kw in keywords if kw and kw.lower() in lower_text]


class KeywordScorer:
    def __init__(
        self,
        keyword_sets: Dict[AlertCategory, CategoryKeywords],
        retweet_threshold: int = 100,
        like_threshold: int = 500,
    ):
        # 只接受已知分类，未知分类视为不匹配
        self.keyword_sets: Dict[AlertCategory, CategoryKeywords] = {
            cat: kws for cat, kws in keyword_sets.items() if isinstance(cat, AlertCategory)
        }
        self.retweet_threshold = retweet_threshold
        self.like_threshold = like_threshold

    def _score_category(self, event: TextEvent, lower_text: str, author: str,
                        category: AlertCategory, kws: CategoryKeywords) -> Optional[ScoreResult]:
        matched_negative = _substring_hits(kws.negative, lower_text)
        matched_primary = _substring_hits(kws.primary, lower_text)
        matched_secondary = _substring_hits(kws.secondary, lower_text)

        event_tags = {strip_hashtag(h) for h in event.hashtags or []}
        matched_hashtags = [t for t in kws.hashtags if strip_hashtag(t) in event_tags]

        trusted = bool(author) and any(acc.lower() == author for acc in kws.accounts)

        if not matched_primary and not trusted:
            return None

        score = W_PRIMARY * len(matched_primary)
        score += W_SECONDARY * len(matched_secondary)
        score += W_HASHTAG * len(matched_hashtags)
        if trusted:
            score += W_TRUSTED
        if (event.repost_count or 0) > self.retweet_threshold:
            score += W_ENGAGEMENT
        if (event.like_count or 0) > self.like_threshold:
            score += W_ENGAGEMENT
        score += W_NEGATIVE * len(matched_negative)

        # 负面词一票否决，不看分数正负
        if score <= 0 or matched_negative:
            return None

        return ScoreResult(
            category=category,
            score=score,
            matched_primary=matched_primary,
            matched_secondary=matched_secondary,
            matched_negative=matched_negative,
            matched_hashtags=matched_hashtags,
            is_trusted_account=trusted,
        )

    def score(self, event: TextEvent) -> List[ScoreResult]:
        """
        对一条文本事件按所有分类打分

        返回:
            命中的分类列表，按分数降序；同分保持分类声明顺序
        """
        lower_text, _ = norm_text_for_match(event.body)
        author = (event.author_handle or "").lower()

        results: List[ScoreResult] = []
        for category in AlertCategory:
            kws = self.keyword_sets.get(category)
            if kws is None:
                continue
            r = self._score_category(event, lower_text, author, category, kws)
            if r is not None:
                results.append(r)

        # sorted 是稳定排序
        results = sorted(results, key=lambda r: r.score, reverse=True)

        if results:
            top = results[0]
            print(f"[scorer] @{event.author_handle} 命中 {len(results)} 个分类, "
                  f"top={top.category.value} score={top.score}")
        return results

    def matches_category(self, text: str, category: AlertCategory) -> bool:
        """无 negative 且至少一个 primary；与打分无关"""
        kws = self.keyword_sets.get(category) if isinstance(category, AlertCategory) else None
        if kws is None:
            return False
        lower_text, _ = norm_text_for_match(text)
        if _substring_hits(kws.negative, lower_text):
            return False
        return bool(_substring_hits(kws.primary, lower_text))
