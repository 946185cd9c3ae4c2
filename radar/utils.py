# 工具模块：时间、文本归一化、环境变量占位符

import os
import re
import time
from typing import Any, Tuple

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def now_ms() -> int:
    """
    获取当前时间的UTC毫秒时间戳

    返回:
        当前时间的毫秒时间戳
    """
    return int(time.time() * 1000)


def norm_text_for_match(s: str) -> Tuple[str, str]:
    lower = (s or "").lower()
    return lower, s or ""


def strip_hashtag(tag: str) -> str:
    """'#Airdrop' -> 'airdrop'"""
    return (tag or "").strip().removeprefix("#").lower()


def resolve_env_vars(obj: Any) -> Any:
    """
    递归替换配置里的 ${VAR} 占位符；环境变量不存在时替换为空串
    """
    if isinstance(obj, str):
        return _ENV_PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), ""), obj)
    if isinstance(obj, list):
        return [resolve_env_vars(v) for v in obj]
    if isinstance(obj, dict):
        return {k: resolve_env_vars(v) for k, v in obj.items()}
    return obj


def truncate(s: str, limit: int = 3500) -> str:
    if s is None:
        return ""
    return s if len(s) <= limit else s[:limit - 3] + "..."
