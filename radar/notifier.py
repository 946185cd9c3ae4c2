"""
radar/notifier.py
推送模块：把放行的 Alert 发到 Telegram（或回退到 stdout）
- 每个 chat 单独判断：暂停 / 未订阅该分类则跳过
- Telegram 429/5xx 重试：优先服务端 retry_after，否则指数退避 + 抖动
- 统一的消息格式
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from radar.gate import destination_accepts, passes_custom_thresholds
from radar.models import (
    Alert,
    AlertPriority,
    DestinationSettings,
    GovernanceDetails,
    IncentiveDetails,
    NarrativeDetails,
    SecurityDetails,
    TokenEventDetails,
    TvlChangeDetails,
)
from radar.utils import truncate

SettingsLookup = Callable[[str], Awaitable[DestinationSettings]]

PRIORITY_BADGES = {
    AlertPriority.CRITICAL: "🔴 CRITICAL",
    AlertPriority.HIGH: "🟠 HIGH",
    AlertPriority.MEDIUM: "🟡 MEDIUM",
    AlertPriority.LOW: "⚪ LOW",
}


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class _TelegramAdapter:
    def __init__(self, token: str, retry: Optional[dict] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._token = token
        self._retry = retry or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池；trust_env 读取系统代理/证书
        if self._client is None:
            timeout = httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=30.0)
            self._client = httpx.AsyncClient(timeout=timeout, trust_env=True, transport=self._transport)
        return self._client

    async def send(self, chat_id: str, text: str) -> bool:
        """
        发送 Telegram；尊重 429/5xx；最终失败才简短打印。
        """
        url = f"https://api.telegram.org/bot{self._token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }

        max_times = int(self._retry.get("max_times", 3))
        backoff = float(self._retry.get("backoff_sec", 2))

        last_err = None

        for attempt in range(1, max_times + 1):
            try:
                r = await self._client_get().post(url, data=payload)
                try:
                    data = r.json()
                except ValueError:
                    data = None

                if r.status_code == 200 and (data is None or data.get("ok", True) is True):
                    return True

                # 429/5xx：可重试
                if r.status_code == 429 or 500 <= r.status_code < 600:
                    retry_after = 0
                    if isinstance(data, dict):
                        try:
                            retry_after = int(data.get("parameters", {}).get("retry_after", 0))
                        except (TypeError, ValueError):
                            retry_after = 0
                    last_err = f"http {r.status_code}"
                    if attempt < max_times:
                        sleep_sec = retry_after or (backoff * (2 ** (attempt - 1)))
                        sleep_sec = min(sleep_sec, 30) + random.uniform(0, 0.6)
                        await asyncio.sleep(sleep_sec)
                    continue

                # 其他 4xx：直接失败
                last_err = f"http {r.status_code}: {(r.text or '')[:300]}"
                break

            except httpx.HTTPError as e:
                last_err = repr(e)
                if attempt < max_times:
                    sleep_sec = backoff * (2 ** (attempt - 1)) + random.uniform(0, 0.6)
                    await asyncio.sleep(min(sleep_sec, 20))

        print(f"[notifier] telegram send to {chat_id} failed after {max_times} attempts: {last_err}")
        return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _StdoutAdapter:
    async def send(self, chat_id: str, text: str) -> bool:
        print(f"\n[{chat_id}]\n{text}\n")
        return True

    async def close(self):
        return


# ------------------------------------------------------------
# 消息格式
# ------------------------------------------------------------

def _detail_lines(alert: Alert) -> List[str]:
    d = alert.details
    if isinstance(d, SecurityDetails):
        lines = [f"Severity: {d.severity} | Type: {d.event_type}"]
        if d.protocol:
            lines.append(f"Protocol: {d.protocol}")
        return lines
    if isinstance(d, TvlChangeDetails):
        return [
            f"Protocol: {d.protocol} ({d.chain})",
            f"TVL: ${d.previous_value:,.0f} -> ${d.current_value:,.0f} "
            f"({d.change_percent:+.1f}% / {d.timeframe_hours}h)",
        ]
    if isinstance(d, IncentiveDetails):
        return [f"Type: {d.incentive_type}"]
    if isinstance(d, TokenEventDetails):
        return [f"Type: {d.event_type}"]
    if isinstance(d, GovernanceDetails):
        return [f"Change: {d.change_type}"]
    if isinstance(d, NarrativeDetails):
        return [f"Narrative: {d.narrative_type}"]
    return []


def format_alert(alert: Alert) -> str:
    """统一的消息格式"""
    badge = PRIORITY_BADGES.get(alert.priority, "")
    text = f"{badge} | {alert.category.value}\n{alert.title}\n\n{alert.summary}"

    lines = _detail_lines(alert)
    if lines:
        text += "\n\n" + "\n".join(lines)

    url = getattr(alert.details, "source_url", "")
    if url:
        text += f"\nLink: {url}"

    tags = [t for t in alert.tags if t]
    if tags:
        text += "\n" + " ".join(t if t.startswith("#") else f"#{t}" for t in tags)

    return truncate(text, 3500)


# ------------------------------------------------------------
# Notifier 主体
# ------------------------------------------------------------

class Notifier:
    def __init__(self, cfg: dict, settings_lookup: Optional[SettingsLookup] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        # 允许传进来“整份 cfg”或“telegram 子配置”
        self._cfg = cfg.get("telegram", cfg)
        self._settings_lookup = settings_lookup

        token = str(self._cfg.get("token") or "").strip()
        self.chat_ids: List[str] = [str(c) for c in self._cfg.get("chat_ids") or [] if str(c).strip()]

        if token and self.chat_ids:
            self._adapter = _TelegramAdapter(token, self._cfg.get("retry"), transport=transport)
            self._channel = "telegram"
        else:
            self._adapter = _StdoutAdapter()
            self._channel = "stdout"
            if not self.chat_ids:
                self.chat_ids = ["stdout"]
            print("[notifier] TELEGRAM_BOT_TOKEN/CHAT_ID 缺失，自动降级为 stdout")

    @property
    def channel(self) -> str:
        return self._channel

    async def _settings_for(self, chat_id: str) -> DestinationSettings:
        if self._settings_lookup is None:
            return DestinationSettings(chat_id=chat_id)
        return await self._settings_lookup(chat_id)

    async def deliver(self, alert: Alert) -> Dict[str, bool]:
        """
        逐个 chat 推送；暂停或未订阅的 chat 不出现在结果里

        返回:
            {chat_id: 是否发送成功}
        """
        results: Dict[str, bool] = {}
        text = format_alert(alert)
        for chat_id in self.chat_ids:
            settings = await self._settings_for(chat_id)
            if not destination_accepts(settings, alert.category):
                print(f"[notifier] chat {chat_id} 暂停或未订阅 {alert.category.value}，跳过")
                continue
            if not passes_custom_thresholds(settings, alert):
                print(f"[notifier] chat {chat_id} 自定义阈值未达到，跳过: {alert.title}")
                continue
            results[chat_id] = await self._adapter.send(chat_id, text)
        return results

    async def reply(self, chat_id: str, text: str) -> bool:
        """命令回复：不看订阅/暂停"""
        return await self._adapter.send(chat_id, truncate(text, 3500))

    async def close(self):
        await self._adapter.close()
