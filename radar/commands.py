# -*- coding: utf-8 -*-
"""
radar/commands.py
Telegram 命令：
  /start /help /status /subscribe /unsubscribe /subscriptions
  /pause /resume /recent [n] /threshold [key value]
- CommandHandler：只管 (chat_id, text) -> 回复文本，读写 user_settings / alerts
- CommandPoller：getUpdates 长轮询，只接受配置里的 chat，回复走 Notifier.reply
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite
import httpx

from radar.gate import THRESHOLD_KEYS
from radar.models import AlertCategory
from radar.storage import (
    get_active_chat_ids,
    get_alert_counts,
    get_or_create_settings,
    get_recent_alerts,
    set_paused,
    set_threshold,
    subscribe,
    unsubscribe,
)
from radar.utils import DAY_MS, now_ms

StatusProvider = Callable[[], Dict[str, Dict[str, int]]]
ReplyFn = Callable[[str, str], Awaitable[bool]]

CATEGORY_LIST = "\n".join(f"• {c.value}" for c in AlertCategory)

HELP_TEXT = (
    "Available commands:\n\n"
    "/start - Welcome message\n"
    "/help - Show this help\n"
    "/status - Bot status and stats\n"
    "/subscribe <category> - Subscribe to alerts\n"
    "/unsubscribe <category> - Unsubscribe from alerts\n"
    "/subscriptions - View your subscriptions\n"
    "/pause - Pause all alerts\n"
    "/resume - Resume alerts\n"
    "/recent [n] - Show recent alerts\n"
    "/threshold [key value] - View or set custom thresholds\n\n"
    "Categories:\n" + ", ".join(c.value for c in AlertCategory)
)

START_TEXT = (
    "Welcome to DeFi Radar 🚀\n\n"
    "Alerts cover:\n"
    "🎁 Incentives - airdrops, points, snapshots\n"
    "📈 TVL changes - significant capital movements\n"
    "🪙 Token events - launches, unlocks, vesting\n"
    "🏛 Governance - parameter changes, proposals\n"
    "🚨 Security - exploits, hacks, pauses\n"
    "📊 Narratives - emerging trends, sector shifts\n\n"
    "Use /help to see available commands."
)


def parse_command(text: str):
    """
    '/recent@radar_bot 3' -> ('recent', ['3'])；非命令返回 (None, [])
    """
    parts = (text or "").strip().split()
    if not parts or not parts[0].startswith("/"):
        return None, []
    name = parts[0][1:].split("@", 1)[0].lower()
    return name, parts[1:]


class CommandHandler:
    def __init__(
        self,
        db: aiosqlite.Connection,
        status_provider: Optional[StatusProvider] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = db
        self._status_provider = status_provider
        self._clock = clock
        self.started_at = clock()
        self._routes: Dict[str, Callable[[str, List[str]], Awaitable[str]]] = {
            "start": self._start,
            "help": self._help,
            "status": self._status,
            "subscribe": self._subscribe,
            "unsubscribe": self._unsubscribe,
            "subscriptions": self._subscriptions,
            "pause": self._pause,
            "resume": self._resume,
            "recent": self._recent,
            "threshold": self._threshold,
        }

    async def handle(self, chat_id: str, text: str) -> Optional[str]:
        """
        处理一条消息

        返回:
            回复文本；不是命令时返回 None
        """
        name, args = parse_command(text)
        if name is None:
            return None
        route = self._routes.get(name)
        if route is None:
            return f"Unknown command: /{name}\nUse /help to see available commands."
        print(f"[commands] chat {chat_id}: /{name} {' '.join(args)}".rstrip())
        return await route(str(chat_id), args)

    # --------------- 基本 ---------------

    async def _start(self, chat_id: str, args: List[str]) -> str:
        # 首次 /start 时建好默认设置（全部分类）
        await get_or_create_settings(self.db, chat_id)
        return START_TEXT

    async def _help(self, chat_id: str, args: List[str]) -> str:
        return HELP_TEXT

    async def _status(self, chat_id: str, args: List[str]) -> str:
        now = self._clock()
        uptime_min = max(0, now - self.started_at) // 60_000
        lines = [
            "Bot status",
            "",
            "✅ Status: Running",
            f"⏱ Uptime: {uptime_min // 60}h {uptime_min % 60}m",
            f"👥 Active chats: {len(await get_active_chat_ids(self.db))}",
        ]

        counts = await get_alert_counts(self.db, now - DAY_MS)
        lines += ["", "Alerts (24h)", f"Total: {sum(counts.values())}"]
        lines += [f"• {c.value}: {counts[c.value]}" for c in AlertCategory if counts.get(c.value)]

        if self._status_provider is not None:
            for section, stats in self._status_provider().items():
                body = ", ".join(f"{k}={v}" for k, v in stats.items())
                lines += ["", f"{section}: {body}"]
        return "\n".join(lines)

    # --------------- 订阅 ---------------

    def _category_arg(self, command: str, args: List[str]):
        if not args:
            return None, f"Usage: /{command} <category>\n\nAvailable categories:\n{CATEGORY_LIST}"
        cat = AlertCategory.parse(args[0])
        if cat is None:
            return None, f"Invalid category: {args[0].upper()}\n\nAvailable categories:\n{CATEGORY_LIST}"
        return cat, None

    async def _subscribe(self, chat_id: str, args: List[str]) -> str:
        cat, err = self._category_arg("subscribe", args)
        if err:
            return err
        if await subscribe(self.db, chat_id, cat):
            return f"✅ Subscribed to {cat.value} alerts"
        return f"You're already subscribed to {cat.value} alerts"

    async def _unsubscribe(self, chat_id: str, args: List[str]) -> str:
        cat, err = self._category_arg("unsubscribe", args)
        if err:
            return err
        if await unsubscribe(self.db, chat_id, cat):
            return f"❌ Unsubscribed from {cat.value} alerts"
        return f"You weren't subscribed to {cat.value} alerts"

    async def _subscriptions(self, chat_id: str, args: List[str]) -> str:
        s = await get_or_create_settings(self.db, chat_id)
        lines = ["Your subscriptions", ""]
        if s.is_paused:
            lines += ["⏸ Alerts are currently PAUSED", ""]
        lines += [f"{'✅' if c in s.subscribed_categories else '❌'} {c.value}" for c in AlertCategory]
        lines += ["", "Use /subscribe or /unsubscribe to manage."]
        return "\n".join(lines)

    async def _pause(self, chat_id: str, args: List[str]) -> str:
        await set_paused(self.db, chat_id, True)
        return "⏸ Alerts paused. Use /resume to start receiving alerts again."

    async def _resume(self, chat_id: str, args: List[str]) -> str:
        await set_paused(self.db, chat_id, False)
        return "▶️ Alerts resumed. You will now receive alerts again."

    # --------------- 查询 / 阈值 ---------------

    async def _recent(self, chat_id: str, args: List[str]) -> str:
        try:
            limit = int(args[0]) if args else 5
        except ValueError:
            limit = 5
        limit = min(max(limit, 1), 10)

        rows = await get_recent_alerts(self.db, limit=limit)
        if not rows:
            return "No recent alerts found."
        lines = [f"Recent alerts ({len(rows)})", ""]
        for r in rows:
            sent = time.strftime("%Y-%m-%d %H:%M UTC", time.gmtime(r["sent_at"] / 1000))
            lines.append(f"• [{r['category']}] {r['title'][:40]}")
            lines.append(f"  {sent}")
        return "\n".join(lines)

    async def _threshold(self, chat_id: str, args: List[str]) -> str:
        keys = "\n".join(f"• {k}: {desc}" for k, desc in THRESHOLD_KEYS.items())
        if len(args) < 2:
            s = await get_or_create_settings(self.db, chat_id)
            current = "\n".join(f"• {k}: {v}" for k, v in s.custom_thresholds.items())
            return (
                "Custom thresholds\n\n"
                + (current or "No custom thresholds set.")
                + f"\n\nKeys:\n{keys}\n\nUsage: /threshold <key> <value>\nExample: /threshold tvl_min_change 15"
            )

        key = args[0].lower()
        if key not in THRESHOLD_KEYS:
            return f"Unknown threshold: {args[0]}\n\nKeys:\n{keys}"
        try:
            value = float(args[1])
        except ValueError:
            return "Invalid value. Please provide a number."
        await set_threshold(self.db, chat_id, key, value)
        return f"✅ Threshold {key} set to {value:g}"


class CommandPoller:
    """getUpdates 长轮询；网络错误退避后继续"""

    def __init__(
        self,
        token: str,
        handler: CommandHandler,
        reply: ReplyFn,
        allowed_chat_ids: List[str],
        poll_timeout_sec: int = 25,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = f"https://api.telegram.org/bot{token}"
        self._handler = handler
        self._reply = reply
        self._allowed = {str(c) for c in allowed_chat_ids}
        self._poll_timeout = poll_timeout_sec
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.offset: Optional[int] = None

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(connect=5.0, read=self._poll_timeout + 10.0, write=10.0, pool=30.0)
            self._client = httpx.AsyncClient(timeout=timeout, trust_env=True, transport=self._transport)
        return self._client

    async def _get_updates(self) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"timeout": self._poll_timeout, "allowed_updates": '["message"]'}
        if self.offset is not None:
            params["offset"] = self.offset
        r = await self._client_get().get(f"{self._url}/getUpdates", params=params)
        r.raise_for_status()
        data = r.json()
        if not data.get("ok"):
            raise httpx.HTTPError(f"getUpdates not ok: {data.get('description')}")
        return data.get("result") or []

    async def poll_once(self) -> int:
        """
        拉一批更新并逐条处理

        返回:
            回复了的命令数
        """
        handled = 0
        for update in await self._get_updates():
            self.offset = int(update["update_id"]) + 1
            msg = update.get("message") or {}
            chat_id = str((msg.get("chat") or {}).get("id", ""))
            text = msg.get("text") or ""
            if not chat_id or not text:
                continue
            if chat_id not in self._allowed:
                print(f"[commands] 忽略未授权 chat {chat_id}")
                continue
            answer = await self._handler.handle(chat_id, text)
            if answer:
                await self._reply(chat_id, answer)
                handled += 1
        return handled

    async def run(self) -> None:
        print("[commands] polling started")
        errors = 0
        try:
            while True:
                try:
                    await self.poll_once()
                    errors = 0
                except (httpx.HTTPError, ValueError, aiosqlite.Error) as e:
                    errors += 1
                    sleep_sec = min(2 ** errors, 60) + random.uniform(0, 0.6)
                    print(f"[commands] poll error: {e!r}，{sleep_sec:.1f}s 后重试")
                    await asyncio.sleep(sleep_sec)
        except asyncio.CancelledError:
            print("[commands] cancelled")
            raise
        finally:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
            print("[commands] finished")
