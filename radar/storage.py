# -*- coding: utf-8 -*-
"""
radar/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表
- 已放行告警写入、最近告警查询、按分类计数、过期清理
- 去重指纹：exists_within / insert（AlertStore，给 AlertGate 用）
- 协议 TVL 历史（TrendTracker 状态快照）
- 每个 chat 的订阅/暂停/自定义阈值
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from radar.models import Alert, AlertCategory, DestinationSettings
from radar.utils import DAY_MS, now_ms

ALL_CATEGORIES = [c.value for c in AlertCategory]

# --------- 建表 SQL ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS alerts (
    id                TEXT PRIMARY KEY,
    category          TEXT NOT NULL,
    priority          INTEGER NOT NULL,
    source            TEXT NOT NULL,
    title             TEXT NOT NULL,
    summary           TEXT NOT NULL,
    details_json      TEXT NOT NULL,
    metadata_json     TEXT NOT NULL,
    deduplication_key TEXT NOT NULL,
    created_at        INTEGER NOT NULL,
    sent_at           INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_alerts_dedup    ON alerts(deduplication_key);
CREATE INDEX IF NOT EXISTS idx_alerts_sent_at  ON alerts(sent_at DESC);
CREATE INDEX IF NOT EXISTS idx_alerts_category ON alerts(category);

CREATE TABLE IF NOT EXISTS dedup (
    fingerprint   TEXT NOT NULL,
    approved_at   INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dedup_fp ON dedup(fingerprint, approved_at DESC);

CREATE TABLE IF NOT EXISTS protocol_state (
    slug              TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    state_json        TEXT NOT NULL,
    updated_at        INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS user_settings (
    chat_id               TEXT PRIMARY KEY,
    subscribed_categories TEXT NOT NULL,
    custom_thresholds     TEXT NOT NULL DEFAULT '{}',
    is_paused             INTEGER NOT NULL DEFAULT 0,
    created_at            INTEGER NOT NULL,
    updated_at            INTEGER NOT NULL
);
"""


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """初始化数据库并返回连接。"""
    if str(db_path) != ":memory:":
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(p)
    db = await aiosqlite.connect(db_path)
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    for stmt in SCHEMA.split(";"):
        s = stmt.strip()
        if s:
            await db.execute(s + ";")
    await db.commit()
    return db


# --------- 去重指纹 ---------
class AlertStore:
    """AlertGate 用的去重存储"""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def exists_within(self, fingerprint: str, window_ms: int, now: Optional[int] = None) -> bool:
        if not fingerprint:
            return False
        cutoff = (now if now is not None else now_ms()) - window_ms
        sql = "SELECT 1 FROM dedup WHERE fingerprint = ? AND approved_at > ? LIMIT 1;"
        async with self._db.execute(sql, (fingerprint, cutoff)) as cur:
            row = await cur.fetchone()
        return row is not None

    async def insert(self, fingerprint: str, approval_time: int) -> None:
        if not fingerprint:
            raise ValueError("insert: missing fingerprint")
        await self._db.execute(
            "INSERT INTO dedup(fingerprint, approved_at) VALUES(?, ?);",
            (fingerprint, int(approval_time)),
        )
        await self._db.commit()

    async def purge(self, older_than_ms: int) -> int:
        cur = await self._db.execute("DELETE FROM dedup WHERE approved_at < ?;", (int(older_than_ms),))
        await self._db.commit()
        return cur.rowcount or 0


# --------- 告警记录 ---------
async def save_alert(db: aiosqlite.Connection, alert: Alert, fingerprint: str,
                     sent_at: Optional[int] = None) -> None:
    d = alert.to_dict()
    sql = """
    INSERT INTO alerts(
        id, category, priority, source, title, summary,
        details_json, metadata_json, deduplication_key, created_at, sent_at
    ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
    ON CONFLICT(id) DO NOTHING
    """
    await db.execute(sql, (
        d["id"], d["category"], d["priority"], d["source"], d["title"], d["summary"],
        json.dumps(d["details"], ensure_ascii=False),
        json.dumps(d["metadata"], ensure_ascii=False),
        fingerprint, d["created_at"], int(sent_at if sent_at is not None else now_ms()),
    ))
    await db.commit()


async def get_recent_alerts(
    db: aiosqlite.Connection,
    *,
    limit: int = 10,
    category: Optional[AlertCategory] = None,
) -> List[Dict[str, Any]]:
    sql = """
    SELECT id, category, priority, source, title, summary,
           details_json, metadata_json, deduplication_key, created_at, sent_at
      FROM alerts
    """
    params: List[Any] = []
    if category is not None:
        sql += " WHERE category = ?"
        params.append(AlertCategory(category).value)
    sql += " ORDER BY sent_at DESC LIMIT ?;"
    params.append(int(limit))

    out: List[Dict[str, Any]] = []
    async with db.execute(sql, params) as cur:
        async for row in cur:
            out.append({
                "id": row[0],
                "category": row[1],
                "priority": row[2],
                "source": row[3],
                "title": row[4],
                "summary": row[5],
                "details": json.loads(row[6] or "{}"),
                "metadata": json.loads(row[7] or "{}"),
                "deduplication_key": row[8],
                "created_at": row[9],
                "sent_at": row[10],
            })
    return out


async def get_alert_counts(db: aiosqlite.Connection, since_ms: int) -> Dict[str, int]:
    sql = "SELECT category, COUNT(*) FROM alerts WHERE sent_at > ? GROUP BY category;"
    counts: Dict[str, int] = {}
    async with db.execute(sql, (int(since_ms),)) as cur:
        async for row in cur:
            counts[row[0]] = row[1]
    return counts


async def delete_old_alerts(db: aiosqlite.Connection, max_days: int, now: Optional[int] = None) -> int:
    """删除超过 max_days 的告警；去重记录由 AlertStore.purge 按去重窗口清理"""
    cutoff = (now if now is not None else now_ms()) - max_days * DAY_MS
    cur = await db.execute("DELETE FROM alerts WHERE sent_at < ?;", (cutoff,))
    deleted = cur.rowcount or 0
    await db.commit()
    if deleted > 0:
        print(f"[storage] 清理 {deleted} 条过期告警")
    return deleted


# --------- 协议 TVL 历史 ---------
async def save_protocol_states(db: aiosqlite.Connection, state: Dict[str, Dict[str, Any]]) -> int:
    ts = now_ms()
    rows = [
        (slug, str(s.get("name") or slug), json.dumps(s, ensure_ascii=False), ts)
        for slug, s in state.items()
    ]
    await db.executemany("""
    INSERT INTO protocol_state(slug, name, state_json, updated_at) VALUES(?,?,?,?)
    ON CONFLICT(slug) DO UPDATE SET
        name       = excluded.name,
        state_json = excluded.state_json,
        updated_at = excluded.updated_at
    """, rows)
    await db.commit()
    return len(rows)


async def load_protocol_states(db: aiosqlite.Connection) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    async with db.execute("SELECT slug, state_json FROM protocol_state;") as cur:
        async for row in cur:
            try:
                out[row[0]] = json.loads(row[1])
            except json.JSONDecodeError:
                print(f"[storage] protocol_state {row[0]} JSON 损坏，跳过")
    return out


# --------- chat 订阅设置 ---------
def _parse_categories(raw: str) -> List[AlertCategory]:
    try:
        names = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return list(AlertCategory)
    cats = [AlertCategory.parse(n) for n in names or []]
    return [c for c in cats if c is not None]


async def get_or_create_settings(db: aiosqlite.Connection, chat_id: str) -> DestinationSettings:
    chat_id = str(chat_id)
    sql = """
    SELECT subscribed_categories, custom_thresholds, is_paused
      FROM user_settings WHERE chat_id = ?;
    """
    async with db.execute(sql, (chat_id,)) as cur:
        row = await cur.fetchone()

    if row is None:
        ts = now_ms()
        await db.execute("""
        INSERT INTO user_settings(chat_id, subscribed_categories, custom_thresholds, is_paused,
                                  created_at, updated_at)
        VALUES(?, ?, '{}', 0, ?, ?)
        ON CONFLICT(chat_id) DO NOTHING
        """, (chat_id, json.dumps(ALL_CATEGORIES), ts, ts))
        await db.commit()
        print(f"[storage] 新建 chat 设置: {chat_id}")
        return DestinationSettings(chat_id=chat_id)

    try:
        thresholds = json.loads(row[1] or "{}")
    except json.JSONDecodeError:
        thresholds = {}
    return DestinationSettings(
        chat_id=chat_id,
        subscribed_categories=_parse_categories(row[0]),
        is_paused=bool(row[2]),
        custom_thresholds=thresholds,
    )


async def _update_settings(db: aiosqlite.Connection, chat_id: str, column: str, value: Any) -> None:
    # column 只来自本模块内部的固定字段名
    await db.execute(
        f"UPDATE user_settings SET {column} = ?, updated_at = ? WHERE chat_id = ?;",
        (value, now_ms(), str(chat_id)),
    )
    await db.commit()


async def subscribe(db: aiosqlite.Connection, chat_id: str, category: AlertCategory) -> bool:
    settings = await get_or_create_settings(db, chat_id)
    if category in settings.subscribed_categories:
        return False
    cats = [c.value for c in settings.subscribed_categories] + [AlertCategory(category).value]
    await _update_settings(db, chat_id, "subscribed_categories", json.dumps(cats))
    print(f"[storage] chat {chat_id} 订阅 {AlertCategory(category).value}")
    return True


async def unsubscribe(db: aiosqlite.Connection, chat_id: str, category: AlertCategory) -> bool:
    settings = await get_or_create_settings(db, chat_id)
    if category not in settings.subscribed_categories:
        return False
    cats = [c.value for c in settings.subscribed_categories if c != category]
    await _update_settings(db, chat_id, "subscribed_categories", json.dumps(cats))
    print(f"[storage] chat {chat_id} 取消订阅 {AlertCategory(category).value}")
    return True


async def set_paused(db: aiosqlite.Connection, chat_id: str, paused: bool) -> None:
    await get_or_create_settings(db, chat_id)
    await _update_settings(db, chat_id, "is_paused", 1 if paused else 0)
    print(f"[storage] chat {chat_id} {'暂停' if paused else '恢复'}推送")


async def set_threshold(db: aiosqlite.Connection, chat_id: str, key: str, value: float) -> None:
    settings = await get_or_create_settings(db, chat_id)
    thresholds = {**settings.custom_thresholds, key: value}
    await _update_settings(db, chat_id, "custom_thresholds", json.dumps(thresholds))


async def get_active_chat_ids(db: aiosqlite.Connection) -> List[str]:
    async with db.execute("SELECT chat_id FROM user_settings WHERE is_paused = 0;") as cur:
        return [row[0] async for row in cur]
