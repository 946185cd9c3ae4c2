"""
tests/test_config.py
ops/*.yml 读取：默认值、section 合并、环境变量覆盖
"""

from radar.config import AlertsConfig, alerts_config, load_cfg, load_keyword_sets
from radar.models import AlertCategory, AlertPriority


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
    cfg = load_cfg(tmp_path / "none.yml")
    acfg = alerts_config(cfg)
    assert acfg.global_cooldown_ms == 60_000
    assert acfg.dedup_window_ms == 86_400_000
    assert acfg.category(AlertCategory.SECURITY).priority is AlertPriority.CRITICAL
    assert acfg.category(AlertCategory.SECURITY).cooldown_ms == 0
    assert acfg.category(AlertCategory.TVL_CHANGE).thresholds["minTvlUsd"] == 1_000_000
    assert cfg["telegram"]["chat_ids"] == []


def test_partial_override_and_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "abc")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "-100")
    monkeypatch.setenv("RADAR_DB", "/tmp/x.db")
    p = tmp_path / "config.yml"
    p.write_text(
        "app:\n"
        "  database_path: ${RADAR_DB}\n"
        "alerts:\n"
        "  global_cooldown_ms: 5000\n"
        "  categories:\n"
        "    narrative: {enabled: false}\n"
        "    BOGUS: {enabled: true}\n",
        encoding="utf-8",
    )
    cfg = load_cfg(p)
    assert cfg["app"]["database_path"] == "/tmp/x.db"
    assert cfg["app"]["max_alert_history_days"] == 30
    assert cfg["telegram"] == {**cfg["telegram"], "token": "abc", "chat_ids": ["-100"]}

    acfg = alerts_config(cfg)
    assert acfg.global_cooldown_ms == 5000
    nar = acfg.category(AlertCategory.NARRATIVE)
    assert not nar.enabled
    # 只改了 enabled，其余沿用默认
    assert nar.cooldown_ms == 3_600_000
    assert nar.priority is AlertPriority.LOW
    assert set(acfg.categories) == set(AlertCategory)


def test_bad_values_fall_back(tmp_path):
    acfg = AlertsConfig.from_dict({
        "global_cooldown_ms": -5,
        "categories": {"SECURITY": {"priority": 9, "cooldown_ms": None}},
    })
    assert acfg.global_cooldown_ms == 0
    sec = acfg.category(AlertCategory.SECURITY)
    assert sec.priority is AlertPriority.MEDIUM
    assert sec.cooldown_ms == 0

    broken = tmp_path / "broken.yml"
    broken.write_text("app: [1, 2\n", encoding="utf-8")
    assert load_cfg(broken)["app"]["name"] == "DeFi Radar"


def test_keywords_file(tmp_path):
    p = tmp_path / "keywords.yml"
    p.write_text(
        "categories:\n"
        "  SECURITY:\n"
        "    primary: [exploit]\n"
        "    accounts: [PeckShieldAlert]\n"
        "  governance:\n"
        "    primary: [vote]\n",
        encoding="utf-8",
    )
    sets = load_keyword_sets(p)
    assert list(sets) == [AlertCategory.GOVERNANCE, AlertCategory.SECURITY]
    assert sets[AlertCategory.SECURITY].accounts == ["PeckShieldAlert"]
    assert sets[AlertCategory.SECURITY].negative == []
