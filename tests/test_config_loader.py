import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

import config_loader
from config_loader import load_bot_config, validate_environment

ALL_VARS = list(config_loader.ENV_OVERRIDES) + list(config_loader.REQUIRED_VARS)


def _clear_env(monkeypatch):
    monkeypatch.setattr(config_loader, "load_dotenv", lambda: None)
    for name in ALL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_yaml_overrides_defaults(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    path = tmp_path / "bot.yml"
    path.write_text("iiko:\n  request_timeout: 20\nconversation:\n  max_options: 5\n", encoding="utf-8")

    cfg = load_bot_config(str(path))

    assert cfg["iiko"]["request_timeout"] == 20
    assert cfg["iiko"]["products_timeout"] == 30
    assert cfg["conversation"]["max_options"] == 5
    assert cfg["audit"]["timezone"] == "Asia/Novosibirsk"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("IIKO_PASSWORD", "pw")
    monkeypatch.setenv("ADMIN_TELEGRAM_IDS", "1, 2,-3")
    monkeypatch.setenv("TRANSFER_GROUP_ID", "-100200")
    monkeypatch.setenv("PORT", "8080")

    cfg = load_bot_config(str(tmp_path / "missing.yml"))

    assert cfg["iiko"]["password"] == "pw"
    assert cfg["telegram"]["admin_ids"] == [1, 2, -3]
    assert cfg["telegram"]["transfer_group_id"] == -100200
    assert cfg["server"]["port"] == 8080


def test_defaults_are_not_mutated(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("IIKO_LOGIN", "someone")

    load_bot_config(str(tmp_path / "missing.yml"))

    assert config_loader.DEFAULTS["iiko"]["login"] == ""


def test_validate_environment(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "not-a-token")
    monkeypatch.setenv("IIKO_BASE_URL", "https://x.iiko.it/resto")

    result = validate_environment()

    assert result["ok"] is False
    assert result["missing"] == ["IIKO_PASSWORD"]
    assert [i["name"] for i in result["invalid"]] == ["TELEGRAM_BOT_TOKEN"]
    assert not any(w.startswith("IIKO_BASE_URL") for w in result["warnings"])


def test_validate_environment_ok(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123456:" + "A" * 35)
    monkeypatch.setenv("IIKO_PASSWORD", "pw")

    assert validate_environment()["ok"] is True
