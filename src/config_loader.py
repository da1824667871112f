import os
import re
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv


DEFAULTS = {
    "iiko": {
        "base_url": "https://shaurma-dzerzhinskogo-2-2.iiko.it:443/resto",
        "login": "",
        "password": "",
        "session_lifetime_seconds": 900,
        "auth_timeout": 10,
        "request_timeout": 15,
        "products_timeout": 30,
        "logout_timeout": 5,
    },
    "telegram": {
        "bot_token": "",
        "webhook_secret": "",
        "admin_ids": [],
        "transfer_group_id": None,
    },
    "audit": {"db_path": "writeoff_audit.db", "timezone": "Asia/Novosibirsk"},
    "conversation": {"idle_timeout_minutes": 60, "retry_ttl_minutes": 120, "max_options": 10},
    "server": {"host": "0.0.0.0", "port": 3000},
}

# env var -> (section, key)
ENV_OVERRIDES = {
    "IIKO_BASE_URL": ("iiko", "base_url"),
    "IIKO_LOGIN": ("iiko", "login"),
    "IIKO_PASSWORD": ("iiko", "password"),
    "TELEGRAM_BOT_TOKEN": ("telegram", "bot_token"),
    "TELEGRAM_WEBHOOK_SECRET": ("telegram", "webhook_secret"),
    "ADMIN_TELEGRAM_IDS": ("telegram", "admin_ids"),
    "TRANSFER_GROUP_ID": ("telegram", "transfer_group_id"),
    "WRITEOFF_AUDIT_DB": ("audit", "db_path"),
    "REPORT_TIMEZONE": ("audit", "timezone"),
    "PORT": ("server", "port"),
}

REQUIRED_VARS = {
    "TELEGRAM_BOT_TOKEN": {
        "description": "Telegram Bot API token",
        "pattern": r"^\d+:[A-Za-z0-9_-]{30,}$",
    },
    "IIKO_PASSWORD": {
        "description": "iiko Server API password",
        "pattern": r"^.+$",
    },
}

OPTIONAL_VARS = {
    "IIKO_BASE_URL": {"description": "iiko Server URL", "pattern": r"^https?://.+/resto/?$"},
    "IIKO_LOGIN": {"description": "iiko Server API login", "pattern": r"^\S+$"},
    "ADMIN_TELEGRAM_IDS": {"description": "Comma separated admin ids", "pattern": r"^\s*-?\d+(\s*,\s*-?\d+)*\s*$"},
    "TRANSFER_GROUP_ID": {"description": "Group chat for transfer notices", "pattern": r"^-?\d+$"},
    "WRITEOFF_AUDIT_DB": {"description": "sqlite audit log path", "pattern": r"^.+$"},
}


def _config_path() -> str:
    return os.getenv(
        "WRITEOFF_CONFIG",
        os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "bot.yml"),
    )


def _parse_ids(value: str) -> List[int]:
    return [int(part.strip()) for part in value.split(",") if part.strip()]


def _coerce(section: str, key: str, value: str):
    if key == "admin_ids":
        return _parse_ids(value)
    if key in ("transfer_group_id", "port"):
        return int(value)
    return value


def load_bot_config(path: Optional[str] = None) -> dict:
    """Defaults, then config/bot.yml, then environment variables."""
    load_dotenv()

    try:
        with open(path or _config_path(), "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        cfg = {}

    # shallow merge defaults
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in DEFAULTS.items()}
    for k, v in cfg.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k].update(v)
        else:
            merged[k] = v

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            merged[section][key] = _coerce(section, key, value)
    return merged


def validate_environment() -> Dict:
    """Check required and optional variables; never raises."""
    missing = []
    invalid = []
    warnings = []

    for name, rule in REQUIRED_VARS.items():
        value = os.getenv(name)
        if not value:
            missing.append(name)
        elif not re.match(rule["pattern"], value):
            invalid.append({"name": name, "issue": f"unexpected format for {rule['description']}"})

    for name, rule in OPTIONAL_VARS.items():
        value = os.getenv(name)
        if not value:
            warnings.append(f"{name} not set ({rule['description']}), default is used")
        elif not re.match(rule["pattern"], value):
            invalid.append({"name": name, "issue": f"unexpected format for {rule['description']}"})

    return {
        "ok": not missing and not invalid,
        "missing": missing,
        "invalid": invalid,
        "warnings": warnings,
    }
