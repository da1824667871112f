#!/usr/bin/env python
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from config_loader import load_bot_config, validate_environment
from iiko_errors import AuthError
from iiko_session import IikoSessionManager

# Load .env and config/bot.yml
cfg = load_bot_config()
env = validate_environment()

print("Environment Variables Status:")
print("=" * 40)

for name in env["missing"]:
    print(f"✗ {name}: NOT SET")
for item in env["invalid"]:
    print(f"✗ {item['name']}: {item['issue']}")
for warning in env["warnings"]:
    print(f"- {warning}")

print(f"\niiko URL: {cfg['iiko']['base_url']}")
print(f"Audit log: {cfg['audit']['db_path']} ({cfg['audit']['timezone']})")

if "--check-iiko" in sys.argv:
    session = IikoSessionManager(cfg["iiko"]["base_url"], cfg["iiko"]["login"], cfg["iiko"]["password"])
    try:
        session.authenticate()
        print("✓ iiko authentication: OK")
    except AuthError as e:
        print(f"✗ iiko authentication failed: {e}")
        sys.exit(1)
    finally:
        session.logout()

sys.exit(0 if env["ok"] else 1)
