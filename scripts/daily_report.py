import argparse
import os
import sys

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from audit_store import SqliteAuditStore
from config_loader import load_bot_config
from iiko_errors import WriteoffBotError
from report import format_report, summarize, today_label
from telegram_notifier import TelegramNotifier


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Daily write-off / transfer report from the audit log")
    parser.add_argument("--date", help="dd.mm.yyyy, defaults to today in the report timezone")
    parser.add_argument("--recent", type=int, default=10, help="number of latest operations to include")
    parser.add_argument("--send", action="store_true", help="send to ADMIN_TELEGRAM_IDS instead of printing")
    args = parser.parse_args(argv)

    cfg = load_bot_config()
    audit_store = SqliteAuditStore(cfg["audit"]["db_path"], cfg["audit"]["timezone"])
    audit_store.init_db()

    date_label = args.date or today_label(cfg["audit"]["timezone"])
    text = format_report(summarize(audit_store, date_label, args.recent), date_label)

    if not args.send:
        print(text)
        return 0

    admin_ids = cfg["telegram"]["admin_ids"]
    if not admin_ids:
        print("⚠️ ADMIN_TELEGRAM_IDS is empty, nothing to send")
        return 1

    notifier = TelegramNotifier(cfg["telegram"]["bot_token"])
    failed = 0
    for chat_id in admin_ids:
        try:
            notifier.send_text(chat_id, text)
            print(f"✅ Report sent to {chat_id}")
        except WriteoffBotError as e:
            print(f"❌ Could not send report to {chat_id}: {e}")
            failed += 1
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
