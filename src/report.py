import logging
from collections import Counter
from datetime import datetime
from typing import Dict
from zoneinfo import ZoneInfo

from audit_store import DATE_FORMAT, AuditStore
from iiko_errors import AuditStoreError
from writeoff_models import AuditStatus

logger = logging.getLogger(__name__)

UNKNOWN_STORE = "Неизвестный склад"
NO_ACCOUNT = "Без счёта"


def empty_summary() -> Dict:
    return {
        "total": 0,
        "by_status": {status.value: 0 for status in AuditStatus},
        "by_dimension": {"store": {}, "account": {}, "operation": {}},
        "recent": [],
    }


def today_label(timezone: str = "Asia/Novosibirsk") -> str:
    return datetime.now(ZoneInfo(timezone)).strftime(DATE_FORMAT)


def summarize(audit_store: AuditStore, date_label: str, recent_n: int = 10) -> Dict:
    """Counts over the audit rows whose timestamp starts with date_label"""
    try:
        records = audit_store.query_by_date_prefix(date_label)
    except AuditStoreError as e:
        logger.error(f"❌ Could not read audit log for {date_label}: {e}")
        return empty_summary()

    summary = empty_summary()
    by_store: Counter = Counter()
    by_account: Counter = Counter()
    by_operation: Counter = Counter()

    for r in records:
        summary["by_status"][AuditStatus(r.status).value] += 1
        by_store[r.store_name or UNKNOWN_STORE] += 1
        by_account[r.account_name or NO_ACCOUNT] += 1
        by_operation[r.operation] += 1

    summary["total"] = len(records)
    summary["by_dimension"] = {
        "store": dict(by_store),
        "account": dict(by_account),
        "operation": dict(by_operation),
    }
    summary["recent"] = [
        {
            "timestamp": r.created_at,
            "store_name": r.store_name,
            "account_name": r.account_name,
            "raw_text": r.raw_text,
            "status": AuditStatus(r.status).value,
            "doc_number": r.external_doc_number or "",
        }
        for r in records[-recent_n:]
    ] if recent_n > 0 else []
    return summary


def format_report(summary: Dict, date_label: str) -> str:
    by_status = summary["by_status"]
    success = by_status.get(AuditStatus.OK.value, 0) + by_status.get(AuditStatus.SENT.value, 0)
    text = (
        f"📊 Отчёт за {date_label}\n\n"
        f"Всего операций: {summary['total']}\n"
        f"✅ Успешно: {success}\n"
        f"❌ Ошибки: {by_status.get(AuditStatus.ERROR.value, 0)}\n"
        f"⏳ Не отправлено: {by_status.get(AuditStatus.NEW.value, 0)}\n"
    )
    stores = summary["by_dimension"].get("store", {})
    if stores:
        text += "\nПо складам:\n" + "\n".join(f"- {name}: {count}" for name, count in stores.items()) + "\n"
    accounts = summary["by_dimension"].get("account", {})
    if accounts:
        text += "\nПо счетам:\n" + "\n".join(f"- {name}: {count}" for name, count in accounts.items()) + "\n"
    if summary["recent"]:
        text += "\nПоследние операции:\n"
        for row in summary["recent"]:
            doc = f" №{row['doc_number']}" if row["doc_number"] else ""
            text += f"- {row['timestamp']} {row['store_name']} [{row['status']}]{doc}\n"
    return text.rstrip()
