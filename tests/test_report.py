import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from audit_store import AuditStore
from iiko_errors import AuditStoreError
from report import format_report, summarize
from writeoff_models import AuditRecord, AuditStatus


def _record(status, store_name="Кухня", account_name="Порча", operation="writeoff", number=None, minute=0):
    return AuditRecord(
        operation=operation,
        store_id="s",
        store_name=store_name,
        raw_text="помидор 5 кг",
        items=[],
        user_id=1,
        account_name=account_name,
        status=status,
        external_doc_number=number,
        created_at=f"01.03.2025 10:{minute:02d}:00",
    )


def _audit(records):
    store = MagicMock(spec=AuditStore)
    store.query_by_date_prefix.return_value = records
    return store


def test_summary_counts_statuses_and_dimensions():
    audit = _audit([
        _record(AuditStatus.OK, number="1", minute=1),
        _record(AuditStatus.ERROR, minute=2),
        _record(AuditStatus.SENT, store_name="Бар", account_name=None, operation="transfer", minute=3),
        _record(AuditStatus.NEW, minute=4),
    ])

    summary = summarize(audit, "01.03.2025")

    audit.query_by_date_prefix.assert_called_once_with("01.03.2025")
    assert summary["total"] == 4
    assert summary["by_status"] == {"NEW": 1, "OK": 1, "ERROR": 1, "SENT": 1}
    assert summary["by_dimension"]["store"] == {"Кухня": 3, "Бар": 1}
    assert summary["by_dimension"]["account"] == {"Порча": 3, "Без счёта": 1}
    assert summary["by_dimension"]["operation"] == {"writeoff": 3, "transfer": 1}


def test_recent_keeps_latest_rows():
    audit = _audit([_record(AuditStatus.OK, minute=m) for m in range(15)])

    summary = summarize(audit, "01.03.2025", recent_n=3)

    assert [r["timestamp"] for r in summary["recent"]] == [
        "01.03.2025 10:12:00", "01.03.2025 10:13:00", "01.03.2025 10:14:00",
    ]
    assert summarize(audit, "01.03.2025", recent_n=0)["recent"] == []


def test_empty_day():
    summary = summarize(_audit([]), "02.03.2025")

    assert summary["total"] == 0
    assert summary["by_dimension"] == {"store": {}, "account": {}, "operation": {}}


def test_unreadable_audit_log_gives_zero_summary():
    audit = MagicMock(spec=AuditStore)
    audit.query_by_date_prefix.side_effect = AuditStoreError("locked")

    assert summarize(audit, "01.03.2025")["total"] == 0


def test_format_report():
    summary = summarize(_audit([
        _record(AuditStatus.OK, number="0042"),
        _record(AuditStatus.SENT),
        _record(AuditStatus.ERROR),
    ]), "01.03.2025")

    text = format_report(summary, "01.03.2025")

    assert text.startswith("📊 Отчёт за 01.03.2025")
    assert "Всего операций: 3" in text
    assert "✅ Успешно: 2" in text
    assert "❌ Ошибки: 1" in text
    assert "- Кухня: 3" in text
    assert "[OK] №0042" in text
