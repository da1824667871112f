import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from audit_store import AuditStore
from iiko_client import IikoClient
from iiko_errors import AuditStoreError, TransportError
from submission import Outcome, SubmissionCoordinator, build_comment
from writeoff_models import (
    AuditStatus,
    ConversationState,
    DocumentResult,
    Operation,
    ParsedItem,
    Step,
)


@pytest.fixture
def audit():
    store = MagicMock(spec=AuditStore)
    store.append.return_value = 11
    return store


@pytest.fixture
def client():
    return MagicMock(spec=IikoClient)


@pytest.fixture
def coordinator(audit, client):
    return SubmissionCoordinator(audit, client)


def _state(items, operation=Operation.WRITEOFF):
    return ConversationState(
        user_id=5,
        step=Step.CONFIRM,
        operation=operation,
        store_id="s1",
        store_name="Кухня",
        account_id="a1" if operation == Operation.WRITEOFF else None,
        account_name="Порча" if operation == Operation.WRITEOFF else None,
        target_store_id="s2" if operation == Operation.TRANSFER else None,
        target_store_name="Бар" if operation == Operation.TRANSFER else None,
        items=tuple(items),
        raw_lines=("помидор 5 кг", "капуста 2"),
    )


RESOLVED = ParsedItem("помидор", 5.0, "кг", product_id="p1", matched_name="Помидор")
UNRESOLVED = ParsedItem("капуста", 2.0, "кг")
BROKEN = ParsedItem("просто текст", 0, "кг", parse_error=True)


def test_comment_mentions_operation_and_user():
    assert build_comment(Operation.WRITEOFF, "chef", 5) == "Списание через Telegram. User: chef"
    assert build_comment(Operation.TRANSFER, None, 5) == "Перемещение через Telegram. User: 5"


def test_success_logs_first_then_marks_ok(coordinator, audit, client):
    client.create_writeoff_document.return_value = DocumentResult(True, "d1", "0042")

    result = coordinator.submit(_state([RESOLVED, UNRESOLVED, BROKEN]), username="chef")

    assert result.outcome == Outcome.SUCCESS
    assert result.document_number == "0042"
    assert result.submitted == [RESOLVED]
    assert result.skipped == [UNRESOLVED]

    record = audit.append.call_args.args[0]
    assert record.status == AuditStatus.NEW
    assert record.raw_text == "помидор 5 кг\nкапуста 2"
    assert record.items == [RESOLVED, UNRESOLVED, BROKEN]

    client.create_writeoff_document.assert_called_once_with(
        "s1", "a1", [RESOLVED], "Списание через Telegram. User: chef"
    )
    audit.update.assert_called_once_with(
        11, external_doc_id="d1", external_doc_number="0042", status=AuditStatus.OK
    )


def test_success_without_document_reference_is_sent(coordinator, audit, client):
    client.create_writeoff_document.return_value = DocumentResult(True)

    coordinator.submit(_state([RESOLVED]))

    assert audit.update.call_args.kwargs["status"] == AuditStatus.SENT


def test_zero_resolved_items_never_calls_iiko(coordinator, audit, client):
    result = coordinator.submit(_state([UNRESOLVED, BROKEN]))

    assert result.outcome == Outcome.NO_RESOLVED_ITEMS
    client.create_writeoff_document.assert_not_called()
    audit.append.assert_called_once()
    audit.update.assert_called_once_with(
        11, status=AuditStatus.ERROR, error_message="Ни один товар не найден в номенклатуре iiko"
    )


def test_rejection_marks_error_and_keeps_pending_retry(coordinator, audit, client):
    client.create_writeoff_document.return_value = DocumentResult(False, errors=["x"])

    result = coordinator.submit(_state([RESOLVED, UNRESOLVED]))

    assert result.outcome == Outcome.REJECTED
    assert result.error_message == "x"
    audit.update.assert_called_once_with(11, status=AuditStatus.ERROR, error_message="x")
    pending = result.pending_retry
    assert pending.row_ref == 11
    assert pending.items == [RESOLVED]
    assert pending.skipped == [UNRESOLVED]
    assert pending.expire_at is not None


def test_rejection_without_errors_has_generic_message(coordinator, client):
    client.create_writeoff_document.return_value = DocumentResult(False)

    result = coordinator.submit(_state([RESOLVED]))

    assert result.error_message == "Неизвестная ошибка"


def test_transport_failure_leaves_row_new(coordinator, audit, client):
    client.create_writeoff_document.side_effect = TransportError("timeout")

    result = coordinator.submit(_state([RESOLVED]))

    assert result.outcome == Outcome.FAILED
    assert result.row_ref == 11
    audit.update.assert_not_called()


def test_audit_failure_stops_before_iiko(coordinator, audit, client):
    audit.append.side_effect = AuditStoreError("disk full")

    result = coordinator.submit(_state([RESOLVED]))

    assert result.outcome == Outcome.AUDIT_FAILED
    assert result.row_ref is None
    client.create_writeoff_document.assert_not_called()


def test_retry_reuses_the_same_row(coordinator, audit, client):
    client.create_writeoff_document.side_effect = [
        DocumentResult(False, errors=["locked"]),
        DocumentResult(True, "d2", "0043"),
    ]
    rejected = coordinator.submit(_state([RESOLVED]))

    result = coordinator.retry(rejected.pending_retry)

    assert result.outcome == Outcome.SUCCESS
    audit.append.assert_called_once()
    assert audit.update.call_args.args == (11,)
    assert audit.update.call_args.kwargs["status"] == AuditStatus.OK


def test_transfer_uses_transfer_document(coordinator, client):
    client.create_transfer_document.return_value = DocumentResult(True, "t1", "7")

    result = coordinator.submit(_state([RESOLVED], operation=Operation.TRANSFER), username="bar")

    assert result.outcome == Outcome.SUCCESS
    client.create_writeoff_document.assert_not_called()
    client.create_transfer_document.assert_called_once_with(
        "s1", "s2", [RESOLVED], "Перемещение через Telegram. User: bar"
    )


def test_failed_status_update_does_not_change_outcome(coordinator, audit, client):
    client.create_writeoff_document.return_value = DocumentResult(True, "d1", "1")
    audit.update.side_effect = AuditStoreError("locked")

    assert coordinator.submit(_state([RESOLVED])).outcome == Outcome.SUCCESS
