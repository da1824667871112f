import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from audit_store import AuditStore
from catalog_cache import CatalogCache
from conversation import ConversationMachine, ConversationStore, Trigger, classify
from iiko_client import IikoClient
from iiko_errors import AuditStoreError, TransportError
from submission import Outcome, SubmissionCoordinator, SubmissionResult
from writeoff_models import (
    AuditRecord,
    AuditStatus,
    Event,
    Operation,
    ParsedItem,
    PendingRetry,
    Step,
)

USER = 42


def command(name):
    return Event(USER, "command", f"/{name}", username="chef")


def select(kind, entry_id):
    return Event(USER, "selection", f"{kind}:{entry_id}", username="chef")


def text(payload):
    return Event(USER, "text", payload, username="chef")


@pytest.fixture
def client():
    c = MagicMock(spec=IikoClient)
    c.get_stores.return_value = [{"id": "s1", "name": "Кухня"}, {"id": "s2", "name": "Бар"}]
    c.get_expense_accounts.return_value = [{"id": "a1", "name": "Порча"}]
    c.get_products.return_value = [
        {"id": "p1", "name": "Помидор", "mainUnit": "kg"},
        {"id": "p2", "name": "Помидоры черри", "mainUnit": "kg"},
        {"id": "p3", "name": "Яйцо куриное", "mainUnit": "pcs"},
    ]
    return c


@pytest.fixture
def catalog(client):
    cache = CatalogCache(client)
    cache.refresh()
    return cache


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def coordinator():
    return MagicMock(spec=SubmissionCoordinator)


@pytest.fixture
def audit():
    return MagicMock(spec=AuditStore)


@pytest.fixture
def machine(store, catalog, coordinator, audit):
    return ConversationMachine(store, catalog, coordinator, audit)


def step(store):
    return store.get(USER).step


def to_collect_items(machine):
    machine.handle(command("writeoff"))
    machine.handle(select("store", "s1"))
    machine.handle(select("account", "a1"))


def to_confirm(machine):
    to_collect_items(machine)
    machine.handle(text("помидор 5 кг; капуста 2"))
    machine.handle(command("done"))


# ============ classify ============

def test_classify_commands_and_selections():
    assert classify(Event(1, "command", "/start")) == (Trigger.MENU, "")
    assert classify(Event(1, "command", "/start_writeoff")) == (Trigger.START_WRITEOFF, "")
    assert classify(Event(1, "command", "/cancel@iiko_bot")) == (Trigger.CANCEL, "")
    assert classify(Event(1, "command", "confirm")) == (Trigger.CONFIRM, "")
    assert classify(Event(1, "selection", "store:s1")) == (Trigger.SELECT_STORE, "s1")
    assert classify(Event(1, "text", " помидор 5 ")) == (Trigger.TEXT, "помидор 5")


def test_classify_rejects_malformed_input():
    assert classify(Event(1, "command", "/store"))[0] == Trigger.UNKNOWN
    assert classify(Event(1, "command", "/whatever"))[0] == Trigger.UNKNOWN
    assert classify(Event(1, "selection", "store:"))[0] == Trigger.UNKNOWN
    assert classify(Event(1, "sticker", "x"))[0] == Trigger.UNKNOWN


# ============ flow ============

def test_writeoff_flow_reaches_confirm(machine, store):
    action = machine.handle(command("writeoff"))
    assert step(store) == Step.SELECT_STORE
    assert [o.data for o in action.options] == ["store:s1", "store:s2", "cancel"]

    action = machine.handle(select("store", "s1"))
    assert step(store) == Step.SELECT_ACCOUNT
    assert action.options[0].data == "account:a1"

    machine.handle(select("account", "a1"))
    assert step(store) == Step.COLLECT_ITEMS

    action = machine.handle(text("помидор 5 кг; капуста 2"))
    state = store.get(USER)
    assert [i.product_id for i in state.items] == ["p1", None]
    assert "капуста" in action.text

    action = machine.handle(command("done"))
    assert step(store) == Step.CONFIRM
    assert "Подтвердить?" in action.text
    assert "Товары без ID не будут отправлены" in action.text


def test_zero_accounts_skips_account_step(machine, store, catalog):
    catalog.accounts = []

    machine.handle(command("writeoff"))
    machine.handle(select("store", "s1"))

    state = store.get(USER)
    assert state.step == Step.COLLECT_ITEMS
    assert state.account_id is None
    assert state.account_name == "Не указан"


def test_unknown_store_keeps_step(machine, store):
    machine.handle(command("writeoff"))

    action = machine.handle(select("store", "nope"))

    assert step(store) == Step.SELECT_STORE
    assert "Склад не найден" in action.text


def test_stores_unavailable(machine, store, catalog, client):
    catalog.stores = []
    client.get_stores.side_effect = TransportError("down")

    action = machine.handle(command("writeoff"))

    assert step(store) == Step.IDLE
    assert "Не удалось загрузить склады" in action.text


@pytest.mark.parametrize("setup", [
    lambda m: (m.handle(command("writeoff")), m.handle(select("store", "s1"))),
    to_collect_items,
    to_confirm,
])
def test_cancel_always_returns_to_idle(machine, store, setup):
    setup(machine)
    assert step(store) != Step.IDLE

    action = machine.handle(command("cancel"))

    assert step(store) == Step.IDLE
    assert action.text == "Действие отменено."


def test_done_without_items_keeps_collecting(machine, store):
    to_collect_items(machine)

    action = machine.handle(command("done"))

    assert step(store) == Step.COLLECT_ITEMS
    assert "Список позиций пуст" in action.text


def test_out_of_place_events_give_guidance_without_state_change(machine, store):
    action = machine.handle(command("confirm"))
    assert step(store) == Step.IDLE
    assert action.text.startswith("Используй /start")

    to_collect_items(machine)
    before = store.get(USER)
    action = machine.handle(select("store", "s2"))
    after = store.get(USER)

    assert after.step == Step.COLLECT_ITEMS
    assert after.store_id == before.store_id
    assert "недоступно" in action.text


def test_search_select_and_quantity(machine, store):
    to_collect_items(machine)

    action = machine.handle(text("помидор"))
    assert step(store) == Step.SELECT_PRODUCT
    assert [o.data for o in action.options[:2]] == ["product:p1", "product:p2"]

    # not offered in this search
    machine.handle(select("product", "p3"))
    assert step(store) == Step.SELECT_PRODUCT

    action = machine.handle(select("product", "p2"))
    assert step(store) == Step.ENTER_QUANTITY
    assert "(кг)" in action.text

    action = machine.handle(text("много"))
    assert step(store) == Step.ENTER_QUANTITY
    assert "Не понял количество" in action.text

    machine.handle(text("2,5"))
    state = store.get(USER)
    assert state.step == Step.COLLECT_ITEMS
    assert state.items == (ParsedItem("Помидоры черри", 2.5, "кг", product_id="p2", matched_name="Помидоры черри"),)


def test_search_without_results_stays_collecting(machine, store):
    to_collect_items(machine)

    action = machine.handle(text("ананас"))

    assert step(store) == Step.COLLECT_ITEMS
    assert "ничего не найдено" in action.text


def test_edit_clears_items(machine, store):
    to_confirm(machine)

    machine.handle(command("edit"))

    state = store.get(USER)
    assert state.step == Step.COLLECT_ITEMS
    assert state.items == ()
    assert state.store_id == "s1"


def test_transfer_flow_asks_for_target_store(machine, store):
    machine.handle(command("transfer"))
    action = machine.handle(select("store", "s1"))

    assert step(store) == Step.SELECT_TARGET_STORE
    assert [o.data for o in action.options] == ["store:s2", "cancel"]

    action = machine.handle(select("store", "s1"))
    assert step(store) == Step.SELECT_TARGET_STORE
    assert "должен отличаться" in action.text

    machine.handle(select("store", "s2"))
    state = store.get(USER)
    assert state.step == Step.COLLECT_ITEMS
    assert state.operation == Operation.TRANSFER
    assert state.target_store_name == "Бар"
    assert state.account_id is None


# ============ confirmation ============

def test_confirm_success_clears_state(machine, store, coordinator):
    to_confirm(machine)
    state = store.get(USER)
    coordinator.submit.return_value = SubmissionResult(
        Outcome.SUCCESS, row_ref=1, document_number="0042",
        submitted=[state.items[0]], skipped=[state.items[1]],
    )

    action = machine.handle(command("confirm"))

    coordinator.submit.assert_called_once()
    assert coordinator.submit.call_args.args[1] == "chef"
    assert step(store) == Step.IDLE
    assert "Документ: 0042" in action.text
    assert "Пропущено" in action.text


def test_confirm_without_resolved_items_stays_on_confirm(machine, store, coordinator):
    to_confirm(machine)
    coordinator.submit.return_value = SubmissionResult(Outcome.NO_RESOLVED_ITEMS, row_ref=1)

    action = machine.handle(command("confirm"))

    assert step(store) == Step.CONFIRM
    assert [o.data for o in action.options] == ["edit", "cancel"]


def test_transport_failure_keeps_confirm(machine, store, coordinator):
    to_confirm(machine)
    coordinator.submit.return_value = SubmissionResult(Outcome.FAILED, row_ref=1, error_message="timeout")

    action = machine.handle(command("confirm"))

    assert step(store) == Step.CONFIRM
    assert "Не удалось связаться с iiko" in action.text


def test_audit_failure_is_not_reported_as_saved(machine, store, coordinator):
    to_confirm(machine)
    coordinator.submit.return_value = SubmissionResult(Outcome.AUDIT_FAILED, error_message="disk full")

    action = machine.handle(command("confirm"))

    assert step(store) == Step.CONFIRM
    assert "Не удалось записать операцию в журнал" in action.text
    assert "NEW" not in action.text


def _pending():
    return PendingRetry(
        user_id=USER, row_ref=3, operation=Operation.WRITEOFF, store_id="s1", store_name="Кухня",
        items=[ParsedItem("помидор", 5.0, "кг", product_id="p1")], skipped=[], comment="c",
        account_id="a1", account_name="Порча",
    )


def test_rejection_offers_retry_which_replays(machine, store, coordinator):
    to_confirm(machine)
    pending = _pending()
    coordinator.submit.return_value = SubmissionResult(
        Outcome.REJECTED, row_ref=3, error_message="x", pending_retry=pending
    )

    action = machine.handle(command("confirm"))
    assert step(store) == Step.IDLE
    assert "Ошибка: x" in action.text
    assert [o.data for o in action.options] == ["retry", "menu"]

    coordinator.retry.return_value = SubmissionResult(
        Outcome.SUCCESS, row_ref=3, document_id="d9", submitted=pending.items
    )
    action = machine.handle(command("retry"))

    coordinator.retry.assert_called_once_with(pending)
    assert "Документ: d9" in action.text
    assert store.get_retry(USER) is None


def test_retry_without_pending(machine, coordinator):
    action = machine.handle(command("retry"))

    coordinator.retry.assert_not_called()
    assert "Нет операции для повтора" in action.text


def test_expired_retry_is_dropped(store):
    pending = _pending()
    pending.expire_at = datetime.now() - timedelta(seconds=1)
    store.put_retry(pending)

    assert store.get_retry(USER) is None


def test_transfer_success_posts_notice(store, catalog, coordinator, audit):
    notices = []
    machine = ConversationMachine(store, catalog, coordinator, audit, notify_transfer=notices.append)
    machine.handle(command("transfer"))
    machine.handle(select("store", "s1"))
    machine.handle(select("store", "s2"))
    machine.handle(text("помидор 1"))
    machine.handle(command("done"))
    coordinator.submit.return_value = SubmissionResult(
        Outcome.SUCCESS, row_ref=1, document_number="7", submitted=list(store.get(USER).items)
    )

    machine.handle(command("confirm"))

    assert len(notices) == 1
    assert "Перемещение создан" in notices[0]
    assert "Куда: Бар" in notices[0]


# ============ other globals ============

def test_history(machine, audit):
    audit.query_by_user.return_value = [AuditRecord(
        operation="writeoff", store_id="s1", store_name="Кухня", raw_text="помидор 5 кг",
        items=[], user_id=USER, status=AuditStatus.OK, external_doc_number="0042",
        created_at="01.03.2025 10:00:00",
    )]

    action = machine.handle(command("history"))

    audit.query_by_user.assert_called_once_with(USER, 5)
    assert "✅ 01.03.2025 10:00:00" in action.text
    assert "Doc: 0042" in action.text


def test_history_failure(machine, audit):
    audit.query_by_user.side_effect = AuditStoreError("locked")

    assert machine.handle(command("history")).text == "Ошибка загрузки истории."


def test_refresh_reports_counts(machine):
    action = machine.handle(command("refresh"))

    assert "Складов: 2" in action.text
    assert "Товаров: 3" in action.text


def test_idle_state_times_out(store):
    state = store.put(replace(store.get(USER), step=Step.COLLECT_ITEMS, store_id="s1"))
    store._states[USER] = replace(state, updated_at=datetime.now() - timedelta(minutes=61))

    assert store.get(USER).step == Step.IDLE


def test_user_lock_is_released_after_handling(machine, store):
    machine.handle(command("writeoff"))
    machine.handle(command("cancel"))

    assert store._locks == {}

    with store.locked(USER):
        assert store._locks[USER][1] == 1
    assert store._locks == {}


def test_storing_a_retry_drops_expired_ones(store):
    stale = _pending()
    stale.expire_at = datetime.now() - timedelta(minutes=1)
    store.put_retry(stale)
    fresh = replace(_pending(), user_id=USER + 1, expire_at=datetime.now() + timedelta(minutes=5))

    store.put_retry(fresh)

    assert list(store._retries) == [USER + 1]


def test_storing_a_state_drops_idle_ones(store):
    old = store.put(replace(store.get(USER), step=Step.COLLECT_ITEMS))
    store._states[USER] = replace(old, updated_at=datetime.now() - timedelta(minutes=61))

    store.put(replace(store.get(USER + 1), step=Step.SELECT_STORE))

    assert list(store._states) == [USER + 1]
