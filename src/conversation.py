"""Per-user conversation state machine of the write-off bot.

IDLE -> SELECT_STORE -> SELECT_ACCOUNT (write-off) | SELECT_TARGET_STORE (transfer)
     -> COLLECT_ITEMS <-> SELECT_PRODUCT -> ENTER_QUANTITY -> COLLECT_ITEMS
     -> CONFIRM -> IDLE

Handlers are looked up by (step, trigger). A pair missing from the table gets a
guidance message and leaves the state as it was.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import bot_messages as msg
from audit_store import AuditStore
from catalog_cache import CatalogCache
from iiko_errors import AuditStoreError, CatalogLoadError, WriteoffBotError
from item_parser import DEFAULT_UNIT, parse_items, parse_quantity
from product_resolver import resolve_items, search_products
from submission import Outcome, SubmissionCoordinator, SubmissionResult
from writeoff_models import (
    Action,
    CatalogEntry,
    ConversationState,
    Event,
    Operation,
    Option,
    ParsedItem,
    PendingRetry,
    Step,
)

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    MENU = "menu"
    START_WRITEOFF = "writeoff"
    START_TRANSFER = "transfer"
    CANCEL = "cancel"
    HELP = "help"
    HISTORY = "history"
    REFRESH = "refresh"
    SELECT_STORE = "store"
    SELECT_ACCOUNT = "account"
    SELECT_PRODUCT = "product"
    TEXT = "text"
    DONE = "done"
    CONFIRM = "confirm"
    EDIT = "edit"
    RETRY = "retry"
    UNKNOWN = "unknown"


COMMAND_ALIASES = {"start": Trigger.MENU, "start_writeoff": Trigger.START_WRITEOFF}
SELECTION_TRIGGERS = (Trigger.SELECT_STORE, Trigger.SELECT_ACCOUNT, Trigger.SELECT_PRODUCT)

OPT_CANCEL = Option("Отмена", Trigger.CANCEL.value)
OPT_MENU = Option("В меню", Trigger.MENU.value)
OPT_DONE = Option("Готово", Trigger.DONE.value)
OPT_CONFIRM = Option("Подтвердить", Trigger.CONFIRM.value)
OPT_EDIT = Option("Изменить", Trigger.EDIT.value)
OPT_RETRY = Option("Попробовать снова", Trigger.RETRY.value)
OPT_WRITEOFF = Option("Списать в iiko", Trigger.START_WRITEOFF.value)
OPT_TRANSFER = Option("Перемещение", Trigger.START_TRANSFER.value)
OPT_HISTORY = Option("История операций", Trigger.HISTORY.value)


def classify(event: Event) -> Tuple[Trigger, str]:
    """Map a front-end event to a trigger and its argument"""
    payload = (event.payload or "").strip()
    if event.kind == "text":
        return Trigger.TEXT, payload
    if event.kind == "selection":
        kind, _, value = payload.partition(":")
        for trigger in SELECTION_TRIGGERS:
            if kind == trigger.value and value:
                return trigger, value
        return Trigger.UNKNOWN, payload
    if event.kind == "command":
        name = payload.lstrip("/").split("@", 1)[0].lower()
        if name in COMMAND_ALIASES:
            return COMMAND_ALIASES[name], ""
        try:
            trigger = Trigger(name)
        except ValueError:
            return Trigger.UNKNOWN, payload
        if trigger in SELECTION_TRIGGERS or trigger in (Trigger.TEXT, Trigger.UNKNOWN):
            return Trigger.UNKNOWN, payload
        return trigger, ""
    return Trigger.UNKNOWN, payload


class ConversationStore:
    """Process-wide per-user conversation states.

    Reads are get-or-default; states idle for longer than idle_timeout read as
    a fresh IDLE state. Every event of one user runs under that user's lock so
    there is a single writer per key. Rejected submissions wait here for a
    retry until their expire_at.
    """

    def __init__(self, idle_timeout_minutes: int = 60):
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self._states: Dict[int, ConversationState] = {}
        self._retries: Dict[int, PendingRetry] = {}
        # user_id -> [lock, number of handlers holding or waiting for it]
        self._locks: Dict[int, list] = {}
        self._guard = threading.Lock()

    @contextmanager
    def locked(self, user_id: int):
        with self._guard:
            entry = self._locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[user_id]

    def get(self, user_id: int) -> ConversationState:
        with self._guard:
            state = self._states.get(user_id)
            if state is not None and datetime.now() - state.updated_at > self.idle_timeout:
                logger.info(f"Conversation of user {user_id} timed out at step {state.step.value}")
                del self._states[user_id]
                state = None
        return state or ConversationState(user_id=user_id)

    def put(self, state: ConversationState) -> ConversationState:
        state = replace(state, updated_at=datetime.now())
        with self._guard:
            stale = [uid for uid, s in self._states.items() if state.updated_at - s.updated_at > self.idle_timeout]
            for uid in stale:
                del self._states[uid]
            self._states[state.user_id] = state
        return state

    def clear(self, user_id: int):
        with self._guard:
            self._states.pop(user_id, None)

    def put_retry(self, pending: PendingRetry):
        now = datetime.now()
        with self._guard:
            expired = [uid for uid, p in self._retries.items() if p.expire_at and p.expire_at < now]
            for uid in expired:
                del self._retries[uid]
            self._retries[pending.user_id] = pending

    def get_retry(self, user_id: int) -> Optional[PendingRetry]:
        with self._guard:
            pending = self._retries.get(user_id)
            if pending is not None and pending.expire_at and pending.expire_at < datetime.now():
                del self._retries[user_id]
                return None
            return pending

    def clear_retry(self, user_id: int):
        with self._guard:
            self._retries.pop(user_id, None)


Handler = Callable[[ConversationState, str, Event], Action]


class ConversationMachine:
    def __init__(self, store: ConversationStore, catalog: CatalogCache,
                 coordinator: SubmissionCoordinator, audit_store: AuditStore,
                 max_options: int = 10, notify_transfer: Optional[Callable[[str], None]] = None):
        self.store = store
        self.catalog = catalog
        self.coordinator = coordinator
        self.audit_store = audit_store
        self.max_options = max_options
        self.notify_transfer = notify_transfer

        self.global_handlers: Dict[Trigger, Handler] = {
            Trigger.CANCEL: self._on_cancel,
            Trigger.MENU: self._on_menu,
            Trigger.START_WRITEOFF: lambda s, a, e: self._start(s, Operation.WRITEOFF),
            Trigger.START_TRANSFER: lambda s, a, e: self._start(s, Operation.TRANSFER),
            Trigger.HELP: lambda s, a, e: Action(msg.HELP),
            Trigger.HISTORY: self._on_history,
            Trigger.REFRESH: self._on_refresh,
        }
        self.transitions: Dict[Tuple[Step, Trigger], Handler] = {
            (Step.IDLE, Trigger.RETRY): self._on_retry,
            (Step.SELECT_STORE, Trigger.SELECT_STORE): self._on_store,
            (Step.SELECT_TARGET_STORE, Trigger.SELECT_STORE): self._on_target_store,
            (Step.SELECT_ACCOUNT, Trigger.SELECT_ACCOUNT): self._on_account,
            (Step.COLLECT_ITEMS, Trigger.TEXT): self._on_items_text,
            (Step.COLLECT_ITEMS, Trigger.DONE): self._on_done,
            (Step.SELECT_PRODUCT, Trigger.SELECT_PRODUCT): self._on_product,
            (Step.SELECT_PRODUCT, Trigger.TEXT): self._on_items_text,
            (Step.SELECT_PRODUCT, Trigger.DONE): self._on_done,
            (Step.ENTER_QUANTITY, Trigger.TEXT): self._on_quantity,
            (Step.CONFIRM, Trigger.CONFIRM): self._on_confirm,
            (Step.CONFIRM, Trigger.EDIT): self._on_edit,
        }

    def handle(self, event: Event) -> Action:
        trigger, arg = classify(event)
        with self.store.locked(event.user_id):
            state = self.store.get(event.user_id)
            handler = self.global_handlers.get(trigger) or self.transitions.get((state.step, trigger))
            if handler is None:
                logger.info(f"Ignoring {trigger.value} from user {event.user_id} at step {state.step.value}")
                return self._guidance(state)
            return handler(state, arg, event)

    # ============ options / prompts ============

    def _entry_options(self, kind: Trigger, entries: List[CatalogEntry]) -> List[Option]:
        return [Option(e.display_name[:30], f"{kind.value}:{e.id}") for e in entries[: self.max_options]]

    def _step_options(self, state: ConversationState) -> List[Option]:
        if state.step == Step.IDLE:
            return [OPT_WRITEOFF, OPT_TRANSFER]
        if state.step == Step.CONFIRM:
            return [OPT_CONFIRM, OPT_EDIT, OPT_CANCEL]
        if state.step in (Step.COLLECT_ITEMS, Step.SELECT_PRODUCT):
            return [OPT_DONE, OPT_CANCEL]
        return [OPT_CANCEL]

    def _guidance(self, state: ConversationState) -> Action:
        text = msg.IDLE_GUIDANCE if state.step == Step.IDLE else msg.STEP_GUIDANCE
        return Action(text, self._step_options(state))

    @staticmethod
    def _header(source) -> str:
        return msg.header(source.operation, source.store_name, source.account_name, source.target_store_name)

    def _items_prompt(self, state: ConversationState, lead: str = "") -> Action:
        text = f"{self._header(state)}\n\n"
        if lead:
            text += f"{lead}\n\n"
        if state.items:
            text += f"Позиции:\n{msg.format_items(state.items, show_matched=True)}\n\n"
        text += msg.ITEMS_FORMAT_HINT
        return Action(text, [OPT_DONE, OPT_CANCEL])

    # ============ global triggers ============

    def _on_cancel(self, state: ConversationState, arg: str, event: Event) -> Action:
        self.store.clear(state.user_id)
        self.store.clear_retry(state.user_id)
        return Action(msg.CANCELLED, [OPT_WRITEOFF, OPT_MENU])

    def _on_menu(self, state: ConversationState, arg: str, event: Event) -> Action:
        self.store.clear(state.user_id)
        return Action(msg.MENU, [OPT_WRITEOFF, OPT_TRANSFER, OPT_HISTORY])

    def _start(self, state: ConversationState, operation: Operation) -> Action:
        self.store.clear(state.user_id)
        try:
            stores = self.catalog.require_stores()
        except CatalogLoadError as e:
            logger.warning(f"⚠️ Cannot start {operation.value} for user {state.user_id}: {e}")
            return Action(msg.STORES_UNAVAILABLE, [Option("Попробовать снова", operation.value)])

        self.store.put(ConversationState(user_id=state.user_id, step=Step.SELECT_STORE, operation=operation))
        return Action(
            msg.select_store_prompt(operation),
            self._entry_options(Trigger.SELECT_STORE, stores) + [OPT_CANCEL],
        )

    def _on_history(self, state: ConversationState, arg: str, event: Event) -> Action:
        try:
            records = self.audit_store.query_by_user(state.user_id, 5)
        except AuditStoreError as e:
            logger.error(f"❌ Error getting history: {e}")
            return Action(msg.HISTORY_FAILURE, [OPT_MENU])
        if not records:
            return Action(msg.HISTORY_EMPTY, [OPT_WRITEOFF, OPT_MENU])
        return Action(msg.history_message(records), [OPT_WRITEOFF, OPT_MENU])

    def _on_refresh(self, state: ConversationState, arg: str, event: Event) -> Action:
        ok = self.catalog.refresh()
        return Action(msg.refresh_message(ok, self.catalog.counts()))

    # ============ store / account selection ============

    def _on_store(self, state: ConversationState, store_id: str, event: Event) -> Action:
        store = self.catalog.find_store(store_id)
        if store is None:
            return Action(msg.STORE_NOT_FOUND, self._entry_options(Trigger.SELECT_STORE, self.catalog.stores) + [OPT_CANCEL])

        state = replace(state, store_id=store.id, store_name=store.display_name)

        if state.operation == Operation.TRANSFER:
            self.store.put(replace(state, step=Step.SELECT_TARGET_STORE))
            targets = [s for s in self.catalog.stores if s.id != store.id]
            return Action(
                f"Откуда: {store.display_name}\n\nВыбери склад, куда перемещаем:",
                self._entry_options(Trigger.SELECT_STORE, targets) + [OPT_CANCEL],
            )

        if not self.catalog.accounts:
            # no expense accounts configured: skip the account step
            state = self.store.put(replace(
                state, step=Step.COLLECT_ITEMS, account_id=None, account_name=msg.NO_ACCOUNT_LABEL
            ))
            return self._items_prompt(state)

        self.store.put(replace(state, step=Step.SELECT_ACCOUNT))
        return Action(
            f"Склад: {store.display_name}\n\nВыбери расходный счёт (причина списания):",
            self._entry_options(Trigger.SELECT_ACCOUNT, self.catalog.accounts) + [OPT_CANCEL],
        )

    def _on_target_store(self, state: ConversationState, store_id: str, event: Event) -> Action:
        store = self.catalog.find_store(store_id)
        targets = [s for s in self.catalog.stores if s.id != state.store_id]
        if store is None:
            return Action(msg.STORE_NOT_FOUND, self._entry_options(Trigger.SELECT_STORE, targets) + [OPT_CANCEL])
        if store.id == state.store_id:
            return Action(msg.SAME_STORE, self._entry_options(Trigger.SELECT_STORE, targets) + [OPT_CANCEL])

        state = self.store.put(replace(
            state, step=Step.COLLECT_ITEMS, target_store_id=store.id, target_store_name=store.display_name
        ))
        return self._items_prompt(state)

    def _on_account(self, state: ConversationState, account_id: str, event: Event) -> Action:
        account = self.catalog.find_account(account_id)
        if account is None:
            return Action(msg.ACCOUNT_NOT_FOUND, self._entry_options(Trigger.SELECT_ACCOUNT, self.catalog.accounts) + [OPT_CANCEL])

        state = self.store.put(replace(
            state, step=Step.COLLECT_ITEMS, account_id=account.id, account_name=account.display_name
        ))
        return self._items_prompt(state)

    # ============ item collection ============

    def _on_items_text(self, state: ConversationState, text: str, event: Event) -> Action:
        parsed = parse_items(text)
        if not parsed:
            return self._guidance(state)

        if len(parsed) == 1 and parsed[0].parse_error:
            return self._search(state, text)

        if self.catalog.products:
            parsed = resolve_items(parsed, self.catalog.products)

        state = self.store.put(replace(
            state,
            step=Step.COLLECT_ITEMS,
            items=state.items + tuple(parsed),
            raw_lines=state.raw_lines + (text.strip(),),
            candidates=(),
            selected_product=None,
        ))

        lead = f"Добавлено позиций: {len(parsed)}"
        errors = [i for i in parsed if i.parse_error]
        unmatched = [i for i in parsed if not i.parse_error and not i.product_id]
        if errors:
            lead += f"\n\nНе удалось распознать:\n{msg.bullet_names(errors)}"
        if unmatched:
            lead += f"\n\nНе найдены в номенклатуре iiko:\n{msg.bullet_names(unmatched)}"
        return self._items_prompt(state, lead)

    def _search(self, state: ConversationState, query: str) -> Action:
        if not self.catalog.products:
            return Action(
                "Номенклатура iiko не загружена, поиск недоступен.\n"
                "Укажи позицию с количеством, например: помидор 5 кг",
                [OPT_DONE, OPT_CANCEL],
            )

        candidates = search_products(query, self.catalog.products, self.max_options)
        if not candidates:
            self.store.put(replace(state, step=Step.COLLECT_ITEMS, candidates=()))
            return Action(f"По запросу «{query.strip()}» ничего не найдено. Попробуй другое название.",
                          [OPT_DONE, OPT_CANCEL])

        self.store.put(replace(state, step=Step.SELECT_PRODUCT, candidates=tuple(c.id for c in candidates)))
        return Action(
            f"Найдено по запросу «{query.strip()}»:\nВыбери товар или введи другой запрос.",
            self._entry_options(Trigger.SELECT_PRODUCT, candidates) + [OPT_DONE, OPT_CANCEL],
        )

    def _on_product(self, state: ConversationState, product_id: str, event: Event) -> Action:
        product = self.catalog.find_product(product_id) if product_id in state.candidates else None
        if product is None:
            return Action(msg.PRODUCT_NOT_FOUND, self._step_options(state))

        self.store.put(replace(state, step=Step.ENTER_QUANTITY, selected_product=product))
        return Action(
            f"{product.display_name}\n\nВведи количество ({product.unit or DEFAULT_UNIT}):",
            [OPT_CANCEL],
        )

    def _on_quantity(self, state: ConversationState, text: str, event: Event) -> Action:
        product = state.selected_product
        quantity = parse_quantity(text, default_unit=product.unit or DEFAULT_UNIT)
        if quantity is None:
            return Action(msg.BAD_QUANTITY, [OPT_CANCEL])

        amount, unit = quantity
        item = ParsedItem(
            name=product.display_name,
            amount=amount,
            unit=unit,
            product_id=product.id,
            matched_name=product.display_name,
        )
        state = self.store.put(replace(
            state,
            step=Step.COLLECT_ITEMS,
            items=state.items + (item,),
            raw_lines=state.raw_lines + (f"{item.name} {msg.format_amount(amount)} {unit}",),
            candidates=(),
            selected_product=None,
        ))
        return self._items_prompt(state, f"Добавлено: {item.name} - {msg.format_amount(amount)} {unit}")

    def _on_done(self, state: ConversationState, arg: str, event: Event) -> Action:
        if not state.items:
            return Action(msg.NO_ITEMS_YET, self._step_options(state))

        state = self.store.put(replace(state, step=Step.CONFIRM, candidates=(), selected_product=None))
        return Action(msg.confirm_prompt(self._header(state), state.items), [OPT_CONFIRM, OPT_EDIT, OPT_CANCEL])

    # ============ confirmation ============

    def _on_edit(self, state: ConversationState, arg: str, event: Event) -> Action:
        state = self.store.put(replace(state, step=Step.COLLECT_ITEMS, items=(), raw_lines=(), candidates=()))
        return self._items_prompt(state, "Отправь новый список позиций.")

    def _on_confirm(self, state: ConversationState, arg: str, event: Event) -> Action:
        result = self.coordinator.submit(state, event.username)

        if result.outcome == Outcome.NO_RESOLVED_ITEMS:
            return Action(
                f"{msg.NO_RESOLVED_ITEMS}.\n\nПроверь названия товаров и попробуй снова.",
                [OPT_EDIT, OPT_CANCEL],
            )
        if result.outcome == Outcome.AUDIT_FAILED:
            return Action(msg.AUDIT_FAILURE, [OPT_CONFIRM, OPT_CANCEL])
        if result.outcome == Outcome.FAILED:
            # state stays at CONFIRM; confirming again writes a new audit row
            return Action(msg.TRANSPORT_FAILURE, [OPT_CONFIRM, OPT_CANCEL])

        self.store.clear(state.user_id)
        return self._finish(state, result)

    def _on_retry(self, state: ConversationState, arg: str, event: Event) -> Action:
        pending = self.store.get_retry(state.user_id)
        if pending is None:
            return Action(msg.NOTHING_TO_RETRY, [OPT_WRITEOFF, OPT_MENU])

        result = self.coordinator.retry(pending)
        if result.outcome == Outcome.FAILED:
            return Action(msg.TRANSPORT_FAILURE, [OPT_RETRY, OPT_CANCEL])
        return self._finish(pending, result)

    def _finish(self, source, result: SubmissionResult) -> Action:
        """Report a completed submission; source is the state or the pending retry"""
        if result.outcome == Outcome.REJECTED:
            self.store.put_retry(result.pending_retry)
            return Action(msg.rejection_message(result.error_message), [OPT_RETRY, OPT_MENU])

        self.store.clear_retry(source.user_id)
        document = result.document_number or result.document_id or "-"
        text = msg.success_message(source.operation, self._header(source), document, result.submitted, result.skipped)

        if source.operation == Operation.TRANSFER and self.notify_transfer:
            try:
                self.notify_transfer(text)
            except WriteoffBotError as e:
                logger.warning(f"⚠️ Could not post transfer notice: {e}")

        next_option = OPT_TRANSFER if source.operation == Operation.TRANSFER else OPT_WRITEOFF
        return Action(text, [Option("Новая операция", next_option.data), OPT_MENU])
