"""User-facing texts of the write-off bot"""

from typing import Iterable, List, Sequence

from writeoff_models import AuditRecord, AuditStatus, Operation, ParsedItem

NO_ACCOUNT_LABEL = "Не указан"
NO_RESOLVED_ITEMS = "Ни один товар не найден в номенклатуре iiko"

ITEMS_FORMAT_HINT = (
    "Отправь список позиций, например:\n"
    "помидор 5 кг; огурец 3 кг; курица филе 10 кг\n\n"
    "Или название товара для поиска по номенклатуре.\n"
    "Когда закончишь, нажми «Готово»."
)

HELP = (
    "Справка по боту:\n\n"
    "/start - Главное меню\n"
    "/writeoff - Создать акт списания\n"
    "/transfer - Создать перемещение между складами\n"
    "/history - Последние операции\n"
    "/refresh - Обновить справочники iiko\n"
    "/cancel - Отменить текущее действие\n"
    "/help - Эта справка\n\n"
    "Как использовать:\n"
    "1. Выбери склад\n"
    "2. Отправь позиции: помидор 5 кг; огурец 3 кг\n"
    "3. Нажми «Готово» и подтверди операцию\n\n"
    "Все операции сохраняются в журнал."
)

MENU = "Главное меню.\n\nВыбери действие:"
CANCELLED = "Действие отменено."
IDLE_GUIDANCE = "Используй /start или /writeoff чтобы начать списание."
STEP_GUIDANCE = "Сейчас это действие недоступно. Продолжи текущий шаг или нажми «Отмена»."
STORES_UNAVAILABLE = "Не удалось загрузить склады из iiko.\nПроверь подключение и попробуй ещё раз."
STORE_NOT_FOUND = "Склад не найден. Выбери склад из списка."
ACCOUNT_NOT_FOUND = "Счёт не найден. Выбери счёт из списка."
PRODUCT_NOT_FOUND = "Товар не найден. Выбери товар из списка или введи другой запрос."
SAME_STORE = "Склад назначения должен отличаться от склада-источника."
NO_ITEMS_YET = "Список позиций пуст. Добавь хотя бы одну позицию."
NOTHING_TO_RETRY = "Нет операции для повтора. Начни заново с /writeoff"
BAD_QUANTITY = "Не понял количество. Введи число, например: 2,5 или 3 шт"
TRANSPORT_FAILURE = (
    "Не удалось связаться с iiko. Операция сохранена в журнал со статусом NEW.\n\n"
    "Попробуй подтвердить ещё раз."
)
AUDIT_FAILURE = (
    "Не удалось записать операцию в журнал, в iiko ничего не отправлено.\n\n"
    "Попробуй подтвердить ещё раз."
)
HISTORY_FAILURE = "Ошибка загрузки истории."
HISTORY_EMPTY = "У тебя пока нет операций."

OPERATION_TITLES = {
    Operation.WRITEOFF: "Акт списания",
    Operation.TRANSFER: "Перемещение",
}

STATUS_EMOJI = {
    AuditStatus.OK: "✅",
    AuditStatus.SENT: "✅",
    AuditStatus.ERROR: "❌",
    AuditStatus.NEW: "⏳",
}


def format_items(items: Sequence[ParsedItem], show_matched: bool = False) -> str:
    lines = []
    for i, item in enumerate(items, start=1):
        if item.parse_error:
            lines.append(f"{i}. {item.name} (не распознано)")
            continue
        line = f"{i}. {item.name} - {format_amount(item.amount)} {item.unit}"
        if show_matched:
            line += " ✓" if item.product_id else " (не найден в iiko)"
        lines.append(line)
    return "\n".join(lines)


def format_amount(amount: float) -> str:
    return f"{amount:g}".replace(".", ",")


def bullet_names(items: Iterable[ParsedItem]) -> str:
    return "\n".join(f"- {item.name}" for item in items)


def header(operation: Operation, store_name: str, account_name: str = None,
           target_store_name: str = None) -> str:
    if operation == Operation.TRANSFER:
        lines = [f"Откуда: {store_name}"]
        if target_store_name:
            lines.append(f"Куда: {target_store_name}")
    else:
        lines = [f"Склад: {store_name}"]
        if account_name:
            lines.append(f"Счёт: {account_name}")
    return "\n".join(lines)


def select_store_prompt(operation: Operation) -> str:
    if operation == Operation.TRANSFER:
        return "Выбери склад, откуда перемещаем:"
    return "Выбери склад (откуда списываем):"


def confirm_prompt(head: str, items: Sequence[ParsedItem]) -> str:
    errors = [i for i in items if i.parse_error]
    unmatched = [i for i in items if not i.parse_error and not i.product_id]
    text = f"{head}\n\nПозиции:\n{format_items(items, show_matched=True)}"
    if errors:
        text += f"\n\nНе удалось распознать:\n{bullet_names(errors)}"
    if unmatched:
        text += f"\n\nНе найдены в номенклатуре iiko:\n{bullet_names(unmatched)}"
        text += "\n\n⚠️ Товары без ID не будут отправлены в iiko!"
    return text + "\n\nПодтвердить?"


def success_message(operation: Operation, head: str, document: str,
                    submitted: Sequence[ParsedItem], skipped: Sequence[ParsedItem]) -> str:
    text = (
        f"{OPERATION_TITLES[operation]} создан!\n\n"
        f"{head}\n"
        f"Документ: {document}\n\n"
        f"Отправлено ({len(submitted)}):\n{format_items(submitted)}"
    )
    if skipped:
        text += f"\n\nПропущено (не найдены в iiko):\n{bullet_names(skipped)}"
    return text


def rejection_message(error_text: str) -> str:
    return (
        "Ошибка создания документа в iiko!\n\n"
        f"Ошибка: {error_text}\n\n"
        "Данные сохранены в журнал."
    )


def history_message(records: List[AuditRecord]) -> str:
    text = "Последние операции:\n\n"
    for r in records:
        text += f"{STATUS_EMOJI.get(r.status, '⏳')} {r.created_at}\n"
        text += f"Склад: {r.store_name}\n"
        if r.target_store_name:
            text += f"Куда: {r.target_store_name}\n"
        if r.account_name:
            text += f"Счёт: {r.account_name}\n"
        raw = r.raw_text or ""
        text += f"{raw[:50]}{'...' if len(raw) > 50 else ''}\n"
        if r.external_doc_number or r.external_doc_id:
            text += f"Doc: {r.external_doc_number or r.external_doc_id}\n"
        text += "\n"
    return text.rstrip() + "\n"


def refresh_message(ok: bool, counts: dict) -> str:
    if not ok:
        return "Ошибка обновления справочников. Проверь подключение к iiko."
    return (
        "Справочники обновлены:\n"
        f"- Складов: {counts['stores']}\n"
        f"- Расходных счетов: {counts['accounts']}\n"
        f"- Товаров: {counts['products']}"
    )
