"""
Telegram webhook for the write-off bot.
The webhook URL has to be registered with Telegram (setWebhook) separately;
locally, expose the port with ngrok or similar.
"""

import logging
import sys
from typing import Dict, Optional

from flask import Flask, jsonify, request

from audit_store import SqliteAuditStore
from catalog_cache import CatalogCache
from config_loader import load_bot_config, validate_environment
from conversation import ConversationMachine, ConversationStore
from iiko_client import IikoClient
from iiko_errors import WriteoffBotError
from iiko_session import IikoSessionManager
from submission import SubmissionCoordinator
from telegram_notifier import TelegramNotifier
from writeoff_models import Action, Event

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Произошла ошибка. Попробуй ещё раз."
SELECTION_PREFIXES = ("store:", "account:", "product:")


def to_event(update: Dict) -> Optional[Event]:
    """Translate a Telegram update into a front-end event"""
    callback = update.get("callback_query")
    if callback:
        data = callback.get("data") or ""
        kind = "selection" if data.startswith(SELECTION_PREFIXES) else "command"
        sender = callback.get("from") or {}
        return Event(user_id=sender.get("id"), kind=kind, payload=data, username=sender.get("username"))

    message = update.get("message")
    if message and message.get("text"):
        text = message["text"]
        sender = message.get("from") or {}
        kind = "command" if text.startswith("/") else "text"
        payload = text.split()[0] if kind == "command" else text
        return Event(user_id=sender.get("id"), kind=kind, payload=payload, username=sender.get("username"))
    return None


def create_app(machine: ConversationMachine, notifier: TelegramNotifier, webhook_secret: str = "") -> Flask:
    app = Flask(__name__)

    def deliver(update: Dict, action: Action):
        callback = update.get("callback_query")
        if callback:
            notifier.answer_callback(callback["id"])
            message = callback.get("message") or {}
            chat_id = (message.get("chat") or {}).get("id")
            try:
                notifier.edit_action(chat_id, message.get("message_id"), action)
                return
            except WriteoffBotError as e:
                logger.info(f"Could not edit message, sending a new one: {e}")
            notifier.send_action(chat_id, action)
        else:
            notifier.send_action(update["message"]["chat"]["id"], action)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "catalog": machine.catalog.counts()})

    @app.route("/telegram/webhook", methods=["POST"])
    def webhook():
        if webhook_secret and request.headers.get("X-Telegram-Bot-Api-Secret-Token") != webhook_secret:
            return jsonify({"status": "forbidden"}), 403

        update = request.get_json(silent=True) or {}
        event = to_event(update)
        if event is None or event.user_id is None:
            return jsonify({"status": "ignored"})

        try:
            action = machine.handle(event)
        except Exception:
            logger.exception(f"Bot error for user {event.user_id} ({event.kind}: {event.payload[:50]})")
            action = Action(GENERIC_ERROR)

        try:
            deliver(update, action)
        except WriteoffBotError as e:
            logger.error(f"❌ Could not deliver reply to user {event.user_id}: {e}")
        return jsonify({"status": "ok"})

    return app


def build_machine(cfg: Dict, notifier: TelegramNotifier):
    iiko_cfg = cfg["iiko"]
    session = IikoSessionManager(
        iiko_cfg["base_url"],
        iiko_cfg["login"],
        iiko_cfg["password"],
        lifetime_seconds=iiko_cfg["session_lifetime_seconds"],
        auth_timeout=iiko_cfg["auth_timeout"],
        logout_timeout=iiko_cfg["logout_timeout"],
    )
    client = IikoClient(session, iiko_cfg["request_timeout"], iiko_cfg["products_timeout"])
    catalog = CatalogCache(client)

    audit_store = SqliteAuditStore(cfg["audit"]["db_path"], cfg["audit"]["timezone"])
    audit_store.init_db()

    conv_cfg = cfg["conversation"]
    coordinator = SubmissionCoordinator(audit_store, client, conv_cfg["retry_ttl_minutes"])

    group_id = cfg["telegram"].get("transfer_group_id")
    notify_transfer = (lambda text: notifier.send_text(group_id, text)) if group_id else None

    machine = ConversationMachine(
        ConversationStore(conv_cfg["idle_timeout_minutes"]),
        catalog,
        coordinator,
        audit_store,
        max_options=conv_cfg["max_options"],
        notify_transfer=notify_transfer,
    )
    return machine, session


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Starting iiko write-off bot...")

    cfg = load_bot_config()
    env = validate_environment()
    for warning in env["warnings"]:
        logger.info(warning)
    for invalid in env["invalid"]:
        logger.warning(f"⚠️ {invalid['name']}: {invalid['issue']}")
    if env["missing"]:
        logger.error(f"❌ Missing required environment variables: {', '.join(env['missing'])}")
        sys.exit(1)

    notifier = TelegramNotifier(cfg["telegram"]["bot_token"])
    machine, session = build_machine(cfg, notifier)

    logger.info(f"iiko URL: {cfg['iiko']['base_url']}")
    if machine.catalog.refresh():
        counts = machine.catalog.counts()
        logger.info(
            f"✅ iiko references loaded: {counts['stores']} stores, "
            f"{counts['accounts']} expense accounts, {counts['products']} products"
        )
    else:
        logger.warning("⚠️ Could not load iiko references. Will retry on first request.")

    app = create_app(machine, notifier, cfg["telegram"]["webhook_secret"])
    try:
        app.run(host=cfg["server"]["host"], port=cfg["server"]["port"])
    finally:
        session.logout()


if __name__ == "__main__":
    main()
