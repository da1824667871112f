import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from audit_store import AuditStore
from bot_messages import NO_RESOLVED_ITEMS
from iiko_client import IikoClient
from iiko_errors import AuditStoreError, SubmissionError, WriteoffBotError
from writeoff_models import (
    AuditRecord,
    AuditStatus,
    ConversationState,
    DocumentResult,
    Operation,
    ParsedItem,
    PendingRetry,
)

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    NO_RESOLVED_ITEMS = "no_resolved_items"
    REJECTED = "rejected"
    FAILED = "failed"  # transport/session failure, the audit row stays NEW
    AUDIT_FAILED = "audit_failed"  # nothing was logged and iiko was not called


@dataclass
class SubmissionResult:
    outcome: Outcome
    row_ref: Optional[int] = None
    document_id: Optional[str] = None
    document_number: Optional[str] = None
    submitted: List[ParsedItem] = field(default_factory=list)
    skipped: List[ParsedItem] = field(default_factory=list)
    error_message: Optional[str] = None
    pending_retry: Optional[PendingRetry] = None


def build_comment(operation: Operation, username: Optional[str], user_id: int) -> str:
    title = "Перемещение" if operation == Operation.TRANSFER else "Списание"
    return f"{title} через Telegram. User: {username or user_id}"


class SubmissionCoordinator:
    """Audit-first submission of a confirmed conversation to iiko.

    1. append an audit row with status NEW (before any iiko call)
    2. no resolved items -> ERROR, iiko is never called
    3. create the document in iiko
    4. SUCCESS -> OK (or SENT without a document reference)
    5. rejection -> ERROR, a PendingRetry replays step 3 on the same row
    6. transport failure -> the row stays NEW, nothing else is written
    """

    def __init__(self, audit_store: AuditStore, client: IikoClient, retry_ttl_minutes: int = 120):
        self.audit_store = audit_store
        self.client = client
        self.retry_ttl = timedelta(minutes=retry_ttl_minutes)

    def submit(self, state: ConversationState, username: Optional[str] = None) -> SubmissionResult:
        items = list(state.items)
        record = AuditRecord(
            operation=state.operation.value,
            store_id=state.store_id,
            store_name=state.store_name,
            account_id=state.account_id,
            account_name=state.account_name,
            target_store_id=state.target_store_id,
            target_store_name=state.target_store_name,
            raw_text="\n".join(state.raw_lines),
            items=items,
            user_id=state.user_id,
        )

        try:
            row_ref = self.audit_store.append(record)
        except AuditStoreError as e:
            logger.error(f"❌ Could not write audit record, iiko is not called: {e}")
            return SubmissionResult(outcome=Outcome.AUDIT_FAILED, error_message=str(e))
        logger.info(f"Operation logged at row {row_ref} (user {state.user_id})")

        resolved = [i for i in items if not i.parse_error and i.product_id]
        skipped = [i for i in items if not i.parse_error and not i.product_id]

        if not resolved:
            self._update(row_ref, status=AuditStatus.ERROR, error_message=NO_RESOLVED_ITEMS)
            return SubmissionResult(
                outcome=Outcome.NO_RESOLVED_ITEMS,
                row_ref=row_ref,
                skipped=skipped,
                error_message=NO_RESOLVED_ITEMS,
            )

        pending = PendingRetry(
            user_id=state.user_id,
            row_ref=row_ref,
            operation=state.operation,
            store_id=state.store_id,
            store_name=state.store_name,
            account_id=state.account_id,
            account_name=state.account_name,
            target_store_id=state.target_store_id,
            target_store_name=state.target_store_name,
            items=resolved,
            skipped=skipped,
            comment=build_comment(state.operation, username, state.user_id),
        )
        return self._send(pending)

    def retry(self, pending: PendingRetry) -> SubmissionResult:
        """Replay the iiko call for a rejected submission; no new audit row"""
        logger.info(f"🔄 Retrying submission of audit row {pending.row_ref}")
        return self._send(pending)

    def _create_document(self, pending: PendingRetry) -> DocumentResult:
        if pending.operation == Operation.TRANSFER:
            return self.client.create_transfer_document(
                pending.store_id, pending.target_store_id, pending.items, pending.comment
            )
        return self.client.create_writeoff_document(
            pending.store_id, pending.account_id, pending.items, pending.comment
        )

    def _send(self, pending: PendingRetry) -> SubmissionResult:
        try:
            document = self._create_document(pending)
        except WriteoffBotError as e:
            # known gap: the audit row stays NEW, nobody reconciles it later
            logger.error(f"❌ iiko call failed for audit row {pending.row_ref}: {e}")
            return SubmissionResult(
                outcome=Outcome.FAILED,
                row_ref=pending.row_ref,
                submitted=pending.items,
                skipped=pending.skipped,
                error_message=str(e),
            )

        if document.success:
            status = AuditStatus.OK if (document.document_id or document.document_number) else AuditStatus.SENT
            self._update(
                pending.row_ref,
                external_doc_id=document.document_id,
                external_doc_number=document.document_number,
                status=status,
            )
            return SubmissionResult(
                outcome=Outcome.SUCCESS,
                row_ref=pending.row_ref,
                document_id=document.document_id,
                document_number=document.document_number,
                submitted=pending.items,
                skipped=pending.skipped,
            )

        error = SubmissionError(document.errors)
        logger.warning(f"⚠️ iiko rejected audit row {pending.row_ref}: {error}")
        self._update(pending.row_ref, status=AuditStatus.ERROR, error_message=str(error))
        pending.expire_at = datetime.now() + self.retry_ttl
        return SubmissionResult(
            outcome=Outcome.REJECTED,
            row_ref=pending.row_ref,
            submitted=pending.items,
            skipped=pending.skipped,
            error_message=str(error),
            pending_retry=pending,
        )

    def _update(self, row_ref: int, **fields):
        try:
            self.audit_store.update(row_ref, **fields)
        except AuditStoreError as e:
            # the iiko outcome stands; the row keeps its previous status
            logger.error(f"❌ Could not update audit row {row_ref} with {fields}: {e}")
