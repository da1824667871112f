import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List
from zoneinfo import ZoneInfo

from iiko_errors import AuditStoreError
from writeoff_models import AuditRecord, AuditStatus, ParsedItem

TIMESTAMP_FORMAT = "%d.%m.%Y %H:%M:%S"
DATE_FORMAT = "%d.%m.%Y"

UPDATABLE_FIELDS = ("external_doc_id", "external_doc_number", "status", "error_message")

COLUMNS = (
    "id", "created_at", "operation", "store_id", "store_name", "account_id", "account_name",
    "target_store_id", "target_store_name", "raw_text", "items_json", "user_id",
    "external_doc_id", "external_doc_number", "status", "error_message",
)


class AuditStore(ABC):
    """Append/update log of every submitted operation"""

    @abstractmethod
    def append(self, record: AuditRecord) -> int:
        ...

    @abstractmethod
    def update(self, row_ref: int, **fields) -> None:
        ...

    @abstractmethod
    def query_by_user(self, user_id: int, limit: int = 5) -> List[AuditRecord]:
        ...

    @abstractmethod
    def query_by_date_prefix(self, date_label: str) -> List[AuditRecord]:
        ...


class SqliteAuditStore(AuditStore):
    def __init__(self, db_path: str, timezone: str = "Asia/Novosibirsk"):
        self.db_path = db_path
        self.tz = ZoneInfo(timezone)

    @contextmanager
    def _conn(self):
        try:
            con = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise AuditStoreError(f"cannot open audit log: {e}") from e
        try:
            yield con
            con.commit()
        except sqlite3.Error as e:
            raise AuditStoreError(f"audit log error: {e}") from e
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS writeoffs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  created_at TEXT,
                  operation TEXT,
                  store_id TEXT,
                  store_name TEXT,
                  account_id TEXT,
                  account_name TEXT,
                  target_store_id TEXT,
                  target_store_name TEXT,
                  raw_text TEXT,
                  items_json TEXT,
                  user_id TEXT,
                  external_doc_id TEXT,
                  external_doc_number TEXT,
                  status TEXT,
                  error_message TEXT
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_writeoffs_user ON writeoffs(user_id);")

    def now_label(self) -> str:
        return datetime.now(self.tz).strftime(TIMESTAMP_FORMAT)

    def append(self, record: AuditRecord) -> int:
        created_at = record.created_at or self.now_label()
        with self._conn() as con:
            cur = con.execute(
                """
                INSERT INTO writeoffs(created_at, operation, store_id, store_name, account_id, account_name,
                  target_store_id, target_store_name, raw_text, items_json, user_id,
                  external_doc_id, external_doc_number, status, error_message)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    created_at,
                    record.operation,
                    record.store_id,
                    record.store_name,
                    record.account_id,
                    record.account_name,
                    record.target_store_id,
                    record.target_store_name,
                    record.raw_text,
                    json.dumps([item.to_dict() for item in record.items], ensure_ascii=False),
                    str(record.user_id),
                    record.external_doc_id,
                    record.external_doc_number,
                    AuditStatus(record.status).value,
                    record.error_message,
                ),
            )
            return cur.lastrowid

    def update(self, row_ref: int, **fields) -> None:
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"cannot update audit fields: {sorted(unknown)}")
        if not fields:
            return
        if "status" in fields:
            fields["status"] = AuditStatus(fields["status"]).value

        assignments = ", ".join(f"{name}=?" for name in fields)
        with self._conn() as con:
            con.execute(f"UPDATE writeoffs SET {assignments} WHERE id=?", (*fields.values(), row_ref))

    def query_by_user(self, user_id: int, limit: int = 5) -> List[AuditRecord]:
        """Latest records of a user, newest first"""
        with self._conn() as con:
            cur = con.execute(
                f"SELECT {', '.join(COLUMNS)} FROM writeoffs WHERE user_id=? ORDER BY id DESC LIMIT ?",
                (str(user_id), limit),
            )
            rows = cur.fetchall()
        return [_to_record(row) for row in rows]

    def query_by_date_prefix(self, date_label: str) -> List[AuditRecord]:
        with self._conn() as con:
            cur = con.execute(
                f"SELECT {', '.join(COLUMNS)} FROM writeoffs WHERE created_at LIKE ? ORDER BY id",
                (f"{date_label}%",),
            )
            rows = cur.fetchall()
        return [_to_record(row) for row in rows]


def _to_record(row) -> AuditRecord:
    data: Dict = dict(zip(COLUMNS, row))
    try:
        items = [ParsedItem.from_dict(i) for i in json.loads(data["items_json"] or "[]")]
    except (ValueError, TypeError, AttributeError):
        items = []
    return AuditRecord(
        operation=data["operation"],
        store_id=data["store_id"],
        store_name=data["store_name"],
        raw_text=data["raw_text"] or "",
        items=items,
        user_id=int(data["user_id"]) if (data["user_id"] or "").lstrip("-").isdigit() else data["user_id"],
        account_id=data["account_id"],
        account_name=data["account_name"],
        target_store_id=data["target_store_id"],
        target_store_name=data["target_store_name"],
        external_doc_id=data["external_doc_id"],
        external_doc_number=data["external_doc_number"],
        status=AuditStatus(data["status"] or AuditStatus.NEW.value),
        error_message=data["error_message"],
        created_at=data["created_at"],
        row_ref=data["id"],
    )
