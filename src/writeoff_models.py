from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


class Operation(str, Enum):
    WRITEOFF = "writeoff"
    TRANSFER = "transfer"


class Step(str, Enum):
    IDLE = "idle"
    SELECT_STORE = "select_store"
    SELECT_TARGET_STORE = "select_target_store"  # transfer only
    SELECT_ACCOUNT = "select_account"  # write-off only
    COLLECT_ITEMS = "collect_items"
    SELECT_PRODUCT = "select_product"
    ENTER_QUANTITY = "enter_quantity"
    CONFIRM = "confirm"


class AuditStatus(str, Enum):
    NEW = "NEW"
    OK = "OK"
    ERROR = "ERROR"
    SENT = "SENT"  # accepted by iiko without a document reference


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    display_name: str
    code: Optional[str] = None
    secondary_code: Optional[str] = None
    unit: Optional[str] = None
    # raw catalog name, "" when iiko has none; None means use display_name
    name: Optional[str] = None


@dataclass(frozen=True)
class ParsedItem:
    name: str
    amount: float
    unit: str
    parse_error: bool = False
    product_id: Optional[str] = None
    matched_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "amount": self.amount,
            "unit": self.unit,
            "parseError": self.parse_error,
            "productId": self.product_id,
            "matchedName": self.matched_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ParsedItem":
        return cls(
            name=data.get("name", ""),
            amount=data.get("amount", 0),
            unit=data.get("unit", ""),
            parse_error=bool(data.get("parseError", False)),
            product_id=data.get("productId"),
            matched_name=data.get("matchedName"),
        )


@dataclass(frozen=True)
class ConversationState:
    user_id: int
    step: Step = Step.IDLE
    operation: Operation = Operation.WRITEOFF
    store_id: Optional[str] = None
    store_name: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    target_store_id: Optional[str] = None
    target_store_name: Optional[str] = None
    items: Tuple[ParsedItem, ...] = ()
    raw_lines: Tuple[str, ...] = ()
    candidates: Tuple[str, ...] = ()
    selected_product: Optional[CatalogEntry] = None
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class AuditRecord:
    operation: str
    store_id: str
    store_name: str
    raw_text: str
    items: List[ParsedItem]
    user_id: int
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    target_store_id: Optional[str] = None
    target_store_name: Optional[str] = None
    external_doc_id: Optional[str] = None
    external_doc_number: Optional[str] = None
    status: AuditStatus = AuditStatus.NEW
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    row_ref: Optional[int] = None


@dataclass
class DocumentResult:
    success: bool
    document_id: Optional[str] = None
    document_number: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class PendingRetry:
    """A rejected submission kept around so the user can replay it"""
    user_id: int
    row_ref: int
    operation: Operation
    store_id: str
    store_name: str
    items: List[ParsedItem]
    skipped: List[ParsedItem]
    comment: str
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    target_store_id: Optional[str] = None
    target_store_name: Optional[str] = None
    expire_at: Optional[datetime] = None


@dataclass(frozen=True)
class Option:
    label: str
    data: str


@dataclass
class Action:
    text: str
    options: List[Option] = field(default_factory=list)


@dataclass(frozen=True)
class Event:
    user_id: int
    kind: str  # command|selection|text
    payload: str
    username: Optional[str] = None
