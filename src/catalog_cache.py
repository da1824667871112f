import logging
from typing import Dict, List, Optional

from iiko_client import IikoClient
from iiko_errors import CatalogLoadError, WriteoffBotError
from item_parser import normalize_unit
from writeoff_models import CatalogEntry

logger = logging.getLogger(__name__)


def _label(raw: Dict) -> str:
    name = (raw.get("name") or "").strip()
    if name:
        return name
    code = (str(raw.get("code") or "")).strip()
    if code:
        return code
    return f"#{str(raw.get('id', ''))[:8]}"


def _optional_str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def to_entry(raw: Dict) -> CatalogEntry:
    return CatalogEntry(
        id=str(raw.get("id")),
        display_name=_label(raw),
        code=_optional_str(raw.get("code")),
        secondary_code=_optional_str(raw.get("num")),
        unit=normalize_unit(raw.get("mainUnit") or raw.get("measureUnit")),
        name=(raw.get("name") or "").strip(),
    )


class CatalogCache:
    """In-memory stores / expense accounts / products loaded from iiko.

    Each collection is replaced wholesale on a successful load and never
    mutated in place.
    """

    def __init__(self, client: IikoClient):
        self.client = client
        self.stores: List[CatalogEntry] = []
        self.accounts: List[CatalogEntry] = []
        self.products: List[CatalogEntry] = []

    def _load(self, loader) -> List[CatalogEntry]:
        return [to_entry(raw) for raw in loader() if raw.get("id")]

    def refresh(self) -> bool:
        """Reload all collections; True only if a non-empty store list was loaded"""
        logger.info("🔄 Loading iiko references...")
        stores_ok = True

        try:
            self.stores = self._load(self.client.get_stores)
            logger.info(f"Loaded {len(self.stores)} stores")
        except WriteoffBotError as e:
            logger.error(f"❌ Error loading stores: {e}")
            stores_ok = False

        try:
            self.accounts = self._load(self.client.get_expense_accounts)
            logger.info(f"Loaded {len(self.accounts)} expense accounts")
        except WriteoffBotError as e:
            logger.warning(f"⚠️ Could not load expense accounts: {e}")

        try:
            self.products = self._load(self.client.get_products)
            logger.info(f"Loaded {len(self.products)} products")
        except WriteoffBotError as e:
            logger.warning(f"⚠️ Could not load products: {e}")

        return stores_ok and len(self.stores) > 0

    def has_stores(self) -> bool:
        return len(self.stores) > 0

    def require_stores(self) -> List[CatalogEntry]:
        """Stores for starting a flow, loading them first if the cache is empty"""
        if not self.has_stores():
            self.refresh()
        if not self.has_stores():
            raise CatalogLoadError("no stores available from iiko")
        return self.stores

    @staticmethod
    def _find(entries: List[CatalogEntry], entry_id: str) -> Optional[CatalogEntry]:
        return next((e for e in entries if e.id == entry_id), None)

    def find_store(self, store_id: str) -> Optional[CatalogEntry]:
        return self._find(self.stores, store_id)

    def find_account(self, account_id: str) -> Optional[CatalogEntry]:
        return self._find(self.accounts, account_id)

    def find_product(self, product_id: str) -> Optional[CatalogEntry]:
        return self._find(self.products, product_id)

    def counts(self) -> Dict[str, int]:
        return {"stores": len(self.stores), "accounts": len(self.accounts), "products": len(self.products)}
