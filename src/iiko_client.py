import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from iiko_errors import SessionExpired, TransportError
from iiko_session import IikoSessionManager
from writeoff_models import DocumentResult, ParsedItem

logger = logging.getLogger(__name__)

MAX_AUTH_RETRIES = 2


def as_list(payload: Any, wrapper_key: Optional[str] = None) -> List[Dict]:
    """Normalize "one object or a list, maybe wrapped" responses into a list."""
    if payload is None or payload == "":
        return []
    if isinstance(payload, dict) and wrapper_key and wrapper_key in payload:
        payload = payload[wrapper_key]
        if payload is None:
            return []
    if isinstance(payload, list):
        return [entry for entry in payload if isinstance(entry, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


class IikoClient:
    """iiko Server API client (REST API v2)"""

    def __init__(self, session: IikoSessionManager, request_timeout: int = 15,
                 products_timeout: int = 30):
        self.session = session
        self.base_url = session.base_url
        self.request_timeout = request_timeout
        self.products_timeout = products_timeout
        self.headers = {"Accept": "application/json"}

    def _request(self, method: str, path: str, params: Optional[Dict] = None,
                 body: Optional[Dict] = None, timeout: Optional[int] = None) -> Any:
        """Call the API, re-authenticating up to MAX_AUTH_RETRIES times on 401/403"""
        url = f"{self.base_url}/{path.lstrip('/')}"
        attempt = 0

        while True:
            key = self.session.ensure_valid()
            try:
                response = requests.request(
                    method,
                    url,
                    params={**(params or {}), "key": key},
                    json=body,
                    headers=self.headers,
                    timeout=timeout or self.request_timeout,
                )
            except requests.exceptions.RequestException as e:
                # the exception text carries the URL with the session key
                logger.error(f"❌ iiko API error ({path}): {type(e).__name__}")
                raise TransportError(f"iiko request to {path} failed: {type(e).__name__}") from None

            if response.status_code in (401, 403):
                if attempt >= MAX_AUTH_RETRIES:
                    raise SessionExpired(f"iiko keeps rejecting the session ({response.status_code})")
                attempt += 1
                logger.info(f"🔄 Session expired ({response.status_code}), re-authenticating...")
                self.session.invalidate()
                self.session.authenticate()
                continue

            if response.status_code >= 400:
                logger.error(f"❌ iiko API error ({path}): status {response.status_code}, body {response.text[:300]}")
                raise TransportError(f"iiko returned HTTP {response.status_code}", response.status_code)

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise TransportError(f"iiko returned a non-JSON body for {path}") from e

    # ============ reference data ============

    def get_stores(self) -> List[Dict]:
        return as_list(self._request("GET", "api/corporation/stores"), "corporateItemDto")

    def get_expense_accounts(self) -> List[Dict]:
        try:
            accounts = as_list(
                self._request("GET", "api/v2/entities/list", params={"rootType": "Account"})
            )
        except TransportError:
            logger.info("Trying alternative endpoint for accounts...")
            accounts = as_list(
                self._request("GET", "api/account/getAccountingCategories"),
                "accountingCategoryDto",
            )
        return [a for a in accounts if not a.get("deleted")]

    def get_products(self) -> List[Dict]:
        return as_list(
            self._request("GET", "api/products", timeout=self.products_timeout),
            "productDto",
        )

    # ============ documents ============

    @staticmethod
    def _date_incoming() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M")

    @staticmethod
    def _document_items(items: List[ParsedItem]) -> List[Dict]:
        return [{"productId": item.product_id, "amount": item.amount} for item in items]

    @staticmethod
    def _document_result(response: Any) -> DocumentResult:
        response = response if isinstance(response, dict) else {}
        body = response.get("response") or {}
        errors = response.get("errors") or []
        if isinstance(errors, str):
            errors = [errors]
        return DocumentResult(
            success=response.get("result") == "SUCCESS",
            document_id=body.get("id"),
            document_number=body.get("documentNumber"),
            errors=[str(e) for e in errors],
        )

    def create_writeoff_document(self, store_id: str, account_id: Optional[str],
                                 items: List[ParsedItem], comment: str) -> DocumentResult:
        """POST /api/v2/documents/writeoff"""
        body = {
            "dateIncoming": self._date_incoming(),
            "status": "NEW",
            "storeId": store_id,
            "comment": comment,
            "items": self._document_items(items),
        }
        if account_id:
            body["accountId"] = account_id

        logger.info(f"Creating writeoff document: {json.dumps(body, ensure_ascii=False)}")
        result = self._document_result(self._request("POST", "api/v2/documents/writeoff", body=body))
        logger.info(f"Writeoff document result: success={result.success}, number={result.document_number}")
        return result

    def create_transfer_document(self, store_from_id: str, store_to_id: str,
                                 items: List[ParsedItem], comment: str) -> DocumentResult:
        """POST /api/v2/documents/internalTransfer"""
        body = {
            "dateIncoming": self._date_incoming(),
            "status": "NEW",
            "storeFromId": store_from_id,
            "storeToId": store_to_id,
            "comment": comment,
            "items": self._document_items(items),
        }

        logger.info(f"Creating transfer document: {json.dumps(body, ensure_ascii=False)}")
        result = self._document_result(self._request("POST", "api/v2/documents/internalTransfer", body=body))
        logger.info(f"Transfer document result: success={result.success}, number={result.document_number}")
        return result
