from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from writeoff_models import CatalogEntry, ParsedItem


def _normalize_name(text: Optional[str]) -> str:
    if not text:
        return ""
    return text.strip().lower()


def _product_name(product: CatalogEntry) -> str:
    # fallback labels (code, short id) never take part in name matching
    return _normalize_name(product.display_name if product.name is None else product.name)


def _exact(search: str, product: CatalogEntry) -> bool:
    name = _product_name(product)
    return bool(name) and name == search


def _substring(search: str, product: CatalogEntry) -> bool:
    name = _product_name(product)
    return bool(name) and (search in name or name in search)


def _code(search: str, product: CatalogEntry) -> bool:
    return search in (_normalize_name(product.code), _normalize_name(product.secondary_code))


# First rule with a hit wins; within a rule, catalog order wins.
MATCH_RULES: List[Callable[[str, CatalogEntry], bool]] = [_exact, _substring, _code]


def find_product(name: str, products: Sequence[CatalogEntry]) -> Optional[CatalogEntry]:
    search = _normalize_name(name)
    if not search:
        return None
    for rule in MATCH_RULES:
        for product in products:
            if rule(search, product):
                return product
    return None


def resolve_items(items: Sequence[ParsedItem], products: Sequence[CatalogEntry]) -> List[ParsedItem]:
    """Attach catalog product ids to parsed items.

    Items with parse_error, or that already carry a product_id, are returned
    untouched. Misses keep product_id=None and are excluded at submission.
    """
    resolved = []
    for item in items:
        if item.parse_error or item.product_id:
            resolved.append(item)
            continue
        product = find_product(item.name, products)
        if product is None:
            resolved.append(item)
        else:
            resolved.append(replace(item, product_id=product.id, matched_name=product.display_name))
    return resolved


def search_products(query: str, products: Sequence[CatalogEntry], limit: int = 10) -> List[CatalogEntry]:
    """Candidates for an interactive search, in match precedence order"""
    search = _normalize_name(query)
    if not search:
        return []

    found: List[CatalogEntry] = []
    seen = set()
    for rule in MATCH_RULES:
        for product in products:
            if product.id in seen or not rule(search, product):
                continue
            seen.add(product.id)
            found.append(product)
            if len(found) >= limit:
                return found
    return found
