import re
from typing import List, Optional, Tuple

from writeoff_models import ParsedItem

DEFAULT_UNIT = "кг"

UNIT_MAP = {
    "кг": "кг",
    "kg": "кг",
    "г": "г",
    "g": "г",
    "л": "л",
    "l": "л",
    "шт": "шт",
    "pcs": "шт",
}

_UNITS = "кг|kg|г|g|л|l|шт|pcs"
# "помидор 5 кг", "курица филе 10.5 kg", "масло 2л"
ITEM_PATTERN = re.compile(rf"^(.+?)\s+([0-9.,]+)\s*({_UNITS})?$", re.IGNORECASE)
QUANTITY_PATTERN = re.compile(rf"^([0-9.,]+)\s*({_UNITS})?$", re.IGNORECASE)
SEPARATOR = re.compile(r"[;\n]+")


def normalize_unit(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return UNIT_MAP.get(token.strip().lower())


def _to_amount(raw: str) -> Optional[float]:
    try:
        amount = float(raw.replace(",", "."))
    except ValueError:
        return None
    if amount != amount or amount <= 0:  # NaN or non-positive
        return None
    return amount


def split_segments(text: str) -> List[str]:
    if not text:
        return []
    return [part.strip() for part in SEPARATOR.split(text) if part.strip()]


def parse_items(text: str, default_unit: str = DEFAULT_UNIT) -> List[ParsedItem]:
    """Parse "помидор 5 кг; огурец 3" into items, one per segment, in order.

    Segments that do not fit `<name> <amount> [unit]` come back with
    parse_error=True, amount 0 and the untouched segment as the name.
    """
    items = []
    for segment in split_segments(text):
        match = ITEM_PATTERN.match(segment)
        amount = _to_amount(match.group(2)) if match else None
        name = match.group(1).strip() if match else ""

        if match and amount is not None and name:
            unit = normalize_unit(match.group(3)) or default_unit
            items.append(ParsedItem(name=name, amount=amount, unit=unit))
        else:
            items.append(ParsedItem(name=segment, amount=0, unit=default_unit, parse_error=True))
    return items


def parse_quantity(text: str, default_unit: str = DEFAULT_UNIT) -> Optional[Tuple[float, str]]:
    """Parse the answer to a quantity prompt: "2,5" or "3 шт"."""
    match = QUANTITY_PATTERN.match((text or "").strip())
    if not match:
        return None
    amount = _to_amount(match.group(1))
    if amount is None:
        return None
    return amount, normalize_unit(match.group(2)) or default_unit
