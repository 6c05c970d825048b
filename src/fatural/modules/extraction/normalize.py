"""
Normalization of untrusted line items returned by the vision model.

Nothing here trusts the upstream enum values: categories and tax codes are
resolved against fixed sets, and the tax percentage is always derived from the
resolved tax code.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel

CATEGORIES: tuple[str, ...] = (
    "660-01 Paga bruto",
    "660-02 Sigurimi shendetesor",
    "660-03 Kontributi pensional",
    "665-01 Shpenzimet e qirase",
    "665-02 Material harxhues",
    "665-03 Pastrimi",
    "665-04 Ushqim dhe pije",
    "665-05 Shpenzime te IT-se",
    "665-06 Shpenzimt e perfaqesimit",
    "665-07 Asete nen 1000 euro",
    "665-09 Te tjera",
    "667-01 Sherbimet e kontabilitetit",
    "667-02 Sherbime ligjore",
    "667-03 Sherbime konsulente",
    "667-04 Sherbime auditimi",
    "668-01 Akomodimi",
    "668-02 Meditja",
    "668-03 Transporti",
    "669-01 Shpenzimet e karburantit",
    "669-02 Mirembajtje dhe riparim",
    "675-01 Interneti",
    "675-02 Telefon mobil",
    "675-03 Dergesa postare",
    "675-04 Telefon fiks",
    "683-01 Sigurimi i automjeteve",
    "683-02 Sigurimi i nderteses",
    "686-01 Energjia elektrike",
    "686-02 Ujesjellesi",
    "686-03 Pastrimi",
    "686-04 Shpenzimet e ngrohjes",
    "690-01 Shpenzimet e anetaresimit",
    "690-02 Shpenzimet e perkthimit",
    "690-03 Provizion bankar",
    "690-04 Mirembajtje e webfaqes",
    "690-05 Taksa komunale",
    "690-06 Mirembajtje e llogarise bankare",
    "690-09 Te tjera",
)
FALLBACK_CATEGORY = "690-09 Te tjera"

NO_TAX = "No VAT"
TAX_CODES: tuple[str, ...] = (
    "[31] Blerjet dhe importet pa TVSH",
    "[32] Blerjet dhe importet investive pa TVSH",
    "[33] Blerjet dhe importet me TVSH jo të zbritshme",
    "[34] Blerjet dhe importet investive me TVSH jo të zbritshme",
    "[35] Importet 18%",
    "[37] Importet 8%",
    "[39] Importet investive 18%",
    "[41] Importet investive 8%",
    "[43] Blerjet vendore 18%",
    NO_TAX,
    "[45] Blerjet vendore 8%",
    "[47] Blerjet investive vendore 18%",
    "[49] Blerjet investive vendore 8%",
    "[65] E drejta e kreditimit të TVSH-së në lidhje me Ngarkesën e Kundërt 18%",
    "[28] Blerjet që i nënshtrohen ngarkesës së kundërt 18%",
)

DEFAULT_UNIT = "copë"
DEFAULT_NAME = "Unknown Item"

_CATEGORY_BY_LOWER = {c.lower(): c for c in CATEGORIES}
_CATEGORY_CODE_RE = re.compile(r"^\s*(\d{3}-\d{2})\b")
_TAX_PERCENT_RE = re.compile(r"(\d+)%")
_CENTS = Decimal("0.01")


class LineItem(BaseModel):
    name: str
    category: str
    amount: Decimal
    date: date
    merchant: str | None = None
    tax_code: str = NO_TAX
    tax_percentage: int = 0
    page_number: int = 1
    quantity: Decimal = Decimal("1")
    unit: str = DEFAULT_UNIT
    description: str | None = None
    supplier_tax_id: str | None = None
    fiscal_number: str | None = None
    vat_number: str | None = None


def resolve_category(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        return FALLBACK_CATEGORY
    value = raw.strip()
    if value in CATEGORIES:
        return value
    lowered = _CATEGORY_BY_LOWER.get(value.lower())
    if lowered:
        return lowered
    # "665-04" or "665-04 Food" -> match on the account code
    m = _CATEGORY_CODE_RE.match(value)
    if m:
        for cat in CATEGORIES:
            if cat.startswith(m.group(1)):
                return cat
    return FALLBACK_CATEGORY


def resolve_tax_code(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        return NO_TAX
    value = raw.strip()
    if value in TAX_CODES:
        return value
    needle = value.lower()
    for code in TAX_CODES:
        if needle in code.lower():
            return code
    return NO_TAX


def tax_percentage_for_code(tax_code: str) -> int:
    if tax_code == NO_TAX or "pa TVSH" in tax_code or "jo të zbritshme" in tax_code:
        return 0
    m = _TAX_PERCENT_RE.search(tax_code)
    return int(m.group(1)) if m else 0


def parse_amount(raw: Any) -> Decimal | None:
    """Parse a money amount, telling decimal separators from thousands separators.

    "12,20" and "12.20" are both 12.20; "1,234.56" and "1.234,56" are 1234.56.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        try:
            return Decimal(str(raw)).quantize(_CENTS)
        except InvalidOperation:
            return None

    s = str(raw).strip()
    if not s:
        return None
    s = s.replace("\u202f", " ").replace("\xa0", " ")
    negative = s.startswith("-") or (s.startswith("(") and s.endswith(")"))
    s = re.sub(r"[^0-9,.' ]", "", s)
    s = s.replace(" ", "").replace("'", "")
    if not s or not any(ch.isdigit() for ch in s):
        return None

    if "," in s and "." in s:
        decimal_sep = "," if s.rfind(",") > s.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        normalized = s.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in s or "." in s:
        sep = "," if "," in s else "."
        if s.count(sep) > 1:
            normalized = s.replace(sep, "")
        else:
            idx = s.rfind(sep)
            head = s[:idx]
            digits_after = len(s) - idx - 1
            if digits_after == 3 and 0 < len(head) <= 3 and head != "0":
                normalized = s.replace(sep, "")
            elif digits_after <= 2 or head in {"", "0"}:
                normalized = s.replace(sep, ".")
            else:
                normalized = s.replace(sep, "")
    else:
        normalized = s

    try:
        value = Decimal(normalized).quantize(_CENTS)
    except InvalidOperation:
        return None
    return -value if negative else value


def normalize_amount(raw: Any) -> Decimal:
    value = parse_amount(raw)
    if value is None or value < 0:
        return Decimal("0.00")
    return value


def normalize_quantity(raw: Any) -> Decimal:
    value = parse_amount(raw)
    if value is None or value <= 0:
        return Decimal("1")
    return value.quantize(Decimal("1")) if value == value.to_integral_value() else value


def parse_item_date(raw: Any) -> date | None:
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if not s:
        return None
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d.%m.%y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(s).date()
    except ValueError:
        return None


def _page_number(raw: Any) -> int:
    if isinstance(raw, bool):
        return 1
    try:
        n = int(str(raw).strip())
    except (TypeError, ValueError):
        return 1
    return n if n >= 1 else 1


def _text(raw: Any, *, max_len: int) -> str | None:
    if raw is None or isinstance(raw, (dict, list)):
        return None
    s = " ".join(str(raw).split())
    return s[:max_len] if s else None


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in item and item[key] is not None:
            return item[key]
    return None


def normalize_line_item(item: dict[str, Any], *, default_date: date) -> LineItem:
    tax_code = resolve_tax_code(_first(item, "tax_code", "vat_code", "taxCode"))
    return LineItem(
        name=_text(_first(item, "name", "item", "description"), max_len=300) or DEFAULT_NAME,
        category=resolve_category(item.get("category")),
        amount=normalize_amount(_first(item, "amount", "total", "price")),
        date=parse_item_date(item.get("date")) or default_date,
        merchant=_text(_first(item, "merchant", "supplier", "vendor"), max_len=200),
        tax_code=tax_code,
        tax_percentage=tax_percentage_for_code(tax_code),
        page_number=_page_number(_first(item, "pageNumber", "page_number", "page")),
        quantity=normalize_quantity(_first(item, "quantity", "sasia", "qty")),
        unit=_text(_first(item, "unit", "njesia"), max_len=20) or DEFAULT_UNIT,
        description=_text(item.get("description"), max_len=500),
        supplier_tax_id=_text(_first(item, "supplier_tax_id", "nui"), max_len=50),
        fiscal_number=_text(_first(item, "fiscal_number", "nr_fiskal"), max_len=50),
        vat_number=_text(_first(item, "vat_number", "numri_i_tvsh_se"), max_len=50),
    )


def normalize_line_items(items: list[Any], *, default_date: date) -> list[LineItem]:
    return [
        normalize_line_item(item, default_date=default_date)
        for item in items
        if isinstance(item, dict)
    ]


def dump_line_items(items: list[LineItem]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]
