from __future__ import annotations

import csv
import io
import uuid
from collections.abc import Callable, Sequence
from datetime import timedelta
from decimal import Decimal
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font

from fatural.modules.extraction.normalize import LineItem


def _amount(item: LineItem) -> str:
    return f"{Decimal(item.amount):.2f}"


def _bill_no(job_id: uuid.UUID) -> str:
    return f"EXP-{str(job_id)[:8]}"


# column key -> (header, accessor(item, job_id))
COLUMNS: dict[str, tuple[str, Callable[[LineItem, uuid.UUID], Any]]] = {
    "date": ("Bill Date", lambda i, _: i.date.isoformat()),
    "merchant": ("Supplier", lambda i, _: i.merchant),
    "name": ("Line Description", lambda i, _: i.name),
    "category": ("Account", lambda i, _: i.category),
    "amount": ("Line Amount", lambda i, _: _amount(i)),
    "tax_code": ("Line Tax Code", lambda i, _: i.tax_code),
    "tax_percentage": ("TVSH (%)", lambda i, _: i.tax_percentage),
    "supplier_tax_id": ("NUI", lambda i, _: i.supplier_tax_id),
    "fiscal_number": ("Nr. Fiskal", lambda i, _: i.fiscal_number),
    "vat_number": ("Numri i TVSH-se", lambda i, _: i.vat_number),
    "description": ("Description", lambda i, _: i.description),
    "quantity": ("Sasia", lambda i, _: str(i.quantity)),
    "unit": ("Njesia", lambda i, _: i.unit),
    "page_number": ("Page", lambda i, _: i.page_number),
    "due_date": ("Due Date", lambda i, _: (i.date + timedelta(days=30)).isoformat()),
    "bill_no": ("Bill No", lambda i, job_id: _bill_no(job_id)),
}

DEFAULT_COLUMNS: tuple[str, ...] = (
    "date",
    "merchant",
    "name",
    "category",
    "amount",
    "tax_code",
    "quantity",
    "unit",
)

# Accounting imports need these regardless of the selected columns.
REQUIRED_COLUMNS: tuple[str, ...] = ("due_date", "bill_no")


class UnknownColumn(ValueError):
    pass


def resolve_columns(selected: Sequence[str] | None = None) -> list[str]:
    keys = list(selected) if selected else list(DEFAULT_COLUMNS)
    unknown = [k for k in keys if k not in COLUMNS]
    if unknown:
        raise UnknownColumn(f"Unknown export columns: {', '.join(unknown)}")
    out: list[str] = []
    for key in [*keys, *REQUIRED_COLUMNS]:
        if key not in out:
            out.append(key)
    return out


def _rows(
    items: Sequence[LineItem], *, job_id: uuid.UUID, columns: Sequence[str]
) -> list[list[Any]]:
    return [[COLUMNS[key][1](item, job_id) for key in columns] for item in items]


def build_csv(
    items: Sequence[LineItem], *, job_id: uuid.UUID, columns: Sequence[str] | None = None
) -> bytes:
    keys = resolve_columns(columns)
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([COLUMNS[k][0] for k in keys])
    for row in _rows(items, job_id=job_id, columns=keys):
        writer.writerow(["" if v is None else v for v in row])
    # BOM so spreadsheet apps detect UTF-8 (account names are Albanian)
    return buf.getvalue().encode("utf-8-sig")


def build_xlsx(
    items: Sequence[LineItem], *, job_id: uuid.UUID, columns: Sequence[str] | None = None
) -> bytes:
    keys = resolve_columns(columns)
    wb = Workbook()
    ws = wb.active
    ws.title = "Expenses"
    ws.append([COLUMNS[k][0] for k in keys])
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in _rows(items, job_id=job_id, columns=keys):
        ws.append(row)

    if "amount" in keys:
        col = keys.index("amount") + 1
        for (cell,) in ws.iter_rows(min_row=2, min_col=col, max_col=col):
            if cell.value not in (None, ""):
                cell.value = float(cell.value)
                cell.number_format = "#,##0.00"

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()
