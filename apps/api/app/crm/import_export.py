from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

from app.crm.models import CRMDeal
from app.crm.stages import classify_stage


UTF8_BOM = "\ufeff"

DEAL_EXPORT_COLUMNS: list[tuple[str, str]] = [
    ("Title", "title"),
    ("Stage", "stage"),
    ("Outcome", "category"),
    ("Amount", "amount"),
    ("Probability", "probability"),
    ("Pipeline", "pipeline.name"),
    ("Owner", "owner_user_id"),
    ("Expected close", "expected_close_date"),
    ("Created", "created_at"),
]


def get_nested_value(source: Any, path: str) -> Any:
    current = source
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def convert_to_csv(rows: Iterable[Any], headers: Sequence[str], fields: Sequence[str]) -> str:
    """Render rows as spreadsheet-friendly CSV text.

    The BOM makes Excel pick UTF-8 for Cyrillic stage names. Cells are quoted
    only when they contain a delimiter, a quote or a line break.
    """
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(headers)
    for row in rows:
        values = []
        for path in fields:
            value = get_nested_value(row, path)
            values.append("" if value is None else str(value))
        writer.writerow(values)
    return UTF8_BOM + output.getvalue().removesuffix("\n")


def _coerce_datetime(value: str | date | datetime | None) -> datetime | date | None:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def format_date_for_export(value: str | date | datetime | None) -> str:
    parsed = _coerce_datetime(value)
    if parsed is None:
        return ""
    return parsed.strftime("%d.%m.%Y")


def format_datetime_for_export(value: str | date | datetime | None) -> str:
    parsed = _coerce_datetime(value)
    if parsed is None:
        return ""
    if not isinstance(parsed, datetime):
        return parsed.strftime("%d.%m.%Y")
    return parsed.strftime("%d.%m.%Y, %H:%M")


def deal_export_row(deal: CRMDeal) -> dict[str, Any]:
    return {
        "title": deal.title,
        "stage": deal.stage,
        "category": classify_stage(deal.stage).value,
        "amount": deal.amount,
        "probability": deal.probability,
        "pipeline": {"name": deal.pipeline.name} if deal.pipeline is not None else None,
        "owner_user_id": deal.owner_user_id,
        "expected_close_date": format_date_for_export(deal.expected_close_date),
        "created_at": format_datetime_for_export(deal.created_at),
    }


def export_deals_csv(deals: Iterable[CRMDeal]) -> str:
    headers = [header for header, _ in DEAL_EXPORT_COLUMNS]
    fields = [path for _, path in DEAL_EXPORT_COLUMNS]
    return convert_to_csv((deal_export_row(deal) for deal in deals), headers, fields)
