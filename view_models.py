"""
Derived view-models for the budget ledger.

Pure functions that turn categories and transactions into the rows the
outer layers display: spending per category, the spending trend over time,
allocation slices and the transaction list. Aggregation uses pandas; nothing
here touches storage.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from category_ledger import UNCATEGORIZED
from utils import round_currency, utc_now

logger = logging.getLogger(__name__)

_TRANSACTION_COLUMNS = ["id", "description", "category", "amount", "date"]


def _field(item: Any, name: str) -> Any:
    """Read ``name`` from a mapping or an object."""
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _transactions_frame(transactions: Iterable[Any]) -> pd.DataFrame:
    rows = [{column: _field(tx, column) for column in _TRANSACTION_COLUMNS} for tx in transactions]
    return pd.DataFrame(rows, columns=_TRANSACTION_COLUMNS)


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def category_breakdown(categories: Iterable[Any], transactions: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    Total spending per category.

    Categories without a name are skipped, and so are totals that are zero
    or negative.

    Returns:
        List of {"category", "amount"} in category order
    """
    df = _transactions_frame(transactions)
    totals: Dict[str, float] = {}
    if not df.empty:
        amounts = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0)
        totals = amounts.groupby(df['category']).sum().to_dict()

    breakdown = []
    for category in categories:
        name = _field(category, "name")
        if not name:
            continue
        total = round_currency(totals.get(name, 0.0))
        if total > 0:
            breakdown.append({"category": name, "amount": total})
    return breakdown


def spending_trend(transactions: Iterable[Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Transaction amounts over time, oldest first.

    Entries with a missing or unparsable date are placed at ``now`` rather
    than dropped; unparsable amounts count as 0.

    Returns:
        List of {"date", "amount", "description"}
    """
    df = _transactions_frame(transactions)
    if df.empty:
        return []

    fallback = pd.Timestamp(now or utc_now())
    fallback = fallback.tz_localize("UTC") if fallback.tzinfo is None else fallback.tz_convert("UTC")

    stamps = []
    for value in df['date']:
        stamp = pd.to_datetime(value, errors='coerce', utc=True)
        if pd.isna(stamp):
            logger.debug(f"Invalid transaction date {value!r}; placing at {fallback}")
            stamp = fallback
        stamps.append(stamp)

    df['date'] = pd.to_datetime(pd.Series(stamps, index=df.index), utc=True)
    df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0)
    df = df.sort_values('date', kind='mergesort')

    return [
        {
            "date": row.date.to_pydatetime(),
            "amount": float(row.amount),
            "description": row.description,
        }
        for row in df.itertuples(index=False)
    ]


def allocation_chart(categories: Iterable[Any]) -> List[Dict[str, Any]]:
    """Slices for every category with something allocated."""
    slices = []
    for category in categories:
        allocated = _field(category, "allocated") or 0
        if allocated <= 0:
            continue
        name = _field(category, "name")
        slices.append({
            "category": name,
            "allocated": allocated,
            "label": f"{name}\n${_format_amount(allocated)}",
        })
    return slices


def transaction_rows(transactions: Iterable[Any], category_names: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Rows for the transaction list.

    Transactions pointing at a category that no longer exists show as
    Uncategorized.
    """
    active = set(category_names)
    rows = []
    for tx in transactions:
        category = _field(tx, "category")
        date = _field(tx, "date")
        rows.append({
            "id": _field(tx, "id"),
            "date": date.strftime('%Y-%m-%d') if isinstance(date, datetime) else "",
            "description": _field(tx, "description"),
            "category": category if category in active else UNCATEGORIZED,
            "amount": _field(tx, "amount"),
        })
    return rows
