"""Workbook export of RetailCore reports.

Reports are written with :mod:`openpyxl` one sheet per report, each starting
with a bold header row. Workbooks are snapshots for sharing and printing;
the store remains the only source of truth.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log, reports
from .core_logic import RuntimeContext, fetch_customer
from .ledger import statement_for


REPORT_COLUMNS: Mapping[str, Sequence[str]] = {
    "Profit": [
        "Revenue",
        "Cost",
        "GrossProfit",
        "LineDiscounts",
        "SaleDiscounts",
        "NetProfit",
        "ProfitMargin",
        "ItemsSold",
        "TransactionCount",
    ],
    "DailyProfit": [
        "Date",
        "Revenue",
        "Cost",
        "GrossProfit",
        "NetProfit",
        "ProfitMargin",
        "ItemsSold",
        "TransactionCount",
    ],
    "ProductProfit": [
        "ProductID",
        "ProductName",
        "QuantitySold",
        "Revenue",
        "Cost",
        "Profit",
        "ProfitMargin",
    ],
    "StockAlerts": [
        "ProductID",
        "ProductName",
        "SKU",
        "CurrentStock",
        "MinStockLevel",
        "UnitsBelowMinimum",
        "Status",
    ],
    "Balances": [
        "CustomerID",
        "CustomerName",
        "Phone",
        "AmountOwed",
        "CreditLimit",
        "RemainingCredit",
    ],
}

STATEMENT_COLUMNS: Sequence[str] = [
    "EntryID",
    "Timestamp",
    "EntryType",
    "Amount",
    "RunningBalance",
    "ReferenceType",
    "ReferenceID",
    "Description",
]


def _excel_time(moment: datetime) -> datetime:
    # Excel cells cannot hold timezone information.
    return moment.replace(tzinfo=None)


def _prepare_destination(destination: Path, overwrite: bool) -> Path:
    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing workbook: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    return destination


def _new_workbook() -> openpyxl.Workbook:
    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    return workbook


def _write_sheet(workbook: openpyxl.Workbook, title: str, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    worksheet = workbook.create_sheet(title=title)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    for row in rows:
        worksheet.append(list(row))


def export_reports(
    context: RuntimeContext,
    destination: Path,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    overwrite: bool = False,
) -> Path:
    """Write the profit, stock and balance reports to an ``.xlsx`` workbook.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        destination (Path): Target workbook path.
        start (datetime | None): Inclusive lower bound for the profit sheets.
        end (datetime | None): Exclusive upper bound for the profit sheets.
        overwrite (bool): Replace an existing file when ``True``.

    Returns:
        Path: The resolved path of the written workbook.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """
    destination = _prepare_destination(destination, overwrite)
    workbook = _new_workbook()

    profit = reports.profit_for_range(context, start, end)
    _write_sheet(
        workbook,
        "Profit",
        REPORT_COLUMNS["Profit"],
        [[
            profit.revenue,
            profit.cost,
            profit.gross_profit,
            profit.line_discounts,
            profit.sale_discounts,
            profit.net_profit,
            profit.profit_margin,
            profit.items_sold,
            profit.transaction_count,
        ]],
    )
    _write_sheet(
        workbook,
        "DailyProfit",
        REPORT_COLUMNS["DailyProfit"],
        (
            [
                day.day,
                day.revenue,
                day.cost,
                day.gross_profit,
                day.net_profit,
                day.profit_margin,
                day.items_sold,
                day.transaction_count,
            ]
            for day in reports.daily_profit_breakdown(context, start, end)
        ),
    )
    _write_sheet(
        workbook,
        "ProductProfit",
        REPORT_COLUMNS["ProductProfit"],
        (
            [
                entry.product_id,
                entry.name,
                entry.quantity_sold,
                entry.revenue,
                entry.cost,
                entry.profit,
                entry.profit_margin,
            ]
            for entry in reports.product_profit_report(context, start, end)
        ),
    )
    _write_sheet(
        workbook,
        "StockAlerts",
        REPORT_COLUMNS["StockAlerts"],
        (
            [
                alert.product_id,
                alert.name,
                alert.sku,
                alert.current_stock,
                alert.min_stock_level,
                alert.units_below_minimum,
                alert.status.value,
            ]
            for alert in reports.low_stock_alerts(context)
        ),
    )
    _write_sheet(
        workbook,
        "Balances",
        REPORT_COLUMNS["Balances"],
        (
            [
                balance.customer_id,
                balance.name,
                balance.phone,
                balance.amount_owed,
                balance.credit_limit,
                balance.remaining_credit,
            ]
            for balance in reports.outstanding_balances(context)
        ),
    )

    workbook.save(destination)
    log.info("Exported reports to '%s'", destination)
    return destination


def export_statement(
    context: RuntimeContext,
    customer_id: int,
    destination: Path,
    *,
    overwrite: bool = False,
) -> Path:
    """Write one customer's ledger statement, newest entry first.

    Raises:
        CustomerNotFound: If the customer does not exist.
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """
    customer = fetch_customer(context.store, customer_id)
    entries = statement_for(context, customer_id)
    destination = _prepare_destination(destination, overwrite)
    workbook = _new_workbook()
    _write_sheet(
        workbook,
        "Statement",
        STATEMENT_COLUMNS,
        (
            [
                entry.id,
                _excel_time(entry.created_at),
                entry.entry_type.value,
                entry.amount,
                entry.running_balance,
                entry.reference_type,
                entry.reference_id,
                entry.description,
            ]
            for entry in entries
        ),
    )
    workbook.save(destination)
    log.info(
        "Exported statement of customer '%s' (%d entries) to '%s'",
        customer.id,
        len(entries),
        destination,
    )
    return destination
