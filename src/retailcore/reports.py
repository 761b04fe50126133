"""Read-only reporting over committed RetailCore data.

Nothing in this module writes to the store. Profit figures are built
exclusively from the ``cost_at_sale`` snapshot on each sale line, so a later
stock receipt that re-costs a product never changes the profit of sales that
already happened. Only ``completed`` sales are counted; refunded and
cancelled sales drop out of every figure.

Date ranges are half-open, ``start <= created_at < end``, and either bound
may be ``None`` for an open range.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from . import data_manager, log
from .constants import PaymentMethod, SaleStatus, StockAlertStatus, TableName
from .core_logic import RuntimeContext
from .data_manager import round_money, to_storage_timestamp
from .store import AtomicHandle, Range, Select, Store


ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ProfitReport:
    """Aggregated profit figures for a set of completed sales.

    ``revenue`` is the gross line value (quantity times unit price) before
    any discount; ``net_profit`` subtracts both line and sale discounts.
    """

    revenue: Decimal
    cost: Decimal
    gross_profit: Decimal
    line_discounts: Decimal
    sale_discounts: Decimal
    net_profit: Decimal
    profit_margin: Decimal
    items_sold: int
    transaction_count: int

    @property
    def total_discounts(self) -> Decimal:
        return self.line_discounts + self.sale_discounts


@dataclass(frozen=True)
class DailyProfit:
    """:class:`ProfitReport` figures for one UTC calendar day."""

    day: date
    revenue: Decimal
    cost: Decimal
    gross_profit: Decimal
    line_discounts: Decimal
    sale_discounts: Decimal
    net_profit: Decimal
    profit_margin: Decimal
    items_sold: int
    transaction_count: int


@dataclass(frozen=True)
class ProductProfit:
    """Profit earned by one product; revenue is net of line discounts."""

    product_id: int
    name: str
    quantity_sold: int
    revenue: Decimal
    cost: Decimal
    profit: Decimal
    profit_margin: Decimal


@dataclass(frozen=True)
class StockAlert:
    product_id: int
    name: str
    sku: Optional[str]
    current_stock: int
    min_stock_level: int
    units_below_minimum: int
    status: StockAlertStatus


@dataclass(frozen=True)
class CustomerBalance:
    customer_id: int
    name: str
    phone: Optional[str]
    amount_owed: Decimal
    credit_limit: Decimal
    remaining_credit: Decimal


@dataclass(frozen=True)
class SalesSummary:
    """Completed sale totals split by payment method."""

    total_sales: Decimal
    cash_sales: Decimal
    credit_sales: Decimal
    card_sales: Decimal
    total_discounts: Decimal
    transaction_count: int


@dataclass(frozen=True)
class InventoryValue:
    total_items: int
    total_value: Decimal


def _profit_margin(net: Decimal, revenue: Decimal) -> Decimal:
    if revenue == 0:
        return ZERO
    return round_money(net / revenue * HUNDRED)


def _range_condition(start: Optional[datetime], end: Optional[datetime]) -> Range:
    return Range(
        None if start is None else to_storage_timestamp(start),
        None if end is None else to_storage_timestamp(end),
    )


def _completed_sales(
    store: Store, handle: AtomicHandle, start: Optional[datetime], end: Optional[datetime]
) -> Tuple[List[data_manager.SaleRow], Dict[int, List[data_manager.SaleLineRow]]]:
    """Load completed sales in range together with their lines, grouped by sale id.

    Both queries read through ``handle`` so they see the same committed state.
    """

    window = _range_condition(start, end)
    sales = [
        data_manager.deserialize_sale(row)
        for row in store.query(
            Select(
                TableName.SALES.value,
                {"created_at": window, "status": SaleStatus.COMPLETED.value},
                order_by=(("created_at", False), ("id", False)),
            ),
            handle,
        )
    ]
    wanted = {sale.id for sale in sales}
    lines: Dict[int, List[data_manager.SaleLineRow]] = defaultdict(list)
    # Lines carry their sale's timestamp, so the same window selects them.
    for row in store.query(
        Select(TableName.SALE_LINES.value, {"created_at": window}, order_by=(("id", False),)), handle
    ):
        line = data_manager.deserialize_sale_line(row)
        if line.sale_id in wanted:
            lines[line.sale_id].append(line)
    return sales, lines


def _summarize(
    sales: Iterable[data_manager.SaleRow], lines: Dict[int, List[data_manager.SaleLineRow]]
) -> ProfitReport:
    revenue = cost = line_discounts = sale_discounts = Decimal("0")
    items_sold = transactions = 0
    for sale in sales:
        transactions += 1
        sale_discounts += sale.discount
        for line in lines.get(sale.id, ()):
            revenue += line.quantity * line.unit_price
            cost += line.quantity * line.cost_at_sale
            line_discounts += line.line_discount
            items_sold += line.quantity

    gross = revenue - cost
    net = gross - line_discounts - sale_discounts
    return ProfitReport(
        revenue=round_money(revenue),
        cost=round_money(cost),
        gross_profit=round_money(gross),
        line_discounts=round_money(line_discounts),
        sale_discounts=round_money(sale_discounts),
        net_profit=round_money(net),
        profit_margin=_profit_margin(net, revenue),
        items_sold=items_sold,
        transaction_count=transactions,
    )


def profit_for_range(
    context: RuntimeContext, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> ProfitReport:
    """Summarize profit over completed sales created in ``[start, end)``.

    Calling it twice with no intervening writes yields equal reports.
    """

    with context.store.consistent_read() as handle:
        sales, lines = _completed_sales(context.store, handle, start, end)
    report = _summarize(sales, lines)
    log.debug("Profit for range %s..%s: %s", start, end, report)
    return report


def daily_profit_breakdown(
    context: RuntimeContext, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> List[DailyProfit]:
    """Group :func:`profit_for_range` by UTC calendar day, newest day first.

    Days without completed sales are omitted.
    """

    with context.store.consistent_read() as handle:
        sales, lines = _completed_sales(context.store, handle, start, end)
    by_day: Dict[date, List[data_manager.SaleRow]] = defaultdict(list)
    for sale in sales:
        by_day[sale.created_at.date()].append(sale)
    return [
        DailyProfit(day=day, **asdict(_summarize(by_day[day], lines)))
        for day in sorted(by_day, reverse=True)
    ]


def product_profit_report(
    context: RuntimeContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    limit: int = 20,
) -> List[ProductProfit]:
    """Rank products by profit earned in ``[start, end)``, most profitable first."""

    store = context.store
    with store.consistent_read() as handle:
        _, lines = _completed_sales(store, handle, start, end)
        product_rows = store.query(Select(TableName.PRODUCTS.value), handle)
    quantity: Dict[int, int] = defaultdict(int)
    revenue: Dict[int, Decimal] = defaultdict(Decimal)
    cost: Dict[int, Decimal] = defaultdict(Decimal)
    for sale_lines in lines.values():
        for line in sale_lines:
            quantity[line.product_id] += line.quantity
            revenue[line.product_id] += line.quantity * line.unit_price - line.line_discount
            cost[line.product_id] += line.quantity * line.cost_at_sale

    names = {
        product.id: product.name
        for product in (
            data_manager.deserialize_product(row) for row in product_rows
        )
    }
    entries = []
    for product_id in quantity:
        profit = revenue[product_id] - cost[product_id]
        entries.append(
            ProductProfit(
                product_id=product_id,
                name=names.get(product_id, ""),
                quantity_sold=quantity[product_id],
                revenue=round_money(revenue[product_id]),
                cost=round_money(cost[product_id]),
                profit=round_money(profit),
                profit_margin=_profit_margin(profit, revenue[product_id]),
            )
        )
    entries.sort(key=lambda entry: (-entry.profit, entry.product_id))
    return entries[:limit]


def low_stock_alerts(context: RuntimeContext) -> List[StockAlert]:
    """List active products at or below their minimum level, emptiest first.

    Status is ``out_of_stock`` at zero, ``critical`` at or below half the
    minimum level, and ``low_stock`` otherwise. Ties are ordered by id.
    """

    alerts = []
    for row in context.store.query(Select(TableName.PRODUCTS.value, {"is_active": 1})):
        product = data_manager.deserialize_product(row)
        if product.quantity > product.min_stock_level:
            continue
        if product.quantity == 0:
            status = StockAlertStatus.OUT_OF_STOCK
        elif product.quantity * 2 <= product.min_stock_level:
            status = StockAlertStatus.CRITICAL
        else:
            status = StockAlertStatus.LOW_STOCK
        alerts.append(
            StockAlert(
                product_id=product.id,
                name=product.name,
                sku=product.sku,
                current_stock=product.quantity,
                min_stock_level=product.min_stock_level,
                units_below_minimum=product.min_stock_level - product.quantity,
                status=status,
            )
        )
    alerts.sort(key=lambda alert: (alert.current_stock, alert.product_id))
    return alerts


def outstanding_balances(context: RuntimeContext) -> List[CustomerBalance]:
    """List active customers who owe money, largest balance first (ties by id)."""

    balances = []
    for row in context.store.query(Select(TableName.CUSTOMERS.value, {"is_active": 1})):
        customer = data_manager.deserialize_customer(row)
        if customer.credit_balance <= 0:
            continue
        balances.append(
            CustomerBalance(
                customer_id=customer.id,
                name=customer.name,
                phone=customer.phone,
                amount_owed=customer.credit_balance,
                credit_limit=customer.credit_limit,
                remaining_credit=round_money(customer.credit_limit - customer.credit_balance),
            )
        )
    balances.sort(key=lambda entry: (-entry.amount_owed, entry.customer_id))
    return balances


def sales_summary(
    context: RuntimeContext, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> SalesSummary:
    """Total completed sales in ``[start, end)`` per payment method."""

    with context.store.consistent_read() as handle:
        sales, _ = _completed_sales(context.store, handle, start, end)
    totals: Dict[PaymentMethod, Decimal] = defaultdict(Decimal)
    for sale in sales:
        totals[sale.payment_method] += sale.total
    return SalesSummary(
        total_sales=round_money(sum(totals.values(), Decimal("0"))),
        cash_sales=round_money(totals[PaymentMethod.CASH]),
        credit_sales=round_money(totals[PaymentMethod.CREDIT]),
        card_sales=round_money(totals[PaymentMethod.CARD]),
        total_discounts=round_money(sum((sale.discount for sale in sales), Decimal("0"))),
        transaction_count=len(sales),
    )


def inventory_value(context: RuntimeContext) -> InventoryValue:
    """Value active stock at its current weighted-average cost."""

    total_items = 0
    total_value = Decimal("0")
    for row in context.store.query(Select(TableName.PRODUCTS.value, {"is_active": 1})):
        product = data_manager.deserialize_product(row)
        total_items += product.quantity
        total_value += product.quantity * product.effective_wac
    return InventoryValue(total_items=total_items, total_value=round_money(total_value))
