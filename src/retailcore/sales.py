"""Sale transaction orchestrator for RetailCore.

A sale touches several records at once: the sale header, one line per
product, the product quantities, one stock movement per line, and for credit
sales a ledger entry plus the customer's balance. Each entry point below
validates everything first and then writes all of those records inside a
single atomic unit of the store, so a failure anywhere leaves no trace.

Every line snapshots the product's weighted-average cost into
``cost_at_sale``; profit reporting only ever reads that snapshot.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import (
    INVOICE_PREFIX,
    LedgerEntryType,
    MovementType,
    PaymentMethod,
    ReferenceType,
    SaleStatus,
    TableName,
)
from .core_logic import (
    CashSaleCommand,
    CreditLimitExceeded,
    CreditSaleCommand,
    EmptySale,
    InsufficientStock,
    InvalidAmount,
    InvalidDiscount,
    InvalidInput,
    InvalidStatusTransition,
    RuntimeContext,
    SaleDetail,
    SaleLineInput,
    SaleResult,
    VoidSaleCommand,
    VoidSaleResult,
    _resolve_timestamp,
    fetch_customer,
    fetch_product,
    fetch_sale,
    require_active_customer,
    require_active_product,
    require_nonnegative_money,
    require_positive_quantity,
)
from .data_manager import day_bounds, round_money, to_storage_money, to_storage_timestamp
from .ledger import append_ledger_entry
from .store import AtomicHandle, Increment, Insert, Range, Select, Store, Update


@dataclass(frozen=True)
class _PricedSale:
    """Validated lines with cost snapshots and the derived totals."""

    lines: Tuple[Tuple[SaleLineInput, Decimal], ...]
    subtotal: Decimal
    discount: Decimal
    total: Decimal


def validate_lines(lines: Sequence[SaleLineInput]) -> None:
    """Check the shape of every requested line before touching the store.

    Raises:
        EmptySale: If there are no lines.
        InvalidQuantity: If a quantity is not a positive integer.
        InvalidAmount: If a unit price is negative.
        InvalidDiscount: If a line discount is negative or exceeds the line.
    """
    if not lines:
        log.error("Sale rejected: no lines supplied")
        raise EmptySale("A sale needs at least one line")
    for line in lines:
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.unit_price, error=InvalidAmount, label="Unit price")
        require_nonnegative_money(line.line_discount, error=InvalidDiscount, label="Line discount")
        if line.line_discount > line.quantity * line.unit_price:
            log.error("Line discount %s exceeds line value for product '%s'", line.line_discount, line.product_id)
            raise InvalidDiscount(f"Line discount exceeds the value of the line for product {line.product_id}")


def _price_sale(
    store: Store,
    handle: AtomicHandle,
    lines: Sequence[SaleLineInput],
    discount: Decimal,
) -> Tuple[_PricedSale, Dict[int, data_manager.ProductRow]]:
    """Check stock, snapshot costs and compute totals inside the unit."""

    products: Dict[int, data_manager.ProductRow] = OrderedDict()
    requested: Dict[int, int] = {}
    for line in lines:
        if line.product_id not in products:
            product = fetch_product(store, line.product_id, handle=handle)
            require_active_product(product)
            products[line.product_id] = product
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

    for product_id, quantity in requested.items():
        available = products[product_id].quantity
        if quantity > available:
            log.warning(
                "Insufficient stock for product '%s': requested %d, available %d",
                product_id,
                quantity,
                available,
            )
            raise InsufficientStock(product_id, quantity, available)

    priced = tuple((line, products[line.product_id].effective_wac) for line in lines)
    gross = sum((line.quantity * line.unit_price for line in lines), Decimal("0"))
    line_discounts = sum((line.line_discount for line in lines), Decimal("0"))
    subtotal = round_money(gross - line_discounts)
    if discount > subtotal:
        log.error("Sale discount %s exceeds subtotal %s", discount, subtotal)
        raise InvalidDiscount(f"Discount {discount} exceeds subtotal {subtotal}")
    total = round_money(subtotal - discount)
    return _PricedSale(priced, subtotal, round_money(discount), total), products


def _next_invoice_number(store: Store, handle: AtomicHandle, timestamp: datetime) -> str:
    """Build ``INV-YYYYMMDD-NNNN`` with a per-day sequence."""

    start, end = day_bounds(timestamp.date())
    todays = store.query(Select(TableName.SALES.value, {"created_at": Range(start, end)}), handle)
    return f"{INVOICE_PREFIX}-{timestamp.strftime('%Y%m%d')}-{len(todays) + 1:04d}"


def _write_sale(
    store: Store,
    handle: AtomicHandle,
    *,
    priced: _PricedSale,
    products: Dict[int, data_manager.ProductRow],
    customer_id: Optional[int],
    payment_method: PaymentMethod,
    amount_paid: Decimal,
    change: Decimal,
    user_id: int,
    notes: Optional[str],
    timestamp: datetime,
) -> Tuple[data_manager.SaleRow, Tuple[data_manager.SaleLineRow, ...], Tuple[data_manager.StockMovementRow, ...]]:
    """Insert the sale, its lines, the stock decrements and the movements."""

    sale = data_manager.SaleRow(
        id=None,
        invoice_number=_next_invoice_number(store, handle, timestamp),
        customer_id=customer_id,
        user_id=user_id,
        subtotal=priced.subtotal,
        discount=priced.discount,
        total=priced.total,
        payment_method=payment_method,
        payment_received=round_money(amount_paid),
        change_given=change,
        status=SaleStatus.COMPLETED,
        notes=notes,
        created_at=timestamp,
    )
    sale_id = store.execute(handle, Insert(TableName.SALES.value, data_manager.serialize_sale(sale)))
    sale = replace(sale, id=sale_id)

    stock = {product_id: product.quantity for product_id, product in products.items()}
    stamp = to_storage_timestamp(timestamp)
    written_lines: List[data_manager.SaleLineRow] = []
    movements: List[data_manager.StockMovementRow] = []
    for line, cost in priced.lines:
        sale_line = data_manager.SaleLineRow(
            id=None,
            sale_id=sale_id,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=round_money(line.unit_price),
            cost_at_sale=cost,
            line_discount=round_money(line.line_discount),
            line_total=round_money(line.quantity * line.unit_price - line.line_discount),
            created_at=timestamp,
        )
        line_id = store.execute(handle, Insert(TableName.SALE_LINES.value, data_manager.serialize_sale_line(sale_line)))
        written_lines.append(replace(sale_line, id=line_id))

        store.execute(
            handle,
            Update(
                TableName.PRODUCTS.value,
                line.product_id,
                {"quantity": Increment(-line.quantity), "updated_at": stamp},
            ),
        )
        previous = stock[line.product_id]
        stock[line.product_id] = previous - line.quantity
        movement = data_manager.StockMovementRow(
            id=None,
            product_id=line.product_id,
            movement_type=MovementType.SALE,
            quantity=-line.quantity,
            unit_cost=cost,
            previous_stock=previous,
            new_stock=stock[line.product_id],
            previous_wac=None,
            new_wac=None,
            reference_type=ReferenceType.SALE.value,
            reference_id=sale_id,
            notes=None,
            user_id=user_id,
            created_at=timestamp,
        )
        movement_id = store.execute(
            handle, Insert(TableName.STOCK_MOVEMENTS.value, data_manager.serialize_stock_movement(movement))
        )
        movements.append(replace(movement, id=movement_id))

    return sale, tuple(written_lines), tuple(movements)


def record_cash_sale(context: RuntimeContext, command: CashSaleCommand) -> SaleResult:
    """Record a sale paid on the spot in cash or by card.

    Steps, all inside one atomic unit: check stock for every line, snapshot
    each product's WAC into its line, compute totals, insert the sale and
    its lines, decrement stock and append one ``sale`` movement per line.
    No ledger entry is written, even when a customer is attached.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (CashSaleCommand): Lines, discount, amount paid and payment
            method.

    Returns:
        SaleResult: The sale, its lines, movements and the change due.

    Raises:
        EmptySale, InvalidQuantity, InvalidAmount, InvalidDiscount: On
            malformed input.
        InvalidInput: If the payment method is ``credit``.
        ProductNotFound, CustomerNotFound: On unknown references.
        InsufficientStock: If any product holds fewer units than requested.
        StorageFailure: If the unit cannot be committed.
    """
    if command.payment_method not in (PaymentMethod.CASH, PaymentMethod.CARD):
        log.error("Cash sale rejected: unsupported payment method %s", command.payment_method)
        raise InvalidInput(f"Cash sales must be paid by cash or card, got {command.payment_method}")
    validate_lines(command.lines)
    require_nonnegative_money(command.discount, error=InvalidDiscount, label="Discount")
    require_nonnegative_money(command.amount_paid, error=InvalidAmount, label="Amount paid")
    timestamp = _resolve_timestamp(command.timestamp)
    store = context.store

    with store.atomic() as handle:
        if command.customer_id is not None:
            fetch_customer(store, command.customer_id, handle=handle)
        priced, products = _price_sale(store, handle, command.lines, command.discount)
        change = max(Decimal("0.00"), round_money(command.amount_paid - priced.total))
        sale, lines, movements = _write_sale(
            store,
            handle,
            priced=priced,
            products=products,
            customer_id=command.customer_id,
            payment_method=command.payment_method,
            amount_paid=command.amount_paid,
            change=change,
            user_id=command.user_id,
            notes=command.notes,
            timestamp=timestamp,
        )

    log.info(
        "Recorded %s sale '%s' (%d lines, total=%s, change=%s)",
        sale.payment_method.value,
        sale.invoice_number,
        len(lines),
        sale.total,
        change,
    )
    return SaleResult(sale=sale, lines=lines, change=change, movements=movements)


def record_credit_sale(context: RuntimeContext, command: CreditSaleCommand) -> SaleResult:
    """Record a Khata sale charged to the customer's balance.

    Performs every step of :func:`record_cash_sale` with payment method
    ``credit`` and nothing paid, then appends a ``debit`` ledger entry for the
    sale total and raises the customer's balance by the same amount, all in
    the same atomic unit. A fully discounted sale (total of zero) writes no
    ledger entry.

    Raises:
        CustomerNotFound: If the customer does not exist.
        InactiveRecordError: If the customer is deactivated.
        CreditLimitExceeded: If the ``EnforceCreditLimit`` policy is on and
            the new balance would exceed the customer's limit.
        EmptySale, InvalidQuantity, InvalidAmount, InvalidDiscount,
            ProductNotFound, InsufficientStock, StorageFailure: As for cash
            sales.
    """
    validate_lines(command.lines)
    require_nonnegative_money(command.discount, error=InvalidDiscount, label="Discount")
    timestamp = _resolve_timestamp(command.timestamp)
    store = context.store

    with store.atomic() as handle:
        customer = fetch_customer(store, command.customer_id, handle=handle)
        require_active_customer(customer)
        priced, products = _price_sale(store, handle, command.lines, command.discount)

        new_balance = customer.credit_balance + priced.total
        if context.settings.enforce_credit_limit and new_balance > customer.credit_limit:
            log.warning(
                "Credit limit exceeded for customer '%s': %s > %s",
                customer.id,
                new_balance,
                customer.credit_limit,
            )
            raise CreditLimitExceeded(
                f"Sale of {priced.total} would raise balance to {new_balance}, above limit {customer.credit_limit}"
            )

        sale, lines, movements = _write_sale(
            store,
            handle,
            priced=priced,
            products=products,
            customer_id=customer.id,
            payment_method=PaymentMethod.CREDIT,
            amount_paid=Decimal("0"),
            change=Decimal("0.00"),
            user_id=command.user_id,
            notes=command.notes,
            timestamp=timestamp,
        )

        entry = None
        if sale.total > 0:
            entry, _ = append_ledger_entry(
                store,
                handle,
                customer=customer,
                entry_type=LedgerEntryType.DEBIT,
                amount=sale.total,
                reference_type=ReferenceType.SALE,
                reference_id=sale.id,
                description=f"Credit sale - invoice {sale.invoice_number}",
                user_id=command.user_id,
                timestamp=timestamp,
            )

    log.info(
        "Recorded credit sale '%s' for customer '%s' (total=%s, balance=%s)",
        sale.invoice_number,
        customer.id,
        sale.total,
        entry.running_balance if entry is not None else customer.credit_balance,
    )
    return SaleResult(sale=sale, lines=lines, change=Decimal("0.00"), movements=movements, ledger_entry=entry)


def get_sale(context: RuntimeContext, sale_id: int) -> SaleDetail:
    """Return a committed sale with its lines in insertion order.

    Raises:
        SaleNotFound: If the sale does not exist.
    """
    sale = fetch_sale(context.store, sale_id)
    return SaleDetail(sale=sale, lines=tuple(_sale_lines(context.store, sale_id)))


def _sale_lines(store: Store, sale_id: int, handle: Optional[AtomicHandle] = None) -> List[data_manager.SaleLineRow]:
    rows = store.query(Select(TableName.SALE_LINES.value, {"sale_id": sale_id}, order_by=(("id", False),)), handle)
    return [data_manager.deserialize_sale_line(row) for row in rows]


def void_sale(context: RuntimeContext, command: VoidSaleCommand) -> VoidSaleResult:
    """Refund or cancel a completed sale.

    The sale's status changes and its effects are reversed by new records:
    each line's units come back through a ``return`` movement, and a credit
    sale gets a ``credit`` ledger entry for its total. When a product was
    empty, the returned units re-seed its WAC from the line's cost snapshot;
    otherwise the WAC is left alone.

    Raises:
        SaleNotFound: If the sale does not exist.
        InvalidStatusTransition: If the sale is not ``completed`` or the target
            status is not ``refunded``/``cancelled``.
        StorageFailure: If the unit cannot be committed.
    """
    if command.status not in (SaleStatus.REFUNDED, SaleStatus.CANCELLED):
        raise InvalidStatusTransition(f"Cannot void a sale into status {command.status}")
    timestamp = _resolve_timestamp(command.timestamp)
    stamp = to_storage_timestamp(timestamp)
    store = context.store

    with store.atomic() as handle:
        sale = fetch_sale(store, command.sale_id, handle=handle)
        if sale.status is not SaleStatus.COMPLETED:
            log.warning("Sale '%s' cannot be voided from status %s", sale.id, sale.status.value)
            raise InvalidStatusTransition(f"Sale {sale.id} is already {sale.status.value}")

        movements: List[data_manager.StockMovementRow] = []
        for line in _sale_lines(store, sale.id, handle):
            product = fetch_product(store, line.product_id, handle=handle)
            values: Dict[str, object] = {"quantity": Increment(line.quantity), "updated_at": stamp}
            previous_wac = new_wac = None
            if product.quantity == 0:
                previous_wac, new_wac = product.wac_cost, line.cost_at_sale
                values["wac_cost"] = to_storage_money(new_wac)
            store.execute(handle, Update(TableName.PRODUCTS.value, product.id, values))
            movement = data_manager.StockMovementRow(
                id=None,
                product_id=product.id,
                movement_type=MovementType.RETURN,
                quantity=line.quantity,
                unit_cost=line.cost_at_sale,
                previous_stock=product.quantity,
                new_stock=product.quantity + line.quantity,
                previous_wac=previous_wac,
                new_wac=new_wac,
                reference_type=ReferenceType.REFUND.value,
                reference_id=sale.id,
                notes=command.notes,
                user_id=command.user_id,
                created_at=timestamp,
            )
            movement_id = store.execute(
                handle, Insert(TableName.STOCK_MOVEMENTS.value, data_manager.serialize_stock_movement(movement))
            )
            movements.append(replace(movement, id=movement_id))

        store.execute(handle, Update(TableName.SALES.value, sale.id, {"status": command.status.value}))

        entry = None
        if sale.payment_method is PaymentMethod.CREDIT and sale.customer_id is not None and sale.total > 0:
            customer = fetch_customer(store, sale.customer_id, handle=handle)
            entry, _ = append_ledger_entry(
                store,
                handle,
                customer=customer,
                entry_type=LedgerEntryType.CREDIT,
                amount=sale.total,
                reference_type=ReferenceType.REFUND,
                reference_id=sale.id,
                description=f"Sale {command.status.value} - invoice {sale.invoice_number}",
                user_id=command.user_id,
                timestamp=timestamp,
            )

    log.info("Sale '%s' marked %s (%d lines restocked)", sale.invoice_number, command.status.value, len(movements))
    return VoidSaleResult(sale=replace(sale, status=command.status), movements=tuple(movements), ledger_entry=entry)
