"""Tests for the sale orchestrator: cash, card and credit sales and voids."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BASE_TIME
from retailcore import catalog, core_logic, costing, ledger, sales
from retailcore.constants import (
    LedgerEntryType,
    MovementType,
    PaymentMethod,
    ReferenceType,
    SaleStatus,
    TableName,
)
from retailcore.store import Insert, Select, StorageFailure


def line(product_id, quantity, price="50.00", discount="0"):
    return core_logic.SaleLineInput(product_id, quantity, Decimal(price), Decimal(discount))


def cash_sale(context, lines, *, paid="1000.00", minutes=10, **extra):
    return sales.record_cash_sale(
        context,
        core_logic.CashSaleCommand(
            lines=lines,
            user_id=1,
            amount_paid=Decimal(paid),
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            **extra,
        ),
    )


def credit_sale(context, customer_id, lines, *, minutes=10, **extra):
    return sales.record_credit_sale(
        context,
        core_logic.CreditSaleCommand(
            customer_id=customer_id,
            lines=lines,
            user_id=1,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            **extra,
        ),
    )


def stocked_product(context, *, quantity=10, unit_cost="30.00", price="50.00", name="Widget"):
    product = catalog.add_product(
        context,
        core_logic.NewProductCommand(name=name, selling_price=Decimal(price)),
        timestamp=BASE_TIME,
    )
    costing.receive_stock(
        context,
        core_logic.StockReceiptCommand(
            product_id=product.id,
            quantity=quantity,
            unit_cost=Decimal(unit_cost),
            user_id=1,
            timestamp=BASE_TIME,
        ),
    )
    return product


def table_size(context, table: TableName) -> int:
    return len(context.store.query(Select(table.value)))


# ---------------------------------------------------------------------------
# Credit sales
# ---------------------------------------------------------------------------


def test_credit_sale_scenario_updates_ledger_and_balance(context, product_factory, customer_factory):
    """2 x 50.00 on credit should post a 100.00 debit and raise the balance to 100.00."""

    widget = product_factory(quantity=5, unit_cost=Decimal("30.00"))
    customer = customer_factory()

    result = credit_sale(context, customer.id, [line(widget.id, 2)])

    assert result.sale.total == Decimal("100.00")
    assert result.sale.payment_method is PaymentMethod.CREDIT
    assert result.sale.payment_received == Decimal("0.00")
    assert result.change == Decimal("0.00")
    assert result.ledger_entry.entry_type is LedgerEntryType.DEBIT
    assert result.ledger_entry.amount == Decimal("100.00")
    assert result.ledger_entry.running_balance == Decimal("100.00")
    assert result.ledger_entry.reference_type == ReferenceType.SALE.value
    assert result.ledger_entry.reference_id == result.sale.id
    assert catalog.get_customer(context, customer.id).credit_balance == Decimal("100.00")
    assert catalog.get_product(context, widget.id).quantity == 3


def test_credit_sale_rejects_inactive_customer(context, product_factory, customer_factory):
    """Deactivated customers cannot buy on credit."""

    widget = product_factory(quantity=5)
    customer = customer_factory()
    catalog.deactivate_customer(context, customer.id)

    with pytest.raises(core_logic.InactiveRecordError):
        credit_sale(context, customer.id, [line(widget.id, 1)])
    assert table_size(context, TableName.SALES) == 0


def test_credit_sale_unknown_customer(context, product_factory):
    """Credit sales need an existing customer."""

    widget = product_factory(quantity=5)
    with pytest.raises(core_logic.CustomerNotFound):
        credit_sale(context, 77, [line(widget.id, 1)])


def test_credit_limit_is_ignored_by_default(context, product_factory, customer_factory):
    """Without the enforcement policy a sale may exceed the credit limit."""

    widget = product_factory(quantity=5)
    customer = customer_factory(credit_limit=Decimal("10.00"))

    result = credit_sale(context, customer.id, [line(widget.id, 1)])

    assert result.ledger_entry.running_balance == Decimal("50.00")


def test_credit_limit_enforced_when_policy_enabled(context_factory):
    """With EnforceCreditLimit on, a sale beyond the limit is rejected before any write."""

    context = context_factory(enforce_credit_limit=True)
    widget = stocked_product(context)
    customer = catalog.add_customer(
        context,
        core_logic.NewCustomerCommand(name="Bilal", credit_limit=Decimal("120.00")),
        timestamp=BASE_TIME,
    )

    first = credit_sale(context, customer.id, [line(widget.id, 2)], minutes=1)
    assert first.ledger_entry.running_balance == Decimal("100.00")

    with pytest.raises(core_logic.CreditLimitExceeded):
        credit_sale(context, customer.id, [line(widget.id, 1)], minutes=2)

    assert catalog.get_customer(context, customer.id).credit_balance == Decimal("100.00")
    assert catalog.get_product(context, widget.id).quantity == 8
    assert table_size(context, TableName.SALES) == 1


def test_zero_total_credit_sale_writes_no_ledger_entry(context, product_factory, customer_factory):
    """A fully discounted credit sale leaves the balance and ledger untouched."""

    widget = product_factory(quantity=5)
    customer = customer_factory()

    result = credit_sale(context, customer.id, [line(widget.id, 1)], discount=Decimal("50.00"))

    assert result.sale.total == Decimal("0.00")
    assert result.ledger_entry is None
    assert ledger.statement_for(context, customer.id) == []
    assert catalog.get_product(context, widget.id).quantity == 4


# ---------------------------------------------------------------------------
# Cash and card sales
# ---------------------------------------------------------------------------


def test_cash_sale_applies_discounts_and_change(context, product_factory):
    """Line discounts reduce the subtotal, sale discounts reduce the total."""

    widget = product_factory(quantity=5)

    result = cash_sale(
        context,
        [line(widget.id, 2, discount="5.00")],
        paid="100.00",
        discount=Decimal("10.00"),
    )

    assert result.sale.subtotal == Decimal("95.00")
    assert result.sale.discount == Decimal("10.00")
    assert result.sale.total == Decimal("85.00")
    assert result.change == Decimal("15.00")
    assert result.sale.change_given == Decimal("15.00")
    assert result.lines[0].line_total == Decimal("95.00")
    assert result.ledger_entry is None


def test_cash_sale_snapshots_cost_and_appends_movements(context, product_factory):
    """Each line records the WAC at sale time and one sale movement per line."""

    widget = product_factory(quantity=5, unit_cost=Decimal("30.00"))
    gadget = product_factory(name="Gadget", quantity=4, unit_cost=Decimal("12.50"))

    result = cash_sale(context, [line(widget.id, 2), line(gadget.id, 1, price="20.00")])
    costing.receive_stock(
        context,
        core_logic.StockReceiptCommand(
            product_id=widget.id,
            quantity=3,
            unit_cost=Decimal("60.00"),
            user_id=1,
            timestamp=BASE_TIME + timedelta(minutes=20),
        ),
    )

    detail = sales.get_sale(context, result.sale.id)
    assert [sale_line.cost_at_sale for sale_line in detail.lines] == [Decimal("30.00"), Decimal("12.50")]
    assert [movement.movement_type for movement in result.movements] == [MovementType.SALE, MovementType.SALE]
    assert [movement.quantity for movement in result.movements] == [-2, -1]
    assert [(m.previous_stock, m.new_stock) for m in result.movements] == [(5, 3), (4, 3)]
    assert all(movement.reference_id == result.sale.id for movement in result.movements)


def test_card_sale_records_payment_method(context, product_factory, customer_factory):
    """Card sales behave like cash sales and never touch the ledger."""

    widget = product_factory(quantity=5)
    customer = customer_factory()

    result = cash_sale(
        context,
        [line(widget.id, 1)],
        paid="50.00",
        payment_method=PaymentMethod.CARD,
        customer_id=customer.id,
    )

    assert result.sale.payment_method is PaymentMethod.CARD
    assert result.sale.customer_id == customer.id
    assert result.change == Decimal("0.00")
    assert catalog.get_customer(context, customer.id).credit_balance == Decimal("0.00")


def test_cash_sale_rejects_credit_method(context, product_factory):
    """Credit sales must go through record_credit_sale."""

    widget = product_factory(quantity=5)
    with pytest.raises(core_logic.InvalidInput):
        cash_sale(context, [line(widget.id, 1)], payment_method=PaymentMethod.CREDIT)


def test_cash_sale_with_unknown_customer_is_rejected(context, product_factory):
    """An attached customer must exist."""

    widget = product_factory(quantity=5)
    with pytest.raises(core_logic.CustomerNotFound):
        cash_sale(context, [line(widget.id, 1)], customer_id=404)
    assert catalog.get_product(context, widget.id).quantity == 5


@pytest.mark.parametrize(
    ("lines", "discount", "error"),
    [
        ([], "0", core_logic.EmptySale),
        ([core_logic.SaleLineInput(1, 0, Decimal("5.00"))], "0", core_logic.InvalidQuantity),
        ([core_logic.SaleLineInput(1, 1, Decimal("-5.00"))], "0", core_logic.InvalidAmount),
        ([core_logic.SaleLineInput(1, 1, Decimal("5.00"), Decimal("6.00"))], "0", core_logic.InvalidDiscount),
        ([core_logic.SaleLineInput(1, 1, Decimal("50.00"))], "-1.00", core_logic.InvalidDiscount),
        ([core_logic.SaleLineInput(1, 1, Decimal("50.00"))], "50.01", core_logic.InvalidDiscount),
    ],
)
def test_sale_input_validation(context, product_factory, lines, discount, error):
    """Malformed sales are rejected and nothing is written."""

    product_factory(quantity=5)

    with pytest.raises(error):
        cash_sale(context, lines, discount=Decimal(discount))
    assert table_size(context, TableName.SALES) == 0


def test_insufficient_stock_leaves_product_unchanged(context, product_factory):
    """Requesting 6 of 5 units should fail without touching the product."""

    widget = product_factory(quantity=5)
    before = catalog.get_product(context, widget.id)

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        cash_sale(context, [line(widget.id, 6)])

    assert (excinfo.value.requested, excinfo.value.available) == (6, 5)
    assert catalog.get_product(context, widget.id) == before
    assert table_size(context, TableName.SALES) == 0
    assert table_size(context, TableName.SALE_LINES) == 0


def test_stock_check_sums_repeated_products(context, product_factory):
    """Two lines of the same product must together fit the available stock."""

    widget = product_factory(quantity=5)

    with pytest.raises(core_logic.InsufficientStock):
        cash_sale(context, [line(widget.id, 3), line(widget.id, 3)])
    assert catalog.get_product(context, widget.id).quantity == 5


def test_inactive_product_cannot_be_sold(context, product_factory):
    """Deactivated products are refused at the till."""

    widget = product_factory(quantity=5)
    catalog.deactivate_product(context, widget.id)

    with pytest.raises(core_logic.InactiveRecordError):
        cash_sale(context, [line(widget.id, 1)])


# ---------------------------------------------------------------------------
# Atomicity
# ---------------------------------------------------------------------------


def _fail_on(monkeypatch, context, table: TableName, occurrence: int) -> None:
    """Make the store raise StorageFailure on the n-th insert into ``table``."""

    original = context.store.execute
    seen = {"count": 0}

    def _execute(handle, statement):
        if isinstance(statement, Insert) and statement.table == table.value:
            seen["count"] += 1
            if seen["count"] == occurrence:
                raise StorageFailure("injected failure")
        return original(handle, statement)

    monkeypatch.setattr(context.store, "execute", _execute)


def test_failure_on_second_of_three_lines_leaves_no_trace(context, product_factory, monkeypatch):
    """A storage failure mid-sale must roll back every record of the unit."""

    products = [product_factory(name=f"P{index}", quantity=5) for index in range(3)]
    _fail_on(monkeypatch, context, TableName.SALE_LINES, 2)

    with pytest.raises(StorageFailure):
        cash_sale(context, [line(product.id, 1) for product in products])

    monkeypatch.undo()
    assert [catalog.get_product(context, p.id).quantity for p in products] == [5, 5, 5]
    assert table_size(context, TableName.SALES) == 0
    assert table_size(context, TableName.SALE_LINES) == 0
    assert table_size(context, TableName.STOCK_MOVEMENTS) == 3


def test_failure_on_ledger_write_rolls_back_credit_sale(context, product_factory, customer_factory, monkeypatch):
    """If the ledger entry cannot be written, neither stock nor balance may change."""

    widget = product_factory(quantity=5)
    customer = customer_factory()
    _fail_on(monkeypatch, context, TableName.LEDGER_ENTRIES, 1)

    with pytest.raises(StorageFailure):
        credit_sale(context, customer.id, [line(widget.id, 2)])

    monkeypatch.undo()
    assert catalog.get_product(context, widget.id).quantity == 5
    assert catalog.get_customer(context, customer.id).credit_balance == Decimal("0.00")
    assert table_size(context, TableName.SALES) == 0
    assert table_size(context, TableName.LEDGER_ENTRIES) == 0



@pytest.mark.parametrize(
    ("bad_line", "error"),
    [
        (lambda product: line(product.id, 9), core_logic.InsufficientStock),
        (lambda product: line(999, 1), core_logic.ProductNotFound),
    ],
)
def test_credit_sale_rejected_on_second_of_three_lines_leaves_no_trace(
    context, product_factory, customer_factory, bad_line, error
):
    """A credit sale whose second line fails validation writes nothing at all."""

    products = [product_factory(name=f"P{index}", quantity=5) for index in range(3)]
    customer = customer_factory()
    credit_sale(context, customer.id, [line(products[0].id, 1)], minutes=5)
    before = {table: table_size(context, table) for table in TableName}

    with pytest.raises(error):
        credit_sale(
            context,
            customer.id,
            [line(products[0].id, 1), bad_line(products[1]), line(products[2].id, 1)],
        )

    assert {table: table_size(context, table) for table in TableName} == before
    assert [catalog.get_product(context, p.id).quantity for p in products] == [4, 5, 5]
    assert catalog.get_customer(context, customer.id).credit_balance == Decimal("50.00")
    assert ledger.current_balance(context, customer.id) == Decimal("50.00")


# ---------------------------------------------------------------------------
# Invoice numbers and lookups
# ---------------------------------------------------------------------------


def test_invoice_numbers_follow_a_daily_sequence(context, product_factory):
    """Invoices are numbered per UTC day starting at 0001."""

    widget = product_factory(quantity=10)

    first = cash_sale(context, [line(widget.id, 1)], minutes=1)
    second = cash_sale(context, [line(widget.id, 1)], minutes=2)
    next_day = cash_sale(context, [line(widget.id, 1)], minutes=24 * 60)

    assert first.sale.invoice_number == "INV-20250310-0001"
    assert second.sale.invoice_number == "INV-20250310-0002"
    assert next_day.sale.invoice_number == "INV-20250311-0001"


def test_get_sale_returns_lines_in_order(context, product_factory):
    """get_sale should return the header and lines as committed."""

    widget = product_factory(quantity=5)
    gadget = product_factory(name="Gadget", quantity=5)
    result = cash_sale(context, [line(gadget.id, 1), line(widget.id, 2)])

    detail = sales.get_sale(context, result.sale.id)

    assert detail.sale == result.sale
    assert [sale_line.product_id for sale_line in detail.lines] == [gadget.id, widget.id]


def test_get_sale_unknown_id(context):
    """Unknown sale ids raise SaleNotFound."""

    with pytest.raises(core_logic.SaleNotFound):
        sales.get_sale(context, 1)


# ---------------------------------------------------------------------------
# Voids
# ---------------------------------------------------------------------------


def void(context, sale_id, status=SaleStatus.REFUNDED, minutes=30):
    return sales.void_sale(
        context,
        core_logic.VoidSaleCommand(
            sale_id=sale_id,
            user_id=1,
            status=status,
            notes="customer returned",
            timestamp=BASE_TIME + timedelta(minutes=minutes),
        ),
    )


def test_refund_of_credit_sale_restores_stock_and_balance(context, product_factory, customer_factory):
    """A refund reverses the stock and credits the ledger by the sale total."""

    widget = product_factory(quantity=5)
    customer = customer_factory()
    sale = credit_sale(context, customer.id, [line(widget.id, 2)]).sale

    result = void(context, sale.id)

    assert result.sale.status is SaleStatus.REFUNDED
    assert sales.get_sale(context, sale.id).sale.status is SaleStatus.REFUNDED
    assert [movement.movement_type for movement in result.movements] == [MovementType.RETURN]
    assert result.movements[0].reference_type == ReferenceType.REFUND.value
    assert catalog.get_product(context, widget.id).quantity == 5
    assert result.ledger_entry.entry_type is LedgerEntryType.CREDIT
    assert result.ledger_entry.amount == Decimal("100.00")
    assert result.ledger_entry.running_balance == Decimal("0.00")
    assert catalog.get_customer(context, customer.id).credit_balance == Decimal("0.00")


def test_cancel_of_cash_sale_writes_no_ledger_entry(context, product_factory):
    """Voiding a cash sale only restocks."""

    widget = product_factory(quantity=5)
    sale = cash_sale(context, [line(widget.id, 1)]).sale

    result = void(context, sale.id, SaleStatus.CANCELLED)

    assert result.sale.status is SaleStatus.CANCELLED
    assert result.ledger_entry is None
    assert catalog.get_product(context, widget.id).quantity == 5


def test_void_into_empty_product_reseeds_wac(context, product_factory):
    """Returned units into an empty product bring their cost snapshot back."""

    widget = product_factory(quantity=2, unit_cost=Decimal("30.00"))
    sale = cash_sale(context, [line(widget.id, 2)], minutes=10).sale
    costing.receive_stock(
        context,
        core_logic.StockReceiptCommand(
            product_id=widget.id,
            quantity=1,
            unit_cost=Decimal("60.00"),
            user_id=1,
            timestamp=BASE_TIME + timedelta(minutes=15),
        ),
    )
    cash_sale(context, [line(widget.id, 1)], minutes=16)

    result = void(context, sale.id)

    product = catalog.get_product(context, widget.id)
    assert product.quantity == 2
    assert product.wac_cost == Decimal("30.00")
    assert (result.movements[0].previous_wac, result.movements[0].new_wac) == (Decimal("60.00"), Decimal("30.00"))


def test_void_keeps_wac_of_stocked_product(context, product_factory):
    """When stock remains, returns do not change the WAC."""

    widget = product_factory(quantity=4, unit_cost=Decimal("30.00"))
    sale = cash_sale(context, [line(widget.id, 1)]).sale
    costing.receive_stock(
        context,
        core_logic.StockReceiptCommand(
            product_id=widget.id,
            quantity=3,
            unit_cost=Decimal("44.00"),
            user_id=1,
            timestamp=BASE_TIME + timedelta(minutes=20),
        ),
    )

    result = void(context, sale.id)

    # (3 * 30 + 3 * 44) / 6 = 37.00
    assert catalog.get_product(context, widget.id).wac_cost == Decimal("37.00")
    assert result.movements[0].previous_wac is None


@pytest.mark.parametrize("target", [SaleStatus.REFUNDED, SaleStatus.CANCELLED])
def test_void_twice_is_rejected(context, product_factory, target):
    """Only completed sales can be voided."""

    widget = product_factory(quantity=5)
    sale = cash_sale(context, [line(widget.id, 1)]).sale
    void(context, sale.id)

    with pytest.raises(core_logic.InvalidStatusTransition):
        void(context, sale.id, target, minutes=40)
    assert catalog.get_product(context, widget.id).quantity == 5


def test_void_to_completed_is_rejected(context, product_factory):
    """A sale cannot be voided back into the completed state."""

    widget = product_factory(quantity=5)
    sale = cash_sale(context, [line(widget.id, 1)]).sale

    with pytest.raises(core_logic.InvalidStatusTransition):
        void(context, sale.id, SaleStatus.COMPLETED)
