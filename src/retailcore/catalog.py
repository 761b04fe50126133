"""Product and customer master data.

Products and customers are never deleted; they are deactivated instead so
that every historical sale, movement and ledger entry keeps a valid
reference. Quantities, costs and balances are owned by the costing, sales
and ledger modules: they start at zero here and no edit in this module
touches them.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import data_manager, log
from .constants import TableName
from .core_logic import (
    CustomerUpdateCommand,
    InvalidInput,
    NewCustomerCommand,
    NewProductCommand,
    ProductNotFound,
    ProductUpdateCommand,
    RuntimeContext,
    fetch_customer,
    fetch_product,
    require_nonnegative_money,
)
from .data_manager import round_money, to_storage_money, to_storage_timestamp, utc_now
from .store import AtomicHandle, Insert, Select, Store, Update


ZERO = Decimal("0.00")


def _require_name(name: str, kind: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        log.error("%s name validation failed: %r", kind, name)
        raise InvalidInput(f"{kind} name must not be empty")
    return cleaned


def _require_min_level(level: Any) -> int:
    if isinstance(level, bool) or not isinstance(level, int) or level < 0:
        log.error("Minimum stock level validation failed: %r", level)
        raise InvalidInput(f"Minimum stock level must be a non-negative whole number, got {level!r}")
    return level


def _clean_optional(text: Optional[str]) -> Optional[str]:
    return text.strip() if text and text.strip() else None


def _require_free_sku(store: Store, handle: AtomicHandle, sku: str, *, owner_id: Optional[int] = None) -> None:
    holder = store.query_one(Select(TableName.PRODUCTS.value, {"sku": sku}), handle)
    if holder is not None and holder["id"] != owner_id:
        log.warning("Duplicate SKU '%s' rejected", sku)
        raise InvalidInput(f"SKU '{sku}' is already in use")


def add_product(context: RuntimeContext, command: NewProductCommand, *, timestamp: Optional[datetime] = None) -> data_manager.ProductRow:
    """Register a product with no stock and no cost.

    ``min_stock_level`` falls back to the ``LowStockDefault`` policy.

    Raises:
        InvalidInput: If the name is blank, the SKU is already used, or the
            minimum stock level is negative.
        InvalidAmount: If the selling price is negative.
    """
    name = _require_name(command.name, "Product")
    require_nonnegative_money(command.selling_price, label="Selling price")
    min_level = command.min_stock_level
    if min_level is None:
        min_level = context.settings.low_stock_default
    min_level = _require_min_level(min_level)
    sku = _clean_optional(command.sku)

    moment = timestamp or utc_now()
    product = data_manager.ProductRow(
        id=None,
        name=name,
        sku=sku,
        selling_price=round_money(command.selling_price),
        quantity=0,
        wac_cost=ZERO,
        last_unit_cost=ZERO,
        min_stock_level=min_level,
        is_active=command.is_active,
        created_at=moment,
        updated_at=moment,
    )
    store = context.store
    with store.atomic() as handle:
        if sku is not None:
            _require_free_sku(store, handle, sku)
        product_id = store.execute(handle, Insert(TableName.PRODUCTS.value, data_manager.serialize_product(product)))

    log.info("Added product '%s' (%s)", product_id, name)
    return fetch_product(store, product_id)


def update_product(context: RuntimeContext, command: ProductUpdateCommand, *, timestamp: Optional[datetime] = None) -> data_manager.ProductRow:
    """Edit a product's name, selling price, SKU or low-stock threshold.

    Only the fields set on ``command`` change. Stock, WAC and last unit cost
    are left alone, and past sale lines keep the price they were sold at.

    Raises:
        ProductNotFound: If the product does not exist.
        InvalidInput: If nothing would change, the name is blank, the SKU
            belongs to another product, or the level is negative.
        InvalidAmount: If the selling price is negative.
    """
    changes: Dict[str, Any] = {}
    if command.name is not None:
        changes["name"] = _require_name(command.name, "Product")
    if command.selling_price is not None:
        require_nonnegative_money(command.selling_price, label="Selling price")
        changes["selling_price"] = to_storage_money(round_money(command.selling_price))
    if command.min_stock_level is not None:
        changes["min_stock_level"] = _require_min_level(command.min_stock_level)
    sku = None
    if command.sku is not None:
        sku = _clean_optional(command.sku)
        changes["sku"] = sku
    if not changes:
        raise InvalidInput("No product fields to update")
    changes["updated_at"] = to_storage_timestamp(timestamp or utc_now())

    store = context.store
    with store.atomic() as handle:
        fetch_product(store, command.product_id, handle=handle)
        if sku is not None:
            _require_free_sku(store, handle, sku, owner_id=command.product_id)
        store.execute(handle, Update(TableName.PRODUCTS.value, command.product_id, changes))

    log.info("Updated product '%s' (%s)", command.product_id, ", ".join(sorted(set(changes) - {"updated_at"})))
    return fetch_product(store, command.product_id)


def add_customer(context: RuntimeContext, command: NewCustomerCommand, *, timestamp: Optional[datetime] = None) -> data_manager.CustomerRow:
    """Register a credit customer with a zero balance.

    Raises:
        InvalidInput: If the name is blank.
        InvalidAmount: If the credit limit is negative.
    """
    name = _require_name(command.name, "Customer")
    require_nonnegative_money(command.credit_limit, label="Credit limit")

    moment = timestamp or utc_now()
    customer = data_manager.CustomerRow(
        id=None,
        name=name,
        phone=command.phone,
        credit_limit=round_money(command.credit_limit),
        credit_balance=ZERO,
        is_active=command.is_active,
        created_at=moment,
        updated_at=moment,
    )
    store = context.store
    with store.atomic() as handle:
        customer_id = store.execute(
            handle, Insert(TableName.CUSTOMERS.value, data_manager.serialize_customer(customer))
        )

    log.info("Added customer '%s' (%s)", customer_id, name)
    return fetch_customer(store, customer_id)


def update_customer(context: RuntimeContext, command: CustomerUpdateCommand, *, timestamp: Optional[datetime] = None) -> data_manager.CustomerRow:
    """Edit a customer's name, phone or credit limit.

    The balance is owned by the ledger and never changes here. A limit below
    the current balance is accepted; with ``EnforceCreditLimit`` on it simply
    blocks further credit sales until the customer pays down.

    Raises:
        CustomerNotFound: If the customer does not exist.
        InvalidInput: If nothing would change or the name is blank.
        InvalidAmount: If the credit limit is negative.
    """
    changes: Dict[str, Any] = {}
    if command.name is not None:
        changes["name"] = _require_name(command.name, "Customer")
    if command.phone is not None:
        changes["phone"] = _clean_optional(command.phone)
    if command.credit_limit is not None:
        require_nonnegative_money(command.credit_limit, label="Credit limit")
        changes["credit_limit"] = to_storage_money(round_money(command.credit_limit))
    if not changes:
        raise InvalidInput("No customer fields to update")
    changes["updated_at"] = to_storage_timestamp(timestamp or utc_now())

    store = context.store
    with store.atomic() as handle:
        customer = fetch_customer(store, command.customer_id, handle=handle)
        store.execute(handle, Update(TableName.CUSTOMERS.value, customer.id, changes))

    updated = fetch_customer(store, command.customer_id)
    if updated.credit_balance > updated.credit_limit:
        log.warning(
            "Customer '%s' now owes %s, above the new limit %s",
            updated.id,
            updated.credit_balance,
            updated.credit_limit,
        )
    log.info("Updated customer '%s' (%s)", command.customer_id, ", ".join(sorted(set(changes) - {"updated_at"})))
    return updated


def get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    return fetch_product(context.store, product_id)


def get_product_by_sku(context: RuntimeContext, sku: str) -> data_manager.ProductRow:
    """Look a product up by its SKU, as a barcode scan would.

    Raises:
        ProductNotFound: If no product carries ``sku``.
    """
    cleaned = _clean_optional(sku)
    raw = None if cleaned is None else context.store.query_one(Select(TableName.PRODUCTS.value, {"sku": cleaned}))
    if raw is None:
        log.warning("Product lookup failed for SKU '%s'", sku)
        raise ProductNotFound(f"Unknown SKU: {sku!r}")
    return data_manager.deserialize_product(raw)


def get_customer(context: RuntimeContext, customer_id: int) -> data_manager.CustomerRow:
    return fetch_customer(context.store, customer_id)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return products ordered by id, active ones only unless asked otherwise."""

    where = {} if include_inactive else {"is_active": 1}
    rows = context.store.query(Select(TableName.PRODUCTS.value, where, order_by=(("id", False),)))
    return [data_manager.deserialize_product(row) for row in rows]


def list_customers(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.CustomerRow]:
    """Return customers ordered by id, active ones only unless asked otherwise."""

    where = {} if include_inactive else {"is_active": 1}
    rows = context.store.query(Select(TableName.CUSTOMERS.value, where, order_by=(("id", False),)))
    return [data_manager.deserialize_customer(row) for row in rows]


def _deactivate(context: RuntimeContext, table: TableName, row_id: int, timestamp: Optional[datetime]) -> None:
    stamp = to_storage_timestamp(timestamp or utc_now())
    with context.store.atomic() as handle:
        context.store.execute(handle, Update(table.value, row_id, {"is_active": 0, "updated_at": stamp}))


def deactivate_product(context: RuntimeContext, product_id: int, *, timestamp: Optional[datetime] = None) -> data_manager.ProductRow:
    """Hide a product from sales and receipts while keeping its history.

    Raises:
        ProductNotFound: If the product does not exist.
    """
    fetch_product(context.store, product_id)
    _deactivate(context, TableName.PRODUCTS, product_id, timestamp)
    log.info("Deactivated product '%s'", product_id)
    return fetch_product(context.store, product_id)


def deactivate_customer(context: RuntimeContext, customer_id: int, *, timestamp: Optional[datetime] = None) -> data_manager.CustomerRow:
    """Block further credit sales to a customer; payments are still accepted.

    Raises:
        CustomerNotFound: If the customer does not exist.
    """
    fetch_customer(context.store, customer_id)
    _deactivate(context, TableName.CUSTOMERS, customer_id, timestamp)
    log.info("Deactivated customer '%s'", customer_id)
    return fetch_customer(context.store, customer_id)
