"""Costing engine: per-product quantity and weighted-average cost.

Every stock receipt recomputes the product's weighted-average cost (WAC)::

    new_wac = (current_qty * current_wac + added_qty * unit_cost) / (current_qty + added_qty)

rounded to cents with :func:`retailcore.data_manager.round_money`. A product
that holds no stock carries no cost, so receiving into an empty product
simply adopts the purchase cost.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import List

from . import data_manager, log
from .constants import MovementType, ReferenceType, TableName
from .core_logic import (
    InsufficientStock,
    InvalidCost,
    InvalidQuantity,
    RuntimeContext,
    StockAdjustmentCommand,
    StockChange,
    StockReceipt,
    StockReceiptCommand,
    _resolve_timestamp,
    fetch_product,
    require_active_product,
    require_nonnegative_money,
    require_positive_quantity,
)
from .data_manager import round_money, to_storage_money, to_storage_timestamp
from .store import Increment, Insert, Select, Update


def compute_weighted_average_cost(
    current_quantity: int,
    current_wac: Decimal,
    added_quantity: int,
    unit_cost: Decimal,
) -> Decimal:
    """Return the WAC after adding ``added_quantity`` units at ``unit_cost``.

    ``unit_cost`` is rounded to cents first, so the result always lies
    between ``current_wac`` and the cost that is actually recorded.
    """

    unit_cost = round_money(unit_cost)
    new_quantity = current_quantity + added_quantity
    if current_quantity == 0 or new_quantity == 0:
        return unit_cost
    weighted = current_quantity * current_wac + added_quantity * unit_cost
    return round_money(weighted / new_quantity)


def receive_stock(context: RuntimeContext, command: StockReceiptCommand) -> StockReceipt:
    """Receive purchased units into a product and re-cost it.

    Within one atomic unit the product's quantity, WAC and last unit cost are
    updated and a ``stock_in`` movement is appended carrying the stored
    pre-update WAC alongside the new one.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (StockReceiptCommand): Product, quantity and unit cost.

    Returns:
        StockReceipt: The updated product, the movement, and the audit values.

    Raises:
        InvalidQuantity: If the quantity is not a positive integer.
        InvalidCost: If the unit cost is negative.
        ProductNotFound: If the product does not exist.
        InactiveRecordError: If the product is deactivated.
        StorageFailure: If the unit cannot be committed.
    """
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.unit_cost, error=InvalidCost, label="Unit cost")
    timestamp = _resolve_timestamp(command.timestamp)
    stamp = to_storage_timestamp(timestamp)
    store = context.store

    with store.atomic() as handle:
        product = fetch_product(store, command.product_id, handle=handle)
        require_active_product(product)

        previous_stock = product.quantity
        previous_wac = product.effective_wac
        new_stock = previous_stock + command.quantity
        unit_cost = round_money(command.unit_cost)
        new_wac = compute_weighted_average_cost(previous_stock, previous_wac, command.quantity, unit_cost)

        store.execute(
            handle,
            Update(
                TableName.PRODUCTS.value,
                product.id,
                {
                    "quantity": Increment(command.quantity),
                    "wac_cost": to_storage_money(new_wac),
                    "last_unit_cost": to_storage_money(unit_cost),
                    "updated_at": stamp,
                },
            ),
        )
        movement = data_manager.StockMovementRow(
            id=None,
            product_id=product.id,
            movement_type=MovementType.STOCK_IN,
            quantity=command.quantity,
            unit_cost=unit_cost,
            previous_stock=previous_stock,
            new_stock=new_stock,
            previous_wac=product.wac_cost,
            new_wac=new_wac,
            reference_type=ReferenceType.PURCHASE.value,
            reference_id=command.supplier_id,
            notes=command.notes,
            user_id=command.user_id,
            created_at=timestamp,
        )
        movement_id = store.execute(
            handle, Insert(TableName.STOCK_MOVEMENTS.value, data_manager.serialize_stock_movement(movement))
        )
        updated = fetch_product(store, product.id, handle=handle)

    log.info(
        "Received %d units into product '%s' at %s (stock %d -> %d, WAC %s -> %s)",
        command.quantity,
        product.id,
        unit_cost,
        previous_stock,
        new_stock,
        product.wac_cost,
        new_wac,
    )
    return StockReceipt(
        product=updated,
        movement=replace(movement, id=movement_id),
        previous_stock=previous_stock,
        new_stock=new_stock,
        previous_wac=product.wac_cost,
        new_wac=new_wac,
    )


def adjust_stock(context: RuntimeContext, command: StockAdjustmentCommand) -> StockChange:
    """Apply a signed manual correction or a damage write-off.

    Adjustments never change the WAC. Damage must remove stock, and no
    adjustment may take the quantity below zero.

    Raises:
        InvalidQuantity: If the change is zero, not an integer, or a
            non-negative damage entry.
        InsufficientStock: If the product holds fewer units than removed.
        ProductNotFound: If the product does not exist.
    """
    change = command.quantity_change
    if isinstance(change, bool) or not isinstance(change, int) or change == 0:
        log.error("Adjustment quantity validation failed: %r", change)
        raise InvalidQuantity(f"Adjustment must be a non-zero whole number, got {change!r}")
    if command.movement_type not in (MovementType.ADJUSTMENT, MovementType.DAMAGE):
        raise InvalidQuantity(f"Unsupported adjustment type: {command.movement_type}")
    if command.movement_type is MovementType.DAMAGE and change > 0:
        raise InvalidQuantity("Damage write-offs must reduce stock")

    timestamp = _resolve_timestamp(command.timestamp)
    store = context.store
    with store.atomic() as handle:
        product = fetch_product(store, command.product_id, handle=handle)
        new_stock = product.quantity + change
        if new_stock < 0:
            log.warning(
                "Adjustment of %d rejected for product '%s' holding %d",
                change,
                product.id,
                product.quantity,
            )
            raise InsufficientStock(product.id, -change, product.quantity)

        store.execute(
            handle,
            Update(
                TableName.PRODUCTS.value,
                product.id,
                {"quantity": Increment(change), "updated_at": to_storage_timestamp(timestamp)},
            ),
        )
        movement = data_manager.StockMovementRow(
            id=None,
            product_id=product.id,
            movement_type=command.movement_type,
            quantity=change,
            unit_cost=None,
            previous_stock=product.quantity,
            new_stock=new_stock,
            previous_wac=None,
            new_wac=None,
            reference_type=None,
            reference_id=None,
            notes=command.notes,
            user_id=command.user_id,
            created_at=timestamp,
        )
        movement_id = store.execute(
            handle, Insert(TableName.STOCK_MOVEMENTS.value, data_manager.serialize_stock_movement(movement))
        )
        updated = fetch_product(store, product.id, handle=handle)

    log.info(
        "Recorded %s of %d for product '%s' (stock %d -> %d)",
        command.movement_type.value,
        change,
        product.id,
        product.quantity,
        new_stock,
    )
    return StockChange(product=updated, movement=replace(movement, id=movement_id))


def stock_movements_for(context: RuntimeContext, product_id: int) -> List[data_manager.StockMovementRow]:
    """Return the audit trail of a product, oldest first."""

    fetch_product(context.store, product_id)
    rows = context.store.query(
        Select(
            TableName.STOCK_MOVEMENTS.value,
            {"product_id": product_id},
            order_by=(("created_at", False), ("id", False)),
        )
    )
    return [data_manager.deserialize_stock_movement(row) for row in rows]
