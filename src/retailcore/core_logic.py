"""Shared business-layer vocabulary for RetailCore.

This module defines what every engine module speaks: the error hierarchy,
the :class:`RuntimeContext` carrying configuration and the injected store,
the command objects describing caller intent, the result objects handed
back, and the validation and lookup helpers used by
:mod:`retailcore.costing`, :mod:`retailcore.sales`, :mod:`retailcore.ledger`,
:mod:`retailcore.catalog` and :mod:`retailcore.reports`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence, Tuple

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, MovementType, PaymentMethod, SaleStatus, TableName
from .data_manager import round_money
from .store import AtomicHandle, Select, Store


class RetailCoreError(Exception):
    """Base class for every business-level failure raised by the engine."""


class BusinessRuleViolation(RetailCoreError):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or sale is unknown."""


class ProductNotFound(NotFoundError):
    """Raised when a product id does not exist."""


class CustomerNotFound(NotFoundError):
    """Raised when a customer id does not exist."""


class SaleNotFound(NotFoundError):
    """Raised when a sale id does not exist."""


class InvalidInput(BusinessRuleViolation, ValueError):
    """Raised when command values fail validation."""


class InvalidQuantity(InvalidInput):
    """Raised for zero, negative, or non-integer quantities."""


class InvalidCost(InvalidInput):
    """Raised for negative unit costs."""


class InvalidAmount(InvalidInput):
    """Raised for non-positive payment amounts or negative prices."""


class EmptySale(InvalidInput):
    """Raised when a sale has no lines."""


class InvalidDiscount(InvalidInput):
    """Raised when a discount is negative or exceeds what it discounts."""


class InactiveRecordError(InvalidInput):
    """Raised when an operation targets a deactivated product or customer."""


class CreditLimitExceeded(InvalidInput):
    """Raised when credit-limit enforcement is on and a sale would exceed it."""


class OverpaymentRejected(InvalidInput):
    """Raised when overpayments are disallowed and a payment exceeds the balance."""


class InvalidStatusTransition(InvalidInput):
    """Raised when a sale cannot move to the requested status."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when an operation would drive a product's quantity below zero."""

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the store handle used by the engine."""

    settings: data_manager.ConfigSettings
    store: Store


@dataclass(frozen=True)
class StockReceiptCommand:
    """User intent for receiving purchased stock into a product."""

    product_id: int
    quantity: int
    unit_cost: Decimal
    user_id: int
    supplier_id: Optional[int] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StockAdjustmentCommand:
    """User intent for a manual stock correction or damage write-off."""

    product_id: int
    quantity_change: int
    user_id: int
    movement_type: MovementType = MovementType.ADJUSTMENT
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleLineInput:
    """One requested line of a sale."""

    product_id: int
    quantity: int
    unit_price: Decimal
    line_discount: Decimal = Decimal("0")


@dataclass(frozen=True)
class CashSaleCommand:
    """User intent for a sale settled immediately in cash or by card."""

    lines: Sequence[SaleLineInput]
    user_id: int
    amount_paid: Decimal
    discount: Decimal = Decimal("0")
    customer_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CreditSaleCommand:
    """User intent for a Khata sale added to the customer's balance."""

    customer_id: int
    lines: Sequence[SaleLineInput]
    user_id: int
    discount: Decimal = Decimal("0")
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording money received against a customer balance."""

    customer_id: int
    amount: Decimal
    user_id: int
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class VoidSaleCommand:
    """User intent for refunding or cancelling a completed sale."""

    sale_id: int
    user_id: int
    status: SaleStatus = SaleStatus.REFUNDED
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class NewProductCommand:
    """User intent for registering a product in the catalog."""

    name: str
    selling_price: Decimal
    sku: Optional[str] = None
    min_stock_level: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class NewCustomerCommand:
    """User intent for registering a credit customer."""

    name: str
    phone: Optional[str] = None
    credit_limit: Decimal = Decimal("0")
    is_active: bool = True


@dataclass(frozen=True)
class ProductUpdateCommand:
    """User intent for editing a product's catalog fields.

    ``None`` leaves a field unchanged; a blank ``sku`` clears it.
    """

    product_id: int
    name: Optional[str] = None
    selling_price: Optional[Decimal] = None
    sku: Optional[str] = None
    min_stock_level: Optional[int] = None


@dataclass(frozen=True)
class CustomerUpdateCommand:
    """User intent for editing a customer's contact details or credit limit.

    ``None`` leaves a field unchanged; a blank ``phone`` clears it.
    """

    customer_id: int
    name: Optional[str] = None
    phone: Optional[str] = None
    credit_limit: Optional[Decimal] = None


@dataclass(frozen=True)
class StockReceipt:
    """Outcome of a stock receipt, including the costing audit values."""

    product: data_manager.ProductRow
    movement: data_manager.StockMovementRow
    previous_stock: int
    new_stock: int
    previous_wac: Decimal
    new_wac: Decimal


@dataclass(frozen=True)
class StockChange:
    """Outcome of a manual stock adjustment."""

    product: data_manager.ProductRow
    movement: data_manager.StockMovementRow


@dataclass(frozen=True)
class SaleResult:
    """Outcome of a cash, card, or credit sale."""

    sale: data_manager.SaleRow
    lines: Tuple[data_manager.SaleLineRow, ...]
    change: Decimal
    movements: Tuple[data_manager.StockMovementRow, ...] = ()
    ledger_entry: Optional[data_manager.LedgerEntryRow] = None


@dataclass(frozen=True)
class SaleDetail:
    """A committed sale together with its lines."""

    sale: data_manager.SaleRow
    lines: Tuple[data_manager.SaleLineRow, ...]


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a payment against a customer balance."""

    entry: data_manager.LedgerEntryRow
    customer: data_manager.CustomerRow


@dataclass(frozen=True)
class VoidSaleResult:
    """Outcome of refunding or cancelling a sale."""

    sale: data_manager.SaleRow
    movements: Tuple[data_manager.StockMovementRow, ...] = field(default_factory=tuple)
    ledger_entry: Optional[data_manager.LedgerEntryRow] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into timezone-aware UTC values.

    Naive datetimes are interpreted as UTC; ``None`` becomes the current time.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate.astimezone(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the configured store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for engine calls.

    Raises:
        FileNotFoundError: If the configuration file or database cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings)
    log.info("Loaded runtime context for store '%s'", settings.store_name)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Both the version declared in ``config.ini`` and the version recorded in
    the store itself must match ``EXPECTED_SCHEMA_VERSION``.

    Raises:
        RuntimeError: On any mismatch.
    """
    declared = context.settings.schema_version
    recorded = context.store.schema_version()
    for source, version in (("configuration", declared), ("store", recorded)):
        if version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Schema mismatch in %s: expected %s, found %s",
                source,
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Schema mismatch in %s: expected %s, found %s"
                % (source, EXPECTED_SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", declared)


def close_context(context: RuntimeContext) -> None:
    """Release the store held by ``context``."""

    context.store.close()
    log.debug("Closed store for '%s'", context.settings.store_name)


def require_positive_quantity(quantity: int, *, error: type[InvalidInput] = InvalidQuantity) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        InvalidQuantity: If ``quantity`` is not an ``int`` or is not above zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise error(f"Quantity must be a positive whole number, got {quantity!r}")


def require_nonnegative_money(amount: Decimal, *, error: type[InvalidInput] = InvalidAmount, label: str = "Amount") -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        InvalidInput: The supplied ``error`` subclass when ``amount`` is
            negative or not a finite decimal.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount < Decimal("0"):
        log.error("%s validation failed: %r", label, amount)
        raise error(f"{label} must be zero or positive, got {amount!r}")


def require_positive_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is strictly positive once rounded to cents.

    Raises:
        InvalidAmount: When ``amount`` is not a decimal, or rounds to zero or
            below (``Decimal("0.001")`` included).
    """
    if not isinstance(amount, Decimal) or not amount.is_finite() or round_money(amount) <= Decimal("0"):
        log.error("%s validation failed: %r", label, amount)
        raise InvalidAmount(f"{label} must be greater than zero, got {amount!r}")


def fetch_product(store: Store, product_id: int, *, handle: Optional[AtomicHandle] = None) -> data_manager.ProductRow:
    """Load a product by id, reading through ``handle`` when given.

    Raises:
        ProductNotFound: If the product does not exist.
    """
    raw = store.query_one(Select(TableName.PRODUCTS.value, {"id": product_id}), handle)
    if raw is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFound(f"Unknown product id: {product_id}")
    return data_manager.deserialize_product(raw)


def fetch_customer(store: Store, customer_id: int, *, handle: Optional[AtomicHandle] = None) -> data_manager.CustomerRow:
    """Load a customer by id, reading through ``handle`` when given.

    Raises:
        CustomerNotFound: If the customer does not exist.
    """
    raw = store.query_one(Select(TableName.CUSTOMERS.value, {"id": customer_id}), handle)
    if raw is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise CustomerNotFound(f"Unknown customer id: {customer_id}")
    return data_manager.deserialize_customer(raw)


def fetch_sale(store: Store, sale_id: int, *, handle: Optional[AtomicHandle] = None) -> data_manager.SaleRow:
    """Load a sale header by id.

    Raises:
        SaleNotFound: If the sale does not exist.
    """
    raw = store.query_one(Select(TableName.SALES.value, {"id": sale_id}), handle)
    if raw is None:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise SaleNotFound(f"Unknown sale id: {sale_id}")
    return data_manager.deserialize_sale(raw)


def require_active_product(product: data_manager.ProductRow) -> None:
    """Reject receipts and sales against a deactivated product.

    Raises:
        InactiveRecordError: If ``product`` is inactive.
    """
    if not product.is_active:
        log.warning("Attempted operation on inactive product '%s'", product.id)
        raise InactiveRecordError(f"Product '{product.id}' is inactive")


def require_active_customer(customer: data_manager.CustomerRow) -> None:
    """Reject credit sales to a deactivated customer.

    Raises:
        InactiveRecordError: If ``customer`` is inactive.
    """
    if not customer.is_active:
        log.warning("Credit sale rejected for inactive customer '%s'", customer.id)
        raise InactiveRecordError(f"Customer '{customer.id}' is inactive")


__all__ = [
    "RetailCoreError",
    "BusinessRuleViolation",
    "NotFoundError",
    "ProductNotFound",
    "CustomerNotFound",
    "SaleNotFound",
    "InvalidInput",
    "InvalidQuantity",
    "InvalidCost",
    "InvalidAmount",
    "EmptySale",
    "InvalidDiscount",
    "InactiveRecordError",
    "CreditLimitExceeded",
    "OverpaymentRejected",
    "InvalidStatusTransition",
    "InsufficientStock",
    "RuntimeContext",
    "StockReceiptCommand",
    "StockAdjustmentCommand",
    "SaleLineInput",
    "CashSaleCommand",
    "CreditSaleCommand",
    "PaymentCommand",
    "VoidSaleCommand",
    "NewProductCommand",
    "NewCustomerCommand",
    "ProductUpdateCommand",
    "CustomerUpdateCommand",
    "StockReceipt",
    "StockChange",
    "SaleResult",
    "SaleDetail",
    "PaymentResult",
    "VoidSaleResult",
    "load_runtime_context",
    "ensure_schema_version",
    "close_context",
    "round_money",
]
