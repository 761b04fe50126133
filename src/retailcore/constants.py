"""Enumerations shared across RetailCore modules.

Centralises domain constants so that the store, the data mapping layer, the
transaction engine, and the presentation layers rely on a single source of
truth for persisted identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when opening a database.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Monetary values are quantized to this exponent everywhere.
MONEY_QUANTUM = Decimal("0.01")

INVOICE_PREFIX = "INV"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    CREDIT = "credit"
    CARD = "card"


class SaleStatus(str, Enum):
    """Lifecycle states of a sale; only ``COMPLETED`` counts in reports."""

    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class LedgerEntryType(str, Enum):
    """Direction of a customer ledger entry."""

    DEBIT = "debit"  # customer owes more
    CREDIT = "credit"  # customer paid or was credited


class MovementType(str, Enum):
    """Enumerate the canonical stock movement types recorded for audit."""

    STOCK_IN = "stock_in"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    DAMAGE = "damage"


class ReferenceType(str, Enum):
    """Kinds of records a ledger entry or stock movement can point back to."""

    SALE = "sale"
    PAYMENT = "payment"
    REFUND = "refund"
    PURCHASE = "purchase"


class StockAlertStatus(str, Enum):
    """Severity buckets used by the low-stock report."""

    OUT_OF_STOCK = "out_of_stock"
    CRITICAL = "critical"
    LOW_STOCK = "low_stock"


class TableName(str, Enum):
    """Enumerate the tables managed by the store."""

    PRODUCTS = "products"
    CUSTOMERS = "customers"
    SALES = "sales"
    SALE_LINES = "sale_lines"
    LEDGER_ENTRIES = "ledger_entries"
    STOCK_MOVEMENTS = "stock_movements"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "INVOICE_PREFIX",
    "PaymentMethod",
    "SaleStatus",
    "LedgerEntryType",
    "MovementType",
    "ReferenceType",
    "StockAlertStatus",
    "TableName",
]
