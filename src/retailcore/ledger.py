"""Credit ledger ("Khata") for RetailCore.

Each customer owns an append-only list of ledger entries. Every entry stores
the balance immediately after it was applied, and the customer row keeps the
same figure in ``credit_balance`` so lookups never need to replay history.
Entries are written only here: by :func:`record_payment` and, on behalf of
the sale orchestrator, by :func:`append_ledger_entry`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from . import data_manager, log
from .constants import LedgerEntryType, ReferenceType, TableName
from .core_logic import (
    InvalidInput,
    OverpaymentRejected,
    PaymentCommand,
    PaymentResult,
    RuntimeContext,
    _resolve_timestamp,
    fetch_customer,
    require_positive_money,
)
from .data_manager import round_money, to_storage_money, to_storage_timestamp
from .store import AtomicHandle, Insert, Select, Store, Update


DEFAULT_PAYMENT_DESCRIPTION = "Payment received"


@dataclass(frozen=True)
class BalanceMismatch:
    """A customer whose stored balance disagrees with its newest ledger entry."""

    customer_id: int
    stored_balance: Decimal
    ledger_balance: Decimal


def _latest_entry(store: Store, customer_id: int, handle: Optional[AtomicHandle] = None) -> Optional[data_manager.LedgerEntryRow]:
    raw = store.query_one(
        Select(
            TableName.LEDGER_ENTRIES.value,
            {"customer_id": customer_id},
            order_by=(("created_at", True), ("id", True)),
        ),
        handle,
    )
    return None if raw is None else data_manager.deserialize_ledger_entry(raw)


def append_ledger_entry(
    store: Store,
    handle: AtomicHandle,
    *,
    customer: data_manager.CustomerRow,
    entry_type: LedgerEntryType,
    amount: Decimal,
    reference_type: ReferenceType,
    reference_id: Optional[int],
    description: Optional[str],
    user_id: int,
    timestamp: datetime,
) -> Tuple[data_manager.LedgerEntryRow, data_manager.CustomerRow]:
    """Append one entry and move the customer's balance inside ``handle``.

    Debits raise the balance, credits lower it. Entries must arrive in
    chronological order so the newest entry always carries the current
    balance.

    Returns:
        tuple: The persisted entry and the customer with its new balance.

    Raises:
        InvalidInput: If ``timestamp`` precedes the customer's newest entry.
    """
    latest = _latest_entry(store, customer.id, handle)
    if latest is not None and timestamp < latest.created_at:
        log.error(
            "Backdated ledger entry rejected for customer '%s': %s < %s",
            customer.id,
            timestamp.isoformat(),
            latest.created_at.isoformat(),
        )
        raise InvalidInput("Ledger entries must be appended in chronological order")

    amount = round_money(amount)
    if entry_type is LedgerEntryType.DEBIT:
        new_balance = round_money(customer.credit_balance + amount)
    else:
        new_balance = round_money(customer.credit_balance - amount)

    entry = data_manager.LedgerEntryRow(
        id=None,
        customer_id=customer.id,
        entry_type=entry_type,
        amount=amount,
        running_balance=new_balance,
        reference_type=reference_type.value,
        reference_id=reference_id,
        description=description,
        user_id=user_id,
        created_at=timestamp,
    )
    entry_id = store.execute(
        handle, Insert(TableName.LEDGER_ENTRIES.value, data_manager.serialize_ledger_entry(entry))
    )
    stamp = to_storage_timestamp(timestamp)
    store.execute(
        handle,
        Update(
            TableName.CUSTOMERS.value,
            customer.id,
            {"credit_balance": to_storage_money(new_balance), "updated_at": stamp},
        ),
    )
    log.debug(
        "Appended %s of %s for customer '%s' (balance %s -> %s)",
        entry_type.value,
        amount,
        customer.id,
        customer.credit_balance,
        new_balance,
    )
    return (
        replace(entry, id=entry_id),
        replace(customer, credit_balance=new_balance, updated_at=timestamp),
    )


def record_payment(context: RuntimeContext, command: PaymentCommand) -> PaymentResult:
    """Record money received from a customer as a ``credit`` ledger entry.

    The balance may go negative, representing store credit owed to the
    customer, unless the ``AllowOverpayment`` policy is switched off.

    Args:
        context (RuntimeContext): Runtime context providing the store and
            policy settings.
        command (PaymentCommand): Customer, amount and optional description.

    Returns:
        PaymentResult: The new ledger entry and the updated customer.

    Raises:
        InvalidAmount: If the amount is not strictly positive.
        CustomerNotFound: If the customer does not exist.
        OverpaymentRejected: If overpayments are disallowed and the amount
            exceeds the current balance.
        StorageFailure: If the unit cannot be committed.
    """
    require_positive_money(command.amount, label="Payment amount")
    timestamp = _resolve_timestamp(command.timestamp)
    store = context.store

    with store.atomic() as handle:
        customer = fetch_customer(store, command.customer_id, handle=handle)
        if not context.settings.allow_overpayment and round_money(command.amount) > customer.credit_balance:
            log.warning(
                "Overpayment of %s rejected for customer '%s' owing %s",
                command.amount,
                customer.id,
                customer.credit_balance,
            )
            raise OverpaymentRejected(
                f"Payment {command.amount} exceeds outstanding balance {customer.credit_balance}"
            )
        entry, updated = append_ledger_entry(
            store,
            handle,
            customer=customer,
            entry_type=LedgerEntryType.CREDIT,
            amount=command.amount,
            reference_type=ReferenceType.PAYMENT,
            reference_id=None,
            description=command.description or DEFAULT_PAYMENT_DESCRIPTION,
            user_id=command.user_id,
            timestamp=timestamp,
        )

    log.info(
        "Recorded payment of %s from customer '%s' (balance now %s)",
        entry.amount,
        customer.id,
        entry.running_balance,
    )
    return PaymentResult(entry=entry, customer=updated)


def statement_for(context: RuntimeContext, customer_id: int) -> List[data_manager.LedgerEntryRow]:
    """Return every ledger entry of a customer, newest first.

    Entries sharing a timestamp are ordered by id, newest first, so the
    order is total and stable.

    Raises:
        CustomerNotFound: If the customer does not exist.
    """
    store = context.store
    fetch_customer(store, customer_id)
    rows = store.query(
        Select(
            TableName.LEDGER_ENTRIES.value,
            {"customer_id": customer_id},
            order_by=(("created_at", True), ("id", True)),
        )
    )
    return [data_manager.deserialize_ledger_entry(row) for row in rows]


def current_balance(context: RuntimeContext, customer_id: int) -> Decimal:
    """Return the amount a customer currently owes (negative means store credit)."""

    return fetch_customer(context.store, customer_id).credit_balance


def find_balance_mismatches(context: RuntimeContext) -> List[BalanceMismatch]:
    """Audit every customer's stored balance against its newest ledger entry."""

    store = context.store
    mismatches: List[BalanceMismatch] = []
    for raw in store.query(Select(TableName.CUSTOMERS.value, order_by=(("id", False),))):
        customer = data_manager.deserialize_customer(raw)
        latest = _latest_entry(store, customer.id)
        ledger_balance = latest.running_balance if latest is not None else Decimal("0.00")
        if ledger_balance != customer.credit_balance:
            log.error(
                "Balance mismatch for customer '%s': stored %s, ledger %s",
                customer.id,
                customer.credit_balance,
                ledger_balance,
            )
            mismatches.append(BalanceMismatch(customer.id, customer.credit_balance, ledger_balance))
    return mismatches
