"""
Balance and ledger side effects of a transaction.

The live write path and the merge replay both go through these
functions, so a transaction imported from another device moves a
customer's balances exactly as it did where it was created.

Sign convention everywhere: a positive customer balance (money or
metal) means the merchant owes the customer. ``Transaction.total`` is
the opposite, merchant's-side figure, so it enters the customer's
balance negated.
"""

from __future__ import annotations

import secrets
import time
from typing import Optional

from .models import (
    Customer,
    LedgerEntry,
    MetalKind,
    Transaction,
    TransactionEntry,
)

MONEY_EPSILON = 0.001


def balance_effect(transaction: Transaction) -> float:
    """Signed change a transaction makes to its customer's money balance.

    Money-only transactions move exactly what was paid. Regular
    transactions leave the unpaid remainder on the balance. Metal-only
    transactions never touch money.
    """
    if transaction.is_metal_only:
        return 0.0
    if transaction.is_money_only:
        return transaction.amount_paid
    return transaction.amount_paid - transaction.total


def metal_delta(entry: TransactionEntry) -> Optional[tuple[MetalKind, float]]:
    """Signed metal balance change for one metal-only entry.

    Purchases (customer hands metal over) credit the customer, sells
    debit them. Impure metals are booked at their pure weight, except a
    rupu purchase settled in silver, which books the net weight as
    settled. Refined metals are booked at raw weight.

    Returns:
        (metal kind, delta), or None if the entry moves no metal balance.
    """
    if not entry.metal_only or entry.type == "money":
        return None
    kind = entry.metal_kind
    if kind is None:
        return None

    sign = -1.0 if entry.type == "sell" else 1.0
    if kind is MetalKind.RANI:
        return kind, sign * (entry.pure_weight or 0.0)
    if kind is MetalKind.RUPU:
        if entry.rupu_return_type == "silver" and entry.net_weight is not None:
            return kind, entry.net_weight
        return kind, sign * (entry.pure_weight or 0.0)
    return kind, sign * (entry.weight or 0.0)


def apply_transaction(customer: Customer, transaction: Transaction, when: str) -> Customer:
    """Apply one transaction's balance effects to its customer.

    Exactly one signed money delta plus one metal delta per metal-only
    entry; nothing is overwritten field by field.

    Args:
        customer: The owning customer as currently stored.
        transaction: The transaction being applied.
        when: ISO timestamp recorded as the customer's last activity.

    Returns:
        Customer: Updated copy.
    """
    balances = customer.metal_balances
    for entry in transaction.entries:
        delta = metal_delta(entry)
        if delta is not None:
            balances = balances.adjusted(*delta)
    return customer.model_copy(update={
        "balance": customer.balance + balance_effect(transaction),
        "metal_balances": balances,
        "last_transaction": when,
    })


def revert_transaction(customer: Customer, transaction: Transaction) -> Customer:
    """Undo :func:`apply_transaction` (used before updating a transaction)."""
    balances = customer.metal_balances
    for entry in transaction.entries:
        delta = metal_delta(entry)
        if delta is not None:
            kind, amount = delta
            balances = balances.adjusted(kind, -amount)
    return customer.model_copy(update={
        "balance": customer.balance - balance_effect(transaction),
        "metal_balances": balances,
    })


def payment_split(previous_paid: float, current_paid: float) -> Optional[tuple[float, float]]:
    """Money received and given by one update, or None if nothing moved.

    Returns:
        (amount_received, amount_given); exactly one is non-zero.
    """
    difference = current_paid - previous_paid
    if abs(difference) <= MONEY_EPSILON:
        return None
    if difference > 0:
        return difference, 0.0
    return 0.0, -difference


def _local_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def new_ledger_id() -> str:
    return _local_id("ledger")


def new_stock_id() -> str:
    return _local_id("stock")


def build_ledger_entry(
    transaction: Transaction,
    amount_received: float,
    amount_given: float,
    date: str,
    entry_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> LedgerEntry:
    """Derive a ledger entry from the transaction it records.

    Customer and entries always come from ``transaction`` so the
    ledger stays consistent with what it describes.
    """
    return LedgerEntry(
        id=entry_id or new_ledger_id(),
        transaction_id=transaction.id,
        customer_id=transaction.customer_id,
        customer_name=transaction.customer_name,
        date=date,
        amount_received=amount_received,
        amount_given=amount_given,
        entries=[e.model_copy(deep=True) for e in transaction.entries],
        notes=notes,
        created_at=date,
    )
