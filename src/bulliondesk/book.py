"""
LedgerBook: the reference bookkeeping store.

Implements every record service the backup subsystem consumes, plus
the live transaction write path (:meth:`LedgerBook.record_transaction`)
whose side effects the merge replays. Records live in memory and are
flushed to a single JSON file when a path is given.

Storage layout:
    <home>/book.json     # counters, customers, transactions, ledger,
                         # base inventory and stock
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles

from .bookkeeping import (
    apply_transaction,
    build_ledger_entry,
    new_stock_id,
    payment_split,
    revert_transaction,
)
from .models import (
    BaseInventory,
    Customer,
    LedgerEntry,
    StockItem,
    Transaction,
    TransactionEntry,
    utc_now_iso,
)

logger = logging.getLogger("bulliondesk.book")

def _books_stock(entry: TransactionEntry) -> bool:
    kind = entry.metal_kind
    return kind is not None and kind.is_impure and entry.type != "money"


class LedgerBook:
    """In-memory book of customers, transactions, ledger and stock.

    Args:
        device_id: Identity of this installation, stamped on every
            transaction it creates.
        path: Optional JSON file to persist to.
    """

    def __init__(self, device_id: str, path: Optional[Path] = None) -> None:
        self.device_id = device_id
        self.path = path.expanduser() if path else None
        self._txn_counter = 0
        self._customer_counter = 0
        self._customers: dict[str, Customer] = {}
        self._transactions: dict[str, Transaction] = {}
        self._ledger: dict[str, LedgerEntry] = {}
        self._inventory = BaseInventory()
        self._stock: dict[str, StockItem] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    async def open(cls, device_id: str, path: Path) -> LedgerBook:
        """Load a book from ``path`` (an empty book if it does not exist)."""
        book = cls(device_id, path)
        if book.path and book.path.exists():
            async with aiofiles.open(book.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
            book._txn_counter = data.get("txnCounter", 0)
            book._customer_counter = data.get("customerCounter", 0)
            book._customers = {
                c.id: c for c in (Customer.model_validate(x) for x in data.get("customers", []))
            }
            book._transactions = {
                t.id: t for t in (Transaction.model_validate(x) for x in data.get("transactions", []))
            }
            book._ledger = {
                e.id: e for e in (LedgerEntry.model_validate(x) for x in data.get("ledger", []))
            }
            book._inventory = BaseInventory.model_validate(data.get("baseInventory", {}))
            book._stock = {
                s.stock_id: s for s in (StockItem.model_validate(x) for x in data.get("stock", []))
            }
            logger.debug("Loaded book from %s", book.path)
        return book

    async def _flush(self) -> None:
        if not self.path:
            return
        data = {
            "txnCounter": self._txn_counter,
            "customerCounter": self._customer_counter,
            "customers": [c.to_wire() for c in self._customers.values()],
            "transactions": [t.to_wire() for t in self._transactions.values()],
            "ledger": [e.to_wire() for e in self._ledger.values()],
            "baseInventory": self._inventory.to_wire(),
            "stock": [s.to_wire() for s in self._stock.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2))
        os.replace(tmp, self.path)

    def _next_id(self, prefix: str, taken: dict) -> str:
        """Next counter id for ``prefix`` that no stored record holds.

        Imported records keep their origin device's counter ids, so the
        local counter steps past any id already present.
        """
        attr = f"_{prefix}_counter"
        n = getattr(self, attr) + 1
        while f"{prefix}_{n}" in taken:
            n += 1
        setattr(self, attr, n)
        return f"{prefix}_{n}"

    # ------------------------------------------------------------------
    # CustomerService
    # ------------------------------------------------------------------

    async def get_all_customers(self) -> list[Customer]:
        return [c.model_copy(deep=True) for c in self._customers.values()]

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def save_customer(self, customer: Customer) -> None:
        self._customers[customer.id] = customer.model_copy(
            deep=True, update={"name": customer.name.strip()}
        )
        await self._flush()

    async def add_customer(self, name: str, customer_id: Optional[str] = None) -> Customer:
        """Create a customer with zero balances."""
        if customer_id is None:
            customer_id = self._next_id("customer", self._customers)
        if customer_id in self._customers:
            raise ValueError(f"Customer {customer_id} already exists")
        customer = Customer(id=customer_id, name=name.strip())
        await self.save_customer(customer)
        return customer

    # ------------------------------------------------------------------
    # TransactionService
    # ------------------------------------------------------------------

    async def get_all_transactions(self) -> list[Transaction]:
        return sorted(
            (t.model_copy(deep=True) for t in self._transactions.values()),
            key=lambda t: t.date,
            reverse=True,
        )

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        txn = self._transactions.get(transaction_id)
        return txn.model_copy(deep=True) if txn else None

    async def save_transaction(self, transaction: Transaction) -> None:
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        await self._flush()

    async def record_transaction(
        self,
        customer_id: str,
        entries: list[TransactionEntry],
        amount_paid: float = 0.0,
        *,
        transaction_id: Optional[str] = None,
        date: Optional[str] = None,
        note: Optional[str] = None,
        settlement_type: str = "partial",
    ) -> Transaction:
        """Create or update a transaction with all of its side effects.

        Books stock for impure purchases and sales, moves the customer's
        balances by exactly one signed delta, and writes one ledger
        entry when the amount paid changed.

        Args:
            customer_id: Owning customer.
            entries: The transaction lines. Subtotals are signed from
                the merchant's side.
            amount_paid: Total money paid so far (negative if the
                merchant paid out).
            transaction_id: Update this transaction instead of creating.
            date: Business date; defaults to now on create and to the
                stored date on update.
            note: Free-form note.
            settlement_type: full, partial or none.

        Returns:
            Transaction: The stored transaction.

        Raises:
            KeyError: Unknown customer or transaction.
            ValueError: A sale of impure metal with no stock left.
        """
        customer = self._customers.get(customer_id)
        if customer is None:
            raise KeyError(f"Customer {customer_id} not found")

        now = utc_now_iso()
        previous: Optional[Transaction] = None
        if transaction_id is not None:
            previous = await self.get_transaction(transaction_id)
            if previous is None:
                raise KeyError(f"Transaction {transaction_id} not found")
            customer = revert_transaction(customer, previous)
            self._release_stock(previous, entries)

        booked = [self._book_stock(entry, now) for entry in entries]
        total = sum(entry.subtotal for entry in booked)

        if previous is not None:
            txn = previous.model_copy(update={
                "customer_name": customer.name,
                "date": date or previous.date,
                "entries": booked,
                "total": total,
                "amount_paid": amount_paid,
                "last_to_last_given_money": previous.last_given_money,
                "last_given_money": amount_paid,
                "settlement_type": settlement_type,
                "note": note,
                "last_updated_at": now,
            })
        else:
            txn = Transaction(
                id=self._next_id("txn", self._transactions),
                device_id=self.device_id,
                customer_id=customer.id,
                customer_name=customer.name,
                date=date or now,
                entries=booked,
                total=total,
                amount_paid=amount_paid,
                last_given_money=amount_paid,
                last_to_last_given_money=0.0,
                settlement_type=settlement_type,
                note=note,
                created_at=now,
                last_updated_at=now,
            )

        self._transactions[txn.id] = txn
        self._customers[customer.id] = apply_transaction(customer, txn, now)

        split = payment_split(previous.amount_paid if previous else 0.0, amount_paid)
        if split is not None:
            entry = build_ledger_entry(txn, split[0], split[1], date=now)
            self._ledger[entry.id] = entry

        await self._flush()
        logger.info("Recorded %s for %s (total %.2f)", txn.id, customer.id, total)
        return txn.model_copy(deep=True)

    def _book_stock(self, entry: TransactionEntry, now: str) -> TransactionEntry:
        if not _books_stock(entry):
            return entry.model_copy()
        if entry.type == "purchase":
            stock_id = entry.stock_id
            if stock_id and stock_id in self._stock:
                self._stock[stock_id] = self._stock[stock_id].model_copy(update={
                    "weight": entry.weight or 0.0,
                    "touch": entry.touch or 100.0,
                })
            else:
                stock_id = new_stock_id()
                self._stock[stock_id] = StockItem(
                    stock_id=stock_id,
                    item_type=entry.item_type,
                    weight=entry.weight or 0.0,
                    touch=entry.touch or 100.0,
                    date=now[:10],
                    created_at=now,
                )
            return entry.model_copy(update={"stock_id": stock_id})

        stock_id = entry.stock_id
        if not stock_id:
            available = sorted(
                (s for s in self._stock.values() if s.item_type == entry.item_type and not s.is_sold),
                key=lambda s: s.created_at or "",
            )
            if not available:
                raise ValueError(f"No stock available for sale of {entry.item_type}")
            stock_id = available[0].stock_id
        item = self._stock.get(stock_id)
        if item is None:
            raise ValueError(f"Stock item {stock_id} not found")
        self._stock[stock_id] = item.model_copy(update={"is_sold": True})
        return entry.model_copy(update={"stock_id": stock_id})

    def _release_stock(self, previous: Transaction, new_entries: list[TransactionEntry]) -> None:
        kept = {e.stock_id for e in new_entries if e.stock_id}
        for entry in previous.entries:
            if not entry.stock_id or entry.stock_id in kept:
                continue
            if not _books_stock(entry):
                continue
            if entry.type == "purchase":
                self._stock.pop(entry.stock_id, None)
            elif entry.type == "sell" and entry.stock_id in self._stock:
                item = self._stock[entry.stock_id]
                self._stock[entry.stock_id] = item.model_copy(update={"is_sold": False})

    # ------------------------------------------------------------------
    # LedgerService
    # ------------------------------------------------------------------

    async def get_all_ledger_entries(self) -> list[LedgerEntry]:
        return sorted(
            (e.model_copy(deep=True) for e in self._ledger.values()),
            key=lambda e: e.date,
            reverse=True,
        )

    async def save_ledger_entry(self, entry: LedgerEntry) -> None:
        self._ledger[entry.id] = entry.model_copy(deep=True)
        await self._flush()

    # ------------------------------------------------------------------
    # InventoryService
    # ------------------------------------------------------------------

    async def get_base_inventory(self) -> BaseInventory:
        return self._inventory.model_copy()

    async def set_base_inventory(self, inventory: BaseInventory) -> None:
        self._inventory = inventory.model_copy()
        await self._flush()

    # ------------------------------------------------------------------
    # StockService
    # ------------------------------------------------------------------

    async def get_all_stock(self) -> list[StockItem]:
        return sorted(
            (s.model_copy() for s in self._stock.values()),
            key=lambda s: s.created_at or "",
        )

    async def restore_stock(self, item: StockItem) -> bool:
        if item.stock_id in self._stock:
            return False
        self._stock[item.stock_id] = item.model_copy()
        await self._flush()
        return True
