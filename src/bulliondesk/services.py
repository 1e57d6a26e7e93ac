"""
Interfaces of the bookkeeping services the backup subsystem talks to.

The export path reads through these, the merge path writes through
them. Anything with matching methods will do; :class:`~bulliondesk.book.LedgerBook`
is the reference implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .models import BaseInventory, Customer, LedgerEntry, StockItem, Transaction


class CustomerService(Protocol):
    async def get_all_customers(self) -> list[Customer]: ...

    async def get_customer(self, customer_id: str) -> Optional[Customer]: ...

    async def save_customer(self, customer: Customer) -> None: ...


class TransactionService(Protocol):
    async def get_all_transactions(self) -> list[Transaction]: ...

    async def save_transaction(self, transaction: Transaction) -> None:
        """Persist a transaction and its entries exactly as given."""
        ...


class LedgerService(Protocol):
    async def get_all_ledger_entries(self) -> list[LedgerEntry]: ...

    async def save_ledger_entry(self, entry: LedgerEntry) -> None: ...


class InventoryService(Protocol):
    async def get_base_inventory(self) -> BaseInventory: ...

    async def set_base_inventory(self, inventory: BaseInventory) -> None: ...


class StockService(Protocol):
    async def get_all_stock(self) -> list[StockItem]: ...

    async def restore_stock(self, item: StockItem) -> bool:
        """Insert ``item`` keeping its stock_id. False if the id exists."""
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Secure key-value storage for keys and the device identity."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class DirectoryGrant(Protocol):
    """One-time grant of a directory the backups may be written to."""

    async def request(self) -> Optional[Path]:
        """Ask for a location. None means the operator refused."""
        ...


@dataclass
class BookServices:
    """The five record services, bundled for the exporter and merger."""

    customers: CustomerService
    transactions: TransactionService
    ledger: LedgerService
    inventory: InventoryService
    stock: StockService

    @classmethod
    def from_book(cls, book) -> BookServices:
        """Use one object that implements every service."""
        return cls(
            customers=book,
            transactions=book,
            ledger=book,
            inventory=book,
            stock=book,
        )
