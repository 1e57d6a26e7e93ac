"""
Conflict-free merge of an imported bundle into the local book.

Five steps run in a fixed order, each idempotent by key:

    1. customers      by id, last-write-wins on last activity
    2. transactions   by (id, origin device), colliding ids renamed,
                      new ones replayed through the live side-effect path
    3. ledger         by id, recreated from the source transaction
    4. base inventory only fields the bundle carries, on approval
    5. stock          by stock_id, original ids kept

A failure partway leaves earlier steps committed. Running the same
merge again converges on the same state.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ..bookkeeping import apply_transaction
from ..errors import MergeConflict
from ..models import (
    BackupBundle,
    BaseInventory,
    InventoryPatch,
    LedgerEntry,
    Transaction,
    utc_now_iso,
)
from ..services import BookServices
from .hashing import digest_value

logger = logging.getLogger("bulliondesk.backup.merge")

RENAME_MARKER = "_imported_"
RENAME_SUFFIX_LENGTH = 12

ConflictResolver = Callable[[BaseInventory, InventoryPatch], Awaitable[bool]]


class MergeReport(BaseModel):
    """What one merge changed, skipped and could not decide."""

    customers_added: int = 0
    customers_updated: int = 0
    transactions_added: int = 0
    transactions_existing: int = 0
    ledger_added: int = 0
    inventory_applied: bool = False
    stock_restored: int = 0
    renamed: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> int:
        return (
            self.customers_added
            + self.customers_updated
            + self.transactions_added
            + self.ledger_added
            + self.stock_restored
            + int(self.inventory_applied)
        )


def renamed_transaction_id(transaction: Transaction, origin_device: str) -> str:
    """Synthetic id for an incoming transaction whose id is taken locally.

    Derived from the origin device, id and creation time, so importing
    the same bundle again lands on the same id.
    """
    suffix = digest_value([origin_device, transaction.id, transaction.created_at])
    return f"{transaction.id}{RENAME_MARKER}{suffix[:RENAME_SUFFIX_LENGTH]}"


class Merger:
    """Applies a decoded bundle through the record services.

    Args:
        services: Record services to write through.
        local_device_id: This installation's id; local transactions
            without a device id are treated as created here.
        resolver: Asked whether to overwrite a differing base
            inventory. Without one, the local inventory is kept.
    """

    def __init__(
        self,
        services: BookServices,
        local_device_id: str,
        resolver: Optional[ConflictResolver] = None,
    ) -> None:
        self.services = services
        self.local_device_id = local_device_id
        self.resolver = resolver

    async def merge(self, bundle: BackupBundle) -> MergeReport:
        """Run all five steps in order."""
        report = MergeReport()
        adopted = await self._merge_customers(bundle, report)
        stored = await self._merge_transactions(bundle, adopted, report)
        await self._merge_ledger(bundle, stored, report)
        await self._merge_inventory(bundle, report)
        await self._merge_stock(bundle, report)
        logger.info(
            "Merge complete: %d customers added, %d updated, %d transactions, "
            "%d ledger entries, %d stock items, %d renamed, %d skipped",
            report.customers_added, report.customers_updated,
            report.transactions_added, report.ledger_added,
            report.stock_restored, len(report.renamed), len(report.skipped),
        )
        return report

    async def _merge_customers(self, bundle: BackupBundle, report: MergeReport) -> set[str]:
        """Insert unseen customers; overwrite only on strictly newer activity.

        Returns:
            Ids of customers taken from the bundle. Their balances
            already include the bundle's transactions.
        """
        existing = {c.id: c for c in await self.services.customers.get_all_customers()}
        adopted: set[str] = set()
        for customer in bundle.records.customers:
            local = existing.get(customer.id)
            if local is None:
                await self.services.customers.save_customer(customer)
                report.customers_added += 1
            elif customer.activity_time() > local.activity_time():
                await self.services.customers.save_customer(customer)
                report.customers_updated += 1
            else:
                continue
            adopted.add(customer.id)
        return adopted

    async def _merge_transactions(
        self,
        bundle: BackupBundle,
        adopted: set[str],
        report: MergeReport,
    ) -> dict[str, Transaction]:
        """Apply unseen transactions, renaming ids that collide across devices.

        Returns:
            Incoming transaction id -> transaction as stored locally,
            for every incoming transaction that is now present.
        """
        local = await self.services.transactions.get_all_transactions()
        owners: dict[str, str] = {t.id: t.device_id or self.local_device_id for t in local}
        stored: dict[str, Transaction] = {t.id: t for t in local}
        result: dict[str, Transaction] = {}

        for incoming in bundle.records.transactions:
            origin = incoming.device_id or bundle.device_id
            target_id = incoming.id
            if target_id in owners and owners[target_id] != origin:
                target_id = renamed_transaction_id(incoming, origin)

            if target_id in owners:
                # Already merged, possibly under its synthetic id.
                report.transactions_existing += 1
                result[incoming.id] = stored[target_id]
                if target_id != incoming.id:
                    report.renamed[incoming.id] = target_id
                continue

            customer = await self.services.customers.get_customer(incoming.customer_id)
            if customer is None:
                logger.warning(
                    "Skipping transaction %s: customer %s not found",
                    incoming.id, incoming.customer_id,
                )
                report.skipped.append(f"transaction {incoming.id}: unknown customer")
                continue

            transaction = incoming.model_copy(deep=True, update={"id": target_id, "device_id": origin})
            await self.services.transactions.save_transaction(transaction)
            if customer.id not in adopted:
                updated = apply_transaction(customer, transaction, utc_now_iso())
                await self.services.customers.save_customer(updated)

            if target_id != incoming.id:
                report.renamed[incoming.id] = target_id
                logger.info("Renamed colliding transaction %s -> %s", incoming.id, target_id)
            owners[target_id] = origin
            stored[target_id] = transaction
            result[incoming.id] = transaction
            report.transactions_added += 1

        return result

    async def _merge_ledger(
        self,
        bundle: BackupBundle,
        transactions: dict[str, Transaction],
        report: MergeReport,
    ) -> None:
        existing = {e.id for e in await self.services.ledger.get_all_ledger_entries()}
        for incoming in bundle.records.ledger:
            if incoming.id in existing:
                continue
            source = transactions.get(incoming.transaction_id)
            if source is None:
                report.skipped.append(f"ledger {incoming.id}: source transaction missing")
                continue
            entry = LedgerEntry(
                id=incoming.id,
                transaction_id=source.id,
                customer_id=source.customer_id,
                customer_name=source.customer_name,
                date=incoming.date,
                amount_received=incoming.amount_received,
                amount_given=incoming.amount_given,
                entries=[e.model_copy(deep=True) for e in source.entries],
                notes=incoming.notes,
                created_at=incoming.created_at,
            )
            await self.services.ledger.save_ledger_entry(entry)
            existing.add(entry.id)
            report.ledger_added += 1

    async def _merge_inventory(self, bundle: BackupBundle, report: MergeReport) -> None:
        patch = bundle.records.base_inventory
        if patch is None or not patch.present_fields():
            return
        local = await self.services.inventory.get_base_inventory()
        if not patch.differs_from(local):
            return

        accepted = False
        if self.resolver is not None:
            accepted = await self.resolver(local, patch)
        if not accepted:
            conflict = MergeConflict("base inventory override declined")
            logger.info("Base inventory differs from backup; keeping local values")
            report.conflicts.append(conflict.user_message)
            return

        await self.services.inventory.set_base_inventory(patch.apply_to(local))
        report.inventory_applied = True
        logger.info("Base inventory overwritten from backup")

    async def _merge_stock(self, bundle: BackupBundle, report: MergeReport) -> None:
        existing = {s.stock_id for s in await self.services.stock.get_all_stock()}
        for item in bundle.records.stock:
            if item.stock_id in existing:
                continue
            if await self.services.stock.restore_stock(item):
                existing.add(item.stock_id)
                report.stock_restored += 1
