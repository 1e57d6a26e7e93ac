"""
Pydantic models for the bookkeeping records that travel in a backup.

Field names are snake_case in Python and camelCase on the wire, so a
bundle written by any installation reads back into the same models.
Timestamps are kept as the ISO strings the book stores; they are
compared through :func:`parse_timestamp`, never as raw text.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ErrorKind


class WireModel(BaseModel):
    """Base for records exchanged in bundles (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Dump to the JSON-ready camelCase form used in archives."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MetalKind(str, Enum):
    """Every metal the merchant trades.

    Refined kinds are weighed as-is; impure kinds (rani, rupu) carry a
    touch (purity) and are booked by their computed pure weight.
    """

    GOLD999 = "gold999"
    GOLD995 = "gold995"
    SILVER = "silver"
    RANI = "rani"
    RUPU = "rupu"

    @property
    def is_impure(self) -> bool:
        return self in (MetalKind.RANI, MetalKind.RUPU)


MONEY = "money"
ItemKind = Literal["gold999", "gold995", "silver", "rani", "rupu", "money"]


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO timestamp, treating missing values as the epoch.

    Naive timestamps are assumed to be UTC so local and imported
    values compare on the same clock.
    """
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now_iso() -> str:
    """Current UTC time as an ISO string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


class MetalBalances(WireModel):
    """Signed weight per metal kind (positive = merchant owes customer)."""

    gold999: float = 0.0
    gold995: float = 0.0
    silver: float = 0.0
    rani: float = 0.0
    rupu: float = 0.0

    def get(self, kind: MetalKind) -> float:
        """Return the balance held for one metal kind."""
        match kind:
            case MetalKind.GOLD999:
                return self.gold999
            case MetalKind.GOLD995:
                return self.gold995
            case MetalKind.SILVER:
                return self.silver
            case MetalKind.RANI:
                return self.rani
            case MetalKind.RUPU:
                return self.rupu
        raise ValueError(f"Unknown metal kind: {kind!r}")

    def adjusted(self, kind: MetalKind, delta: float) -> MetalBalances:
        """Return a copy with ``delta`` added to one metal kind."""
        match kind:
            case MetalKind.GOLD999:
                return self.model_copy(update={"gold999": self.gold999 + delta})
            case MetalKind.GOLD995:
                return self.model_copy(update={"gold995": self.gold995 + delta})
            case MetalKind.SILVER:
                return self.model_copy(update={"silver": self.silver + delta})
            case MetalKind.RANI:
                return self.model_copy(update={"rani": self.rani + delta})
            case MetalKind.RUPU:
                return self.model_copy(update={"rupu": self.rupu + delta})
        raise ValueError(f"Unknown metal kind: {kind!r}")


class Customer(WireModel):
    """A merchant's counterparty.

    Attributes:
        balance: Signed money balance. Positive means the merchant owes
            the customer, negative means the customer owes the merchant.
        metal_balances: Signed weight per metal, same sign convention.
        last_transaction: ISO timestamp of the last activity; drives
            last-write-wins on merge.
    """

    id: str
    name: str
    balance: float = 0.0
    metal_balances: MetalBalances = Field(default_factory=MetalBalances)
    last_transaction: Optional[str] = None
    avatar: Optional[str] = None

    def activity_time(self) -> datetime:
        return parse_timestamp(self.last_transaction)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionEntry(WireModel):
    """One line of a transaction: a metal sold/purchased or money moved."""

    id: str
    type: Literal["sell", "purchase", "money"]
    item_type: ItemKind
    weight: Optional[float] = None
    price: Optional[float] = None
    touch: Optional[float] = None
    cut: Optional[float] = None
    extra_per_kg: Optional[float] = None
    pure_weight: Optional[float] = None
    actual_gold_given: Optional[float] = None
    money_type: Optional[Literal["give", "receive"]] = None
    amount: Optional[float] = None
    rupu_return_type: Optional[Literal["money", "silver"]] = None
    silver_weight: Optional[float] = None
    net_weight: Optional[float] = None
    metal_only: bool = False
    stock_id: Optional[str] = Field(default=None, alias="stock_id")
    subtotal: float = 0.0
    created_at: Optional[str] = None
    last_updated_at: Optional[str] = None

    @property
    def metal_kind(self) -> Optional[MetalKind]:
        """The entry's metal, or None for money lines."""
        if self.item_type == MONEY:
            return None
        return MetalKind(self.item_type)


class Transaction(WireModel):
    """A customer transaction.

    ``total`` is from the merchant's perspective (positive = customer
    owes merchant). ``last_given_money`` and ``last_to_last_given_money``
    are the current and previous amounts paid, used to derive the money
    moved by the latest update.
    """

    id: str
    device_id: Optional[str] = None
    customer_id: str
    customer_name: str = ""
    date: str
    entries: list[TransactionEntry] = Field(default_factory=list)
    discount: float = 0.0
    discount_extra_amount: float = 0.0
    subtotal: float = 0.0
    total: float = 0.0
    amount_paid: float = 0.0
    last_given_money: float = 0.0
    last_to_last_given_money: float = 0.0
    settlement_type: Literal["full", "partial", "none"] = "partial"
    status: Literal["completed", "pending"] = "completed"
    note: Optional[str] = None
    created_at: str
    last_updated_at: str

    @property
    def is_money_only(self) -> bool:
        return not self.entries

    @property
    def is_metal_only(self) -> bool:
        # A single metal-only entry settles the whole transaction in metal.
        return any(entry.metal_only for entry in self.entries)


class LedgerEntry(WireModel):
    """Derived cash-flow record for one money-moving transaction update."""

    id: str
    transaction_id: str
    customer_id: str
    customer_name: str = ""
    date: str
    amount_received: float = 0.0
    amount_given: float = 0.0
    entries: list[TransactionEntry] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: str


# ---------------------------------------------------------------------------
# Inventory and stock
# ---------------------------------------------------------------------------


class BaseInventory(WireModel):
    """Merchant-held quantity per metal kind plus cash (singleton)."""

    gold999: float = 300.0
    gold995: float = 100.0
    silver: float = 10000.0
    rani: float = 0.0
    rupu: float = 0.0
    money: float = 3000000.0


class InventoryPatch(WireModel):
    """Base inventory as carried in a bundle; absent fields are untouched."""

    gold999: Optional[float] = None
    gold995: Optional[float] = None
    silver: Optional[float] = None
    rani: Optional[float] = None
    rupu: Optional[float] = None
    money: Optional[float] = None

    def present_fields(self) -> dict[str, float]:
        """Fields actually carried by the bundle."""
        return self.model_dump(exclude_none=True)

    def differs_from(self, current: BaseInventory) -> bool:
        """True when any carried field disagrees with ``current``."""
        local = current.model_dump()
        return any(local[name] != value for name, value in self.present_fields().items())

    def apply_to(self, current: BaseInventory) -> BaseInventory:
        """Overlay the carried fields onto ``current``."""
        return current.model_copy(update=self.present_fields())


class StockItem(WireModel):
    """A purchased lot of impure metal, consumed when sold."""

    stock_id: str = Field(alias="stock_id")
    item_type: Literal["rani", "rupu"] = Field(
        validation_alias=AliasChoices("itemtype", "itemType", "item_type"),
        serialization_alias="itemtype",
    )
    weight: float
    touch: float
    date: Optional[str] = None
    created_at: Optional[str] = None
    is_sold: bool = False


# ---------------------------------------------------------------------------
# Bundles and results
# ---------------------------------------------------------------------------


class BackupRecords(WireModel):
    """The record collections inside a bundle."""

    customers: list[Customer] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    ledger: list[LedgerEntry] = Field(default_factory=list)
    base_inventory: Optional[InventoryPatch] = None
    stock: list[StockItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("stock", "raniRupaStock"),
        serialization_alias="stock",
    )

    def record_count(self) -> int:
        return (
            len(self.customers)
            + len(self.transactions)
            + len(self.ledger)
            + len(self.stock)
        )


class BackupBundle(WireModel):
    """The single logical document inside an export archive."""

    export_type: Literal["manual", "auto"]
    timestamp: int = Field(description="Epoch milliseconds at export time")
    record_count: int
    device_id: str
    records: BackupRecords


class BackupResult(BaseModel):
    """Outcome of an export run, returned instead of raising."""

    success: bool
    path: Optional[str] = None
    file_name: Optional[str] = None
    record_count: int = 0
    error_kind: Optional[ErrorKind] = None
    message: str = ""
