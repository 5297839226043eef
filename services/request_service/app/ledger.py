"""Append-only inventory ledger and the stock view derived from it.

Every quantity change is one ``LedgerEntry``. ``InventoryItem.current_quantity``
is only a cache of the latest entry's ``resulting_quantity`` and is written in
the same transaction as the entry. Appends for one item are serialised by an
in-process per-item lock, a row lock where the backend has one, and the
unique ``(item_id, sequence)`` constraint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import lifespan_session

from .errors import ConcurrentModification, InsufficientStock, ItemNotFound
from .locks import KeyedLock
from .metrics import LEDGER_ADJUSTMENTS_TOTAL, LEDGER_INSUFFICIENT_STOCK_TOTAL
from .models import InventoryItem, LedgerEntry
from .repository import InventoryRepository

_LOGGER = logging.getLogger(__name__)


class TransactionType(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    FULFILLMENT = "fulfillment"
    ADJUSTMENT = "adjustment"


class StockStatus(str, Enum):
    OUT = "out"
    LOW = "low"
    OK = "ok"


def stock_status(quantity: int, minimum: int) -> StockStatus:
    if quantity <= 0:
        return StockStatus.OUT
    if quantity < minimum:
        return StockStatus.LOW
    return StockStatus.OK


def validate_delta(transaction_type: TransactionType | str, delta: int) -> TransactionType:
    """Check the sign of ``delta`` against its transaction type."""

    try:
        kind = TransactionType(transaction_type)
    except ValueError:
        raise ValueError(f"Unknown transaction type: {transaction_type}") from None
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValueError("Ledger deltas must be whole numbers")
    if delta == 0:
        raise ValueError("Ledger deltas must be non-zero")
    if kind is TransactionType.ADD and delta < 0:
        raise ValueError("An add entry must increase stock")
    if kind in (TransactionType.REMOVE, TransactionType.FULFILLMENT) and delta > 0:
        raise ValueError(f"A {kind.value} entry must decrease stock")
    return kind


@dataclass(frozen=True)
class LedgerReconciliation:
    item_id: int
    cached_quantity: int
    tail_quantity: int
    ledger_sum: int
    entry_count: int
    broken_sequences: tuple[int, ...] = ()

    @property
    def consistent(self) -> bool:
        return (
            not self.broken_sequences
            and self.cached_quantity == self.tail_quantity == self.ledger_sum
        )


def _chain_breaks(entries: Sequence[LedgerEntry]) -> tuple[int, ...]:
    """Sequences where the running total, numbering or non-negativity does not hold."""

    broken: list[int] = []
    previous = 0
    for position, entry in enumerate(entries, start=1):
        if (
            entry.sequence != position
            or entry.resulting_quantity != previous + entry.delta
            or entry.resulting_quantity < 0
        ):
            broken.append(entry.sequence)
        previous = entry.resulting_quantity
    return tuple(broken)


class InventoryLedger:
    """The only writer of ledger entries and of the cached item quantity."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], locks: KeyedLock | None = None) -> None:
        self._session_factory = session_factory
        self.locks = locks or KeyedLock()

    async def create_item(
        self,
        *,
        name: str,
        minimum_quantity: int = 0,
        initial_quantity: int = 0,
        actor_id: str,
    ) -> InventoryItem:
        if minimum_quantity < 0 or initial_quantity < 0:
            raise ValueError("Quantities must be non-negative")
        try:
            async with lifespan_session(self._session_factory) as session:
                repository = InventoryRepository(session)
                if await repository.find_by_name(name) is not None:
                    raise ValueError(f"Inventory item {name!r} already exists")
                item = await repository.create_item(name=name, minimum_quantity=minimum_quantity)
                if initial_quantity > 0:
                    await self.append(
                        session,
                        item.id,
                        initial_quantity,
                        TransactionType.ADD,
                        actor_id=actor_id,
                        notes="Initial stock",
                    )
        except IntegrityError as exc:
            raise ValueError(f"Inventory item {name!r} already exists") from exc
        if initial_quantity > 0:
            LEDGER_ADJUSTMENTS_TOTAL.labels(transaction_type=TransactionType.ADD.value).inc()
        return item

    async def adjust(
        self,
        item_id: int,
        delta: int,
        transaction_type: TransactionType | str,
        *,
        actor_id: str,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> LedgerEntry:
        """Append one entry in its own transaction and return it."""

        kind = validate_delta(transaction_type, delta)
        async with self.locks.hold(item_id):
            try:
                async with lifespan_session(self._session_factory) as session:
                    entry = await self.append(
                        session,
                        item_id,
                        delta,
                        kind,
                        actor_id=actor_id,
                        reference_id=reference_id,
                        notes=notes,
                    )
            except IntegrityError as exc:
                raise ConcurrentModification("Inventory item", item_id) from exc
        LEDGER_ADJUSTMENTS_TOTAL.labels(transaction_type=kind.value).inc()
        _LOGGER.info(
            "Ledger entry %s for item %s: %+d -> %s (%s)",
            entry.sequence,
            item_id,
            delta,
            entry.resulting_quantity,
            kind.value,
        )
        return entry

    async def append(
        self,
        session: AsyncSession,
        item_id: int,
        delta: int,
        transaction_type: TransactionType | str,
        *,
        actor_id: str,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> LedgerEntry:
        """Append an entry inside the caller's transaction.

        The caller must hold ``self.locks`` for ``item_id`` until it commits.
        """

        kind = validate_delta(transaction_type, delta)
        repository = InventoryRepository(session)
        item = await repository.get_item(item_id, for_update=True)
        if item is None:
            raise ItemNotFound(item_id)

        tail = await repository.latest_entry(item_id)
        current = tail.resulting_quantity if tail is not None else 0
        resulting = current + delta
        if resulting < 0:
            LEDGER_INSUFFICIENT_STOCK_TOTAL.inc()
            raise InsufficientStock(item_id, available=current, delta=delta)

        entry = await repository.add_entry(
            item_id=item_id,
            sequence=(tail.sequence if tail is not None else 0) + 1,
            delta=delta,
            resulting_quantity=resulting,
            transaction_type=kind.value,
            reference_id=reference_id,
            performed_by=actor_id,
            notes=notes,
        )
        await repository.set_cached_quantity(item, resulting)
        return entry

    async def get_item(self, item_id: int) -> InventoryItem:
        async with lifespan_session(self._session_factory) as session:
            item = await InventoryRepository(session).get_item(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        return item

    async def current_quantity(self, item_id: int) -> int:
        item = await self.get_item(item_id)
        return item.current_quantity

    async def tail_quantity(self, item_id: int) -> int:
        async with lifespan_session(self._session_factory) as session:
            repository = InventoryRepository(session)
            if await repository.get_item(item_id) is None:
                raise ItemNotFound(item_id)
            tail = await repository.latest_entry(item_id)
        return tail.resulting_quantity if tail is not None else 0

    async def ledger_sum(self, item_id: int) -> int:
        async with lifespan_session(self._session_factory) as session:
            repository = InventoryRepository(session)
            if await repository.get_item(item_id) is None:
                raise ItemNotFound(item_id)
            return await repository.ledger_sum(item_id)

    async def entries(
        self,
        item_id: int,
        *,
        reference_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        async with lifespan_session(self._session_factory) as session:
            repository = InventoryRepository(session)
            if await repository.get_item(item_id) is None:
                raise ItemNotFound(item_id)
            return await repository.list_entries(item_id, reference_id=reference_id, limit=limit, offset=offset)

    async def verify(self, item_id: int) -> LedgerReconciliation:
        """Compare the cached quantity, the ledger tail and the ledger sum, and walk the chain."""

        async with lifespan_session(self._session_factory) as session:
            repository = InventoryRepository(session)
            item = await repository.get_item(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            entries = await repository.list_entries(item_id)
            total = await repository.ledger_sum(item_id)

        reconciliation = LedgerReconciliation(
            item_id=item_id,
            cached_quantity=item.current_quantity,
            tail_quantity=entries[-1].resulting_quantity if entries else 0,
            ledger_sum=total,
            entry_count=len(entries),
            broken_sequences=_chain_breaks(entries),
        )
        if not reconciliation.consistent:
            _LOGGER.error("Ledger for item %s does not reconcile: %s", item_id, reconciliation)
        return reconciliation
