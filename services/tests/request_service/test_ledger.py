import asyncio
import random

import pytest

from services.request_service.app.errors import InsufficientStock, ItemNotFound
from services.request_service.app.ledger import (
    StockStatus,
    TransactionType,
    stock_status,
    validate_delta,
)


@pytest.mark.parametrize(
    ("quantity", "minimum", "expected"),
    [
        (0, 3, StockStatus.OUT),
        (0, 0, StockStatus.OUT),
        (2, 3, StockStatus.LOW),
        (3, 3, StockStatus.OK),
        (10, 0, StockStatus.OK),
    ],
)
def test_stock_status(quantity: int, minimum: int, expected: StockStatus) -> None:
    assert stock_status(quantity, minimum) is expected


@pytest.mark.parametrize(
    ("transaction_type", "delta"),
    [
        ("add", -1),
        ("remove", 2),
        ("fulfillment", 1),
        ("adjustment", 0),
        ("restock", 5),
    ],
)
def test_delta_sign_rules(transaction_type: str, delta: int) -> None:
    with pytest.raises(ValueError):
        validate_delta(transaction_type, delta)


def test_adjustment_accepts_either_sign() -> None:
    assert validate_delta("adjustment", -3) is TransactionType.ADJUSTMENT
    assert validate_delta("adjustment", 3) is TransactionType.ADJUSTMENT


@pytest.mark.asyncio
async def test_initial_quantity_is_written_as_an_add_entry(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Nitrile gloves", 12, minimum=4)

        entries = await env.ledger.entries(item.id)
        assert item.current_quantity == 12
        assert [(entry.sequence, entry.delta, entry.transaction_type) for entry in entries] == [(1, 12, "add")]
        assert (await env.ledger.verify(item.id)).consistent


@pytest.mark.asyncio
async def test_concurrent_deductions_cannot_overdraw(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Saline", 5, minimum=3)

        results = await asyncio.gather(
            env.ledger.adjust(item.id, -4, "remove", actor_id="bob"),
            env.ledger.adjust(item.id, -3, "remove", actor_id="carol"),
            return_exceptions=True,
        )

        failures = [result for result in results if isinstance(result, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStock)
        final = await env.ledger.current_quantity(item.id)
        assert final in (1, 2)
        reconciliation = await env.ledger.verify(item.id)
        assert reconciliation.consistent
        assert reconciliation.tail_quantity == final
        assert reconciliation.entry_count == 2


@pytest.mark.asyncio
async def test_many_concurrent_adjustments_sum_exactly(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Batteries", 5)

        results = await asyncio.gather(
            *(env.ledger.adjust(item.id, -1, "remove", actor_id=f"user-{n}") for n in range(8)),
            return_exceptions=True,
        )

        succeeded = [result for result in results if not isinstance(result, Exception)]
        assert len(succeeded) == 5
        assert all(isinstance(result, InsufficientStock) for result in results if isinstance(result, Exception))
        assert await env.ledger.current_quantity(item.id) == 0
        assert sorted(entry.sequence for entry in succeeded) == [2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_refused_adjustment_writes_nothing(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Masks", 2)

        with pytest.raises(InsufficientStock) as excinfo:
            await env.ledger.adjust(item.id, -3, "remove", actor_id="bob")

        assert excinfo.value.available == 2
        assert len(await env.ledger.entries(item.id)) == 1
        assert await env.ledger.current_quantity(item.id) == 2


@pytest.mark.asyncio
async def test_unknown_item(engine_env) -> None:
    async with engine_env() as env:
        with pytest.raises(ItemNotFound):
            await env.ledger.adjust(999, 1, "add", actor_id="bob")
        with pytest.raises(ItemNotFound):
            await env.ledger.verify(999)


@pytest.mark.asyncio
async def test_random_sequences_keep_cache_tail_and_sum_equal(engine_env) -> None:
    rng = random.Random(20240304)
    async with engine_env() as env:
        item = await env.add_item("Paper towels", 10)
        expected = 10
        for _ in range(40):
            delta = rng.choice([-7, -3, -1, 1, 2, 5])
            transaction_type = "add" if delta > 0 else rng.choice(["remove", "adjustment"])
            try:
                await env.ledger.adjust(item.id, delta, transaction_type, actor_id="auditor")
            except InsufficientStock:
                assert expected + delta < 0
                continue
            expected += delta
            assert expected >= 0

        reconciliation = await env.ledger.verify(item.id)
        assert reconciliation.consistent
        assert reconciliation.cached_quantity == expected
        assert reconciliation.tail_quantity == expected
        assert reconciliation.ledger_sum == expected
        assert reconciliation.broken_sequences == ()

        entries = await env.ledger.entries(item.id)
        previous = 0
        for position, entry in enumerate(entries, start=1):
            assert entry.sequence == position
            assert entry.resulting_quantity == previous + entry.delta
            assert entry.resulting_quantity >= 0
            previous = entry.resulting_quantity


@pytest.mark.asyncio
async def test_duplicate_item_names_are_refused(engine_env) -> None:
    async with engine_env() as env:
        await env.add_item("Keys blank", 1)
        with pytest.raises(ValueError):
            await env.add_item("Keys blank", 3)
