import logging

import pytest

from services.ledger import QuantityLedger
from services.store import StoreError


async def test_adjust_clamps_at_floor(store):
    ledger = QuantityLedger(store)
    await store.set("donations/d1", {"quantity": 3})

    assert await ledger.adjust("donations/d1", "quantity", -5) == 0
    assert await store.get("donations/d1/quantity") == 0


async def test_material_credit_stops_at_what_is_needed(store):
    ledger = QuantityLedger(store)
    await store.set("projects/p1", {"materials": {"m1": {"name": "bottles", "needed": 5, "acquired": 4}}})

    assert await ledger.credit_material("p1", "m1", 3) == 5
    assert await ledger.credit_material("p1", "m1", 1) is None
    assert await store.get("projects/p1/materials/m1/acquired") == 5


async def test_material_credit_reads_the_quantity_of_older_materials(store):
    ledger = QuantityLedger(store)
    await store.set("projects/p1", {"materials": {"m1": {"name": "bottles", "quantity": "5", "acquired": 1}}})

    assert await ledger.credit_material("p1", "m1", 3) == 4
    assert await store.get("projects/p1/materials/m1") == {"name": "bottles", "quantity": "5", "acquired": 4}


async def test_a_credit_never_lowers_the_stored_value(store):
    ledger = QuantityLedger(store)
    await store.set("projects/p1", {"materials": {"m1": {"name": "bottles", "needed": 2, "acquired": 3}}})

    assert await ledger.adjust("projects/p1/materials/m1", "acquired", 1, cap=lambda record: 2) == 3


async def test_adjust_reads_decimal_strings(store):
    ledger = QuantityLedger(store)
    await store.set("donations/d1", {"quantity": "12"})

    assert await ledger.adjust("donations/d1", "quantity", -2) == 10


async def test_adjust_on_missing_record_is_skipped(store, caplog):
    ledger = QuantityLedger(store)

    assert await ledger.adjust("donations/ghost", "quantity", -1) is None
    assert await store.get("donations/ghost") is None
    assert "skipped" in caplog.text


async def test_failed_transaction_falls_back_to_plain_write(flaky_store, caplog):
    ledger = QuantityLedger(flaky_store)
    await flaky_store.set("donations/d1", {"quantity": 10, "unit": "kg"})

    with caplog.at_level(logging.WARNING, logger="ecowaste.ledger"):
        assert await ledger.adjust("donations/d1", "quantity", -4) == 6

    assert flaky_store.transactions == 1
    assert await flaky_store.get("donations/d1") == {"quantity": 6, "unit": "kg"}
    assert "falling back to plain read/write" in caplog.text


async def test_dropped_fallback_is_logged_and_swallowed(flaky_store, caplog):
    ledger = QuantityLedger(flaky_store)
    await flaky_store.set("donations/d1", {"quantity": 10})
    flaky_store.fail_writes = True

    assert await ledger.adjust("donations/d1", "quantity", -4) is None

    flaky_store.fail_writes = False
    assert await flaky_store.get("donations/d1/quantity") == 10
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert errors and "change dropped" in errors[0].getMessage()


async def test_strict_mutate_raises_when_fallback_fails(flaky_store):
    ledger = QuantityLedger(flaky_store)
    await flaky_store.set("users/u1", {"ecoPoints": 300})
    flaky_store.fail_writes = True

    with pytest.raises(StoreError):
        await ledger.mutate("users/u1", lambda user: {**user, "ecoPoints": 50}, strict=True)


async def test_mutate_abort_leaves_record_untouched(store):
    ledger = QuantityLedger(store)
    await store.set("users/u1", {"xp": 10})

    assert await ledger.mutate("users/u1", lambda user: None) is None
    assert await store.get("users/u1/xp") == 10
