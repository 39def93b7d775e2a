"""SqlProductStore の在庫減算 (注文 ID 単位で冪等)。"""

import pytest

from product_service.store import Outcome


@pytest.mark.asyncio
async def test_create_and_get(product_store):
    created = await product_store.create_product("Keyboard", 1500, 3)

    assert await product_store.get_product(created["id"]) == {
        "id": created["id"],
        "name": "Keyboard",
        "price": 1500,
        "qty": 3,
    }
    assert await product_store.get_product(created["id"] + 100) is None


@pytest.mark.asyncio
async def test_decrement_confirms_while_stock_remains(product_store):
    product = await product_store.create_product("Mouse", 500, 1)

    assert await product_store.decrement_for_order(product["id"], 1) == (Outcome.CONFIRMED, False)
    assert await product_store.decrement_for_order(product["id"], 2) == (Outcome.FAILED, False)
    assert (await product_store.get_product(product["id"]))["qty"] == 0


@pytest.mark.asyncio
async def test_decrement_missing_product_fails(product_store):
    assert await product_store.decrement_for_order(999, 7) == (Outcome.FAILED, False)


@pytest.mark.asyncio
async def test_redelivery_does_not_decrement_twice(product_store):
    product = await product_store.create_product("Monitor", 30000, 5)

    first = await product_store.decrement_for_order(product["id"], 42)
    again = await product_store.decrement_for_order(product["id"], 42)

    assert first == (Outcome.CONFIRMED, False)
    assert again == (Outcome.CONFIRMED, True)
    assert (await product_store.get_product(product["id"]))["qty"] == 4


@pytest.mark.asyncio
async def test_redelivery_keeps_failed_outcome(product_store):
    product = await product_store.create_product("Cable", 100, 0)
    await product_store.decrement_for_order(product["id"], 9)

    assert await product_store.decrement_for_order(product["id"], 9) == (Outcome.FAILED, True)
