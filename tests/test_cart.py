# ==============================================================================
# FILE: tests/test_cart.py
# DESCRIPTION: Cart stores, optimistic mutations and the local -> server merge
# ==============================================================================

import asyncio

import pytest

from checkout_engine.cart import CartReconciler, cart_from_payload
from checkout_engine.errors import BackendError, DuplicateItem, NotFound, QuantityExceeded
from checkout_engine.schemas.domain import PlanType
from checkout_engine.services.session_store import SessionKeys

pytestmark = pytest.mark.asyncio


def carts_for(api, session):
    return CartReconciler.for_session(api, session)


# ------------------------------------------------------------------------------
# Payload parsing
# ------------------------------------------------------------------------------

async def test_cart_payload_dedupes_and_clamps_quantity():
    cart = cart_from_payload({
        "_id": "cart-9",
        "items": [
            {"portfolio": {"_id": "p1", "name": "Growth", "subscriptionFee": [{"type": "monthly", "price": 499}]},
             "quantity": 3},
            {"portfolio": "p1", "quantity": 1},
            {"portfolio": "p2", "quantity": 1},
        ],
    })

    assert cart.id == "cart-9"
    assert cart.product_ids == ["p1", "p2"]
    assert cart.get("p1").quantity == 1
    assert cart.get("p1").name == "Growth"
    assert cart.total(PlanType.MONTHLY) == 499.0


# ------------------------------------------------------------------------------
# Local cart (unauthenticated)
# ------------------------------------------------------------------------------

async def test_adding_same_item_twice_is_idempotent(api, session):
    carts = carts_for(api, session)

    await carts.add_item("p1", price_metadata={"monthly": 100})
    with pytest.raises(DuplicateItem):
        await carts.add_item("p1")

    assert carts.cart.product_ids == ["p1"]
    assert len(await session.get(SessionKeys.LOCAL_CART)) == 1
    assert api.called("add_to_cart") == []


async def test_concurrent_adds_of_same_product_keep_one_entry(api, session):
    carts = carts_for(api, session)

    results = await asyncio.gather(
        carts.add_item("p1"),
        carts.add_item("p1"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, DuplicateItem) for r in results) == 1
    assert carts.cart.product_ids == ["p1"]


async def test_quantity_above_one_is_refused_without_change(api, session):
    carts = carts_for(api, session)
    await carts.add_item("p1")

    with pytest.raises(QuantityExceeded):
        await carts.set_quantity("p1", 2)

    assert carts.cart.get("p1").quantity == 1


async def test_quantity_zero_removes_item(api, session):
    carts = carts_for(api, session)
    await carts.add_item("p1")
    await carts.add_item("p2")

    cart = await carts.set_quantity("p1", 0)

    assert cart.product_ids == ["p2"]


async def test_quantity_one_adds_missing_item(api, session):
    carts = carts_for(api, session)
    await carts.add_item("p1")

    cart = await carts.set_quantity("p2", 1)

    assert cart.product_ids == ["p1", "p2"]
    assert (await carts.set_quantity("p2", 1)).product_ids == ["p1", "p2"]


# ------------------------------------------------------------------------------
# Server cart (authenticated)
# ------------------------------------------------------------------------------

async def test_failed_server_add_rolls_back_only_that_item(authed_api, session):
    carts = carts_for(authed_api, session)
    await carts.on_login()
    await carts.add_item("p1")
    authed_api.fail_add.add("p2")

    with pytest.raises(BackendError):
        await carts.add_item("p2")

    assert carts.cart.product_ids == ["p1"]


async def test_server_duplicate_maps_to_duplicate_item(authed_api, session):
    authed_api.server_items = ["p1"]
    carts = carts_for(authed_api, session)
    await carts.on_login()

    with pytest.raises(DuplicateItem):
        await carts.add_item("p1")


async def test_removing_item_already_gone_reloads_server_cart(authed_api, session):
    authed_api.server_items = ["p2"]
    carts = carts_for(authed_api, session)
    await carts.on_login()
    authed_api.raise_next["remove_from_cart"] = [NotFound("gone", status_code=404)]

    cart = await carts.remove_item("p1")

    assert cart.product_ids == ["p2"]


# ------------------------------------------------------------------------------
# Merge on login
# ------------------------------------------------------------------------------

async def test_login_merges_local_cart_and_rerun_is_noop(api, session):
    carts = carts_for(api, session)
    await carts.add_item("p1")
    await carts.add_item("p2")
    api.server_items = ["p2"]

    api.set_token("token-1")
    result = await carts.on_login()

    assert result.added == ["p1"]
    assert result.already_present == ["p2"]
    assert result.local_cleared and result.complete
    assert sorted(carts.cart.product_ids) == ["p1", "p2"]
    assert await session.get(SessionKeys.LOCAL_CART) is None

    again = await carts.merge_local_into_server()
    assert again.is_noop
    assert sorted(api.server_items) == ["p1", "p2"]


async def test_partial_merge_keeps_local_cart_for_retry(api, session):
    carts = carts_for(api, session)
    await carts.add_item("p1")
    await carts.add_item("p2")
    api.fail_add.add("p2")

    api.set_token("token-1")
    result = await carts.on_login()

    assert result.added == ["p1"]
    assert "p2" in result.failed
    assert not result.local_cleared
    assert len(await session.get(SessionKeys.LOCAL_CART)) == 2

    api.fail_add.clear()
    retry = await carts.merge_local_into_server()
    assert retry.already_present == ["p1"]
    assert retry.added == ["p2"]
    assert retry.local_cleared


async def test_pending_product_is_merged_first(api, session):
    carts = carts_for(api, session)
    await carts.add_item("p1")
    await carts.remember_pending_product("p9")

    api.set_token("token-1")
    result = await carts.on_login()

    assert result.added == ["p9", "p1"]
    assert await session.get(SessionKeys.PENDING_PRODUCT_ID) is None


async def test_cart_redirect_is_consumed_once(api, session):
    carts = carts_for(api, session)
    await carts.remember_cart_redirect()

    assert await carts.consume_cart_redirect() == "/cart"
    assert await carts.consume_cart_redirect() is None


async def test_logout_switches_back_to_local_cart(authed_api, session):
    authed_api.server_items = ["p1"]
    carts = carts_for(authed_api, session)
    await carts.on_login()
    assert carts.cart.product_ids == ["p1"]

    await carts.on_logout()

    assert not carts.authenticated
    assert carts.cart.is_empty
