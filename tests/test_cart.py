import pytest

from chatcommerce.errors import CartConflictError
from chatcommerce.models import cart as cart_module
from chatcommerce.models.cart import (
    Cart,
    get_cart,
    get_or_create_cart,
    mutate_cart,
    populate_cart,
    save_cart,
)


def make_cart() -> Cart:
    return Cart(id="c1", user_id="u1")


def test_total_follows_every_mutation():
    cart = make_cart()
    cart.add_item("p1", 2, "9", "Black", 19.99)
    cart.add_item("p2", 1, "8", "Red", 5.01)
    assert cart.total_amount == 44.99

    cart.update_quantity("p1", "9", "Black", 1)
    assert cart.total_amount == 25.0

    cart.remove_item("p2", "8", "Red")
    assert cart.total_amount == 19.99

    cart.clear()
    assert cart.items == []
    assert cart.total_amount == 0


def test_add_item_merges_and_clamps():
    cart = make_cart()
    cart.add_item("p1", 7, "9", "Black", 10.0)
    cart.add_item("p1", 7, "9", "Black", 10.0)
    assert len(cart.items) == 1
    assert cart.items[0].quantity == 10
    assert cart.total_amount == 100.0


def test_add_item_key_is_case_sensitive():
    cart = make_cart()
    cart.add_item("p1", 1, "9", "Black", 10.0)
    cart.add_item("p1", 1, "9", "black", 10.0)
    assert len(cart.items) == 2


def test_chat_add_merges_on_lowercased_color_without_cap():
    cart = make_cart()
    first = cart.add_chat_item("p1", 6, "9", "Black", 10.0)
    second = cart.add_chat_item("p1", 6, "9", "BLACK", 10.0)
    assert first is second
    assert len(cart.items) == 1
    assert cart.items[0].color == "black"
    assert cart.items[0].quantity == 12


def test_update_quantity_rules():
    cart = make_cart()
    cart.add_item("p1", 2, "9", "Black", 10.0)

    cart.update_quantity("missing", "9", "Black", 5)
    assert cart.items[0].quantity == 2

    cart.update_quantity("p1", "9", "Black", 15)
    assert cart.items[0].quantity == 10

    cart.update_quantity("p1", "9", "Black", 0)
    assert cart.items == []
    assert cart.total_amount == 0


async def test_cart_is_created_once(db_path, user):
    first = await get_or_create_cart(db_path, user.id)
    second = await get_or_create_cart(db_path, user.id)
    assert first.id == second.id
    assert first.items == []


async def test_stale_write_is_rejected(db_path, user, products):
    a = await get_or_create_cart(db_path, user.id)
    b = await get_or_create_cart(db_path, user.id)

    a.add_item(products["air_max"].id, 1, "9", "Black", 129.99)
    await save_cart(db_path, a)

    b.add_item(products["chuck"].id, 1, "8", "Red", 59.99)
    with pytest.raises(CartConflictError):
        await save_cart(db_path, b)

    stored = await get_cart(db_path, user.id)
    assert [item.product_id for item in stored.items] == [products["air_max"].id]
    assert stored.version == 1


async def test_mutate_cart_reapplies_after_conflict(db_path, user, products, monkeypatch):
    real_save = cart_module.save_cart
    attempts = []

    async def flaky_save(path, cart):
        attempts.append(cart.version)
        if len(attempts) == 1:
            raise CartConflictError("lost the race")
        return await real_save(path, cart)

    monkeypatch.setattr(cart_module, "save_cart", flaky_save)
    product = products["air_max"]
    cart, _ = await mutate_cart(
        db_path, user.id, lambda c: c.add_item(product.id, 1, "9", "Black", product.price)
    )

    assert len(attempts) == 2
    assert cart.items[0].quantity == 1
    assert (await get_cart(db_path, user.id)).total_amount == 129.99


async def test_mutate_cart_gives_up(db_path, user, monkeypatch):
    async def always_conflict(path, cart):
        raise CartConflictError("lost the race")

    monkeypatch.setattr(cart_module, "save_cart", always_conflict)
    with pytest.raises(CartConflictError):
        await mutate_cart(db_path, user.id, lambda c: c.clear())


async def test_populate_cart_attaches_products(db_path, user, products):
    product = products["arizona"]
    cart, _ = await mutate_cart(
        db_path, user.id, lambda c: c.add_item(product.id, 2, "8", "Brown", product.price)
    )
    payload = await populate_cart(db_path, cart)
    assert payload["totalAmount"] == 198.0
    assert payload["items"][0]["productId"] == product.id
    assert payload["items"][0]["product"]["name"] == "Birkenstock Arizona"
