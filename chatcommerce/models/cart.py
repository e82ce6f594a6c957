import json
import logging
from typing import Callable, TypeVar
import aiosqlite
from pydantic import Field

from chatcommerce.errors import CartConflictError
from chatcommerce.models.catalog import get_products
from chatcommerce.models.database import connect, new_id
from chatcommerce.models.schemas import CamelModel

logger = logging.getLogger(__name__)

MAX_QUANTITY_PER_ITEM = 10
MUTATION_ATTEMPTS = 3

T = TypeVar("T")


class CartLineItem(CamelModel):
    product_id: str
    quantity: int = Field(ge=1)
    size: str
    color: str
    price: float = Field(ge=0)

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)


class Cart(CamelModel):
    id: str
    user_id: str
    items: list[CartLineItem] = Field(default_factory=list)
    total_amount: float = 0
    version: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    def calculate_total(self) -> float:
        self.total_amount = round(sum(item.price * item.quantity for item in self.items), 2)
        return self.total_amount

    def find_item(self, product_id: str, size: str, color: str) -> int:
        """Index of the line with this exact key, or -1."""
        for index, item in enumerate(self.items):
            if item.product_id == product_id and item.size == size and item.color == color:
                return index
        return -1

    def add_item(self, product_id: str, quantity: int, size: str, color: str, price: float):
        """Add through the storefront: exact key match, merged quantity capped at 10."""
        index = self.find_item(product_id, size, color)
        if index > -1:
            item = self.items[index]
            item.quantity = min(item.quantity + quantity, MAX_QUANTITY_PER_ITEM)
        else:
            self.items.append(
                CartLineItem(
                    product_id=product_id,
                    quantity=min(quantity, MAX_QUANTITY_PER_ITEM),
                    size=size,
                    color=color,
                    price=price,
                )
            )
        self.calculate_total()

    def add_chat_item(
        self, product_id: str, quantity: int, size: str, color: str, price: float
    ) -> CartLineItem:
        """Add through the chat assistant.

        Colors are matched and stored lowercased and a merge adds quantities
        without the per-line cap of ``add_item``.
        """
        color = color.lower()
        for item in self.items:
            if item.product_id == product_id and item.size == size and item.color.lower() == color:
                item.quantity += quantity
                break
        else:
            item = CartLineItem(
                product_id=product_id, quantity=quantity, size=size, color=color, price=price
            )
            self.items.append(item)
        self.calculate_total()
        return item

    def remove_item(self, product_id: str, size: str, color: str):
        self.items = [
            item
            for item in self.items
            if not (item.product_id == product_id and item.size == size and item.color == color)
        ]
        self.calculate_total()

    def remove_at(self, index: int) -> CartLineItem:
        item = self.items.pop(index)
        self.calculate_total()
        return item

    def update_quantity(self, product_id: str, size: str, color: str, quantity: int):
        index = self.find_item(product_id, size, color)
        if index == -1:
            return
        if quantity <= 0:
            self.items.pop(index)
        else:
            self.items[index].quantity = min(quantity, MAX_QUANTITY_PER_ITEM)
        self.calculate_total()

    def clear(self):
        self.items = []
        self.total_amount = 0


def _row_to_cart(row) -> Cart:
    return Cart(
        id=row["id"],
        user_id=row["user_id"],
        items=[CartLineItem.model_validate(item) for item in json.loads(row["items"])],
        total_amount=row["total_amount"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def get_cart(db_path: str, user_id: str) -> Cart | None:
    async with connect(db_path) as db:
        cursor = await db.execute("SELECT * FROM carts WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        return _row_to_cart(row) if row else None


async def get_or_create_cart(db_path: str, user_id: str) -> Cart:
    """Carts are created lazily; the UNIQUE user_id keeps it to one per user."""
    async with connect(db_path) as db:
        await db.execute(
            "INSERT OR IGNORE INTO carts (id, user_id) VALUES (?, ?)",
            (new_id(), user_id),
        )
        cursor = await db.execute("SELECT * FROM carts WHERE user_id = ?", (user_id,))
        return _row_to_cart(await cursor.fetchone())


async def write_cart(db: aiosqlite.Connection, cart: Cart) -> Cart:
    """Persist on an open connection if nobody else wrote the cart since it was read."""
    cart.calculate_total()
    cursor = await db.execute(
        "UPDATE carts SET items = ?, total_amount = ?, version = version + 1, "
        "updated_at = datetime('now') WHERE id = ? AND version = ?",
        (
            json.dumps([item.model_dump() for item in cart.items]),
            cart.total_amount,
            cart.id,
            cart.version,
        ),
    )
    if cursor.rowcount == 0:
        raise CartConflictError("Cart was modified concurrently, please retry")
    cart.version += 1
    return cart


async def save_cart(db_path: str, cart: Cart) -> Cart:
    async with connect(db_path) as db:
        return await write_cart(db, cart)


async def mutate_cart(
    db_path: str, user_id: str, mutate: Callable[[Cart], T]
) -> tuple[Cart, T]:
    """Load the user's cart, apply ``mutate`` and save it.

    A concurrent write makes the save fail; the cart is then reloaded and
    ``mutate`` applied again, up to MUTATION_ATTEMPTS times.
    """
    for attempt in range(1, MUTATION_ATTEMPTS + 1):
        cart = await get_or_create_cart(db_path, user_id)
        result = mutate(cart)
        try:
            await save_cart(db_path, cart)
        except CartConflictError:
            logger.warning("Cart conflict for user %s (attempt %d)", user_id, attempt)
            continue
        return cart, result
    raise CartConflictError("Cart is being modified by another request, please retry")


async def clear_user_cart(db: aiosqlite.Connection, user_id: str, expected_version: int | None = None):
    """Empty a user's cart on an open connection (part of an order transaction).

    With ``expected_version`` the cart must still be the one that was read.
    """
    query = (
        "UPDATE carts SET items = '[]', total_amount = 0, version = version + 1, "
        "updated_at = datetime('now') WHERE user_id = ?"
    )
    params: tuple = (user_id,)
    if expected_version is not None:
        query += " AND version = ?"
        params = (user_id, expected_version)
    cursor = await db.execute(query, params)
    if expected_version is not None and cursor.rowcount == 0:
        raise CartConflictError("Cart changed during checkout, please review it and retry")


async def populate_cart(db_path: str, cart: Cart) -> dict:
    """Cart payload with product details attached to each line."""
    products = await get_products(db_path, [item.product_id for item in cart.items])
    payload = cart.to_payload()
    for item_payload, item in zip(payload["items"], cart.items):
        product = products.get(item.product_id)
        item_payload["product"] = product.summary() if product else None
    return payload
