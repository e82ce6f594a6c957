import json
import logging
import secrets
import string
import time
from datetime import datetime, timezone
import aiosqlite
from pydantic import Field

from chatcommerce.errors import InvalidTransitionError, NotFoundError, ValidationError
from chatcommerce.models.cart import Cart, clear_user_cart
from chatcommerce.models.catalog import Product, adjust_stock, get_products
from chatcommerce.models.database import connect, new_id, transaction
from chatcommerce.models.schemas import CamelModel, ShippingAddress

logger = logging.getLogger(__name__)

# Fulfilment moves left to right; cancellation is the only side exit.
STATUS_FLOW = ("pending", "confirmed", "processing", "shipped", "delivered")
CANCELLABLE_STATUSES = ("pending", "confirmed")
ORDER_STATUSES = STATUS_FLOW + ("cancelled",)

# A payment captured for an order that can no longer be completed is refunded
# straight from pending or failed.
PAYMENT_TRANSITIONS = {
    "pending": ("completed", "failed", "refunded"),
    "failed": ("completed", "failed", "refunded"),
    "completed": ("refunded",),
    "refunded": (),
}
PAYMENT_METHODS = ("cash", "card", "gateway")


class OrderItem(CamelModel):
    id: str = Field(default_factory=new_id)
    product_id: str
    product_name: str
    product_brand: str = ""
    quantity: int = Field(ge=1)
    size: str
    color: str
    price: float = Field(ge=0)
    subtotal: float = Field(ge=0)


class PaymentInfo(CamelModel):
    method: str
    gateway_payment_id: str | None = None
    gateway_transaction_id: str | None = None
    payment_date: str | None = None


class Order(CamelModel):
    id: str = Field(default_factory=new_id)
    order_number: str
    user_id: str
    items: list[OrderItem]
    total_amount: float = Field(ge=0)
    status: str = "pending"
    payment_status: str = "pending"
    payment_info: PaymentInfo
    shipping_address: ShippingAddress
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def recalculate_total(self) -> float:
        self.total_amount = round(sum(item.subtotal for item in self.items), 2)
        return self.total_amount

    def transition(self, new_status: str):
        if not can_transition(self.status, new_status):
            raise InvalidTransitionError(
                f"Order cannot move from {self.status} to {new_status}"
            )
        self.status = new_status

    def set_payment_status(self, new_status: str):
        if new_status not in PAYMENT_TRANSITIONS.get(self.payment_status, ()):
            raise InvalidTransitionError(
                f"Payment cannot move from {self.payment_status} to {new_status}"
            )
        self.payment_status = new_status

    def ensure_cancellable(self):
        if self.status not in CANCELLABLE_STATUSES:
            raise ValidationError("Order cannot be cancelled at this stage")

    def cancel(self) -> list[OrderItem]:
        """Cancel the whole order. Returns the items whose stock goes back on the shelf."""
        self.ensure_cancellable()
        self.transition("cancelled")
        return list(self.items) if self.payment_status == "completed" else []

    def cancel_item(self, item_id: str) -> OrderItem:
        self.ensure_cancellable()
        for index, item in enumerate(self.items):
            if item.id == item_id:
                break
        else:
            raise NotFoundError("Item not found in order")
        removed = self.items.pop(index)
        self.recalculate_total()
        if not self.items:
            self.transition("cancelled")
        return removed

    def mark_paid(self, transaction_id: str | None = None):
        if self.status == "cancelled":
            raise InvalidTransitionError("Cannot complete payment for a cancelled order")
        self.set_payment_status("completed")
        if self.status == "pending":
            self.transition("confirmed")
        self.payment_info.gateway_transaction_id = transaction_id or self.payment_info.gateway_transaction_id
        self.payment_info.payment_date = datetime.now(timezone.utc).isoformat()


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    if new == "cancelled":
        return current in CANCELLABLE_STATUSES
    if current not in STATUS_FLOW or new not in STATUS_FLOW:
        return False
    return STATUS_FLOW.index(new) > STATUS_FLOW.index(current)


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def build_order(
    user_id: str,
    cart: Cart,
    products: dict[str, Product],
    shipping_address: ShippingAddress,
    payment_method: str,
    status: str = "pending",
) -> Order:
    """Snapshot a cart into a new order."""
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {payment_method}")
    items = []
    for line in cart.items:
        product = products[line.product_id]
        items.append(
            OrderItem(
                product_id=line.product_id,
                product_name=product.name,
                product_brand=product.brand,
                quantity=line.quantity,
                size=line.size,
                color=line.color,
                price=line.price,
                subtotal=round(line.price * line.quantity, 2),
            )
        )
    return Order(
        order_number=generate_order_number(),
        user_id=user_id,
        items=items,
        total_amount=cart.calculate_total(),
        status=status,
        payment_info=PaymentInfo(method=payment_method),
        shipping_address=shipping_address,
    )


def _requested_quantities(items) -> dict[str, int]:
    requested: dict[str, int] = {}
    for item in items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
    return requested


def _check_stock(products: dict[str, Product], requested: dict[str, int]):
    for product_id, quantity in requested.items():
        product = products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")
        if product.stock < quantity:
            raise ValidationError(
                f"Insufficient stock for {product.name}. "
                f"Available: {product.stock}, Requested: {quantity}"
            )


async def load_order_products(db_path: str, cart: Cart) -> dict[str, Product]:
    """Products behind every cart line, checking each one still has enough stock."""
    products = await get_products(db_path, [item.product_id for item in cart.items])
    _check_stock(products, _requested_quantities(cart.items))
    return products


async def check_order_stock(db_path: str, order: Order):
    """Raise unless the shelf still covers every item of the order."""
    products = await get_products(db_path, [item.product_id for item in order.items])
    _check_stock(products, _requested_quantities(order.items))


# --- Persistence ---

def _row_to_order(row) -> Order:
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        user_id=row["user_id"],
        items=[OrderItem.model_validate(item) for item in json.loads(row["items"])],
        total_amount=row["total_amount"],
        status=row["status"],
        payment_status=row["payment_status"],
        payment_info=PaymentInfo(
            method=row["payment_method"],
            gateway_payment_id=row["gateway_payment_id"],
            gateway_transaction_id=row["gateway_transaction_id"],
            payment_date=row["payment_date"],
        ),
        shipping_address=ShippingAddress.model_validate(json.loads(row["shipping_address"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _items_json(order: Order) -> str:
    return json.dumps([item.model_dump() for item in order.items])


async def _insert_order(db: aiosqlite.Connection, order: Order):
    await db.execute(
        """
        INSERT INTO orders (id, order_number, user_id, items, total_amount, status,
                            payment_status, payment_method, gateway_payment_id,
                            gateway_transaction_id, payment_date, shipping_address)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            order.id,
            order.order_number,
            order.user_id,
            _items_json(order),
            order.total_amount,
            order.status,
            order.payment_status,
            order.payment_info.method,
            order.payment_info.gateway_payment_id,
            order.payment_info.gateway_transaction_id,
            order.payment_info.payment_date,
            order.shipping_address.model_dump_json(by_alias=True),
        ),
    )


async def _write_order(db: aiosqlite.Connection, order: Order):
    await db.execute(
        """
        UPDATE orders SET items = ?, total_amount = ?, status = ?, payment_status = ?,
               gateway_payment_id = ?, gateway_transaction_id = ?, payment_date = ?,
               updated_at = datetime('now')
        WHERE id = ?
        """,
        (
            _items_json(order),
            order.total_amount,
            order.status,
            order.payment_status,
            order.payment_info.gateway_payment_id,
            order.payment_info.gateway_transaction_id,
            order.payment_info.payment_date,
            order.id,
        ),
    )


async def _fetch_order(db: aiosqlite.Connection, order_id: str, user_id: str | None = None) -> Order | None:
    if user_id is None:
        cursor = await db.execute("SELECT * FROM orders WHERE id = ?", (order_id,))
    else:
        cursor = await db.execute(
            "SELECT * FROM orders WHERE id = ? AND user_id = ?", (order_id, user_id)
        )
    row = await cursor.fetchone()
    return _row_to_order(row) if row else None


async def _require_order(db: aiosqlite.Connection, order_id: str, user_id: str | None = None) -> Order:
    order = await _fetch_order(db, order_id, user_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def place_order(db_path: str, order: Order, cart: Cart | None = None) -> Order:
    """Insert the order; with ``cart`` also empty that cart in the same transaction.

    The cart must not have changed since it was snapshotted into the order.
    """
    async with transaction(db_path) as db:
        await _insert_order(db, order)
        if cart is not None:
            await clear_user_cart(db, order.user_id, expected_version=cart.version)
    logger.info("Order %s placed for user %s", order.order_number, order.user_id)
    async with connect(db_path) as db:
        return await _require_order(db, order.id)


async def get_order(db_path: str, order_id: str, user_id: str | None = None) -> Order | None:
    async with connect(db_path) as db:
        return await _fetch_order(db, order_id, user_id)


async def find_order_by_payment_id(
    db_path: str, payment_id: str, user_id: str | None = None
) -> Order | None:
    query = "SELECT * FROM orders WHERE gateway_payment_id = ?"
    params: tuple = (payment_id,)
    if user_id is not None:
        query += " AND user_id = ?"
        params = (payment_id, user_id)
    async with connect(db_path) as db:
        cursor = await db.execute(query, params)
        row = await cursor.fetchone()
        return _row_to_order(row) if row else None


async def list_orders(
    db_path: str, user_id: str, status: str | None = None, page: int = 1, limit: int = 10
) -> tuple[list[Order], int]:
    """A user's orders, newest first. Returns (orders, total matching)."""
    where = "WHERE user_id = ?"
    params: list = [user_id]
    if status:
        where += " AND status = ?"
        params.append(status)
    async with connect(db_path) as db:
        cursor = await db.execute(f"SELECT COUNT(*) AS total FROM orders {where}", params)
        total = (await cursor.fetchone())["total"]
        cursor = await db.execute(
            f"SELECT * FROM orders {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, limit, (page - 1) * limit),
        )
        rows = await cursor.fetchall()
    return [_row_to_order(row) for row in rows], total


async def set_gateway_payment_id(db_path: str, order_id: str, payment_id: str) -> Order:
    async with transaction(db_path) as db:
        order = await _require_order(db, order_id)
        order.payment_info.gateway_payment_id = payment_id
        await _write_order(db, order)
    return order


async def _take_stock(db: aiosqlite.Connection, items):
    """Take ordered quantities off the shelf inside an open transaction.

    Stock is read under the transaction's write lock, so a shortfall raises
    before anything is written instead of tripping the stock constraint.
    """
    requested = _requested_quantities(items)
    placeholders = ", ".join("?" for _ in requested)
    cursor = await db.execute(
        f"SELECT id, name, stock FROM products WHERE id IN ({placeholders})", list(requested)
    )
    products = {row["id"]: row for row in await cursor.fetchall()}
    for product_id, quantity in requested.items():
        row = products.get(product_id)
        if row is None:
            raise NotFoundError(f"Product not found: {product_id}")
        if row["stock"] < quantity:
            raise ValidationError(
                f"Insufficient stock for {row['name']}. "
                f"Available: {row['stock']}, Requested: {quantity}"
            )
    for product_id, quantity in requested.items():
        await adjust_stock(db, product_id, -quantity)


async def complete_payment(
    db_path: str, order_id: str, transaction_id: str | None = None
) -> Order:
    """Record a successful payment.

    Marks the order paid and confirmed, takes the ordered quantities out of
    stock and, for gateway orders, empties the cart that was kept for the
    payment. Everything commits in one transaction; an order that is already
    paid is returned untouched. Raises ``ValidationError`` without writing
    anything when the shelf no longer covers the order.
    """
    async with transaction(db_path) as db:
        order = await _require_order(db, order_id)
        if order.payment_status == "completed":
            return order
        order.mark_paid(transaction_id)
        await _write_order(db, order)
        await _take_stock(db, order.items)
        if order.payment_info.method == "gateway":
            await clear_user_cart(db, order.user_id)
    logger.info(
        "Payment completed for order %s (transaction %s)",
        order.order_number,
        order.payment_info.gateway_transaction_id,
    )
    return order


async def fail_payment(db_path: str, order_id: str, transaction_id: str | None = None) -> Order:
    """Mark a payment failed. Stock and the cart stay as they are so the shopper can retry.

    ``transaction_id`` keeps a gateway capture on record when it could be
    neither completed nor refunded.
    """
    async with transaction(db_path) as db:
        order = await _require_order(db, order_id)
        if order.payment_status in ("completed", "refunded"):
            logger.warning(
                "Ignoring failure for order %s with payment %s", order.order_number, order.payment_status
            )
            return order
        order.set_payment_status("failed")
        if transaction_id:
            order.payment_info.gateway_transaction_id = transaction_id
        await _write_order(db, order)
    logger.info("Payment failed for order %s", order.order_number)
    return order


async def record_refund(db_path: str, order_id: str, transaction_id: str | None = None) -> Order:
    """Mark a captured payment as handed back to the payer. Stock and the cart are untouched."""
    async with transaction(db_path) as db:
        order = await _require_order(db, order_id)
        if order.payment_status == "refunded":
            return order
        order.set_payment_status("refunded")
        if transaction_id:
            order.payment_info.gateway_transaction_id = transaction_id
        await _write_order(db, order)
    logger.info("Payment refunded for order %s", order.order_number)
    return order


async def cancel_order(db_path: str, order_id: str, user_id: str) -> Order:
    async with transaction(db_path) as db:
        order = await _require_order(db, order_id, user_id)
        restock = order.cancel()
        await _write_order(db, order)
        for item in restock:
            await adjust_stock(db, item.product_id, item.quantity)
    logger.info("Order %s cancelled", order.order_number)
    return order


async def cancel_order_item(db_path: str, order_id: str, user_id: str, item_id: str) -> Order:
    async with transaction(db_path) as db:
        order = await _require_order(db, order_id, user_id)
        was_paid = order.payment_status == "completed"
        removed = order.cancel_item(item_id)
        await _write_order(db, order)
        if was_paid:
            await adjust_stock(db, removed.product_id, removed.quantity)
    logger.info("Item %s cancelled from order %s", item_id, order.order_number)
    return order
