import logging

from chatcommerce.errors import StoreError
from chatcommerce.models.cart import Cart, get_cart, mutate_cart
from chatcommerce.models.catalog import Product, find_product_by_term, find_products, get_products
from chatcommerce.models.database import get_user
from chatcommerce.models.order import build_order, load_order_products, place_order
from chatcommerce.models.schemas import (
    ChatEntities,
    DialogueResult,
    IntentResult,
    ShippingAddress,
    User,
)
from chatcommerce.services.llm import LLMClient

logger = logging.getLogger(__name__)

BROWSE_LIMIT = 3
DELIVERY_ESTIMATE_DAYS = 7

GREETING = (
    "Hello! 👋 Welcome to ShoeBot! I can show you shoes, add them to your cart, "
    "remove items, show your cart and check you out. What are you looking for today?"
)
UNKNOWN = (
    "I'm not sure I understand. I can help you browse shoes, add items to your cart, "
    "remove items, view your cart, or checkout. What would you like to do?"
)
INQUIRY_FALLBACK = (
    "I'm here to help! You can ask me about our shoes, shipping, returns, or anything "
    "else. What would you like to know?"
)
INQUIRY_SYSTEM_PROMPT = (
    "You are the friendly customer service assistant of ShoeBot, an online shoe store. "
    "Answer briefly and helpfully."
)
INQUIRY_PROMPT = """Answer the shopper's question about our shoes, shipping, returns, sizing or store policies.
Keep it short and friendly.

Question: "{message}"
"""


def _money(amount: float) -> str:
    return f"${amount:.2f}"


def _name_matches(product: Product | None, name: str) -> bool:
    if product is None:
        return False
    name = name.lower()
    return name in product.name.lower() or name in product.brand.lower()


def select_line_for_removal(cart: Cart, products: dict[str, Product], entities: ChatEntities) -> int:
    """Pick the one cart line a removal request refers to, or -1.

    A product name alone matches on name/brand. When a size or color is given
    every criterion present must match. The first matching line wins.
    """
    index = -1
    if entities.product_name:
        index = next(
            (i for i, item in enumerate(cart.items)
             if _name_matches(products.get(item.product_id), entities.product_name)),
            -1,
        )
    if entities.size or entities.color:
        index = -1
        for i, item in enumerate(cart.items):
            if entities.product_name and not _name_matches(products.get(item.product_id), entities.product_name):
                continue
            if entities.size and item.size != entities.size:
                continue
            if entities.color and entities.color.lower() not in item.color.lower():
                continue
            index = i
            break
    return index


def describe_cart_lines(cart: Cart, products: dict[str, Product]) -> str:
    lines = []
    for item in cart.items:
        product = products.get(item.product_id)
        name = product.name if product else "Unknown product"
        lines.append(f"• {name} ({item.color}, size {item.size}) - Qty: {item.quantity}")
    return "\n".join(lines)


class DialogueDispatcher:
    """Carries out a classified chat turn against the cart, catalog and orders.

    Stateless: every turn is handled on its own. Handlers never raise; a
    failure becomes an apology that keeps the detected intent.
    """

    def __init__(self, db_path: str, llm: LLMClient | None = None, default_country: str = "Bangladesh"):
        self.db_path = db_path
        self.llm = llm
        self.default_country = default_country

    async def handle(self, result: IntentResult, user: User, message: str) -> DialogueResult:
        entities = result.entities
        if result.intent == "browse_products":
            return await self.browse_products(entities)
        if result.intent == "add_to_cart":
            return await self.add_to_cart(entities, user)
        if result.intent == "remove_from_cart":
            return await self.remove_from_cart(entities, user)
        if result.intent == "view_cart":
            return await self.view_cart(user)
        if result.intent == "checkout":
            return await self.checkout(user)
        if result.intent == "greeting":
            return DialogueResult(response=GREETING, intent="greeting", entities=entities)
        if result.intent == "general_inquiry":
            return await self.general_inquiry(message)
        return DialogueResult(response=UNKNOWN, intent="unknown", entities=entities)

    async def browse_products(self, entities: ChatEntities) -> DialogueResult:
        try:
            products = await find_products(
                self.db_path,
                category=entities.category,
                name_or_brand=entities.product_name,
                color=entities.color,
                limit=BROWSE_LIMIT,
            )
        except Exception:
            logger.exception("Browse products failed")
            return DialogueResult(
                response="Sorry, I had trouble searching for products. Please try again.",
                intent="browse_products",
                entities=entities,
                products=[],
            )

        if not products:
            return DialogueResult(
                response=(
                    "I couldn't find any shoes matching your criteria. "
                    "Would you like me to show you our popular products instead?"
                ),
                intent="browse_products",
                entities=entities,
                products=[],
            )

        listing = "\n\n".join(
            f"• **{p.name}** by {p.brand} - {_money(p.price)}\n"
            f"  Available in: {', '.join(p.colors)}\n"
            f"  Sizes: {', '.join(p.sizes)}"
            for p in products
        )
        return DialogueResult(
            response=(
                f"Here are {len(products)} shoes I found for you:\n\n{listing}\n\n"
                "Would you like to add any of these to your cart? "
                "Just let me know the name, size, and color!"
            ),
            intent="browse_products",
            entities=entities,
            products=[p.summary() for p in products],
        )

    async def add_to_cart(self, entities: ChatEntities, user: User) -> DialogueResult:
        try:
            product = None
            if entities.product_name:
                product = await find_product_by_term(self.db_path, entities.product_name)
            if product is None:
                return DialogueResult(
                    response=(
                        "I couldn't find that specific shoe. Could you be more specific about which "
                        "shoe you'd like to add? For example: 'Add Nike Air Max in black size 9'."
                    ),
                    intent="add_to_cart",
                    entities=entities,
                )

            size, color = entities.size, entities.color
            if not size or size not in product.sizes:
                return DialogueResult(
                    response=(
                        f"Please specify a valid size for {product.name}. "
                        f"Available sizes: {', '.join(product.sizes)}"
                    ),
                    intent="add_to_cart",
                    entities=entities,
                )
            if not color or not any(color.lower() in c.lower() for c in product.colors):
                return DialogueResult(
                    response=(
                        f"Please specify a valid color for {product.name}. "
                        f"Available colors: {', '.join(product.colors)}"
                    ),
                    intent="add_to_cart",
                    entities=entities,
                )

            quantity = entities.quantity or 1
            cart, _ = await mutate_cart(
                self.db_path,
                user.id,
                lambda cart: cart.add_chat_item(product.id, quantity, size, color, product.price),
            )
            return DialogueResult(
                response=(
                    f"Great! I've added {quantity} {product.name} in {color} (size {size}) to your cart "
                    f"for {_money(product.price * quantity)}. Your cart total is now "
                    f"{_money(cart.total_amount)}. Would you like to continue shopping or checkout?"
                ),
                intent="add_to_cart",
                entities=entities,
                cart_updated=True,
            )
        except Exception:
            logger.exception("Add to cart failed for user %s", user.id)
            return DialogueResult(
                response="Sorry, I had trouble adding that item to your cart. Please try again.",
                intent="add_to_cart",
                entities=entities,
            )

    async def remove_from_cart(self, entities: ChatEntities, user: User) -> DialogueResult:
        try:
            cart = await get_cart(self.db_path, user.id)
            if cart is None or not cart.items:
                return DialogueResult(
                    response="Your cart is already empty. Would you like to browse some shoes?",
                    intent="remove_from_cart",
                    entities=entities,
                )

            products = await get_products(self.db_path, [item.product_id for item in cart.items])

            def remove(fresh: Cart):
                index = select_line_for_removal(fresh, products, entities)
                return fresh.remove_at(index) if index > -1 else None

            removed = None
            if select_line_for_removal(cart, products, entities) > -1:
                cart, removed = await mutate_cart(self.db_path, user.id, remove)

            if removed is None:
                return DialogueResult(
                    response=(
                        "I couldn't find that item in your cart. Here's what you currently have:\n\n"
                        f"{describe_cart_lines(cart, products)}\n\n"
                        "Please be more specific about which item you'd like to remove."
                    ),
                    intent="remove_from_cart",
                    entities=entities,
                )

            product = products.get(removed.product_id)
            name = product.name if product else "that item"
            return DialogueResult(
                response=(
                    f"I've removed {name} in {removed.color} (size {removed.size}) from your cart. "
                    f"Your new cart total is {_money(cart.total_amount)}."
                ),
                intent="remove_from_cart",
                entities=entities,
                cart_updated=True,
            )
        except Exception:
            logger.exception("Remove from cart failed for user %s", user.id)
            return DialogueResult(
                response="Sorry, I had trouble removing that item from your cart. Please try again.",
                intent="remove_from_cart",
                entities=entities,
            )

    async def view_cart(self, user: User) -> DialogueResult:
        try:
            cart = await get_cart(self.db_path, user.id)
            if cart is None or not cart.items:
                return DialogueResult(
                    response="Your cart is empty. Would you like me to show you some popular shoes?",
                    intent="view_cart",
                )

            products = await get_products(self.db_path, [item.product_id for item in cart.items])
            lines = []
            for item in cart.items:
                product = products.get(item.product_id)
                name = product.name if product else "Unknown product"
                brand = product.brand if product else "unknown brand"
                lines.append(
                    f"• **{name}** by {brand}\n"
                    f"  Color: {item.color}, Size: {item.size}, Qty: {item.quantity}\n"
                    f"  Price: {_money(item.line_total)}"
                )
            listing = "\n\n".join(lines)
            return DialogueResult(
                response=(
                    f"Here's what's in your cart:\n\n{listing}\n\n"
                    f"**Total: {_money(cart.total_amount)}**\n\n"
                    "Would you like to checkout or continue shopping?"
                ),
                intent="view_cart",
            )
        except Exception:
            logger.exception("View cart failed for user %s", user.id)
            return DialogueResult(
                response="Sorry, I had trouble loading your cart. Please try again.",
                intent="view_cart",
            )

    async def checkout(self, user: User) -> DialogueResult:
        try:
            cart = await get_cart(self.db_path, user.id)
            if cart is None or not cart.items:
                return DialogueResult(
                    response="Your cart is empty. Please add some shoes to your cart before checkout.",
                    intent="checkout",
                )

            profile = await get_user(self.db_path, user.id)
            if profile is None:
                return DialogueResult(
                    response="Sorry, I couldn't find your user account. Please try logging in again.",
                    intent="checkout",
                )

            address = profile.shipping_address
            if address is None or not address.is_complete():
                return DialogueResult(
                    response=(
                        "To complete your order, please update your profile with a complete shipping "
                        "address first (street, city, state and ZIP code). Then come back and say "
                        "'I'm ready to checkout' again."
                    ),
                    intent="checkout",
                )

            try:
                products = await load_order_products(self.db_path, cart)
                order = build_order(
                    user.id,
                    cart,
                    products,
                    ShippingAddress(
                        full_name=profile.name,
                        email=profile.email,
                        phone=profile.phone or "Not provided",
                        street=address.street,
                        city=address.city,
                        state=address.state,
                        zip_code=address.zip_code,
                        country=address.country or self.default_country,
                    ),
                    payment_method="cash",
                    status="confirmed",
                )
                order = await place_order(self.db_path, order, cart)
            except StoreError as e:
                return DialogueResult(
                    response=f"I couldn't place your order: {e.message}. Please review your cart and try again.",
                    intent="checkout",
                )

            return DialogueResult(
                response=(
                    "🎉 Order placed successfully with Cash on Delivery!\n\n"
                    "**Order Details:**\n"
                    f"- Order Number: {order.order_number}\n"
                    f"- Items: {order.item_count} item(s)\n"
                    f"- Total: {_money(order.total_amount)}\n"
                    "- Payment: Cash on Delivery\n"
                    "- Status: Confirmed\n"
                    f"- Delivery Address: {address.street}, {address.city}\n"
                    f"- Estimated Delivery: {DELIVERY_ESTIMATE_DAYS} days from now\n\n"
                    "Your cart has been cleared. You'll pay when the shoes arrive, and you can follow "
                    "the order in the Orders section. Thank you for shopping with us! 🛍️"
                ),
                intent="checkout",
                cart_updated=True,
            )
        except Exception:
            logger.exception("Checkout failed for user %s", user.id)
            return DialogueResult(
                response=(
                    "Sorry, I had trouble processing your checkout request. Please try again "
                    "or use the regular checkout page."
                ),
                intent="checkout",
            )

    async def general_inquiry(self, message: str) -> DialogueResult:
        if self.llm is None or not self.llm.enabled:
            return DialogueResult(response=INQUIRY_FALLBACK, intent="general_inquiry")
        try:
            answer = await self.llm.complete(
                system=INQUIRY_SYSTEM_PROMPT,
                prompt=INQUIRY_PROMPT.format(message=message),
                temperature=0.7,
                max_tokens=200,
            )
        except Exception as e:
            logger.warning("General inquiry answer failed: %s", e)
            answer = ""
        return DialogueResult(response=answer.strip() or INQUIRY_FALLBACK, intent="general_inquiry")
