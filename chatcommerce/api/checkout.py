import logging

from fastapi import APIRouter, Depends, HTTPException

from chatcommerce.config import settings
from chatcommerce.dependecies import get_current_user, get_db_path, get_payment_gateway
from chatcommerce.errors import PaymentGatewayError
from chatcommerce.models.cart import get_cart
from chatcommerce.models.order import (
    build_order,
    fail_payment,
    load_order_products,
    place_order,
    set_gateway_payment_id,
)
from chatcommerce.models.schemas import CheckoutRequest, User, fail, ok
from chatcommerce.services.bkash import BkashClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])

# Names the storefront sends for the mobile payment gateway
GATEWAY_ALIASES = ("gateway", "bkash")


@router.post("")
async def checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
    gateway: BkashClient = Depends(get_payment_gateway),
):
    """Create an order from the cart and start its payment."""
    method = body.payment_method.strip().lower()
    if method in GATEWAY_ALIASES:
        method = "gateway"
    if not method or not body.customer_phone.strip():
        raise HTTPException(status_code=400, detail="Missing required checkout information")
    if method not in ("cash", "gateway"):
        raise HTTPException(status_code=400, detail="Payment method not supported yet")
    if not body.shipping_address.is_complete():
        raise HTTPException(status_code=400, detail="Complete shipping address is required")

    cart = await get_cart(db_path, user.id)
    if cart is None or not cart.items:
        raise HTTPException(status_code=400, detail="Cart is empty")

    products = await load_order_products(db_path, cart)
    address = body.shipping_address.model_copy(update={
        "full_name": body.shipping_address.full_name or user.name,
        "email": body.shipping_address.email or user.email,
        "phone": body.shipping_address.phone or body.customer_phone,
        "country": body.shipping_address.country or settings.DEFAULT_COUNTRY,
    })
    order = build_order(user.id, cart, products, address, method)

    if method == "cash":
        order = await place_order(db_path, order, cart)
        return ok(
            {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "totalAmount": order.total_amount,
                "paymentMethod": "cash",
            },
            "Order created successfully. Cash on delivery selected.",
        )

    # The cart stays until the gateway confirms the payment
    order = await place_order(db_path, order)
    try:
        payment = await gateway.create_payment(order.total_amount, order.order_number, body.customer_phone)
    except PaymentGatewayError as e:
        logger.error("Payment creation failed for order %s: %s", order.order_number, e)
        order = await fail_payment(db_path, order.id)
        return fail(
            message="Failed to initiate payment. Please try again.",
            data={
                "orderId": order.id,
                "orderNumber": order.order_number,
                "paymentStatus": order.payment_status,
            },
        )

    order = await set_gateway_payment_id(db_path, order.id, payment["paymentID"])
    logger.info("Gateway payment %s created for order %s", payment["paymentID"], order.order_number)
    return ok(
        {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "paymentUrl": payment["bkashURL"],
            "paymentId": payment["paymentID"],
            "totalAmount": order.total_amount,
            "paymentMethod": "gateway",
        },
        "Order created successfully. Redirecting to payment.",
    )
