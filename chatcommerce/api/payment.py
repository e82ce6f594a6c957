import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse

from chatcommerce.config import settings
from chatcommerce.dependecies import get_current_user, get_db_path, get_payment_gateway
from chatcommerce.errors import PaymentGatewayError, StoreError
from chatcommerce.models.order import (
    Order,
    check_order_stock,
    complete_payment,
    fail_payment,
    find_order_by_payment_id,
    get_order,
    record_refund,
)
from chatcommerce.models.schemas import PaymentVerifyRequest, PaymentWebhookRequest, User, fail, ok
from chatcommerce.services.bkash import BkashClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["payment"])


OUTCOME_MESSAGES = {
    "payment-cancelled": "Payment was cancelled or failed",
    "order-cancelled": "Order was cancelled before the payment went through",
    "out-of-stock": "Items in this order are no longer in stock",
    "payment-refunded": "Order could not be completed, the payment was refunded",
    "refund-error": "Order could not be completed, the refund needs manual handling",
}


def _payment_summary(order: Order) -> dict:
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "paymentStatus": order.payment_status,
        "transactionId": order.payment_info.gateway_transaction_id,
        "totalAmount": order.total_amount,
    }


async def record_captured_payment(
    db_path: str, gateway: BkashClient, order: Order, transaction_id: str | None
) -> tuple[str, Order]:
    """Complete an order whose money the gateway already holds.

    When the order can no longer be completed the capture is refunded and
    the payment marked ``refunded``. If the refund call fails too, the payment
    stays ``failed`` with the transaction id kept for a later /verify.
    """
    try:
        return "completed", await complete_payment(db_path, order.id, transaction_id)
    except StoreError as e:
        logger.error("Payment for order %s captured but not recorded: %s", order.order_number, e.message)

    payment_id = order.payment_info.gateway_payment_id
    try:
        await gateway.refund_payment(
            payment_id, order.total_amount, transaction_id, "Order could not be fulfilled"
        )
    except PaymentGatewayError as e:
        logger.error("Refund failed for payment %s, manual refund needed: %s", payment_id, e)
        return "refund-error", await fail_payment(db_path, order.id, transaction_id)
    return "payment-refunded", await record_refund(db_path, order.id, transaction_id)


async def settle_gateway_payment(
    db_path: str, gateway: BkashClient, order: Order, status: str | None
) -> tuple[str, Order, str | None]:
    """Act on the gateway's verdict for an order's payment.

    Returns (outcome, order, transaction id) where outcome is ``completed``,
    ``execution-failed``, ``execution-error`` or one of ``OUTCOME_MESSAGES``.
    The payment is only executed for an open, unpaid order whose items are
    still in stock.
    """
    payment_id = order.payment_info.gateway_payment_id
    if order.payment_status == "completed":
        return "completed", order, order.payment_info.gateway_transaction_id
    if order.payment_status == "refunded":
        return "payment-refunded", order, None
    if status != "success":
        return "payment-cancelled", await fail_payment(db_path, order.id), None
    if order.status == "cancelled":
        logger.warning("Not executing payment %s for cancelled order %s", payment_id, order.order_number)
        return "order-cancelled", await fail_payment(db_path, order.id), None
    try:
        await check_order_stock(db_path, order)
    except StoreError as e:
        logger.warning("Not executing payment %s: %s", payment_id, e.message)
        return "out-of-stock", await fail_payment(db_path, order.id), None

    try:
        result = await gateway.execute_payment(payment_id)
    except PaymentGatewayError as e:
        logger.error("Payment execution error for %s: %s", payment_id, e)
        return "execution-error", await fail_payment(db_path, order.id), None

    if result.get("transactionStatus") != "Completed":
        logger.warning(
            "Payment %s executed with status %s", payment_id, result.get("transactionStatus")
        )
        return "execution-failed", await fail_payment(db_path, order.id), None

    transaction_id = result.get("trxID")
    outcome, order = await record_captured_payment(db_path, gateway, order, transaction_id)
    return outcome, order, transaction_id


@router.post("/verify")
async def verify_payment(
    body: PaymentVerifyRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
    gateway: BkashClient = Depends(get_payment_gateway),
):
    if not body.payment_id and not body.order_id:
        raise HTTPException(status_code=400, detail="Payment ID or Order ID is required")

    if body.order_id:
        order = await get_order(db_path, body.order_id, user.id)
    else:
        order = await find_order_by_payment_id(db_path, body.payment_id, user.id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    if order.payment_status == "completed":
        return ok(_payment_summary(order), "Payment already completed")
    if order.payment_status == "refunded":
        return fail(message=OUTCOME_MESSAGES["payment-refunded"], data=_payment_summary(order))

    payment_id = order.payment_info.gateway_payment_id
    if order.payment_info.method == "gateway" and payment_id:
        try:
            status = await gateway.query_payment(payment_id)
        except PaymentGatewayError as e:
            logger.error("Payment query failed for %s: %s", payment_id, e)
            raise HTTPException(status_code=502, detail="Failed to verify payment with the payment gateway")

        if status.get("transactionStatus") == "Completed":
            outcome, order = await record_captured_payment(db_path, gateway, order, status.get("trxID"))
            if outcome == "completed":
                return ok(_payment_summary(order), "Payment verified and completed")
            return fail(message=OUTCOME_MESSAGES[outcome], data=_payment_summary(order))
        return fail(
            message="Payment not completed yet",
            data={
                "orderId": order.id,
                "orderNumber": order.order_number,
                "paymentStatus": order.payment_status,
                "transactionStatus": status.get("transactionStatus"),
            },
        )

    return ok({
        "orderId": order.id,
        "orderNumber": order.order_number,
        "paymentStatus": order.payment_status,
        "paymentMethod": order.payment_info.method,
        "totalAmount": order.total_amount,
    })


@router.post("/webhook")
async def payment_webhook(
    body: PaymentWebhookRequest,
    db_path: str = Depends(get_db_path),
    gateway: BkashClient = Depends(get_payment_gateway),
):
    """Asynchronous callback from the gateway."""
    logger.info("Payment webhook received: paymentID=%s status=%s", body.paymentID, body.status)
    if not body.paymentID:
        raise HTTPException(status_code=400, detail="Payment ID is required")
    if body.status not in ("success", "failure", "cancel"):
        raise HTTPException(status_code=400, detail="Invalid payment status")

    order = await find_order_by_payment_id(db_path, body.paymentID)
    if order is None:
        logger.error("Order not found for payment ID %s", body.paymentID)
        raise HTTPException(status_code=404, detail="Order not found")

    outcome, order, transaction_id = await settle_gateway_payment(db_path, gateway, order, body.status)
    if outcome == "completed":
        return ok(
            {"orderId": order.id, "transactionId": transaction_id},
            "Payment completed successfully",
        )
    if outcome == "execution-failed":
        raise HTTPException(status_code=400, detail="Payment execution failed")
    if outcome == "execution-error":
        raise HTTPException(status_code=502, detail="Failed to execute payment")
    return fail(
        message=OUTCOME_MESSAGES[outcome],
        data={"orderId": order.id, "paymentStatus": order.payment_status},
    )


def _redirect(path: str, **params) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.FRONTEND_BASE_URL.rstrip('/')}{path}?{urlencode(params)}", status_code=302
    )


@router.get("/webhook")
async def payment_redirect(
    paymentID: str | None = None,
    status: str | None = None,
    db_path: str = Depends(get_db_path),
    gateway: BkashClient = Depends(get_payment_gateway),
):
    """Where the gateway sends the shopper's browser after the payment page."""
    logger.info("Payment redirect received: paymentID=%s status=%s", paymentID, status)
    if not paymentID:
        return _redirect("/payment/failed", error="missing-payment-id")

    try:
        order = await find_order_by_payment_id(db_path, paymentID)
        if order is None:
            return _redirect("/payment/failed", error="order-not-found")
        outcome, order, transaction_id = await settle_gateway_payment(db_path, gateway, order, status)
    except Exception:
        logger.exception("Payment redirect for %s could not be processed", paymentID)
        return _redirect("/payment/failed", error="callback-error")

    if outcome == "completed":
        return _redirect("/payment/success", orderId=order.id, transactionId=transaction_id or "")
    return _redirect("/payment/failed", error=outcome)
