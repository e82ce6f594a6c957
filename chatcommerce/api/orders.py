import math

from fastapi import APIRouter, Depends, HTTPException, Query

from chatcommerce.dependecies import get_current_user, get_db_path
from chatcommerce.models.order import (
    cancel_order,
    cancel_order_item,
    complete_payment,
    get_order,
    list_orders,
)
from chatcommerce.models.schemas import OrderActionRequest, User, ok

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("")
async def list_user_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: str | None = None,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    orders, total = await list_orders(db_path, user.id, status=status, page=page, limit=limit)
    total_pages = math.ceil(total / limit)
    return ok({
        "orders": [order.to_payload() for order in orders],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalOrders": total,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    })


@router.get("/{order_id}")
async def get_order_detail(
    order_id: str,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    order = await get_order(db_path, order_id, user.id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return ok(order.to_payload())


@router.patch("/{order_id}")
async def cancel(
    order_id: str,
    body: OrderActionRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    """Cancel the whole order or a single line of it."""
    if body.action == "cancel_order":
        order = await cancel_order(db_path, order_id, user.id)
        return ok(order.to_payload(), "Order cancelled successfully")
    if body.action == "cancel_item" and body.item_id:
        order = await cancel_order_item(db_path, order_id, user.id, body.item_id)
        return ok(order.to_payload(), "Item cancelled successfully")
    raise HTTPException(status_code=400, detail="Invalid action")


@router.post("/{order_id}/confirm-payment")
async def confirm_cash_payment(
    order_id: str,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    """Record that a cash-on-delivery order was paid at the door."""
    order = await get_order(db_path, order_id, user.id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.payment_info.method != "cash":
        raise HTTPException(status_code=400, detail="This order is not a cash on delivery order")
    if order.payment_status == "completed":
        raise HTTPException(status_code=400, detail="Payment already confirmed")

    order = await complete_payment(db_path, order.id)
    return ok(order.to_payload(), "Cash payment confirmed successfully")
