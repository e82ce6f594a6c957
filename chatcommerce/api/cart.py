from fastapi import APIRouter, Depends, HTTPException

from chatcommerce.dependecies import get_current_user, get_db_path
from chatcommerce.models.cart import MAX_QUANTITY_PER_ITEM, get_cart, get_or_create_cart, mutate_cart, populate_cart
from chatcommerce.models.catalog import get_product
from chatcommerce.models.schemas import CartItemRequest, CartRemoveRequest, User, ok

router = APIRouter(prefix="/api/cart", tags=["cart"])


async def _require_cart(db_path: str, user_id: str):
    cart = await get_cart(db_path, user_id)
    if cart is None:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart


@router.get("")
async def read_cart(
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    cart = await get_or_create_cart(db_path, user.id)
    return ok(await populate_cart(db_path, cart))


@router.post("")
async def add_to_cart(
    body: CartItemRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    if not 1 <= body.quantity <= MAX_QUANTITY_PER_ITEM:
        raise HTTPException(status_code=400, detail="Quantity must be between 1 and 10")

    product = await get_product(db_path, body.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.stock < body.quantity:
        raise HTTPException(status_code=400, detail="Insufficient stock")
    if body.size not in product.sizes:
        raise HTTPException(status_code=400, detail="Invalid size for this product")
    if body.color not in product.colors:
        raise HTTPException(status_code=400, detail="Invalid color for this product")

    cart, _ = await mutate_cart(
        db_path,
        user.id,
        lambda cart: cart.add_item(product.id, body.quantity, body.size, body.color, product.price),
    )
    return ok(await populate_cart(db_path, cart), "Item added to cart successfully")


@router.put("")
async def update_cart_item(
    body: CartItemRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    if not 0 <= body.quantity <= MAX_QUANTITY_PER_ITEM:
        raise HTTPException(status_code=400, detail="Quantity must be between 0 and 10")
    await _require_cart(db_path, user.id)

    cart, _ = await mutate_cart(
        db_path,
        user.id,
        lambda cart: cart.update_quantity(body.product_id, body.size, body.color, body.quantity),
    )
    return ok(await populate_cart(db_path, cart), "Cart updated successfully")


@router.delete("")
async def clear_cart(
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    await _require_cart(db_path, user.id)
    cart, _ = await mutate_cart(db_path, user.id, lambda cart: cart.clear())
    return ok(cart.to_payload(), "Cart cleared successfully")


@router.delete("/remove")
async def remove_cart_item(
    body: CartRemoveRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    await _require_cart(db_path, user.id)
    cart, _ = await mutate_cart(
        db_path,
        user.id,
        lambda cart: cart.remove_item(body.product_id, body.size, body.color),
    )
    return ok(await populate_cart(db_path, cart), "Item removed from cart successfully")
