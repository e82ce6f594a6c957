from fastapi import APIRouter
from chatcommerce.api.auth import router as auth_router
from chatcommerce.api.cart import router as cart_router
from chatcommerce.api.chat import router as chat_router
from chatcommerce.api.checkout import router as checkout_router
from chatcommerce.api.orders import router as orders_router
from chatcommerce.api.payment import router as payment_router
from chatcommerce.api.products import router as products_router
from chatcommerce.api.profile import router as profile_router
from chatcommerce.api.sessions import router as sessions_router

router = APIRouter()
router.include_router(auth_router)
router.include_router(profile_router)
router.include_router(products_router)
router.include_router(sessions_router)
router.include_router(chat_router)
router.include_router(cart_router)
router.include_router(checkout_router)
router.include_router(payment_router)
router.include_router(orders_router)
