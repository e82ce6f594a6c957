from typing import Any, Literal, get_args
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Models that travel over the API use camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# --- Envelope ---

def ok(data: Any = None, message: str | None = None) -> dict:
    """Success envelope. Absent fields are left out rather than sent as null."""
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def fail(error: str | None = None, message: str | None = None, data: Any = None) -> dict:
    body: dict[str, Any] = {"success": False}
    if error:
        body["error"] = error
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


# --- Users ---

class ShippingAddress(CamelModel):
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""

    def is_complete(self) -> bool:
        return all(
            value.strip()
            for value in (self.street, self.city, self.state, self.zip_code)
        )


class User(CamelModel):
    id: str
    email: str
    name: str
    phone: str | None = None
    shipping_address: ShippingAddress | None = None
    created_at: str | None = None


class RegisterRequest(CamelModel):
    email: str
    name: str
    password: str
    phone: str | None = None


class LoginRequest(CamelModel):
    email: str
    password: str


class ProfileUpdateRequest(CamelModel):
    name: str
    phone: str | None = None
    shipping_address: ShippingAddress


# --- Chat schemas ---

Intent = Literal[
    "browse_products",
    "add_to_cart",
    "remove_from_cart",
    "view_cart",
    "checkout",
    "general_inquiry",
    "greeting",
    "unknown",
]

INTENTS: tuple[str, ...] = get_args(Intent)


class ChatEntities(CamelModel):
    product_name: str | None = None
    category: str | None = None
    size: str | None = None
    color: str | None = None
    quantity: int | None = None


class IntentResult(BaseModel):
    intent: Intent = "unknown"
    entities: ChatEntities = Field(default_factory=ChatEntities)
    confidence: float = 0.0


class DialogueResult(CamelModel):
    response: str
    intent: Intent
    entities: ChatEntities = Field(default_factory=ChatEntities)
    products: list[dict] | None = None
    cart_updated: bool | None = None


class ChatRequest(CamelModel):
    message: str = ""
    session_id: str | None = None


class ChatResponse(DialogueResult):
    session_id: str


class SessionInfo(CamelModel):
    session_id: str
    created_at: str
    message_count: int
    last_active: str


# --- Cart schemas ---

class CartItemRequest(CamelModel):
    product_id: str
    quantity: int
    size: str
    color: str


class CartRemoveRequest(CamelModel):
    product_id: str
    size: str
    color: str


# --- Checkout / payment / order schemas ---

class CheckoutRequest(CamelModel):
    shipping_address: ShippingAddress
    payment_method: str
    customer_phone: str


class PaymentVerifyRequest(CamelModel):
    payment_id: str | None = None
    order_id: str | None = None


class PaymentWebhookRequest(BaseModel):
    # The gateway posts its own field names.
    paymentID: str | None = None
    status: str | None = None


class OrderActionRequest(CamelModel):
    action: str
    item_id: str | None = None
