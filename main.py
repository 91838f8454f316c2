import random
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo.database import Database
import jwt

import config
import database
from database import get_db, serialize_doc, to_object_id
from carts import CartStore
from checkout import CheckoutDispatcher
from errors import (
    StoreError,
    ValidationError,
    NotFoundError,
    StateConflictError,
    AlreadyCancelledError,
    OutOfStockError,
    PaymentDeclinedError,
    ProviderError,
    WebhookSignatureError,
    CheckoutInProgressError,
    AuthError,
    ForbiddenError,
)
from favorites import Favorites
from logs import configure_logging, get_logger
from orders import CancellationGate, OrderBook
from payments import StripeGateway, build_strategies
from schemas import BillingAddress, PaymentMethod

configure_logging()
log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


# App setup
app = FastAPI(title="ShopKart API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
security = HTTPBearer(auto_error=False)
_rng = random.SystemRandom()


# Dependencies
def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_rng() -> random.Random:
    return _rng


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                           db: Database = Depends(get_db)) -> dict:
    if credentials is None:
        raise AuthError("Not authenticated")
    payload = decode_token(credentials.credentials)
    try:
        uid = to_object_id(payload.get("sub"), "User")
    except NotFoundError:
        raise AuthError("Invalid token")
    user = db["user"].find_one({"_id": uid})
    if not user:
        raise AuthError("User not found")
    return user


async def get_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise ForbiddenError()
    return user


def get_dispatcher(db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                   rng: random.Random = Depends(get_rng)) -> CheckoutDispatcher:
    return CheckoutDispatcher(db, build_strategies(gateway, rng))


# Errors

ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    NotFoundError: 404,
    StateConflictError: 400,
    AlreadyCancelledError: 400,
    OutOfStockError: 400,
    PaymentDeclinedError: 400,
    ProviderError: 502,
    WebhookSignatureError: 400,
    CheckoutInProgressError: 409,
    AuthError: 401,
    ForbiddenError: 403,
}


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        log.error("request_failed", path=request.url.path, error_type=type(exc).__name__, error=exc.message)
    return JSONResponse(status_code=status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field_name = ".".join(str(p) for p in errors[0]["loc"][1:]) if errors else ""
    message = f"Invalid or missing field: {field_name}" if field_name else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Something went wrong. Please try again."})


# Schemas (request/response)
class CartItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    size: int
    qty: int = 1


class CartItemUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., alias="itemId")
    qty: int = Field(..., ge=1)


class CartItemRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., alias="itemId")


class FavoriteIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method: PaymentMethod = Field(PaymentMethod.HOSTED, alias="paymentMethod")
    card_data: Optional[Dict[str, Any]] = Field(None, alias="cardData")
    billing_address: Optional[BillingAddress] = Field(None, alias="billingAddress")
    coupon: Optional[str] = None
    # the server-side cart is authoritative; accepted for client compatibility
    cart_items: Optional[List[Dict[str, Any]]] = Field(None, alias="cartItems")

    @field_validator("payment_method", mode="before")
    @classmethod
    def legacy_stripe_alias(cls, v):
        return PaymentMethod.HOSTED.value if v == "stripe" else v


class CancelRequest(BaseModel):
    reason: Optional[str] = None


# Health and helpers
@app.get("/")
def root():
    return {
        "project": "ShopKart API",
        "description": "API for a shoes e-commerce storefront: cart, checkout, orders and favorites.",
        "version": app.version,
    }


# Cart
@app.get("/cart")
async def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "cart": CartStore(db).view(str(user["_id"]))}


@app.post("/cart/add")
async def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = CartStore(db).add(str(user["_id"]), item.product_id, item.size, item.qty)
    return {"success": True, "cart": cart}


@app.post("/cart/update")
async def cart_update(item: CartItemUpdate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = CartStore(db).update(str(user["_id"]), item.item_id, item.qty)
    return {"success": True, "cart": cart}


@app.post("/cart/remove")
async def cart_remove(item: CartItemRef, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = CartStore(db).remove(str(user["_id"]), item.item_id)
    return {"success": True, "cart": cart}


# Favorites
@app.get("/favorites")
async def list_favorites(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "favorites": serialize_doc(Favorites(db).list(str(user["_id"])))}


@app.post("/favorites/add")
async def add_favorite(payload: FavoriteIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    Favorites(db).add(str(user["_id"]), payload.product_id)
    return {"success": True, "message": "Product added to favorites successfully"}


@app.delete("/favorites/remove/{product_id}")
async def remove_favorite(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    Favorites(db).remove(str(user["_id"]), product_id)
    return {"success": True, "message": "Product removed from favorites successfully"}


@app.post("/favorites/move-from-cart/{item_id}")
async def favorite_from_cart(item_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = Favorites(db).add_from_cart(str(user["_id"]), item_id)
    return {"success": True, "message": "Product added to favorites successfully", "cart": cart}


# Checkout & Orders
@app.post("/payment/create-checkout-session")
async def create_checkout_session(payload: CheckoutRequest, user: dict = Depends(get_current_user),
                                  dispatcher: CheckoutDispatcher = Depends(get_dispatcher)):
    result = dispatcher.checkout(
        user,
        payload.payment_method,
        billing_address=payload.billing_address.model_dump() if payload.billing_address else None,
        card_data=payload.card_data,
        coupon=payload.coupon,
    )
    return result.to_response()


@app.post("/webhook")
async def webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                  gateway: StripeGateway = Depends(get_gateway),
                  dispatcher: CheckoutDispatcher = Depends(get_dispatcher)):
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)
    order_id = dispatcher.confirm_hosted(event)
    return {"received": True, "orderId": order_id}


@app.get("/orders")
async def list_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    orders = OrderBook(db).list_for_user(str(user["_id"]))
    return {"success": True, "orders": serialize_doc(orders)}


@app.put("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, payload: Optional[CancelRequest] = None,
                       user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = CancellationGate(db).cancel(order_id, str(user["_id"]), payload.reason if payload else None)
    return {"success": True, "message": "Order cancelled successfully", "order": serialize_doc(order)}


@app.post("/admin/reconcile")
async def reconcile_orders(user: dict = Depends(get_admin), dispatcher: CheckoutDispatcher = Depends(get_dispatcher)):
    repaired = dispatcher.reconcile()
    return {"success": True, "repaired": repaired}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
