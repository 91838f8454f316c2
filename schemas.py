"""
Database Schemas for the ShopKart storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Order -> collection "order"
"""
from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from datetime import datetime

# Enumerations

class PaymentMethod(str, Enum):
    HOSTED = "hosted"
    COD = "cod"
    CARD = "card"
    UPI = "upi"

class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

class CancelledBy(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"

# Delivery states from which an order may still be cancelled
CANCELLABLE_STATES = (DeliveryStatus.PENDING.value, DeliveryStatus.PROCESSING.value)

# Embedded documents

class BillingAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(..., alias="fullName")
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: str
    city: str
    state: Optional[str] = None
    pincode: str

class SizeQuantity(BaseModel):
    size: int
    quantity: int = Field(..., ge=0)

class CardDetails(BaseModel):
    """Redacted card descriptor. Full card number and CVV are never stored."""
    card_type: Optional[str] = None
    last_four: str
    cardholder_name: Optional[str] = None

class Cancellation(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    is_cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    cancelled_by: CancelledBy = CancelledBy.USER
    cancellation_reason: Optional[str] = None

# Core domain models

class Product(BaseModel):
    name: str
    brand: Optional[str] = None
    slug: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    size_quantity: List[SizeQuantity] = Field(default_factory=list)
    is_active: bool = True

class CartItem(BaseModel):
    item_id: str
    product_id: str
    size: int
    qty: int = Field(1, ge=1)

class OrderItem(BaseModel):
    """Point-in-time copy of a purchased line."""
    product_id: str
    name: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: int
    is_reviewed: bool = False
    # units actually taken from stock, may be below quantity after a shortfall
    committed_qty: int = Field(0, ge=0)

class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    payment_method: PaymentMethod
    payment_intent_id: Optional[str] = None
    products: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    shipping: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    card_details: Optional[CardDetails] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    cancellation: Cancellation = Field(default_factory=Cancellation)
    # unit-of-work journal, see checkout.CheckoutDispatcher
    inventory_committed: bool = False
    committed_lines: List[int] = Field(default_factory=list)
    stock_shortfall: List[Dict[str, Any]] = Field(default_factory=list)
    checkout_token: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class PendingCheckout(BaseModel):
    """Hosted checkout waiting for the provider's confirmation."""
    user_id: str
    lines: List[OrderItem]
    billing_address: Optional[Dict[str, Any]] = None
    coupon: Optional[str] = None
    session_id: Optional[str] = None
    status: str = Field("open", description="open|confirming|confirmed")
    order_id: Optional[str] = None
    # set when a webhook claims the checkout
    session: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = None
    confirming_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
