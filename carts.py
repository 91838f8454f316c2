"""Per-user cart documents and the checkout lock that guards them."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import to_object_id
from errors import CheckoutInProgressError, NotFoundError, ValidationError
from schemas import CartItem


@dataclass
class CartLine:
    """A cart item joined with the live product it points at."""
    item_id: str
    product_id: str
    size: int
    qty: int
    name: str
    brand: Optional[str]
    image: Optional[str]
    price: float
    available: int

    @property
    def display_name(self) -> str:
        return f"{self.brand} {self.name}" if self.brand else self.name

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "product_id": self.product_id,
            "size": self.size,
            "qty": self.qty,
            "name": self.name,
            "brand": self.brand,
            "image": self.image,
            "price": self.price,
            "available": self.available,
        }


def _size_stock(product: dict, size: int) -> int:
    for bucket in product.get("size_quantity", []):
        if bucket["size"] == size:
            return bucket["quantity"]
    return 0


class CartStore:
    def __init__(self, db: Database):
        self.carts = db["cart"]
        self.products = db["product"]

    def _find_or_create(self, user_id: str) -> dict:
        return self.carts.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"items": [], "total_price": 0.0}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def lines(self, user_id: str) -> List[CartLine]:
        """Cart items joined with current price, name, image and stock.

        Items whose product was deleted are skipped.
        """
        cart = self.carts.find_one({"user_id": user_id}) or {"items": []}
        out = []
        for item in cart.get("items", []):
            product = self.products.find_one({"_id": to_object_id(item["product_id"], "Product")})
            if not product:
                continue
            out.append(CartLine(
                item_id=item["item_id"],
                product_id=item["product_id"],
                size=item["size"],
                qty=item["qty"],
                name=product.get("name", "Product"),
                brand=product.get("brand"),
                image=product.get("image"),
                price=float(product.get("price", 0.0)),
                available=_size_stock(product, item["size"]),
            ))
        return out

    def view(self, user_id: str) -> dict:
        lines = self.lines(user_id)
        return {
            "user_id": user_id,
            "items": [line.to_dict() for line in lines],
            "total_price": round(sum(line.price * line.qty for line in lines), 2),
        }

    def _save_items(self, user_id: str, items: list) -> dict:
        total = 0.0
        for it in items:
            product = self.products.find_one({"_id": to_object_id(it["product_id"], "Product")})
            if product:
                total += float(product.get("price", 0.0)) * it["qty"]
        self.carts.update_one({"user_id": user_id}, {"$set": {"items": items, "total_price": round(total, 2)}})
        return self.view(user_id)

    def add(self, user_id: str, product_id: str, size: int, qty: int = 1) -> dict:
        if qty < 1:
            raise ValidationError("Quantity must be at least 1")
        product = self.products.find_one({"_id": to_object_id(product_id, "Product")})
        if not product:
            raise NotFoundError("Product", product_id)
        if not any(b["size"] == size for b in product.get("size_quantity", [])):
            raise ValidationError(f"Size {size} is not available")
        cart = self._find_or_create(user_id)
        items = cart.get("items", [])
        for it in items:
            if it["product_id"] == product_id and it["size"] == size:
                it["qty"] += qty
                break
        else:
            items.append(CartItem(item_id=uuid.uuid4().hex, product_id=product_id, size=size, qty=qty).model_dump())
        return self._save_items(user_id, items)

    def update(self, user_id: str, item_id: str, qty: int) -> dict:
        cart = self.carts.find_one({"user_id": user_id})
        items = cart.get("items", []) if cart else []
        for it in items:
            if it["item_id"] == item_id:
                it["qty"] = max(1, qty)
                break
        else:
            raise NotFoundError("Cart item", item_id)
        return self._save_items(user_id, items)

    def remove(self, user_id: str, item_id: str) -> dict:
        cart = self.carts.find_one({"user_id": user_id})
        items = cart.get("items", []) if cart else []
        kept = [it for it in items if it["item_id"] != item_id]
        if len(kept) == len(items):
            raise NotFoundError("Cart item", item_id)
        return self._save_items(user_id, kept)

    def get_item(self, user_id: str, item_id: str) -> dict:
        cart = self.carts.find_one({"user_id": user_id}) or {}
        for it in cart.get("items", []):
            if it["item_id"] == item_id:
                return it
        raise NotFoundError("Cart item", item_id)

    def clear(self, user_id: str) -> None:
        self.carts.update_one({"user_id": user_id}, {"$set": {"items": [], "total_price": 0.0}})

    # Checkout lock

    def acquire_checkout_lock(self, user_id: str, ttl_seconds: int = config.CHECKOUT_LOCK_TTL_SECONDS) -> str:
        """Mark the cart as checking out. A lock older than ``ttl_seconds`` is taken over."""
        self._find_or_create(user_id)
        now = datetime.utcnow()
        token = uuid.uuid4().hex
        locked = self.carts.find_one_and_update(
            {"user_id": user_id,
             "$or": [{"checkout_lock": None}, {"checkout_lock.expires_at": {"$lt": now}}]},
            {"$set": {"checkout_lock": {"token": token, "expires_at": now + timedelta(seconds=ttl_seconds)}}},
        )
        if locked is None:
            raise CheckoutInProgressError()
        return token

    def release_checkout_lock(self, user_id: str, token: str) -> None:
        self.carts.update_one({"user_id": user_id, "checkout_lock.token": token}, {"$unset": {"checkout_lock": ""}})
