"""Order records and the cancellation gate."""
from datetime import datetime
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import config
from database import create_document, to_object_id
from errors import AlreadyCancelledError, NotFoundError, StateConflictError
from inventory import InventoryLedger
from logs import get_logger
from schemas import CANCELLABLE_STATES, CancelledBy, DeliveryStatus, Order

log = get_logger(__name__)


class OrderBook:
    def __init__(self, db: Database):
        self.orders = db["order"]
        self.products = db["product"]

    def insert(self, order: Order) -> str:
        return create_document(self.orders.database, "order", order)

    def delete(self, order_id: str) -> None:
        self.orders.delete_one({"_id": to_object_id(order_id, "Order")})

    def get(self, order_id: str, user_id: Optional[str] = None) -> dict:
        filt = {"_id": to_object_id(order_id, "Order")}
        if user_id is not None:
            filt["user_id"] = user_id
        order = self.orders.find_one(filt)
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def mark_line_committed(self, order_id: str, index: int, qty: int) -> None:
        """Record that line ``index`` is settled and how many units were actually taken from stock."""
        self.orders.update_one(
            {"_id": to_object_id(order_id, "Order")},
            {"$addToSet": {"committed_lines": index}, "$set": {f"products.{index}.committed_qty": qty}},
        )

    def mark_committed(self, order_id: str, shortfall: Optional[list] = None) -> None:
        update = {"inventory_committed": True, "updated_at": datetime.utcnow()}
        if shortfall:
            update["stock_shortfall"] = shortfall
        self.orders.update_one({"_id": to_object_id(order_id, "Order")}, {"$set": update})

    def uncommitted(self, older_than: datetime) -> List[dict]:
        return list(self.orders.find({"inventory_committed": False, "created_at": {"$lt": older_than}}))

    def list_for_user(self, user_id: str) -> List[dict]:
        """Caller's orders, newest first, with product name/image/brand for display."""
        out = []
        for order in self.orders.find({"user_id": user_id}).sort("created_at", DESCENDING):
            items = []
            for line in order.get("products", []):
                product = self.products.find_one({"_id": to_object_id(line["product_id"], "Product")}) or {}
                name = product.get("name") or line.get("name") or "Product"
                items.append({
                    "id": line["product_id"],
                    "name": name,
                    "image": product.get("image") or line.get("image"),
                    "brand": product.get("brand") or "N/A",
                    "qty": line["quantity"],
                    "size": line["size"],
                    "price": line.get("price"),
                    "is_reviewed": line.get("is_reviewed", False),
                    "slug": product.get("slug") or "-".join(name.lower().split()),
                })
            out.append({
                "_id": order["_id"],
                "total_price": order.get("total"),
                "subtotal": order.get("subtotal"),
                "payment_method": order.get("payment_method"),
                "payment_status": order.get("payment_status"),
                "delivery_status": order.get("delivery_status"),
                "created_at": order.get("created_at"),
                "items": items,
                "cancellation": order.get("cancellation"),
            })
        return out


class CancellationGate:
    """Allows ``* -> cancelled`` only while the order is pending or processing."""

    def __init__(self, db: Database, restock: bool = config.RESTOCK_ON_CANCEL):
        self.book = OrderBook(db)
        self.ledger = InventoryLedger(db)
        self.restock = restock

    def cancel(self, order_id: str, user_id: str, reason: Optional[str] = None,
               cancelled_by: CancelledBy = CancelledBy.USER) -> dict:
        order = self.book.get(order_id, user_id)
        self._check(order)

        cancellation = {
            "is_cancelled": True,
            "cancelled_at": datetime.utcnow(),
            "cancelled_by": CancelledBy(cancelled_by).value,
            "cancellation_reason": reason or "Cancelled by user",
        }
        # conditional on the state we just checked, so two cancels can't both win
        updated = self.book.orders.find_one_and_update(
            {"_id": order["_id"], "user_id": user_id,
             "delivery_status": {"$in": list(CANCELLABLE_STATES)},
             "cancellation.is_cancelled": {"$ne": True}},
            {"$set": {"delivery_status": DeliveryStatus.CANCELLED.value,
                      "cancellation": cancellation,
                      "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            self._check(self.book.get(order_id, user_id))
            raise StateConflictError("Order can no longer be cancelled")

        log.info("order_cancelled", order_id=order_id, user_id=user_id, cancelled_by=cancellation["cancelled_by"])
        if self.restock:
            self._restock(updated)
        return updated

    @staticmethod
    def _check(order: dict) -> None:
        status = order.get("delivery_status")
        if status in (DeliveryStatus.SHIPPED.value, DeliveryStatus.DELIVERED.value):
            raise StateConflictError("Cannot cancel order that has already been shipped or delivered")
        if order.get("cancellation", {}).get("is_cancelled") or status == DeliveryStatus.CANCELLED.value:
            raise AlreadyCancelledError(str(order["_id"]))

    def _restock(self, order: dict) -> None:
        committed = set(order.get("committed_lines", []))
        for index, line in enumerate(order.get("products", [])):
            qty = line.get("committed_qty", 0)
            if index not in committed or qty <= 0:
                continue
            try:
                self.ledger.release(line["product_id"], line["size"], qty)
            except NotFoundError:
                log.warning("restock_skipped_missing_product", order_id=str(order["_id"]),
                            product_id=line["product_id"])
