"""Inventory ledger: per-product size buckets in product.size_quantity.

Every mutation is a single conditional update on the product document, so two
checkouts racing for the same (product, size) can never take the bucket below
zero. A bucket that reaches zero is removed from the list.
"""
from pymongo.database import Database

from database import to_object_id
from errors import NotFoundError, OutOfStockError, ValidationError
from logs import get_logger

log = get_logger(__name__)


class InventoryLedger:
    def __init__(self, db: Database):
        self.products = db["product"]

    def _load(self, product_id: str) -> dict:
        product = self.products.find_one({"_id": to_object_id(product_id, "Product")}, {"size_quantity": 1})
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    @staticmethod
    def _check_qty(qty: int) -> None:
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError("Quantity must be a positive integer")

    def available(self, product_id: str, size: int) -> int:
        product = self._load(product_id)
        for bucket in product.get("size_quantity", []):
            if bucket["size"] == size:
                return max(0, int(bucket["quantity"]))
        return 0

    def reserve(self, product_id: str, size: int, qty: int) -> int:
        """Return how much of ``qty`` the bucket can cover right now. Does not mutate."""
        self._check_qty(qty)
        return min(qty, self.available(product_id, size))

    def commit(self, product_id: str, size: int, qty: int) -> None:
        """Take ``qty`` out of the bucket, or raise OutOfStockError and change nothing."""
        self._check_qty(qty)
        oid = to_object_id(product_id, "Product")
        result = self.products.update_one(
            {"_id": oid, "size_quantity": {"$elemMatch": {"size": size, "quantity": {"$gte": qty}}}},
            {"$inc": {"size_quantity.$.quantity": -qty}},
        )
        if result.matched_count == 0:
            available = self.available(product_id, size)
            log.warning("inventory_commit_failed", product_id=product_id, size=size,
                        requested=qty, available=available)
            raise OutOfStockError(product_id, size, qty, available)
        self.products.update_one(
            {"_id": oid},
            {"$pull": {"size_quantity": {"size": size, "quantity": {"$lte": 0}}}},
        )

    def release(self, product_id: str, size: int, qty: int) -> None:
        """Put ``qty`` back, re-creating the bucket if it sold out."""
        self._check_qty(qty)
        oid = to_object_id(product_id, "Product")
        # the bucket may be pulled or pushed between the two updates; retry once
        for _ in range(2):
            result = self.products.update_one(
                {"_id": oid, "size_quantity.size": size},
                {"$inc": {"size_quantity.$.quantity": qty}},
            )
            if result.matched_count:
                return
            result = self.products.update_one(
                {"_id": oid, "size_quantity.size": {"$ne": size}},
                {"$push": {"size_quantity": {"size": size, "quantity": qty}}},
            )
            if result.matched_count:
                return
        raise NotFoundError("Product", product_id)
