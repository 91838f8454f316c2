"""User favorites, stored on the user document."""
from datetime import datetime
from typing import List

from pymongo.database import Database

from carts import CartStore
from database import to_object_id
from errors import NotFoundError, StateConflictError


class Favorites:
    def __init__(self, db: Database):
        self.users = db["user"]
        self.products = db["product"]
        self.carts = CartStore(db)

    def list(self, user_id: str) -> List[dict]:
        user = self.users.find_one({"_id": to_object_id(user_id, "User")}) or {}
        out = []
        for fav in user.get("favorites", []):
            product = self.products.find_one({"_id": to_object_id(fav["product_id"], "Product")})
            if not product:
                continue
            out.append({
                "product_id": fav["product_id"],
                "added_at": fav.get("added_at"),
                "name": product.get("name"),
                "price": product.get("price"),
                "brand": product.get("brand"),
                "image": product.get("image"),
                "slug": product.get("slug"),
            })
        return out

    def add(self, user_id: str, product_id: str) -> None:
        if not self.products.find_one({"_id": to_object_id(product_id, "Product")}):
            raise NotFoundError("Product", product_id)
        result = self.users.update_one(
            {"_id": to_object_id(user_id, "User"), "favorites.product_id": {"$ne": product_id}},
            {"$push": {"favorites": {"product_id": product_id, "added_at": datetime.utcnow()}}},
        )
        if result.matched_count == 0:
            raise StateConflictError("Product is already in your favorites")

    def remove(self, user_id: str, product_id: str) -> None:
        result = self.users.update_one(
            {"_id": to_object_id(user_id, "User"), "favorites.product_id": product_id},
            {"$pull": {"favorites": {"product_id": product_id}}},
        )
        if result.matched_count == 0:
            raise NotFoundError("Favorite", product_id)

    def add_from_cart(self, user_id: str, item_id: str) -> dict:
        """Add a cart item's product to favorites; the item stays in the cart."""
        item = self.carts.get_item(user_id, item_id)
        self.add(user_id, item["product_id"])
        return self.carts.view(user_id)
