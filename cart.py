"""
Per-user cart line items.

The cart lives on the user document as a list of {product_id, quantity}
lines, at most one line per product. Every mutation is a single-document
update, so concurrent requests against the same cart never lose an
increment.
"""
from typing import Any, Dict, List

import structlog
from pymongo.collection import Collection
from pymongo.database import Database

from database import parse_object_id, serialize_doc, utcnow
from errors import ConcurrentUpdate, NotFound, ValidationFailed
from schemas import CartItem

logger = structlog.get_logger(__name__)

MAX_CART_ATTEMPTS = 3


class CartAggregator:
    def __init__(self, db: Database):
        self.db = db

    @property
    def users(self) -> Collection:
        return self.db["user"]

    def _user_filter(self, user_id: str) -> Dict[str, Any]:
        _id = parse_object_id(user_id)
        if _id is None:
            raise NotFound("User not found")
        return {"_id": _id}

    @staticmethod
    def _line_key(product_id: Any) -> str:
        """Canonical form of a product id as stored on a cart line."""
        _id = parse_object_id(product_id)
        return str(_id) if _id is not None else str(product_id)

    def _load_user(self, user_id: str) -> Dict[str, Any]:
        user = self.users.find_one(self._user_filter(user_id), {"cart": 1})
        if not user:
            raise NotFound("User not found")
        return user

    def _resolved_view(self, lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach each line's product; lines whose product is gone are left out."""
        ids = [parse_object_id(line.get("product_id")) for line in lines]
        products = {
            str(p["_id"]): serialize_doc(p)
            for p in self.db["product"].find({"_id": {"$in": [i for i in ids if i is not None]}})
        }
        view = []
        for line in lines:
            product = products.get(self._line_key(line.get("product_id")))
            if product is None:
                continue
            view.append({"product_id": str(line["product_id"]), "quantity": line["quantity"], "product": product})
        return view

    def get_cart(self, user_id: str) -> List[Dict[str, Any]]:
        user = self._load_user(user_id)
        return self._resolved_view(user.get("cart") or [])

    def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> List[Dict[str, Any]]:
        """Increment the line for `product_id`, or append one when absent."""
        if not product_id:
            raise ValidationFailed(["product_id"])
        if quantity is None or quantity < 1:
            raise ValidationFailed(["quantity"], "Quantity must be at least 1")

        base = self._user_filter(user_id)
        product_id = self._line_key(product_id)

        for _ in range(MAX_CART_ATTEMPTS):
            now = utcnow()
            res = self.users.update_one(
                {**base, "cart.product_id": product_id},
                {"$inc": {"cart.$.quantity": quantity}, "$set": {"updated_at": now}},
            )
            if res.matched_count:
                logger.info("Cart line incremented", user_id=user_id, product_id=product_id, quantity=quantity)
                return self.get_cart(user_id)

            line = CartItem(product_id=product_id, quantity=quantity)
            res = self.users.update_one(
                {**base, "cart.product_id": {"$ne": product_id}},
                {"$push": {"cart": line.model_dump()}, "$set": {"updated_at": now}},
            )
            if res.matched_count:
                logger.info("Cart line added", user_id=user_id, product_id=product_id, quantity=quantity)
                return self.get_cart(user_id)

            # Neither matched: the user is gone, or another request added the line first
            if self.users.find_one(base, {"_id": 1}) is None:
                raise NotFound("User not found")

        raise ConcurrentUpdate()

    def remove_item(self, user_id: str, product_id: str) -> Dict[str, str]:
        res = self.users.update_one(
            self._user_filter(user_id),
            {"$pull": {"cart": {"product_id": self._line_key(product_id)}}},
        )
        if res.matched_count == 0:
            raise NotFound("User not found")
        logger.info("Cart line removed", user_id=user_id, product_id=product_id, removed=bool(res.modified_count))
        return {"message": "Item removed from cart"}

    def clear_cart(self, user_id: str) -> Dict[str, str]:
        res = self.users.update_one(
            self._user_filter(user_id),
            {"$set": {"cart": [], "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            raise NotFound("User not found")
        logger.info("Cart cleared", user_id=user_id)
        return {"message": "Cart cleared"}
