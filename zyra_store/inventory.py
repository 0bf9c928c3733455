"""Stock reservation against the ``products`` collection.

Every decrement is a single conditional ``update_one`` that only matches while
enough stock is left, so two concurrent orders can never drive stock below
zero. A multi-line reservation that fails half way gives back what it already
took before raising.
"""

import logging
from typing import Dict, Iterable, List

from bson import ObjectId

from .errors import NotFoundError, ValidationError
from .pricing import safe_positive_int

logger = logging.getLogger(__name__)


def _stock_lines(items: Iterable[Dict]) -> List[Dict]:
    lines: List[Dict] = []
    for item in items:
        quantity = safe_positive_int(item.get("quantity"), 0)
        product_id = item.get("product_id")
        if not product_id or quantity <= 0:
            continue
        if not isinstance(product_id, ObjectId):
            product_id = ObjectId(str(product_id))
        lines.append({"product_id": product_id, "quantity": quantity, "name": item.get("name", "")})
    return lines


def reserve_stock(db, items: Iterable[Dict]) -> List[Dict]:
    """Decrement stock for each line or raise without leaving partial changes."""
    reserved: List[Dict] = []
    for line in _stock_lines(items):
        result = db.products.update_one(
            {
                "_id": line["product_id"],
                "is_active": True,
                "stock": {"$gte": line["quantity"]},
            },
            {"$inc": {"stock": -line["quantity"]}},
        )
        if result.modified_count == 1:
            reserved.append(line)
            continue

        release_stock(db, reserved)
        product = db.products.find_one({"_id": line["product_id"]})
        if not product or not product.get("is_active", True):
            raise NotFoundError(f"Product with ID {line['product_id']} not found.")
        raise ValidationError(
            f"Insufficient stock for product {product.get('name') or line['product_id']}.",
            {
                "product_id": str(line["product_id"]),
                "requested": line["quantity"],
                "available": int(product.get("stock", 0) or 0),
            },
        )
    return reserved


def release_stock(db, items: Iterable[Dict]) -> int:
    """Give reserved quantities back. Returns the number of products touched."""
    restored = 0
    for line in _stock_lines(items):
        result = db.products.update_one(
            {"_id": line["product_id"]}, {"$inc": {"stock": line["quantity"]}}
        )
        if result.matched_count:
            restored += 1
        else:
            logger.warning(
                "Could not restore %s units of missing product %s",
                line["quantity"],
                line["product_id"],
            )
    return restored


def set_stock(db, product_id: ObjectId, stock: int) -> Dict:
    if stock < 0:
        raise ValidationError("Stock cannot be negative.")
    product = db.products.find_one_and_update(
        {"_id": product_id},
        {"$set": {"stock": stock}},
        return_document=True,
    )
    if not product:
        raise NotFoundError("Product not found.")
    return product


def adjust_stock(db, product_id: ObjectId, adjustment: int) -> Dict:
    """Apply a signed delta; a negative delta may not take stock below zero."""
    query: Dict[str, object] = {"_id": product_id}
    if adjustment < 0:
        query["stock"] = {"$gte": -adjustment}
    product = db.products.find_one_and_update(
        query, {"$inc": {"stock": adjustment}}, return_document=True
    )
    if product:
        return product
    if db.products.find_one({"_id": product_id}) is None:
        raise NotFoundError("Product not found.")
    raise ValidationError("Stock cannot be negative.")
