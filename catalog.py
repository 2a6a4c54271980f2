"""
Catalog store: product queries and seller-owned product writes.
"""
import logging
import re
import secrets
import string
import time
from typing import Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from config import LOW_STOCK_THRESHOLD
from database import insert_with_generated_key, paginate, parse_sort, serialize_doc, to_obj_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import Product, ProductCreateBody, ProductUpdateBody

logger = logging.getLogger(__name__)

PUBLIC_SORTS = {
    "price": "price",
    "name": "name",
    "created_at": "created_at",
    "rating": "rating.average",
}
MANAGE_SORTS = {**PUBLIC_SORTS, "sales": "sales"}

_SKU_ALPHABET = string.ascii_lowercase + string.digits


def generate_sku() -> str:
    suffix = "".join(secrets.choice(_SKU_ALPHABET) for _ in range(9))
    return f"SKU-{int(time.time() * 1000)}-{suffix}"


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "out_of_stock"
    if stock <= LOW_STOCK_THRESHOLD:
        return "low_stock"
    return "in_stock"


def serialize_product(doc: dict) -> dict:
    data = serialize_doc(doc)
    price = doc.get("price", 0)
    original = doc.get("original_price")
    data["discount_percentage"] = round((original - price) / original * 100) if original and original > price else 0
    data["stock_status"] = stock_status(doc.get("stock", 0))
    images = doc.get("images") or []
    data["main_image"] = images[0] if images else ""
    return data


# ----------------------- Queries -----------------------
def product_filter(
    base: Optional[dict] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> dict:
    filt = dict(base or {})
    if category:
        filt["category"] = category
    if search:
        pattern = re.escape(search.strip())
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        if min_price is not None and max_price is not None and min_price > max_price:
            raise ValidationFailed(details=[{"field": "min_price", "message": "min_price cannot exceed max_price"}])
        price = {}
        if min_price is not None:
            price["$gte"] = min_price
        if max_price is not None:
            price["$lte"] = max_price
        filt["price"] = price
    return filt


def list_products(db: Database, filt: dict, page: int, limit: int, sort: str, allowed_sorts: dict = PUBLIC_SORTS):
    docs, pagination = paginate(db, "product", filt, page, limit, parse_sort(sort, allowed_sorts))
    return {"products": [serialize_product(d) for d in docs], "pagination": pagination}


def get_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_obj_id(product_id, "Product")})
    if not product:
        raise NotFound("Product not found")
    return product


def view_product(db: Database, product_id: str) -> dict:
    """Public fetch; bumps the view counter outside of any transaction."""
    product = db["product"].find_one_and_update(
        {"_id": to_obj_id(product_id, "Product"), "is_active": True},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFound("Product not found")
    return product


# ----------------------- Writes -----------------------
def create_product(db: Database, seller_id: ObjectId, body: ProductCreateBody) -> dict:
    data = body.model_dump(mode="json")
    product = Product(**data, seller=seller_id)
    doc = product.model_dump()
    insert_with_generated_key(db, "product", doc, "sku", generate_sku)
    logger.info("Product %s (%s) created by seller %s", doc["_id"], doc["sku"], seller_id)
    return doc


def update_product(db: Database, product: dict, body: ProductUpdateBody) -> dict:
    changes = body.model_dump(mode="json", exclude_unset=True)
    for field in ("name", "description", "category", "price", "stock", "images", "tags", "is_active", "is_featured"):
        if field in changes and changes[field] is None:
            raise ValidationFailed(details=[{"field": field, "message": f"{field} cannot be null"}])
    if not changes:
        return product
    changes["updated_at"] = utcnow()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Product not found")
    return updated


def delete_product(db: Database, product: dict):
    res = db["product"].delete_one({"_id": product["_id"]})
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    logger.info("Product %s deleted", product["_id"])


def add_rating(db: Database, product_id: str, rating: float, attempts: int = 3) -> dict:
    """Fold one rating into the running average.

    The write is conditional on the count that was read, so two concurrent
    ratings cannot both apply on top of the same average.
    """
    for _ in range(attempts):
        product = get_product(db, product_id)
        if not product.get("is_active", True):
            raise ValidationFailed("Cannot rate inactive product")
        current = product.get("rating") or {}
        count = current.get("count", 0)
        average = current.get("average", 0)
        new_average = (average * count + rating) / (count + 1)
        updated = db["product"].find_one_and_update(
            {"_id": product["_id"], "rating.count": count},
            {"$set": {"rating.average": new_average, "updated_at": utcnow()}, "$inc": {"rating.count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            return updated
    raise Conflict("Product rating changed concurrently, please retry")
