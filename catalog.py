"""
Product catalog: CRUD plus the best-seller and discount listings.
"""
import logging
import re
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, doc_to_dict, get_documents, now, to_object_id
from errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    ProductNotFoundError,
    SoldCountDecreaseError,
)
from inventory import record_sale
from schemas import DiscountedProduct, Product, ProductOut, ProductUpdate, RankedProduct
from storage import UploadedFile, release_images, store_upload

logger = logging.getLogger(__name__)


# ---------- Helpers ----------

def serialize_product(doc: dict) -> ProductOut:
    return ProductOut(**doc_to_dict(doc))


def effective_price(doc: dict) -> float:
    price = float(doc.get("price", 0))
    if doc.get("has_discount") and doc.get("discount"):
        return round(price - price * float(doc["discount"]) / 100, 2)
    return price


def primary_image(doc: dict) -> Optional[str]:
    images = doc.get("images") or []
    return images[0].get("url") if images else None


def _image_keys(doc: dict) -> List[str]:
    return [img["storage_key"] for img in doc.get("images") or [] if img.get("storage_key")]


# ---------- Queries ----------

def get_product(database: Database, product_id: str) -> dict:
    doc = database["product"].find_one({"_id": to_object_id(product_id, "product")})
    if not doc:
        raise ProductNotFoundError(product_id)
    return doc


def list_products(database: Database, q: Optional[str] = None, category: Optional[str] = None) -> list:
    filter_dict = {}
    if q:
        filter_dict["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        filter_dict["category"] = category
    return get_documents(database, "product", filter_dict)


def best_sellers(database: Database, limit: int = 5) -> List[RankedProduct]:
    docs = get_documents(database, "product", limit=limit, sort=[("sold", DESCENDING)])
    return [
        RankedProduct(
            rank=rank,
            id=str(doc["_id"]),
            name=doc["name"],
            short_description=doc.get("short_description", ""),
            category=doc.get("category"),
            price=float(doc.get("price", 0)),
            sold=int(doc.get("sold", 0)),
            stock_quantity=int(doc.get("stock_quantity", 0)),
            image=primary_image(doc),
        )
        for rank, doc in enumerate(docs, start=1)
    ]


def discounted_products(database: Database) -> List[DiscountedProduct]:
    docs = get_documents(database, "product", {"has_discount": True, "discount": {"$gt": 0}})
    return [
        DiscountedProduct(
            id=str(doc["_id"]),
            name=doc["name"],
            short_description=doc.get("short_description", ""),
            category=doc.get("category"),
            price=float(doc["price"]),
            discount=float(doc["discount"]),
            calculated_price=effective_price(doc),
            image=primary_image(doc),
        )
        for doc in docs
    ]


def non_discounted_products(database: Database) -> list:
    return get_documents(database, "product", {"has_discount": False, "discount": 0})


# ---------- Mutations ----------

def create_product(database: Database, product: Product) -> dict:
    data = product.model_dump(mode="json")
    if not data["has_discount"]:
        data["discount"] = 0
    data["name"] = data["name"].strip()
    new_id = create_document(database, "product", data)
    logger.info("Product created: %s (%s)", new_id, data["name"])
    return database["product"].find_one({"_id": to_object_id(new_id)})


def update_product(database: Database, product_id: str, changes: ProductUpdate) -> dict:
    """Apply a partial catalog edit.

    The sold count may only grow. Growth without an explicit stock_quantity is taken out of
    stock through the same conditional update deliveries use. An explicit stock_quantity only
    lands if stock still holds the value the editor saw (``expected_stock_quantity``, or the
    value read here), so a delivery in between is never overwritten.
    """
    oid = to_object_id(product_id, "product")
    current = get_product(database, product_id)
    updates = changes.model_dump(exclude_unset=True)
    expected_stock = updates.pop("expected_stock_quantity", None)
    updates = {k: v for k, v in updates.items() if v is not None or k in ("video_link", "rating", "category")}

    has_discount = updates.get("has_discount", current.get("has_discount", False))
    if not has_discount and ("discount" in updates or "has_discount" in updates):
        updates["discount"] = 0

    new_sold = updates.pop("sold", None)
    set_fields = dict(updates)
    set_fields["updated_at"] = now()

    guard = {}
    if "stock_quantity" in set_fields:
        guard["stock_quantity"] = (
            expected_stock if expected_stock is not None else int(current.get("stock_quantity", 0))
        )

    if new_sold is not None:
        current_sold = int(current.get("sold", 0))
        if new_sold < current_sold:
            raise SoldCountDecreaseError(product_id, current_sold, new_sold)
        guard["sold"] = current_sold
        increase = new_sold - current_sold
        if increase > 0 and "stock_quantity" not in set_fields:
            del set_fields["updated_at"]
            doc = record_sale(database, oid, increase, expected=guard, extra_set=set_fields)
            if doc is None:
                _diagnose_failed_write(database, oid, product_id, guard, increase)
            logger.info("Product %s sold %d -> %d", product_id, current_sold, new_sold)
            return doc
        set_fields["sold"] = new_sold

    doc = database["product"].find_one_and_update(
        {"_id": oid, **guard}, {"$set": set_fields}, return_document=ReturnDocument.AFTER
    )
    if doc is None:
        _diagnose_failed_write(database, oid, product_id, guard)
    if "stock_quantity" in set_fields:
        logger.info(
            "Product %s stock %d -> %d", product_id, guard["stock_quantity"], set_fields["stock_quantity"]
        )
    return doc


def _diagnose_failed_write(database: Database, oid, product_id: str, guard: dict, quantity: int = 0):
    latest = database["product"].find_one({"_id": oid})
    if latest is None:
        raise ProductNotFoundError(product_id)
    if quantity == 0 or any(int(latest.get(field, 0)) != value for field, value in guard.items()):
        raise ConcurrentModificationError(
            f"Product {product_id} was modified concurrently; reload and retry"
        )
    raise InsufficientStockError(product_id, quantity, latest.get("stock_quantity"))


def replace_product_images(database: Database, product_id: str, uploads: List[UploadedFile], store) -> dict:
    current = get_product(database, product_id)
    new_images = []
    try:
        for upload in uploads:
            new_images.append(store_upload(store, upload, "products"))
        doc = database["product"].find_one_and_update(
            {"_id": current["_id"]},
            {"$set": {"images": [img.model_dump() for img in new_images], "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
    except Exception:
        release_images(store, [img.storage_key for img in new_images])
        raise
    if doc is None:
        release_images(store, [img.storage_key for img in new_images])
        raise ProductNotFoundError(product_id)
    release_images(store, _image_keys(current))
    return doc


def delete_product(database: Database, product_id: str, store) -> None:
    doc = database["product"].find_one_and_delete({"_id": to_object_id(product_id, "product")})
    if not doc:
        raise ProductNotFoundError(product_id)
    logger.info("Product deleted: %s", product_id)
    release_images(store, _image_keys(doc))
