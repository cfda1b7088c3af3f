"""
Per-user shopping cart.
"""
import logging

from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import effective_price, get_product, primary_image
from errors import CartItemNotFoundError
from schemas import Cart, CartItem, CartItemIn

logger = logging.getLogger(__name__)


def get_cart(database: Database, user_id: str) -> Cart:
    doc = database["cart"].find_one({"user_id": user_id})
    if not doc:
        return Cart(user_id=user_id, items=[])
    return Cart(user_id=user_id, items=doc.get("items", []))


def add_item(database: Database, user_id: str, payload: CartItemIn) -> Cart:
    """Add a product to the cart, or bump its quantity if it is already there."""
    product = get_product(database, payload.product_id)
    product_id = str(product["_id"])

    result = database["cart"].update_one(
        {"user_id": user_id, "items.product_id": product_id},
        {"$inc": {"items.$.quantity": payload.quantity}},
    )
    if result.matched_count == 0:
        item = CartItem(
            product_id=product_id,
            name=payload.name or product["name"],
            image=payload.image or primary_image(product),
            price=payload.price if payload.price is not None else effective_price(product),
            quantity=payload.quantity,
        )
        database["cart"].update_one(
            {"user_id": user_id},
            {"$push": {"items": item.model_dump()}},
            upsert=True,
        )
    logger.info("Cart of user %s: +%d of product %s", user_id, payload.quantity, product_id)
    return get_cart(database, user_id)


def get_item(database: Database, user_id: str, product_id: str) -> CartItem:
    for item in get_cart(database, user_id).items:
        if item.product_id == product_id:
            return item
    raise CartItemNotFoundError(product_id)


def set_quantity(database: Database, user_id: str, product_id: str, quantity: int) -> Cart:
    doc = database["cart"].find_one_and_update(
        {"user_id": user_id, "items.product_id": product_id},
        {"$set": {"items.$.quantity": quantity}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise CartItemNotFoundError(product_id)
    return Cart(user_id=user_id, items=doc["items"])


def remove_item(database: Database, user_id: str, product_id: str) -> Cart:
    result = database["cart"].update_one(
        {"user_id": user_id}, {"$pull": {"items": {"product_id": product_id}}}
    )
    if result.modified_count == 0:
        raise CartItemNotFoundError(product_id)
    return get_cart(database, user_id)


def clear_cart(database: Database, user_id: str) -> bool:
    result = database["cart"].delete_one({"user_id": user_id})
    return result.deleted_count > 0
