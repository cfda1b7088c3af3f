"""
Order lifecycle: creation with sequential ids, lookups, status updates and deletion.

Marking an order "Delivered" moves its line-item quantities from product stock to the sold
counters exactly once per order; see ``deliver_order``.
"""
import logging
import os
from datetime import timedelta
from typing import List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import effective_price, primary_image
from database import create_document, doc_to_dict, get_documents, next_sequence, now, to_object_id
from errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    OrderNotFoundError,
    ProductNotFoundError,
    ReconciliationStateError,
)
from inventory import build_report, merge_outcomes, needs_retry, pending_items, reconcile_items
from schemas import (
    CASH_ON_DELIVERY,
    DEFAULT_AVATAR,
    Order,
    OrderCreate,
    OrderItem,
    OrderOut,
    OrderStatus,
    OrderUpdate,
    ReconciliationItem,
    ReconciliationReport,
    ReconciliationState,
)
from storage import UploadedFile, release_images, store_upload

logger = logging.getLogger(__name__)

ORDER_SEQUENCE = "order"
MAX_ID_ATTEMPTS = 3
DELIVERED = OrderStatus.delivered.value
RUNNING_STATES = [ReconciliationState.in_progress.value, ReconciliationState.retrying.value]
RECONCILE_LEASE_SECONDS = int(os.getenv("RECONCILE_LEASE_SECONDS", "300"))


# ---------- Helpers ----------

def serialize_order(doc: dict) -> OrderOut:
    return OrderOut(**doc_to_dict(doc, id_key="internal_id"))


def _report_doc(report: ReconciliationReport) -> dict:
    data = report.model_dump(mode="json")
    data["updated_at"] = now()
    return data


def _payment_key(doc: dict) -> Optional[str]:
    proof = doc.get("payment_proof")
    if isinstance(proof, dict):
        return proof.get("storage_key")
    return None


def snapshot_items(database: Database, payload: OrderCreate) -> List[OrderItem]:
    """Copy each requested line into an immutable snapshot; every product must exist."""
    snapshot = []
    for item in payload.items:
        oid = to_object_id(item.product_id, "product")
        product = database["product"].find_one({"_id": oid})
        if not product:
            raise ProductNotFoundError(item.product_id)
        snapshot.append(
            OrderItem(
                product_id=str(oid),
                name=item.name or product["name"],
                quantity=item.quantity,
                price=item.price if item.price is not None else effective_price(product),
                image=item.image or primary_image(product),
            )
        )
    return snapshot


# ---------- Creation ----------

def create_order(
    database: Database,
    payload: OrderCreate,
    store=None,
    payment_upload: Optional[UploadedFile] = None,
) -> dict:
    items = snapshot_items(database, payload)

    uploaded_key = None
    if payment_upload is not None:
        proof = store_upload(store, payment_upload, "payments")
        uploaded_key = proof.storage_key
    elif payload.payment_image is not None:
        proof = payload.payment_image
    else:
        proof = CASH_ON_DELIVERY

    try:
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            order_id = next_sequence(database, ORDER_SEQUENCE)
            order = Order(
                id=order_id,
                user_id=payload.user_id,
                name=payload.name,
                avatar=payload.avatar or DEFAULT_AVATAR,
                amount=payload.amount,
                phone_number=payload.phone_number,
                delivery_address=payload.delivery_address,
                payment_proof=proof,
                items=items,
            )
            try:
                create_document(database, "order", order)
                break
            except DuplicateKeyError:
                logger.warning("Order id %d already taken (attempt %d)", order_id, attempt)
        else:
            raise ConcurrentModificationError("Could not allocate a unique order id")
    except Exception:
        if uploaded_key:
            release_images(store, [uploaded_key])
        raise

    logger.info("Order %d created for user %s (%d item(s))", order_id, payload.user_id, len(items))
    return database["order"].find_one({"id": order_id})


# ---------- Queries ----------

def list_orders(database: Database, status: Optional[OrderStatus] = None, limit: Optional[int] = None) -> list:
    filter_dict = {"status": status.value} if status else {}
    return get_documents(database, "order", filter_dict, limit=limit, sort=[("id", ASCENDING)])


def list_user_orders(database: Database, user_id: str) -> list:
    return get_documents(database, "order", {"user_id": user_id}, sort=[("id", ASCENDING)])


def get_order(database: Database, order_id: int) -> dict:
    doc = database["order"].find_one({"id": order_id})
    if not doc:
        raise OrderNotFoundError(order_id)
    return doc


def get_order_for_user(database: Database, order_id: int, user_id: str) -> dict:
    doc = database["order"].find_one({"id": order_id, "user_id": user_id})
    if not doc:
        logger.info("No order found for order id %d and user %s", order_id, user_id)
        raise OrderNotFoundError(order_id, user_id)
    return doc


# ---------- Updates ----------

def update_order(database: Database, order_id: int, changes: OrderUpdate) -> dict:
    updates = changes.model_dump(exclude_unset=True, mode="json")
    for key in ("status", "name", "amount"):
        if updates.get(key) is None:
            updates.pop(key, None)
    if not updates:
        return get_order(database, order_id)
    updates["updated_at"] = now()

    if updates.get("status") == DELIVERED:
        return deliver_order(database, order_id, updates)

    doc = database["order"].find_one_and_update(
        {"id": order_id}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise OrderNotFoundError(order_id)
    if "status" in updates:
        logger.info("Order %d status -> %s", order_id, updates["status"])
    return doc


def deliver_order(database: Database, order_id: int, updates: dict) -> dict:
    """Persist a transition to Delivered and reconcile stock once.

    The claim is a single conditional write: it only matches an order that was never
    reconciled, and it sets the new fields together with ``stock_reconciled``. The report then
    lists every line as pending and each line is marked applied as soon as its stock moved, so
    a delivery cut short can be finished by ``retry_reconciliation`` without moving stock twice.
    Later deliveries of the same order fall through to a plain field update.
    """
    claim = dict(updates)
    claim["stock_reconciled"] = True
    claim["reconciliation"] = {
        "state": ReconciliationState.in_progress.value,
        "items": [],
        "updated_at": now(),
    }
    previous = database["order"].find_one_and_update(
        {"id": order_id, "stock_reconciled": {"$ne": True}, "status": {"$ne": DELIVERED}},
        {"$set": claim},
        return_document=ReturnDocument.BEFORE,
    )
    if previous is None:
        return _update_settled_order(database, order_id, updates)

    logger.info("Order %d status -> %s; reconciling stock", order_id, DELIVERED)
    items = previous.get("items", [])
    database["order"].update_one(
        {"id": order_id},
        {"$set": {
            "reconciliation.items": [p.model_dump(mode="json") for p in pending_items(items)],
            "reconciliation.updated_at": now(),
        }},
    )
    try:
        outcomes = reconcile_items(
            database, items, context=f"order {order_id}",
            on_applied=lambda outcome: _mark_applied(database, order_id, outcome),
        )
    except InsufficientStockError:
        _release_claim(database, order_id, previous, updates)
        raise

    report = build_report(outcomes)
    if report.state == ReconciliationState.partial:
        logger.error("Order %d: stock reconciliation incomplete, retry required", order_id)
    return _store_report(database, order_id, report)


def _update_settled_order(database: Database, order_id: int, updates: dict) -> dict:
    """Apply a repeated delivery's other fields once no reconciliation is running."""
    doc = database["order"].find_one_and_update(
        {"id": order_id, "reconciliation.state": {"$nin": RUNNING_STATES}},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        current = get_order(database, order_id)
        state = (current.get("reconciliation") or {}).get("state")
        raise ConcurrentModificationError(
            f"Order {order_id} stock reconciliation is still {state}; retry once it settles"
        )
    logger.info("Order %d already delivered; stock left untouched", order_id)
    return doc


def _mark_applied(database: Database, order_id: int, outcome: ReconciliationItem) -> None:
    database["order"].update_one(
        {"id": order_id},
        {"$set": {
            f"reconciliation.items.{outcome.index}": outcome.model_dump(mode="json"),
            "reconciliation.updated_at": now(),
        }},
    )


def _store_report(database: Database, order_id: int, report: ReconciliationReport) -> dict:
    doc = database["order"].find_one_and_update(
        {"id": order_id},
        {"$set": {"reconciliation": _report_doc(report)}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise OrderNotFoundError(order_id)
    return doc


def _release_claim(database: Database, order_id: int, previous: dict, updates: dict) -> None:
    """Put back the fields a rejected delivery had claimed."""
    restore = {"stock_reconciled": previous.get("stock_reconciled", False)}
    unset = {}
    for key in list(updates) + ["reconciliation"]:
        if key in previous:
            restore[key] = previous[key]
        else:
            unset[key] = ""
    operation = {"$set": restore}
    if unset:
        operation["$unset"] = unset
    database["order"].update_one({"id": order_id}, operation)
    logger.warning("Order %d: delivery rejected, order restored to %s", order_id, previous.get("status"))


def retry_reconciliation(database: Database, order_id: int) -> dict:
    """Re-apply the line items whose stock update failed or never ran.

    Takes a partial report, or an in-progress one whose delivery stopped making progress for
    longer than ``RECONCILE_LEASE_SECONDS`` (a worker died mid-delivery).
    """
    stale_before = now() - timedelta(seconds=RECONCILE_LEASE_SECONDS)
    previous = database["order"].find_one_and_update(
        {"id": order_id, "$or": [
            {"reconciliation.state": ReconciliationState.partial.value},
            {"reconciliation.state": {"$in": RUNNING_STATES}, "reconciliation.updated_at": {"$lt": stale_before}},
        ]},
        {"$set": {
            "reconciliation.state": ReconciliationState.retrying.value,
            "reconciliation.updated_at": now(),
        }},
        return_document=ReturnDocument.BEFORE,
    )
    if previous is None:
        doc = get_order(database, order_id)
        state = (doc.get("reconciliation") or {}).get("state")
        raise ReconciliationStateError(order_id, state)

    stored = previous["reconciliation"].get("items") or []
    if not stored:
        # claimed but the pending list was never written
        stored = [p.model_dump(mode="json") for p in pending_items(previous.get("items", []))]
        database["order"].update_one({"id": order_id}, {"$set": {"reconciliation.items": stored}})
    pending = [item for item in stored if needs_retry(item)]
    logger.info(
        "Order %d: retrying %d line item(s) (was %s)",
        order_id, len(pending), previous["reconciliation"]["state"],
    )
    try:
        retried = reconcile_items(
            database, pending, context=f"order {order_id} retry",
            on_applied=lambda outcome: _mark_applied(database, order_id, outcome),
        )
    except InsufficientStockError:
        database["order"].update_one(
            {"id": order_id},
            {"$set": {
                "reconciliation.state": ReconciliationState.partial.value,
                "reconciliation.items": stored,
                "reconciliation.updated_at": now(),
            }},
        )
        raise

    report = build_report(merge_outcomes(stored, retried))
    return _store_report(database, order_id, report)


# ---------- Deletion ----------

def delete_order(database: Database, order_id: int, store=None) -> None:
    """Remove an order. Stock adjustments already applied stay in place."""
    doc = database["order"].find_one_and_delete({"id": order_id})
    if not doc:
        raise OrderNotFoundError(order_id)
    logger.info("Order %d deleted", order_id)
    key = _payment_key(doc)
    if key:
        release_images(store, [key])


def delete_all_orders(database: Database, store=None) -> int:
    keys = [
        key
        for key in (_payment_key(doc) for doc in database["order"].find({}, {"payment_proof": 1}))
        if key
    ]
    result = database["order"].delete_many({})
    logger.warning("Deleted all orders (%d)", result.deleted_count)
    release_images(store, keys)
    return result.deleted_count
