"""
Stock and sold-count bookkeeping.

Every change to a product's stock_quantity/sold pair goes through ``record_sale`` or
``reverse_sale``: single conditional ``$inc`` updates, so catalog edits and order deliveries
never lose each other's writes. ``reconcile_items`` applies a delivered order's line items.
"""
import logging
from typing import Callable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import now
from errors import InsufficientStockError
from schemas import ItemOutcome, ReconciliationItem, ReconciliationReport, ReconciliationState

logger = logging.getLogger(__name__)


def record_sale(
    database: Database,
    product_id: ObjectId,
    quantity: int,
    expected: Optional[dict] = None,
    extra_set: Optional[dict] = None,
) -> Optional[dict]:
    """Move ``quantity`` units from stock to sold if enough stock is left.

    ``expected`` adds conditions on the current document (e.g. the sold count the caller read).
    Returns the updated product, or None when no document matched.
    """
    query = {"_id": product_id, "stock_quantity": {"$gte": quantity}}
    if expected:
        query.update(expected)
    update = {
        "$inc": {"stock_quantity": -quantity, "sold": quantity},
        "$set": {"updated_at": now(), **(extra_set or {})},
    }
    return database["product"].find_one_and_update(
        query, update, return_document=ReturnDocument.AFTER
    )


def reverse_sale(database: Database, product_id: ObjectId, quantity: int) -> None:
    database["product"].update_one(
        {"_id": product_id},
        {"$inc": {"stock_quantity": quantity, "sold": -quantity}, "$set": {"updated_at": now()}},
    )


def _rollback(database: Database, applied: List[tuple], context: str) -> None:
    for product_id, quantity in reversed(applied):
        try:
            reverse_sale(database, product_id, quantity)
        except PyMongoError:
            logger.exception(
                "%s: could not restore %d unit(s) of product %s; manual correction required",
                context, quantity, product_id,
            )


def reconcile_items(
    database: Database,
    items: List[dict],
    context: str = "order",
    on_applied: Optional[Callable[[ReconciliationItem], None]] = None,
) -> List[ReconciliationItem]:
    """Apply each line item to its product's stock and sold counters.

    Missing products and storage failures are recorded per item and do not stop the batch.
    If a product exists but has too little stock, everything applied so far is reversed and
    InsufficientStockError is raised, leaving no mutation behind.

    ``items`` entries carry ``product_id`` and ``quantity`` and an optional ``index`` (position in
    the order); entries without ``index`` are numbered by position. ``on_applied`` is called right
    after each line's stock moved, so callers can record progress before the next line.
    """
    outcomes = []
    applied = []
    for position, item in enumerate(items):
        index = item.get("index", position)
        raw_id = item["product_id"]
        quantity = int(item["quantity"])
        try:
            product_id = ObjectId(raw_id)
        except (InvalidId, TypeError):
            logger.error("%s: line %d references invalid product id %r", context, index, raw_id)
            outcomes.append(ReconciliationItem(
                index=index, product_id=str(raw_id), quantity=quantity,
                outcome=ItemOutcome.missing, detail="Invalid product id",
            ))
            continue

        try:
            updated = record_sale(database, product_id, quantity)
            if updated is None:
                product = database["product"].find_one({"_id": product_id}, {"stock_quantity": 1})
                if product is None:
                    logger.error("%s: product not found for ID: %s", context, raw_id)
                    outcomes.append(ReconciliationItem(
                        index=index, product_id=raw_id, quantity=quantity,
                        outcome=ItemOutcome.missing, detail="Product not found",
                    ))
                    continue
                logger.warning(
                    "%s: product %s has %s unit(s), %d requested; rejecting delivery",
                    context, raw_id, product.get("stock_quantity"), quantity,
                )
                _rollback(database, applied, context)
                raise InsufficientStockError(raw_id, quantity, product.get("stock_quantity"))
        except PyMongoError as e:
            logger.exception("%s: stock update failed for product %s", context, raw_id)
            outcomes.append(ReconciliationItem(
                index=index, product_id=raw_id, quantity=quantity,
                outcome=ItemOutcome.failed, detail=str(e)[:200],
            ))
            continue

        applied.append((product_id, quantity))
        logger.info(
            "%s: product %s sold +%d, stock now %d",
            context, raw_id, quantity, updated["stock_quantity"],
        )
        outcome = ReconciliationItem(
            index=index, product_id=raw_id, quantity=quantity, outcome=ItemOutcome.applied,
        )
        outcomes.append(outcome)
        if on_applied is not None:
            on_applied(outcome)
    return outcomes


def pending_items(items: List[dict]) -> List[ReconciliationItem]:
    """Outcome placeholders for order lines whose stock has not been moved yet."""
    return [
        ReconciliationItem(
            index=index, product_id=str(item["product_id"]), quantity=int(item["quantity"]),
            outcome=ItemOutcome.pending,
        )
        for index, item in enumerate(items)
    ]


def needs_retry(item: dict) -> bool:
    return item["outcome"] in (ItemOutcome.failed.value, ItemOutcome.pending.value)


def build_report(outcomes: List[ReconciliationItem]) -> ReconciliationReport:
    unfinished = any(o.outcome in (ItemOutcome.failed, ItemOutcome.pending) for o in outcomes)
    return ReconciliationReport(
        state=ReconciliationState.partial if unfinished else ReconciliationState.complete,
        items=sorted(outcomes, key=lambda o: o.index),
    )


def merge_outcomes(previous: List[dict], retried: List[ReconciliationItem]) -> List[ReconciliationItem]:
    """Replace the outcomes of retried lines, keeping the rest of a stored report."""
    by_index = {item["index"]: ReconciliationItem(**item) for item in previous}
    for outcome in retried:
        by_index[outcome.index] = outcome
    return list(by_index.values())
