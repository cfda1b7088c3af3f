import json
import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

import cart
import catalog
import database
import orders
from auth import CurrentUser, get_current_user, require_admin
from database import get_db
from errors import (
    AuthenticationError,
    CartItemNotFoundError,
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidIdentifierError,
    InvalidRequestError,
    OrderNotFoundError,
    PermissionDeniedError,
    ProductNotFoundError,
    ReconciliationStateError,
    ShopError,
    SoldCountDecreaseError,
    UpstreamError,
)
from schemas import (
    Cart,
    CartItem,
    CartItemIn,
    CartQuantity,
    DiscountedProduct,
    OrderCreate,
    OrderOut,
    OrderStatus,
    OrderUpdate,
    Product,
    ProductOut,
    ProductUpdate,
    RankedProduct,
)
from storage import UploadedFile, get_object_store

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Gebeya API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error handling ----------

ERROR_STATUS_CODES: dict = {
    InvalidRequestError: 400,
    InvalidIdentifierError: 400,
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    OrderNotFoundError: 404,
    ProductNotFoundError: 404,
    CartItemNotFoundError: 404,
    InsufficientStockError: 409,
    SoldCountDecreaseError: 409,
    ConcurrentModificationError: 409,
    ReconciliationStateError: 409,
}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to HTTP responses."""
    content = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, UpstreamError):
        content["retryable"] = True
        return JSONResponse(status_code=503, content=content)
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Database unavailable", "error_type": type(exc).__name__, "retryable": True},
    )


# ---------- Startup ----------

@app.on_event("startup")
def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; data routes will answer 503")
        return
    database.ensure_indexes(database.db)
    seq = database.sync_sequence(database.db, orders.ORDER_SEQUENCE, "order", "id")
    logger.info("Order sequence at %d", seq)


# ---------- Helpers ----------

def parse_body(model, raw):
    """Validate a JSON payload that did not come through FastAPI's body parsing."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise InvalidRequestError("Request body is not valid JSON")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


async def read_upload(upload) -> Optional[UploadedFile]:
    if upload is None or isinstance(upload, str) or not getattr(upload, "filename", None):
        return None
    data = await upload.read()
    return UploadedFile(data=data, content_type=upload.content_type, filename=upload.filename)


# ---------- Routes ----------

@app.get("/")
def health():
    return {"message": "Gebeya API running"}


# Products

@app.get("/api/products", response_model=List[ProductOut])
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    db: Database = Depends(get_db),
):
    return [catalog.serialize_product(d) for d in catalog.list_products(db, q=q, category=category)]


@app.get("/api/products/best-sellers", response_model=List[RankedProduct])
def best_sellers(db: Database = Depends(get_db)):
    return catalog.best_sellers(db)


@app.get("/api/products/discounted", response_model=List[DiscountedProduct])
def discounted_products(db: Database = Depends(get_db)):
    return catalog.discounted_products(db)


@app.get("/api/products/non-discounted", response_model=List[ProductOut])
def non_discounted_products(db: Database = Depends(get_db)):
    return [catalog.serialize_product(d) for d in catalog.non_discounted_products(db)]


@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Database = Depends(get_db)):
    return catalog.serialize_product(catalog.get_product(db, product_id))


@app.post("/api/products", response_model=ProductOut, status_code=201)
def create_product(
    payload: Product,
    db: Database = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    return catalog.serialize_product(catalog.create_product(db, payload))


@app.put("/api/products/{product_id}", response_model=ProductOut)
def update_product(
    product_id: str,
    payload: ProductUpdate,
    db: Database = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    return catalog.serialize_product(catalog.update_product(db, product_id, payload))


@app.post("/api/products/{product_id}/images", response_model=ProductOut)
async def replace_product_images(
    product_id: str,
    images: List[UploadFile] = File(...),
    db: Database = Depends(get_db),
    store=Depends(get_object_store),
    admin: CurrentUser = Depends(require_admin),
):
    uploads = [u for u in [await read_upload(image) for image in images] if u is not None]
    if not uploads:
        raise InvalidRequestError("No images uploaded")
    doc = await run_in_threadpool(catalog.replace_product_images, db, product_id, uploads, store)
    return catalog.serialize_product(doc)


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    db: Database = Depends(get_db),
    store=Depends(get_object_store),
    admin: CurrentUser = Depends(require_admin),
):
    catalog.delete_product(db, product_id, store)
    return {"message": "Product deleted successfully"}


# Orders

@app.post("/api/orders", response_model=OrderOut, status_code=201)
async def create_order(
    request: Request,
    db: Database = Depends(get_db),
    store=Depends(get_object_store),
):
    """Create an order from a JSON body, or from multipart form data carrying the order as a
    JSON ``order`` field and an optional ``payment_image`` file."""
    payment_upload = None
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        raw = form.get("order")
        if raw is None:
            raise InvalidRequestError("Missing 'order' form field")
        payload = parse_body(OrderCreate, raw)
        payment_upload = await read_upload(form.get("payment_image"))
    else:
        payload = parse_body(OrderCreate, await request.body())

    doc = await run_in_threadpool(orders.create_order, db, payload, store, payment_upload)
    return orders.serialize_order(doc)


@app.get("/api/orders", response_model=List[OrderOut])
def list_orders(
    status: Optional[OrderStatus] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    db: Database = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    return [orders.serialize_order(d) for d in orders.list_orders(db, status=status, limit=limit)]


@app.get("/api/orders/mine", response_model=List[OrderOut])
def list_my_orders(
    db: Database = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return [orders.serialize_order(d) for d in orders.list_user_orders(db, user.id)]


@app.get("/api/orders/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    db: Database = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    return orders.serialize_order(orders.get_order(db, order_id))


@app.get("/api/orders/{order_id}/{user_id}", response_model=OrderOut)
def get_order_for_user(order_id: int, user_id: str, db: Database = Depends(get_db)):
    return orders.serialize_order(orders.get_order_for_user(db, order_id, user_id))


@app.put("/api/orders/{order_id}", response_model=OrderOut)
def update_order(
    order_id: int,
    payload: OrderUpdate,
    db: Database = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    return orders.serialize_order(orders.update_order(db, order_id, payload))


@app.post("/api/orders/{order_id}/reconcile", response_model=OrderOut)
def retry_reconciliation(
    order_id: int,
    db: Database = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    return orders.serialize_order(orders.retry_reconciliation(db, order_id))


@app.delete("/api/orders/{order_id}")
def delete_order(
    order_id: int,
    db: Database = Depends(get_db),
    store=Depends(get_object_store),
    admin: CurrentUser = Depends(require_admin),
):
    orders.delete_order(db, order_id, store)
    return {"message": "Order deleted successfully"}


@app.delete("/api/orders")
def delete_all_orders(
    db: Database = Depends(get_db),
    store=Depends(get_object_store),
    admin: CurrentUser = Depends(require_admin),
):
    deleted = orders.delete_all_orders(db, store)
    return {"message": "All orders deleted successfully", "deleted_count": deleted}


# Cart

@app.get("/api/cart", response_model=Cart)
def get_cart(db: Database = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return cart.get_cart(db, user.id)


@app.post("/api/cart/items", response_model=Cart)
def add_to_cart(
    payload: CartItemIn,
    db: Database = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return cart.add_item(db, user.id, payload)


@app.get("/api/cart/items/{product_id}", response_model=CartItem)
def get_cart_item(
    product_id: str,
    db: Database = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return cart.get_item(db, user.id, product_id)


@app.put("/api/cart/items/{product_id}", response_model=Cart)
def update_cart_item(
    product_id: str,
    payload: CartQuantity,
    db: Database = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return cart.set_quantity(db, user.id, product_id, payload.quantity)


@app.delete("/api/cart/items/{product_id}", response_model=Cart)
def remove_from_cart(
    product_id: str,
    db: Database = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return cart.remove_item(db, user.id, product_id)


@app.delete("/api/cart")
def clear_cart(db: Database = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    cart.clear_cart(db, user.id)
    return {"message": f"Cart for user {user.id} cleared successfully"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "object_storage": "✅ Set" if os.getenv("AWS_BUCKET_NAME") else "❌ Not Set",
    }
    try:
        db = database.db
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
