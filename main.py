import logging
from datetime import datetime
from typing import Callable, List, Optional

from bson import ObjectId
from fastapi import Body, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import analytics
import config
from assets import AssetHost, check_image_filename, get_asset_host
from auth import authenticate, create_access_token, hash_password, require_owner
from database import (
    CONTACTS,
    ORDERS,
    PRODUCTS,
    SECURITY_LOGS,
    USERS,
    create_document,
    get_db,
    get_documents,
    parse_object_id,
    serialize,
)
from errors import (
    AssetHostError,
    AuthenticationError,
    InvalidRequestError,
    InvalidTokenError,
    LockedOutError,
    NotFoundError,
    RegistrationClosedError,
    SoldOutError,
    StorefrontError,
)
from lockout import USER_SCOPE, LockoutStore, enforce_rate_limit, get_clock, get_lockout_store
from schemas import (
    AuthResponse,
    Contact,
    Credentials,
    Order,
    OrderCreate,
    OrderItem,
    OrderState,
    OrderStateUpdate,
    Product,
    ProductDelete,
    ProductUpdate,
    SecurityLogRequest,
    User,
)

logger = logging.getLogger("storefront")

app = FastAPI(title="Storefront API", dependencies=[Depends(enforce_rate_limit)])

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES = {
    InvalidRequestError: 400,
    SoldOutError: 400,
    AuthenticationError: 401,
    InvalidTokenError: 403,
    RegistrationClosedError: 403,
    NotFoundError: 404,
    LockedOutError: 429,
    AssetHostError: 502,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"message": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, SoldOutError):
        content["soldOutProducts"] = exc.titles
    if isinstance(exc, LockedOutError):
        content["lockedUntil"] = exc.locked_until.isoformat()
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "message": "Invalid or missing fields",
            "error_type": "ValidationError",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.get("/")
def root():
    return {"name": "Storefront API", "status": "ok"}


# --- Products ---

def _get_product(db: Database, product_id: str) -> dict:
    product = db[PRODUCTS].find_one({"_id": parse_object_id("Product", product_id)})
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


@app.get("/api/products")
def list_products(db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS)


@app.post("/api/products", status_code=201)
def create_product(
    title: str = Form(..., min_length=1),
    description: str = Form(..., min_length=1),
    price: float = Form(..., ge=0),
    sold_out: bool = Form(False, alias="soldOut"),
    image: UploadFile = File(...),
    owner: str = Depends(require_owner),
    db: Database = Depends(get_db),
    assets: AssetHost = Depends(get_asset_host),
):
    check_image_filename(image.filename)
    url, public_id = assets.upload(image.file, image.filename)
    product = Product(
        title=title,
        description=description,
        price=price,
        image=url,
        public_id=public_id,
        sold_out=sold_out,
    )
    try:
        product_id = create_document(db, PRODUCTS, product)
    except PyMongoError:
        logger.exception("Saving product %s failed, removing uploaded image %s", title, public_id)
        assets.destroy(public_id)
        raise
    logger.info("%s added product %s (%s)", owner, product_id, title)
    return {
        "message": "Product added successfully",
        "product": serialize(db[PRODUCTS].find_one({"_id": parse_object_id("Product", product_id)})),
    }


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    owner: str = Depends(require_owner),
    db: Database = Depends(get_db),
):
    data = payload.model_dump(exclude_none=True, by_alias=True)
    if not data:
        raise InvalidRequestError("No fields to update")
    product = db[PRODUCTS].find_one_and_update(
        {"_id": parse_object_id("Product", product_id)},
        {"$set": data},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        raise NotFoundError("Product", product_id)
    logger.info("%s updated product %s: %s", owner, product_id, data)
    return {"message": "Product updated successfully", "product": serialize(product)}


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    payload: Optional[ProductDelete] = Body(None),
    owner: str = Depends(require_owner),
    db: Database = Depends(get_db),
    assets: AssetHost = Depends(get_asset_host),
):
    product = _get_product(db, product_id)
    public_id = product.get("public_id") or (payload.public_id if payload else None)
    if public_id:
        assets.destroy(public_id)
    db[PRODUCTS].delete_one({"_id": product["_id"]})
    logger.info("%s deleted product %s", owner, product_id)
    return {"message": "Product deleted successfully"}


# --- Orders ---

def match_catalog(db: Database, items: List[OrderItem]) -> List[Optional[dict]]:
    """
    Catalog product for each line item, or None.

    Items are matched by ObjectId first; an id that is not a catalog id
    (the client falls back to the title) is matched by title instead.
    """
    ids = [ObjectId(i.product_id) for i in items if i.product_id and ObjectId.is_valid(i.product_id)]
    by_id = {str(p["_id"]): p for p in db[PRODUCTS].find({"_id": {"$in": ids}})}
    names = set()
    for item in items:
        if item.product_id not in by_id:
            names.add(item.title)
            if item.product_id:
                names.add(item.product_id)
    by_title = {p["title"]: p for p in db[PRODUCTS].find({"title": {"$in": sorted(names)}})}
    matched = []
    for item in items:
        product = by_id.get(item.product_id)
        if product is None:
            product = by_title.get(item.product_id) or by_title.get(item.title)
        matched.append(product)
    return matched


def find_sold_out_titles(matched: List[Optional[dict]]) -> List[str]:
    titles: List[str] = []
    for product in matched:
        if product and product.get("soldOut") and product["title"] not in titles:
            titles.append(product["title"])
    return titles


def _priced_items(items: List[OrderItem], matched: List[Optional[dict]]) -> List[OrderItem]:
    """Replace client-sent ids, titles and prices with the catalog's where the product exists."""
    priced = []
    for item, product in zip(items, matched):
        if product is not None:
            item = item.model_copy(update={
                "product_id": str(product["_id"]),
                "title": product["title"],
                "price": product["price"],
            })
        priced.append(item)
    return priced


@app.get("/api/orders")
def list_orders(owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    return get_documents(db, ORDERS)


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, db: Database = Depends(get_db)):
    matched = match_catalog(db, payload.products)
    sold_out = find_sold_out_titles(matched)
    if sold_out:
        logger.info("Rejected order with sold-out products: %s", sold_out)
        raise SoldOutError(sold_out)
    order = Order(
        products=_priced_items(payload.products, matched),
        phone=payload.phone,
        city=payload.city,
        location=payload.location,
    )
    order_id = create_document(db, ORDERS, order)
    logger.info("Order %s placed (%d line items)", order_id, len(order.products))
    return {"message": "Order placed successfully", "id": order_id}


@app.put("/api/orders/{order_id}")
def update_order_state(
    order_id: str,
    payload: OrderStateUpdate,
    owner: str = Depends(require_owner),
    db: Database = Depends(get_db),
):
    res = db[ORDERS].update_one(
        {"_id": parse_object_id("Order", order_id)},
        {"$set": {"state": payload.state.value}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Order", order_id)
    logger.info("%s set order %s to %s", owner, order_id, payload.state.value)
    return {"message": "Order state updated successfully"}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    res = db[ORDERS].delete_one({"_id": parse_object_id("Order", order_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Order", order_id)
    logger.info("%s deleted order %s", owner, order_id)
    return {"message": "Order deleted successfully"}


@app.delete("/api/orders")
def clear_orders(owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    res = db[ORDERS].delete_many({})
    logger.info("%s cleared %d orders", owner, res.deleted_count)
    return {"message": "All orders cleared successfully", "deleted": res.deleted_count}


# --- Contact ---

@app.post("/api/contact", status_code=201)
def create_contact(payload: Contact, db: Database = Depends(get_db)):
    contact_id = create_document(db, CONTACTS, payload)
    return {"message": "Message sent successfully", "id": contact_id}


# --- Superadmin ---

@app.get("/api/superadmin/analytics")
def superadmin_analytics(owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    orders = get_documents(db, ORDERS)
    breakdown = analytics.status_breakdown(orders)
    return {
        "stats": {
            "totalProducts": db[PRODUCTS].count_documents({}),
            "totalOrders": len(orders),
            "pendingOrders": breakdown["Pending"],
            "deliveredOrders": breakdown["Delivered"],
            "totalContacts": db[CONTACTS].count_documents({}),
            "totalRevenue": analytics.total_revenue(orders, OrderState.DELIVERED),
        },
        "statusBreakdown": breakdown,
        "monthlyRevenue": analytics.monthly_revenue(orders),
        "recentOrders": orders[:10],
        "recentProducts": get_documents(db, PRODUCTS, limit=10),
        "recentContacts": get_documents(db, CONTACTS, limit=10),
    }


@app.get("/api/superadmin/orders")
def superadmin_orders(owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    return get_documents(db, ORDERS)


@app.get("/api/superadmin/products")
def superadmin_products(owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS)


@app.get("/api/superadmin/contacts")
def superadmin_contacts(owner: str = Depends(require_owner), db: Database = Depends(get_db)):
    return get_documents(db, CONTACTS)


# --- Auth ---

@app.post("/api/register", response_model=AuthResponse, status_code=201)
def register(payload: Credentials, db: Database = Depends(get_db)):
    if db[USERS].count_documents({}) > 0:
        raise RegistrationClosedError()
    user = User(username=payload.username, password_hash=hash_password(payload.password))
    create_document(db, USERS, user)
    logger.info("Registered admin account %s", payload.username)
    return AuthResponse(token=create_access_token(payload.username), username=payload.username)


@app.post("/api/login", response_model=AuthResponse)
def login(
    payload: Credentials,
    db: Database = Depends(get_db),
    store: LockoutStore = Depends(get_lockout_store),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    now = clock()
    if store.locked_until(USER_SCOPE, payload.username, now) is not None:
        until = store.lock(USER_SCOPE, payload.username, "login attempt during lockout", now)
        raise LockedOutError(until)
    if not authenticate(db, payload.username, payload.password):
        until = store.record_failed_login(payload.username, now)
        if until is not None:
            raise LockedOutError(until)
        raise AuthenticationError()
    store.clear_failed_logins(payload.username)
    return AuthResponse(token=create_access_token(payload.username), username=payload.username)


@app.get("/api/auth/check-signup")
def check_signup(db: Database = Depends(get_db)):
    return {"signupAllowed": db[USERS].count_documents({}) == 0}


@app.get("/api/auth/verify")
def verify(owner: str = Depends(require_owner)):
    return {"valid": True, "username": owner}


# --- Security log ---

@app.post("/api/security/log", status_code=201)
def security_log(
    payload: SecurityLogRequest,
    db: Database = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    logger.warning("Client reported suspicious activity: %s", payload.reason)
    db[SECURITY_LOGS].insert_one({"reason": payload.reason, "timestamp": clock()})
    return {"message": "Security event logged"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
