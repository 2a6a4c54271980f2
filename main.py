import logging
import re
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import catalog
import database
import orders
import reports
from auth import (
    create_token,
    get_current_user,
    get_token_payload,
    hash_password,
    public_user,
    require_roles,
    revoke_token,
    verify_password,
)
from config import CORS_ORIGINS, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PORT
from database import ensure_indexes, get_db, paginate, parse_sort, serialize_doc, to_obj_id, utcnow
from errors import Conflict, NotFound, Unauthenticated, ValidationFailed
from logger import log_startup, setup_logging
from permissions import Action, Kind, can_access, enforce
from schemas import (
    AdminUserUpdateBody,
    AssignAgentBody,
    Category,
    CompleteDeliveryBody,
    LoginBody,
    OrderCreateBody,
    OrderStatus,
    OrderUpdateBody,
    ProductCreateBody,
    ProductUpdateBody,
    ProfileUpdateBody,
    RatingBody,
    RegisterBody,
    Role,
    StatusUpdateBody,
    TrackingBody,
    User,
)

setup_logging()
logger = logging.getLogger(__name__)

APP_TITLE = "RBAC Store API"


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_startup(APP_TITLE, database.DATABASE_NAME)
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title=APP_TITLE, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

require_admin = require_roles(Role.ADMIN)
require_seller = require_roles(Role.SELLER)
require_customer = require_roles(Role.CUSTOMER)
require_delivery = require_roles(Role.DELIVERY)
require_admin_or_seller = require_roles(Role.ADMIN, Role.SELLER)
can_manage_orders = require_roles(Role.ADMIN, Role.SELLER, Role.DELIVERY)


# ----------------------- Errors -----------------------
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = {"success": False, "error": exc.detail}
    details = getattr(exc, "details", None)
    if details:
        body["details"] = details
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"] if p not in ("body", "query", "path")), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "error": "Validation failed", "details": details})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server error"})


# ----------------------- Utils -----------------------
def ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def page_size(limit: int) -> int:
    return min(limit, MAX_PAGE_SIZE)


def user_out(user: dict) -> dict:
    return serialize_doc(public_user(user))


def load_order(db: Database, order_id: str, user: dict, action: Action, not_found: str = "Order not found") -> dict:
    order = orders.get_order(db, order_id)
    enforce(can_access(user, Kind.ORDER, order, action), not_found)
    return order


def load_product(db: Database, product_id: str, user: dict, action: Action) -> dict:
    product = catalog.get_product(db, product_id)
    enforce(can_access(user, Kind.PRODUCT, product, action), "Product not found")
    return product


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": f"{APP_TITLE} running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if database.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/register", status_code=201)
def register(body: RegisterBody, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise Conflict("Email already registered")
    user = User(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        role=body.role,
        phone=body.phone,
        address=body.address,
    )
    doc = user.model_dump()
    try:
        database.create_document(db, "user", doc)
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info("Registered %s as %s", doc["email"], doc["role"])
    return ok({"token": create_token(doc), "user": user_out(doc)}, "User registered successfully")


@app.post("/api/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password_hash")):
        raise Unauthenticated("Invalid credentials")
    if not user.get("is_active", True):
        raise Unauthenticated("User account is deactivated")
    user["last_login"] = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": user["last_login"]}})
    logger.info("Login: %s", user["email"])
    return ok({"token": create_token(user), "user": user_out(user)}, "Login successful")


@app.get("/api/auth/verify")
def verify(user=Depends(get_current_user)):
    return ok({"user": user_out(user)})


@app.post("/api/auth/logout")
def logout(payload: dict = Depends(get_token_payload), user=Depends(get_current_user), db: Database = Depends(get_db)):
    revoke_token(db, payload)
    return ok(message="Logged out successfully")


@app.get("/api/auth/profile")
def get_profile(user=Depends(get_current_user)):
    return ok(user_out(user))


@app.put("/api/auth/profile")
def update_profile(body: ProfileUpdateBody, user=Depends(get_current_user), db: Database = Depends(get_db)):
    changes = body.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] is None:
        raise ValidationFailed(details=[{"field": "name", "message": "name cannot be null"}])
    if not changes:
        return ok(user_out(user))
    changes["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(user_out(updated), "Profile updated successfully")


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    category: Optional[Category] = None,
    search: Optional[str] = None,
    sort: str = "-created_at",
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    db: Database = Depends(get_db),
):
    filt = catalog.product_filter({"is_active": True}, category, search, min_price, max_price)
    return ok(catalog.list_products(db, filt, page, page_size(limit), sort))


@app.get("/api/products/featured")
def featured_products(limit: int = Query(8, ge=1), db: Database = Depends(get_db)):
    docs = db["product"].find({"is_featured": True, "is_active": True}).sort("rating.average", -1).limit(page_size(limit))
    return ok([catalog.serialize_product(d) for d in docs])


@app.get("/api/products/category/{category}")
def products_by_category(
    category: Category,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    sort: str = "-created_at",
    db: Database = Depends(get_db),
):
    filt = catalog.product_filter({"is_active": True}, category)
    return ok(catalog.list_products(db, filt, page, page_size(limit), sort))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return ok(catalog.serialize_product(catalog.view_product(db, product_id)))


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_admin_or_seller), db: Database = Depends(get_db)):
    doc = catalog.create_product(db, user["_id"], body)
    return ok(catalog.serialize_product(doc), "Product created successfully")


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdateBody,
    user=Depends(require_admin_or_seller),
    db: Database = Depends(get_db),
):
    product = load_product(db, product_id, user, Action.UPDATE)
    return ok(catalog.serialize_product(catalog.update_product(db, product, body)), "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin_or_seller), db: Database = Depends(get_db)):
    product = load_product(db, product_id, user, Action.DELETE)
    catalog.delete_product(db, product)
    return ok(message="Product deleted successfully")


@app.post("/api/products/{product_id}/rating")
def rate_product(product_id: str, body: RatingBody, user=Depends(get_current_user), db: Database = Depends(get_db)):
    product = catalog.add_rating(db, product_id, body.rating)
    return ok(catalog.serialize_product(product), "Rating added successfully")


# ----------------------- Orders -----------------------
@app.get("/api/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    status: Optional[OrderStatus] = None,
    sort: str = "-created_at",
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    filt = {"is_active": True, **orders.scope_filter(user)}
    if status:
        filt["status"] = status.value
    return ok(orders.list_orders(db, filt, page, page_size(limit), sort))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(orders.serialize_order(load_order(db, order_id, user, Action.READ)))


@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreateBody, user=Depends(require_customer), db: Database = Depends(get_db)):
    doc = orders.create_order(db, user, body)
    return ok(orders.serialize_order(doc), "Order created successfully")


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdateBody,
    user=Depends(can_manage_orders),
    db: Database = Depends(get_db),
):
    order = load_order(db, order_id, user, Action.UPDATE_STATUS)
    updated = orders.update_status(db, order, user, body)
    return ok(orders.serialize_order(updated), "Order status updated successfully")


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdateBody, user=Depends(get_current_user), db: Database = Depends(get_db)):
    order = load_order(db, order_id, user, Action.UPDATE)
    return ok(orders.serialize_order(orders.admin_update_order(db, order, body)), "Order updated successfully")


@app.delete("/api/orders/{order_id}")
def cancel_order(order_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    order = load_order(db, order_id, user, Action.CANCEL)
    cancelled = orders.cancel_order(db, order, user)
    return ok(orders.serialize_order(cancelled), "Order cancelled successfully")


@app.post("/api/orders/{order_id}/tracking")
def add_tracking(order_id: str, body: TrackingBody, user=Depends(get_current_user), db: Database = Depends(get_db)):
    order = load_order(db, order_id, user, Action.TRACK)
    updated = orders.add_tracking(db, order, user, body)
    return ok(orders.serialize_order(updated), "Tracking information added successfully")


# ----------------------- Admin -----------------------
USER_SORTS = {"name": "name", "email": "email", "created_at": "created_at"}


@app.get("/api/admin/dashboard")
def admin_dashboard(user=Depends(require_admin), db: Database = Depends(get_db)):
    return ok(reports.admin_dashboard(db))


@app.get("/api/admin/users")
def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    role: Optional[Role] = None,
    search: Optional[str] = None,
    sort: str = "-created_at",
    user=Depends(require_admin),
    db: Database = Depends(get_db),
):
    filt = {}
    if role:
        filt["role"] = role.value
    if search:
        pattern = re.escape(search.strip())
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    docs, pagination = paginate(db, "user", filt, page, page_size(limit), parse_sort(sort, USER_SORTS))
    return ok({"users": [user_out(d) for d in docs], "pagination": pagination})


@app.get("/api/admin/users/{user_id}")
def admin_get_user(user_id: str, user=Depends(require_admin), db: Database = Depends(get_db)):
    doc = db["user"].find_one({"_id": to_obj_id(user_id, "User")})
    if not doc:
        raise NotFound("User not found")
    return ok(user_out(doc))


@app.put("/api/admin/users/{user_id}")
def admin_update_user(
    user_id: str,
    body: AdminUserUpdateBody,
    user=Depends(require_admin),
    db: Database = Depends(get_db),
):
    changes = body.model_dump(mode="json", exclude_unset=True)
    for field in ("name", "email", "role", "is_active"):
        if field in changes and changes[field] is None:
            raise ValidationFailed(details=[{"field": field, "message": f"{field} cannot be null"}])
    changes["updated_at"] = utcnow()
    try:
        updated = db["user"].find_one_and_update(
            {"_id": to_obj_id(user_id, "User")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    if not updated:
        raise NotFound("User not found")
    logger.info("Admin %s updated user %s: %s", user["_id"], user_id, sorted(changes))
    return ok(user_out(updated), "User updated successfully")


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, user=Depends(require_admin), db: Database = Depends(get_db)):
    target_id = to_obj_id(user_id, "User")
    if not db["user"].find_one({"_id": target_id}):
        raise NotFound("User not found")
    if target_id == user["_id"]:
        raise ValidationFailed("Cannot delete your own account")
    db["user"].delete_one({"_id": target_id})
    logger.info("Admin %s deleted user %s", user["_id"], user_id)
    return ok(message="User deleted successfully")


@app.get("/api/admin/analytics")
def admin_analytics(period: int = 30, user=Depends(require_admin), db: Database = Depends(get_db)):
    return ok(reports.admin_analytics(db, reports.check_period(period)))


@app.get("/api/admin/products")
def admin_list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    category: Optional[Category] = None,
    seller: Optional[str] = None,
    status: Optional[Literal["active", "inactive"]] = None,
    search: Optional[str] = None,
    sort: str = "-created_at",
    user=Depends(require_admin),
    db: Database = Depends(get_db),
):
    base = {}
    if seller:
        base["seller"] = to_obj_id(seller, "Seller")
    if status:
        base["is_active"] = status == "active"
    filt = catalog.product_filter(base, category, search)
    return ok(catalog.list_products(db, filt, page, page_size(limit), sort, catalog.MANAGE_SORTS))


@app.patch("/api/admin/orders/{order_id}/assign")
def admin_assign_order(
    order_id: str,
    body: AssignAgentBody,
    user=Depends(require_admin),
    db: Database = Depends(get_db),
):
    order = load_order(db, order_id, user, Action.ASSIGN)
    return ok(orders.serialize_order(orders.assign_agent(db, order, body)), "Delivery agent assigned successfully")


# ----------------------- Seller -----------------------
@app.get("/api/seller/dashboard")
def seller_dashboard(user=Depends(require_seller), db: Database = Depends(get_db)):
    return ok(reports.seller_dashboard(db, user))


@app.get("/api/seller/products")
def seller_products(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    category: Optional[Category] = None,
    status: Optional[Literal["active", "inactive"]] = None,
    search: Optional[str] = None,
    sort: str = "-created_at",
    user=Depends(require_seller),
    db: Database = Depends(get_db),
):
    base = {"seller": user["_id"]}
    if status:
        base["is_active"] = status == "active"
    filt = catalog.product_filter(base, category, search)
    return ok(catalog.list_products(db, filt, page, page_size(limit), sort, catalog.MANAGE_SORTS))


@app.get("/api/seller/products/{product_id}")
def seller_product(product_id: str, user=Depends(require_seller), db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": to_obj_id(product_id, "Product"), "seller": user["_id"]})
    if not product:
        raise NotFound("Product not found")
    return ok(catalog.serialize_product(product))


@app.get("/api/seller/orders")
def seller_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    status: Optional[OrderStatus] = None,
    sort: str = "-created_at",
    user=Depends(require_seller),
    db: Database = Depends(get_db),
):
    filt = {"is_active": True, **orders.scope_filter(user)}
    if status:
        filt["status"] = status.value
    return ok(orders.list_orders(db, filt, page, page_size(limit), sort))


@app.get("/api/seller/analytics")
def seller_analytics(period: int = 30, user=Depends(require_seller), db: Database = Depends(get_db)):
    return ok(reports.seller_analytics(db, user, reports.check_period(period)))


# ----------------------- Delivery -----------------------
DELIVERY_STATUSES = Literal["confirmed", "shipped", "delivered"]
SCHEDULE_LIMIT = 50


@app.get("/api/delivery/dashboard")
def delivery_dashboard(user=Depends(require_delivery), db: Database = Depends(get_db)):
    return ok(reports.delivery_dashboard(db, user))


@app.get("/api/delivery/orders")
def delivery_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    status: Optional[DELIVERY_STATUSES] = None,
    sort: str = "-created_at",
    user=Depends(require_delivery),
    db: Database = Depends(get_db),
):
    filt = {"is_active": True, **orders.scope_filter(user)}
    if status:
        filt["status"] = status
    return ok(orders.list_orders(db, filt, page, page_size(limit), sort))


@app.get("/api/delivery/schedule")
def delivery_schedule(
    day: Optional[date] = Query(None, alias="date"),
    status: Optional[DELIVERY_STATUSES] = None,
    user=Depends(require_delivery),
    db: Database = Depends(get_db),
):
    filt = {"is_active": True, **orders.scope_filter(user)}
    if status:
        filt["status"] = status
    if day:
        start = datetime.combine(day, datetime.min.time())
        filt["created_at"] = {"$gte": start, "$lt": start + timedelta(days=1)}
    docs = db["order"].find(filt).sort("delivery.estimated_delivery", ASCENDING).limit(SCHEDULE_LIMIT)
    return ok([orders.serialize_order(d) for d in docs])


@app.get("/api/delivery/orders/available")
def delivery_available_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    sort: str = "created_at",
    user=Depends(require_delivery),
    db: Database = Depends(get_db),
):
    filt = {"is_active": True, "status": OrderStatus.CONFIRMED.value, "delivery.delivery_agent": None}
    return ok(orders.list_orders(db, filt, page, page_size(limit), sort))


@app.get("/api/delivery/orders/{order_id}")
def delivery_order(order_id: str, user=Depends(require_delivery), db: Database = Depends(get_db)):
    order = load_order(db, order_id, user, Action.READ, "Order not found or not assigned to you")
    return ok(orders.serialize_order(order))


@app.post("/api/delivery/orders/{order_id}/complete")
def delivery_complete(
    order_id: str,
    body: Optional[CompleteDeliveryBody] = None,
    user=Depends(require_delivery),
    db: Database = Depends(get_db),
):
    order = load_order(db, order_id, user, Action.UPDATE_STATUS, "Order not found or not assigned to you")
    update = StatusUpdateBody(status=OrderStatus.DELIVERED, notes=body.notes if body else None)
    return ok(orders.serialize_order(orders.update_status(db, order, user, update)), "Delivery completed successfully")


@app.get("/api/delivery/reports")
def delivery_reports(period: int = 30, user=Depends(require_delivery), db: Database = Depends(get_db)):
    return ok(reports.delivery_reports(db, user, reports.check_period(period)))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
