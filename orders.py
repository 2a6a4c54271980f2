"""
Order lifecycle engine.

Orders move through a small state machine:

    pending -> confirmed -> shipped -> delivered
    pending -> cancelled

Creating an order reserves stock with a conditional decrement per product
(``stock -= q`` only where ``stock >= q``) and then persists the order. If a
reservation or the insert fails, every reservation already taken is released
again, so a rejected order never leaves stock behind. Cancellation flips the
status only while it is still ``pending`` and restores stock exactly once.
"""
import logging
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import FLAT_SHIPPING_FEE, FREE_SHIPPING_THRESHOLD, TAX_RATE
from database import insert_with_generated_key, paginate, parse_sort, serialize_doc, to_obj_id, utcnow
from errors import Conflict, Forbidden, InsufficientStock, NotFound, ValidationFailed
from schemas import (
    AssignAgentBody,
    Delivery,
    Order,
    OrderCreateBody,
    OrderItem,
    OrderNotes,
    OrderStatus,
    OrderUpdateBody,
    Payment,
    Role,
    StatusUpdateBody,
    TrackingBody,
)

logger = logging.getLogger(__name__)

ORDER_SORTS = {
    "created_at": "created_at",
    "total": "total",
    "estimated_delivery": "delivery.estimated_delivery",
}

TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# (from, to) pairs each non-admin role may perform through a status update
TRANSITIONS = {
    Role.CUSTOMER: frozenset(),
    Role.SELLER: frozenset({(OrderStatus.PENDING, OrderStatus.CONFIRMED)}),
    Role.DELIVERY: frozenset({
        (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    }),
}

_ORDER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))[-8:]
    token = "".join(secrets.choice(_ORDER_ALPHABET) for _ in range(4))
    return f"ORD-{timestamp}-{token}"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ----------------------- Totals -----------------------
def compute_totals(subtotal: float) -> Dict[str, float]:
    subtotal = round(subtotal, 2)
    tax = round(subtotal * TAX_RATE, 2)
    shipping_cost = 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING_FEE
    return {
        "subtotal": subtotal,
        "tax": tax,
        "shipping_cost": shipping_cost,
        "total": round(subtotal + tax + shipping_cost, 2),
    }


# ----------------------- Transitions -----------------------
def is_transition_allowed(role: Role, current: OrderStatus, target: OrderStatus) -> bool:
    if role is Role.ADMIN:
        if current in TERMINAL or current is target:
            return False
        if target is OrderStatus.CANCELLED:
            return current is OrderStatus.PENDING
        return True
    if role in (Role.SELLER, Role.DELIVERY, Role.CUSTOMER):
        return (current, target) in TRANSITIONS[role]
    raise ValueError(f"Unhandled role: {role}")


def check_transition(role: Role, current: OrderStatus, target: OrderStatus):
    if is_transition_allowed(role, current, target):
        return
    if role is Role.SELLER:
        raise Forbidden("Sellers can only confirm pending orders")
    if role is Role.DELIVERY:
        raise Forbidden("Delivery agents can only ship confirmed orders and deliver shipped orders")
    if role is Role.CUSTOMER:
        raise Forbidden("Customers can only cancel their own pending orders")
    raise Forbidden(f"Cannot change a {current.value} order to {target.value}")


# ----------------------- Queries -----------------------
def scope_filter(user: dict) -> dict:
    """Orders the caller is allowed to see."""
    role = Role(user["role"])
    if role is Role.ADMIN:
        return {}
    if role is Role.SELLER:
        return {"sellers": user["_id"]}
    if role is Role.DELIVERY:
        return {"delivery.delivery_agent": user["_id"]}
    if role is Role.CUSTOMER:
        return {"customer": user["_id"]}
    raise ValueError(f"Unhandled role: {role}")


def get_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_obj_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def list_orders(db: Database, filt: dict, page: int, limit: int, sort: str):
    docs, pagination = paginate(db, "order", filt, page, limit, parse_sort(sort, ORDER_SORTS))
    return {"orders": [serialize_order(d) for d in docs], "pagination": pagination}


def serialize_order(doc: dict) -> dict:
    data = serialize_doc(doc)
    data["status_timeline"] = [
        {"status": h.get("status"), "date": h.get("at")} for h in data.get("history", [])
    ]
    data["summary"] = {
        "order_number": doc.get("order_number"),
        "status": doc.get("status"),
        "total": doc.get("total"),
        "item_count": len(doc.get("items", [])),
        "created_at": data.get("created_at"),
    }
    return data


# ----------------------- Stock -----------------------
def reserve_stock(db: Database, product_id: ObjectId, quantity: int) -> bool:
    res = db["product"].update_one(
        {"_id": product_id, "is_active": True, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity, "sales": quantity}},
    )
    return res.modified_count == 1


def release_stock(db: Database, items: List[dict]):
    for item in items:
        try:
            db["product"].update_one(
                {"_id": item["product"]},
                {"$inc": {"stock": item["quantity"], "sales": -item["quantity"]}},
            )
        except PyMongoError:
            logger.exception("Failed to release %d units of product %s", item["quantity"], item["product"])


# ----------------------- Creation -----------------------
def _collect_lines(db: Database, body: OrderCreateBody) -> List[dict]:
    requested: Dict[str, int] = {}
    first_index: Dict[str, int] = {}
    for position, item in enumerate(body.items):
        requested[item.product] = requested.get(item.product, 0) + item.quantity
        first_index.setdefault(item.product, position)

    lines = []
    for product_id, quantity in requested.items():
        index = first_index[product_id]
        product = db["product"].find_one({"_id": ObjectId(product_id)})
        if not product:
            raise ValidationFailed(
                f"Product {product_id} not found",
                details=[{"field": f"items.{index}.product", "message": "Product not found"}],
            )
        if not product.get("is_active", True):
            raise ValidationFailed(
                f"Product {product['name']} is not available",
                details=[{"field": f"items.{index}.product", "message": "Product is not available"}],
            )
        if product.get("stock", 0) < quantity:
            raise InsufficientStock(f"Insufficient stock for {product['name']}")
        price = float(product["price"])
        lines.append(OrderItem(
            product=product["_id"],
            name=product["name"],
            seller=product["seller"],
            quantity=quantity,
            price=price,
            total=round(price * quantity, 2),
        ).model_dump())
    return lines


def create_order(db: Database, customer: dict, body: OrderCreateBody) -> dict:
    lines = _collect_lines(db, body)
    totals = compute_totals(sum(line["total"] for line in lines))

    sellers = []
    for line in lines:
        if line["seller"] not in sellers:
            sellers.append(line["seller"])

    now = utcnow()
    order = Order(
        customer=customer["_id"],
        items=lines,
        sellers=sellers,
        shipping_address=body.shipping_address,
        billing_address=body.billing_address or body.shipping_address,
        payment=Payment(method=body.payment.method),
        delivery=Delivery(method=body.delivery_method),
        notes=OrderNotes(customer=body.notes),
        history=[{"status": OrderStatus.PENDING.value, "at": now, "by": customer["_id"]}],
        **totals,
    )
    doc = order.model_dump()
    doc["created_at"] = now

    reserved: List[dict] = []
    try:
        for line in lines:
            if not reserve_stock(db, line["product"], line["quantity"]):
                raise InsufficientStock(f"Insufficient stock for {line['name']}")
            reserved.append(line)
        insert_with_generated_key(db, "order", doc, "order_number", generate_order_number)
    except Exception:
        if reserved:
            logger.warning("Order for customer %s failed, releasing %d reservations", customer["_id"], len(reserved))
            release_stock(db, reserved)
        raise

    logger.info("Order %s created by %s (total %.2f)", doc["order_number"], customer["_id"], doc["total"])
    return doc


# ----------------------- Mutations -----------------------
def cancel_order(db: Database, order: dict, user: dict) -> dict:
    if order.get("status") != OrderStatus.PENDING.value:
        raise Conflict("Only pending orders can be cancelled")

    now = utcnow()
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": OrderStatus.PENDING.value},
        {
            "$set": {"status": OrderStatus.CANCELLED.value, "updated_at": now},
            "$push": {"history": {"status": OrderStatus.CANCELLED.value, "at": now, "by": user["_id"]}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not cancelled:
        raise Conflict("Only pending orders can be cancelled")

    release_stock(db, cancelled["items"])
    logger.info("Order %s cancelled by %s", cancelled.get("order_number"), user["_id"])
    return cancelled


def update_status(db: Database, order: dict, user: dict, body: StatusUpdateBody) -> dict:
    role = Role(user["role"])
    current = OrderStatus(order["status"])
    target = OrderStatus(body.status)
    check_transition(role, current, target)

    if target is OrderStatus.CANCELLED:
        return cancel_order(db, order, user)

    now = utcnow()
    changes = {"status": target.value, "updated_at": now}
    delivery = order.get("delivery") or {}
    if target is OrderStatus.SHIPPED and role is Role.DELIVERY and not delivery.get("delivery_agent"):
        changes["delivery.delivery_agent"] = user["_id"]
    if target is OrderStatus.DELIVERED:
        changes["delivery.actual_delivery"] = now
    if body.estimated_delivery:
        changes["delivery.estimated_delivery"] = _naive_utc(body.estimated_delivery)
    if body.notes:
        changes["notes.delivery" if role is Role.DELIVERY else "notes.internal"] = body.notes

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {"$set": changes, "$push": {"history": {"status": target.value, "at": now, "by": user["_id"]}}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise Conflict("Order status changed concurrently, please retry")
    logger.info("Order %s: %s -> %s by %s (%s)", order.get("order_number"), current.value, target.value,
                user["_id"], role.value)
    return updated


def add_tracking(db: Database, order: dict, user: dict, body: TrackingBody) -> dict:
    role = Role(user["role"])
    if role not in (Role.DELIVERY, Role.ADMIN):
        raise Forbidden("Only delivery agents can add tracking information")
    status = OrderStatus(order["status"])
    if status is OrderStatus.PENDING:
        raise Conflict("Cannot add tracking before the order is confirmed")
    if status in TERMINAL:
        raise Conflict(f"Cannot add tracking to a {order['status']} order")

    changes = {"delivery.tracking_number": body.tracking_number, "updated_at": utcnow()}
    filt = {"_id": order["_id"]}
    if role is Role.DELIVERY:
        changes["delivery.delivery_agent"] = user["_id"]
        # claim only while nobody else holds the order
        filt["delivery.delivery_agent"] = {"$in": [None, user["_id"]]}
        if body.notes:
            changes["notes.delivery"] = body.notes
    elif body.notes:
        changes["notes.internal"] = body.notes

    updated = db["order"].find_one_and_update(filt, {"$set": changes}, return_document=ReturnDocument.AFTER)
    if not updated:
        raise Conflict("Order was assigned to another delivery agent")
    return updated


def assign_agent(db: Database, order: dict, body: AssignAgentBody) -> dict:
    agent = db["user"].find_one({"_id": ObjectId(body.delivery_agent)})
    if not agent or agent.get("role") != Role.DELIVERY.value or not agent.get("is_active", True):
        raise ValidationFailed(
            "Delivery agent not found",
            details=[{"field": "delivery_agent", "message": "Must be an active delivery agent"}],
        )
    if OrderStatus(order["status"]) in TERMINAL:
        raise Conflict(f"Cannot assign a {order['status']} order")
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"delivery.delivery_agent": agent["_id"], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Order %s assigned to delivery agent %s", order.get("order_number"), agent["_id"])
    return updated


def admin_update_order(db: Database, order: dict, body: OrderUpdateBody) -> dict:
    changes = {}
    if body.shipping_address:
        changes["shipping_address"] = body.shipping_address.model_dump()
    if body.billing_address:
        changes["billing_address"] = body.billing_address.model_dump()
    if body.payment_status:
        changes["payment.status"] = body.payment_status
    if body.delivery_method:
        changes["delivery.method"] = body.delivery_method
    if body.estimated_delivery:
        changes["delivery.estimated_delivery"] = _naive_utc(body.estimated_delivery)
    if body.internal_note is not None:
        changes["notes.internal"] = body.internal_note
    if not changes:
        return order
    changes["updated_at"] = utcnow()
    return db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
