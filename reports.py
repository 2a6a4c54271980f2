"""
Read-only rollups behind the admin, seller and delivery dashboards.

Nothing here is cached; every view is computed from the product and order
collections at query time. ``match`` arguments are order filters produced by
orders.scope_filter (or narrower).
"""
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from catalog import serialize_product
from config import LOW_STOCK_THRESHOLD, REPORT_PERIODS
from database import serialize_doc, utcnow
from errors import ValidationFailed
from orders import serialize_order
from schemas import OrderStatus, Role

NOT_CANCELLED = {"$ne": OrderStatus.CANCELLED.value}


def check_period(period: int) -> int:
    if period not in REPORT_PERIODS:
        options = ", ".join(str(p) for p in REPORT_PERIODS)
        raise ValidationFailed(details=[{"field": "period", "message": f"Period must be one of: {options}"}])
    return period


def window_start(days: int, now: Optional[datetime] = None) -> datetime:
    """Midnight at the start of a trailing window of ``days`` days, today included."""
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=days - 1)


# ----------------------- Building blocks -----------------------
def status_breakdown(db: Database, match: dict) -> List[dict]:
    rows = db["order"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total": {"$sum": "$total"}}},
    ])
    return sorted(
        ({"status": r["_id"], "count": r["count"], "total": round(r["total"], 2)} for r in rows),
        key=lambda r: r["status"],
    )


def revenue(db: Database, match: dict) -> float:
    rows = list(db["order"].aggregate([
        {"$match": {**match, "status": NOT_CANCELLED}},
        {"$group": {"_id": None, "total": {"$sum": "$total"}}},
    ]))
    return round(rows[0]["total"], 2) if rows else 0.0


def low_stock_count(db: Database, product_match: dict) -> int:
    return db["product"].count_documents({**product_match, "stock": {"$lte": LOW_STOCK_THRESHOLD}, "is_active": True})


def daily_series(db: Database, match: dict, days: int, now: Optional[datetime] = None) -> List[dict]:
    """Orders and revenue per day, excluding cancelled orders; empty days are zero."""
    start = window_start(days, now)
    buckets = {
        (start + timedelta(days=i)).strftime("%Y-%m-%d"): {"orders": 0, "revenue": 0.0}
        for i in range(days)
    }
    cursor = db["order"].find(
        {**match, "status": NOT_CANCELLED, "created_at": {"$gte": start}},
        {"created_at": 1, "total": 1},
    )
    for doc in cursor:
        day = doc["created_at"].strftime("%Y-%m-%d")
        if day not in buckets:
            continue
        buckets[day]["orders"] += 1
        buckets[day]["revenue"] += doc.get("total", 0)
    return [
        {"date": day, "orders": b["orders"], "revenue": round(b["revenue"], 2)}
        for day, b in sorted(buckets.items())
    ]


def recent_orders(db: Database, match: dict, limit: int = 5) -> List[dict]:
    docs = db["order"].find(match).sort("created_at", DESCENDING).limit(limit)
    return [serialize_order(d) for d in docs]


def category_stats(db: Database, product_match: dict) -> List[dict]:
    rows = db["product"].aggregate([
        {"$match": {**product_match, "is_active": True}},
        {"$group": {
            "_id": "$category",
            "count": {"$sum": 1},
            "total_sales": {"$sum": "$sales"},
            "avg_price": {"$avg": "$price"},
            "avg_rating": {"$avg": "$rating.average"},
        }},
    ])
    return sorted(
        (
            {
                "category": r["_id"],
                "count": r["count"],
                "total_sales": r["total_sales"],
                "avg_price": round(r["avg_price"] or 0, 2),
                "avg_rating": round(r["avg_rating"] or 0, 2),
            }
            for r in rows
        ),
        key=lambda r: r["category"],
    )


def product_performance(db: Database, product_match: dict, limit: Optional[int] = None) -> List[dict]:
    cursor = db["product"].find({**product_match, "is_active": True}).sort("sales", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return [
        {
            "id": str(p["_id"]),
            "name": p["name"],
            "sales": p.get("sales", 0),
            "stock": p.get("stock", 0),
            "rating": p.get("rating"),
            "revenue": round(p.get("price", 0) * p.get("sales", 0), 2),
        }
        for p in cursor
    ]


def _order_stats(db: Database, match: dict) -> dict:
    return {
        "total": db["order"].count_documents(match),
        "by_status": status_breakdown(db, match),
        "revenue": revenue(db, match),
    }


def _product_stats(db: Database, product_match: dict) -> dict:
    return {
        "total": db["product"].count_documents(product_match),
        "active": db["product"].count_documents({**product_match, "is_active": True}),
        "low_stock": low_stock_count(db, product_match),
    }


# ----------------------- Admin -----------------------
def user_stats(db: Database) -> List[dict]:
    return [
        {
            "role": role.value,
            "count": db["user"].count_documents({"role": role.value}),
            "active": db["user"].count_documents({"role": role.value, "is_active": True}),
        }
        for role in Role
    ]


def admin_dashboard(db: Database) -> dict:
    users = user_stats(db)
    recent_users = db["user"].find({}, {"password_hash": 0}).sort("created_at", DESCENDING).limit(5)
    return {
        "statistics": {
            "users": {
                "total": db["user"].count_documents({}),
                "by_role": [{"role": u["role"], "count": u["count"]} for u in users],
            },
            "products": _product_stats(db, {}),
            "orders": _order_stats(db, {}),
        },
        "recent_orders": recent_orders(db, {}),
        "recent_users": [serialize_doc(u) for u in recent_users],
    }


def admin_analytics(db: Database, days: int) -> dict:
    return {
        "sales_data": daily_series(db, {}, days),
        "top_products": product_performance(db, {}, limit=10),
        "category_stats": category_stats(db, {}),
        "user_stats": user_stats(db),
    }


# ----------------------- Seller -----------------------
def seller_dashboard(db: Database, seller: dict) -> dict:
    product_match = {"seller": seller["_id"]}
    order_match = {"sellers": seller["_id"]}
    top = db["product"].find(product_match).sort("sales", DESCENDING).limit(5)
    return {
        "statistics": {
            "products": _product_stats(db, product_match),
            "orders": _order_stats(db, order_match),
        },
        "recent_orders": recent_orders(db, order_match),
        "top_products": [serialize_product(p) for p in top],
    }


def seller_analytics(db: Database, seller: dict, days: int) -> dict:
    product_match = {"seller": seller["_id"]}
    return {
        "sales_data": daily_series(db, {"sellers": seller["_id"]}, days),
        "product_performance": product_performance(db, product_match),
        "category_performance": category_stats(db, product_match),
    }


# ----------------------- Delivery -----------------------
def delivery_dashboard(db: Database, agent: dict, now: Optional[datetime] = None) -> dict:
    match = {"delivery.delivery_agent": agent["_id"]}
    in_progress = {"$in": [OrderStatus.CONFIRMED.value, OrderStatus.SHIPPED.value]}
    today = window_start(1, now)
    assigned = db["order"].find({**match, "status": in_progress}).sort("created_at", DESCENDING).limit(10)
    completed = (
        db["order"].find({**match, "status": OrderStatus.DELIVERED.value})
        .sort("delivery.actual_delivery", DESCENDING)
        .limit(5)
    )
    return {
        "statistics": {
            "total": db["order"].count_documents(match),
            "completed": db["order"].count_documents({**match, "status": OrderStatus.DELIVERED.value}),
            "pending": db["order"].count_documents({**match, "status": in_progress}),
            "today": db["order"].count_documents({
                **match,
                "created_at": {"$gte": today, "$lt": today + timedelta(days=1)},
            }),
        },
        "assigned_deliveries": [serialize_order(o) for o in assigned],
        "recent_completed": [serialize_order(o) for o in completed],
    }


def delivery_reports(db: Database, agent: dict, days: int, now: Optional[datetime] = None) -> dict:
    start = window_start(days, now)
    match = {"delivery.delivery_agent": agent["_id"], "created_at": {"$gte": start}}

    trends = {
        (start + timedelta(days=i)).strftime("%Y-%m-%d"): {"deliveries": 0, "completed": 0}
        for i in range(days)
    }
    for doc in db["order"].find(match, {"created_at": 1, "status": 1}):
        day = doc["created_at"].strftime("%Y-%m-%d")
        if day not in trends:
            continue
        trends[day]["deliveries"] += 1
        if doc.get("status") == OrderStatus.DELIVERED.value:
            trends[day]["completed"] += 1

    total = db["order"].count_documents(match)
    completed = db["order"].count_documents({**match, "status": OrderStatus.DELIVERED.value})
    completion_rate = round(completed / total * 100, 2) if total else 0.0
    return {
        "statistics": status_breakdown(db, match),
        "trends": [{"date": day, **counts} for day, counts in sorted(trends.items())],
        "metrics": {"total": total, "completed": completed, "completion_rate": completion_rate},
    }
