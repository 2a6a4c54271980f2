from datetime import datetime, timedelta

import pytest
from bson import ObjectId

import reports

NOW = datetime(2024, 3, 15, 13, 30)


@pytest.fixture
def insert_order(db):
    def _insert(total=10.0, status="pending", created_at=NOW, sellers=(), agent=None, customer=None):
        doc = {
            "order_number": f"ORD-{ObjectId()}",
            "customer": customer or ObjectId(),
            "sellers": list(sellers),
            "items": [],
            "status": status,
            "total": total,
            "delivery": {"delivery_agent": agent},
            "history": [],
            "is_active": True,
            "created_at": created_at,
        }
        db["order"].insert_one(doc)
        return doc

    return _insert


def test_window_start():
    assert reports.window_start(1, NOW) == datetime(2024, 3, 15)
    assert reports.window_start(7, NOW) == datetime(2024, 3, 9)


def test_daily_series_zero_fills(db, insert_order):
    insert_order(total=20, created_at=NOW - timedelta(days=2))
    insert_order(total=5.5, created_at=NOW - timedelta(days=2, hours=3))
    insert_order(total=99, status="cancelled", created_at=NOW)
    insert_order(total=7, created_at=NOW - timedelta(days=30))

    series = reports.daily_series(db, {}, 7, now=NOW)
    assert len(series) == 7
    assert series[0]["date"] == "2024-03-09"
    assert series[-1]["date"] == "2024-03-15"
    by_day = {row["date"]: row for row in series}
    assert by_day["2024-03-13"] == {"date": "2024-03-13", "orders": 2, "revenue": 25.5}
    assert by_day["2024-03-15"]["orders"] == 0
    assert sum(row["orders"] for row in series) == 2


def test_revenue_ignores_cancelled(db, insert_order):
    insert_order(total=10)
    insert_order(total=15.25, status="delivered")
    insert_order(total=1000, status="cancelled")
    assert reports.revenue(db, {}) == 25.25
    assert reports.revenue(db, {"customer": ObjectId()}) == 0.0


def test_status_breakdown(db, insert_order):
    insert_order(total=10)
    insert_order(total=5)
    insert_order(total=3, status="shipped")
    assert reports.status_breakdown(db, {}) == [
        {"status": "pending", "count": 2, "total": 15},
        {"status": "shipped", "count": 1, "total": 3},
    ]


def test_check_period():
    assert reports.check_period(30) == 30
    with pytest.raises(reports.ValidationFailed):
        reports.check_period(14)


def test_admin_dashboard(client, admin, seller, customer, make_product, place_order, auth):
    product = make_product(seller, stock=6)
    make_product(seller, stock=2)
    make_product(seller, stock=0, is_active=False)
    place_order(customer, [(product, 1)])

    res = client.get("/api/admin/dashboard", headers=auth(admin))
    assert res.status_code == 200
    stats = res.json()["data"]["statistics"]
    assert stats["users"]["total"] == 3
    assert {"role": "seller", "count": 1} in stats["users"]["by_role"]
    assert stats["products"] == {"total": 3, "active": 2, "low_stock": 2}
    assert stats["orders"]["total"] == 1
    assert stats["orders"]["revenue"] == pytest.approx(30 + 2.4 + 5.99)
    assert len(res.json()["data"]["recent_orders"]) == 1
    assert all("password_hash" not in u for u in res.json()["data"]["recent_users"])


def test_seller_dashboard_is_scoped(client, make_user, customer, make_product, place_order, auth):
    mine, theirs = make_user("seller"), make_user("seller")
    own_product = make_product(mine, price=60)
    other_product = make_product(theirs, price=10)
    place_order(customer, [(own_product, 1)])
    place_order(customer, [(other_product, 1)])

    res = client.get("/api/seller/dashboard", headers=auth(mine))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["statistics"]["products"]["total"] == 1
    assert data["statistics"]["orders"]["total"] == 1
    assert [p["name"] for p in data["top_products"]] == [own_product["name"]]
    assert [o["items"][0]["seller"] for o in data["recent_orders"]] == [str(mine["_id"])]


def test_analytics_period_validation(client, admin, seller, courier, auth):
    assert client.get("/api/admin/analytics", params={"period": 14}, headers=auth(admin)).status_code == 400
    assert client.get("/api/seller/analytics", params={"period": 1}, headers=auth(seller)).status_code == 400
    assert client.get("/api/delivery/reports", params={"period": 365}, headers=auth(courier)).status_code == 400

    res = client.get("/api/admin/analytics", params={"period": 7}, headers=auth(admin))
    assert res.status_code == 200
    assert len(res.json()["data"]["sales_data"]) == 7


def test_seller_analytics(client, seller, customer, make_product, place_order, auth):
    product = make_product(seller, price=20, category="foods")
    place_order(customer, [(product, 3)])

    res = client.get("/api/seller/analytics", params={"period": 30}, headers=auth(seller))
    data = res.json()["data"]
    assert len(data["sales_data"]) == 30
    assert sum(row["orders"] for row in data["sales_data"]) == 1
    assert data["product_performance"][0]["sales"] == 3
    assert data["product_performance"][0]["revenue"] == 60
    assert data["category_performance"][0]["category"] == "foods"


def test_delivery_reports_completion_rate(db, courier, insert_order):
    insert_order(status="delivered", agent=courier["_id"], created_at=NOW - timedelta(days=1))
    insert_order(status="delivered", agent=courier["_id"], created_at=NOW)
    insert_order(status="shipped", agent=courier["_id"], created_at=NOW)
    insert_order(status="delivered", agent=ObjectId(), created_at=NOW)

    data = reports.delivery_reports(db, courier, 7, now=NOW)
    assert data["metrics"] == {"total": 3, "completed": 2, "completion_rate": 66.67}
    assert len(data["trends"]) == 7
    assert data["trends"][-1] == {"date": "2024-03-15", "deliveries": 2, "completed": 1}


def test_delivery_dashboard(db, courier, insert_order):
    insert_order(status="confirmed", agent=courier["_id"], created_at=NOW)
    insert_order(status="delivered", agent=courier["_id"], created_at=NOW - timedelta(days=3))
    insert_order(status="confirmed", created_at=NOW)

    stats = reports.delivery_dashboard(db, courier, now=NOW)["statistics"]
    assert stats == {"total": 2, "completed": 1, "pending": 1, "today": 1}


def test_dashboards_are_role_gated(client, customer, seller, courier, auth):
    assert client.get("/api/admin/dashboard", headers=auth(seller)).status_code == 403
    assert client.get("/api/seller/dashboard", headers=auth(courier)).status_code == 403
    assert client.get("/api/delivery/dashboard", headers=auth(customer)).status_code == 403
    assert client.get("/api/delivery/dashboard").status_code == 401
    assert client.get("/api/delivery/dashboard", headers=auth(courier)).status_code == 200
