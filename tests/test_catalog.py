import pytest

from catalog import generate_sku, stock_status

PRODUCT_BODY = {
    "name": "Dune",
    "description": "Classic science fiction novel",
    "category": "books",
    "price": 12.5,
    "stock": 4,
    "images": ["https://img.shop.com/dune.png"],
}


def test_public_list_hides_inactive_and_filters(client, seller, make_product):
    make_product(seller, price=5, name="Cheap Book")
    make_product(seller, price=80, name="Fancy Book")
    make_product(seller, price=20, name="Jacket", category="clothing_men")
    make_product(seller, price=10, name="Hidden Book", is_active=False)

    res = client.get("/api/products")
    assert res.status_code == 200
    data = res.json()["data"]
    names = {p["name"] for p in data["products"]}
    assert names == {"Cheap Book", "Fancy Book", "Jacket"}
    assert data["pagination"]["total"] == 3

    res = client.get("/api/products", params={"category": "books", "min_price": 10})
    assert [p["name"] for p in res.json()["data"]["products"]] == ["Fancy Book"]

    res = client.get("/api/products", params={"search": "jACK"})
    assert [p["name"] for p in res.json()["data"]["products"]] == ["Jacket"]


def test_list_sorting_and_pagination(client, seller, make_product):
    for price in (30, 10, 20):
        make_product(seller, price=price)

    res = client.get("/api/products", params={"sort": "price", "limit": 2, "page": 1})
    data = res.json()["data"]
    assert [p["price"] for p in data["products"]] == [10, 20]
    assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    res = client.get("/api/products", params={"sort": "-price", "limit": 500})
    data = res.json()["data"]
    assert data["pagination"]["limit"] == 100
    assert [p["price"] for p in data["products"]] == [30, 20, 10]


def test_sort_outside_allow_list_is_rejected(client):
    res = client.get("/api/products", params={"sort": "sales"})
    assert res.status_code == 400
    assert res.json()["details"][0]["field"] == "sort"


def test_fetch_increments_views(client, db, seller, make_product):
    product = make_product(seller)
    for _ in range(2):
        res = client.get(f"/api/products/{product['_id']}")
        assert res.status_code == 200
    assert db["product"].find_one({"_id": product["_id"]})["views"] == 2


def test_fetch_missing_or_inactive_is_not_found(client, seller, make_product):
    hidden = make_product(seller, is_active=False)
    assert client.get(f"/api/products/{hidden['_id']}").status_code == 404
    assert client.get("/api/products/not-an-id").status_code == 404


def test_seller_creates_product_with_generated_sku(client, seller, auth):
    res = client.post("/api/products", json=PRODUCT_BODY, headers=auth(seller))
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["seller"] == str(seller["_id"])
    assert data["sku"].startswith("SKU-")
    assert data["stock_status"] == "low_stock"
    assert data["rating"] == {"average": 0, "count": 0}


@pytest.mark.parametrize("override, field", [
    ({"price": -1}, "price"),
    ({"stock": -3}, "stock"),
    ({"stock": 2.5}, "stock"),
    ({"images": []}, "images"),
    ({"images": ["not a url"]}, "images.0"),
    ({"category": "toys"}, "category"),
])
def test_create_product_validation(client, seller, auth, override, field):
    res = client.post("/api/products", json={**PRODUCT_BODY, **override}, headers=auth(seller))
    assert res.status_code == 400
    assert any(d["field"] == field for d in res.json()["details"])


def test_duplicate_supplied_sku_conflicts(client, seller, auth):
    body = {**PRODUCT_BODY, "sku": "BOOK-1"}
    assert client.post("/api/products", json=body, headers=auth(seller)).status_code == 201
    assert client.post("/api/products", json=body, headers=auth(seller)).status_code == 409


def test_customer_cannot_create_product(client, customer, auth):
    assert client.post("/api/products", json=PRODUCT_BODY, headers=auth(customer)).status_code == 403


def test_only_owner_or_admin_can_edit(client, db, seller, make_user, admin, make_product, auth):
    product = make_product(seller)
    other = make_user("seller")

    res = client.put(f"/api/products/{product['_id']}", json={"price": 1}, headers=auth(other))
    assert res.status_code == 403
    assert client.delete(f"/api/products/{product['_id']}", headers=auth(other)).status_code == 403

    res = client.put(f"/api/products/{product['_id']}", json={"price": 25, "stock": 7}, headers=auth(seller))
    assert res.status_code == 200
    assert res.json()["data"]["price"] == 25

    res = client.put(f"/api/products/{product['_id']}", json={"is_featured": True}, headers=auth(admin))
    assert res.status_code == 200
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["is_featured"] is True
    assert stored["seller"] == seller["_id"]

    assert client.delete(f"/api/products/{product['_id']}", headers=auth(admin)).status_code == 200
    assert db["product"].find_one({"_id": product["_id"]}) is None


def test_update_rejects_negative_stock(client, seller, make_product, auth):
    product = make_product(seller)
    res = client.put(f"/api/products/{product['_id']}", json={"stock": -1}, headers=auth(seller))
    assert res.status_code == 400


def test_rating_running_average(client, db, seller, customer, make_product, auth):
    product = make_product(seller)
    for rating in (5, 4, 3):
        res = client.post(f"/api/products/{product['_id']}/rating", json={"rating": rating}, headers=auth(customer))
        assert res.status_code == 200
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["rating"]["count"] == 3
    assert stored["rating"]["average"] == pytest.approx(4.0)


def test_rating_bounds_and_auth(client, seller, customer, make_product, auth):
    product = make_product(seller)
    url = f"/api/products/{product['_id']}/rating"
    assert client.post(url, json={"rating": 6}, headers=auth(customer)).status_code == 400
    assert client.post(url, json={"rating": 4}).status_code == 401


def test_rating_inactive_product_rejected(client, seller, customer, make_product, auth):
    product = make_product(seller, is_active=False)
    res = client.post(f"/api/products/{product['_id']}/rating", json={"rating": 4}, headers=auth(customer))
    assert res.status_code == 400


def test_featured_and_category_listing(client, seller, make_product):
    make_product(seller, is_featured=True, name="Star")
    make_product(seller, category="foods", name="Bread")

    res = client.get("/api/products/featured")
    assert [p["name"] for p in res.json()["data"]] == ["Star"]

    res = client.get("/api/products/category/foods")
    assert [p["name"] for p in res.json()["data"]["products"]] == ["Bread"]
    assert client.get("/api/products/category/toys").status_code == 400


def test_stock_status_and_sku_helpers():
    assert stock_status(0) == "out_of_stock"
    assert stock_status(5) == "low_stock"
    assert stock_status(6) == "in_stock"
    assert generate_sku() != generate_sku()
