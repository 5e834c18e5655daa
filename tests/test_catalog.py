import os
from decimal import Decimal

import catalog
import models
import schemas
from conftest import variant


def create(client, headers, path, body, expected=201):
    res = client.post(path, json=body, headers=headers)
    assert res.status_code == expected, res.text
    return res.json().get("data")


# ----------------- 카테고리 -----------------
def test_category_tree(client, admin_headers, category):
    child = create(client, admin_headers, "/categories", {"name": "Shirts", "slug": "shirts", "parent_id": category["id"]})
    assert child["parent"]["id"] == category["id"]

    parent = client.get(f"/categories/{category['id']}").json()["data"]
    assert [c["slug"] for c in parent["children"]] == ["shirts"]
    assert parent["product_count"] == 0

    create(client, admin_headers, "/categories", {"name": "Again", "slug": "fashion"}, expected=409)
    create(client, admin_headers, "/categories", {"name": "Orphan", "slug": "orphan", "parent_id": 9999}, expected=404)


def test_category_listing_messages(client, admin_headers):
    assert client.get("/categories").json()["message"] == "No categories found"
    create(client, admin_headers, "/categories", {"name": "Shoes", "slug": "shoes"})
    assert client.get("/categories").json()["message"] == "Categories found"


def test_category_detail_lists_products(client, category, product):
    data = client.get(f"/categories/{category['id']}").json()["data"]
    assert data["product_count"] == 1
    assert [p["slug"] for p in data["products"]] == ["cool-t-shirt"]


def test_category_delete_conflicts(client, admin_headers, category, product):
    res = client.delete(f"/categories/{category['id']}", headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Cannot delete category with associated products"

    parent = create(client, admin_headers, "/categories", {"name": "Home", "slug": "home"})
    create(client, admin_headers, "/categories", {"name": "Kitchen", "slug": "kitchen", "parent_id": parent["id"]})
    res = client.delete(f"/categories/{parent['id']}", headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Cannot delete category with subcategories"


def test_category_requires_admin(client, alice, admin_headers):
    assert client.post("/categories", json={"name": "X", "slug": "x"}, headers=alice["headers"]).status_code == 403
    assert client.post("/categories", json={"name": "X", "slug": "x"}).status_code == 401
    created = create(client, admin_headers, "/categories", {"name": "X", "slug": "x"})
    assert client.delete(f"/categories/{created['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/categories/{created['id']}").status_code == 404


# ----------------- 속성 -----------------
def test_attribute_values_are_unique_per_attribute(client, admin_headers):
    size = create(client, admin_headers, "/attributes", {"name": "Size"})
    length = create(client, admin_headers, "/attributes", {"name": "Length"})
    create(client, admin_headers, "/attributes", {"name": "Size"}, expected=409)

    create(client, admin_headers, "/attribute-values", {"value": "L", "attribute_id": size["id"]})
    create(client, admin_headers, "/attribute-values", {"value": "L", "attribute_id": length["id"]})
    create(client, admin_headers, "/attribute-values", {"value": "L", "attribute_id": size["id"]}, expected=409)
    create(client, admin_headers, "/attribute-values", {"value": "L", "attribute_id": 9999}, expected=404)

    values = client.get(f"/attribute-values/attribute/{size['id']}").json()["data"]
    assert [v["value"] for v in values] == ["L"]
    assert client.get("/attribute-values/attribute/9999").status_code == 404

    detail = client.get(f"/attributes/{size['id']}").json()["data"]
    assert [v["value"] for v in detail["values"]] == ["L"]


def test_attribute_value_update_and_delete(client, admin_headers):
    color = create(client, admin_headers, "/attributes", {"name": "Color"})
    red = create(client, admin_headers, "/attribute-values", {"value": "Red", "attribute_id": color["id"]})
    blue = create(client, admin_headers, "/attribute-values", {"value": "Blue", "attribute_id": color["id"]})

    res = client.patch(f"/attribute-values/{blue['id']}", json={"value": "Red"}, headers=admin_headers)
    assert res.status_code == 409
    res = client.patch(f"/attribute-values/{blue['id']}", json={"value": "Navy"}, headers=admin_headers)
    assert res.json()["data"]["value"] == "Navy"

    assert client.delete(f"/attribute-values/{red['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/attribute-values/{red['id']}").status_code == 404

    res = client.patch(f"/attributes/{color['id']}", json={"name": "Colour"}, headers=admin_headers)
    assert res.json()["data"]["name"] == "Colour"
    assert client.delete(f"/attributes/{color['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/attribute-values/{blue['id']}").status_code == 404


# ----------------- 상품 -----------------
def test_product_with_attributes(client, admin_headers, category):
    size = create(client, admin_headers, "/attributes", {"name": "Size"})
    small = create(client, admin_headers, "/attribute-values", {"value": "S", "attribute_id": size["id"]})
    body = {
        "name": "Hoodie",
        "slug": "hoodie",
        "category_id": category["id"],
        "images": [{"url": "https://cdn.example.com/hoodie.png"}],
        "variants": [
            {"price": "59.00", "stock": 3, "attributes": [{"attribute_id": size["id"], "value_id": small["id"]}]}
        ],
    }
    product = create(client, admin_headers, "/products", body)

    (only,) = product["variants"]
    assert only["sku"].startswith("SKU-")
    assert Decimal(only["price"]) == Decimal("59.00")
    assert only["attributes"][0]["attribute_value"]["value"] == "S"
    assert only["attributes"][0]["attribute_value"]["attribute"]["name"] == "Size"
    assert product["images"][0]["position"] == 0
    assert product["category"]["slug"] == "fashion"


def test_product_rejects_mismatched_attribute_value(client, admin_headers, category):
    size = create(client, admin_headers, "/attributes", {"name": "Size"})
    color = create(client, admin_headers, "/attributes", {"name": "Color"})
    red = create(client, admin_headers, "/attribute-values", {"value": "Red", "attribute_id": color["id"]})
    body = {
        "name": "Cap",
        "slug": "cap",
        "category_id": category["id"],
        "variants": [{"price": "9.00", "stock": 1, "attributes": [{"attribute_id": size["id"], "value_id": red["id"]}]}],
    }
    create(client, admin_headers, "/products", body, expected=404)
    assert client.get("/products").json()["data"] == []


def test_product_conflicts(client, admin_headers, category, product):
    base = {"name": "Other", "category_id": category["id"]}
    create(client, admin_headers, "/products", {**base, "slug": "cool-t-shirt"}, expected=409)
    create(
        client,
        admin_headers,
        "/products",
        {**base, "slug": "other", "variants": [{"sku": "TEE-M", "price": "1.00", "stock": 1}]},
        expected=409,
    )
    create(
        client,
        admin_headers,
        "/products",
        {
            **base,
            "slug": "other",
            "variants": [{"sku": "DUP", "price": "1.00", "stock": 1}, {"sku": "DUP", "price": "2.00", "stock": 1}],
        },
        expected=409,
    )
    create(client, admin_headers, "/products", {**base, "slug": "other", "category_id": 9999}, expected=404)


def test_product_validation(client, admin_headers, category):
    body = {"name": "Bad", "slug": "bad", "category_id": category["id"], "variants": [{"price": "-1", "stock": 1}]}
    create(client, admin_headers, "/products", body, expected=422)
    body["variants"] = [{"price": "1.00", "stock": -1}]
    create(client, admin_headers, "/products", body, expected=422)


def test_update_product_reconciles_variants(client, admin_headers, product):
    res = client.patch(
        f"/products/{product['id']}",
        json={
            "name": "Cooler T-Shirt",
            "variants": [
                {"sku": "TEE-M", "price": "31.00", "stock": 40},
                {"sku": "TEE-XL", "price": "33.00", "stock": 7},
            ],
        },
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert data["name"] == "Cooler T-Shirt"
    assert sorted(v["sku"] for v in data["variants"]) == ["TEE-M", "TEE-XL"]
    assert variant(data, "TEE-M")["id"] == variant(product, "TEE-M")["id"]
    assert variant(data, "TEE-M")["stock"] == 40


def test_ordered_variants_cannot_be_removed(client, admin_headers, alice, product):
    tee_l = variant(product, "TEE-L")
    res = client.post("/orders", json={"items": [{"variant_id": tee_l["id"], "quantity": 1}]}, headers=alice["headers"])
    assert res.status_code == 201

    res = client.patch(
        f"/products/{product['id']}",
        json={"variants": [{"sku": "TEE-M", "price": "29.99", "stock": 50}]},
        headers=admin_headers,
    )
    assert res.status_code == 409
    assert sorted(v["sku"] for v in client.get(f"/products/{product['id']}").json()["data"]["variants"]) == [
        "TEE-L",
        "TEE-M",
    ]
    assert client.delete(f"/products/{product['id']}", headers=admin_headers).status_code == 409


def test_delete_product(client, admin_headers, product):
    assert client.delete(f"/products/{product['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/products/{product['id']}").status_code == 404
    assert client.get("/products").json()["message"] == "No products found"


def test_upload_product_image(client, admin_headers, settings, product):
    res = client.post(
        f"/products/{product['id']}/images",
        files={"image": ("front.png", b"\x89PNG fake", "image/png")},
        data={"alt_text": "front"},
        headers=admin_headers,
    )
    assert res.status_code == 201, res.text
    image = res.json()["data"]
    assert image["alt_text"] == "front"
    assert image["url"].startswith("/static/images/")

    file_name = image["url"].rsplit("/", 1)[1]
    assert os.path.exists(os.path.join(settings.upload_dir, file_name))
    assert client.get(image["url"]).content == b"\x89PNG fake"

    listed = client.get(f"/products/{product['id']}").json()["data"]["images"]
    assert [i["id"] for i in listed] == [image["id"]]


def test_upload_rejects_other_file_types(client, admin_headers, settings, product):
    res = client.post(
        f"/products/{product['id']}/images",
        files={"image": ("notes.txt", b"hello", "text/plain")},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert os.listdir(settings.upload_dir) == []


def test_variant_images(client, admin_headers, category):
    body = {
        "name": "Sneaker",
        "slug": "sneaker",
        "category_id": category["id"],
        "images": [{"url": "https://cdn.example.com/sneaker.png"}],
        "variants": [
            {
                "sku": "SNK-RED",
                "price": "80.00",
                "stock": 2,
                "images": [{"url": "https://cdn.example.com/red-1.png"}, {"url": "https://cdn.example.com/red-2.png"}],
            }
        ],
    }
    product = create(client, admin_headers, "/products", body)

    assert [i["type"] for i in product["images"]] == ["PRODUCT"]
    red = variant(product, "SNK-RED")
    assert [(i["url"].rsplit("/", 1)[1], i["position"], i["type"]) for i in red["images"]] == [
        ("red-1.png", 0, "VARIANT"),
        ("red-2.png", 1, "VARIANT"),
    ]

    # images 를 생략하면 기존 옵션 이미지는 그대로
    res = client.patch(
        f"/products/{product['id']}", json={"variants": [{"sku": "SNK-RED", "price": "75.00"}]}, headers=admin_headers
    )
    assert len(variant(res.json()["data"], "SNK-RED")["images"]) == 2

    res = client.patch(
        f"/products/{product['id']}",
        json={"variants": [{"sku": "SNK-RED", "price": "75.00", "images": [{"url": "https://cdn.example.com/red-3.png"}]}]},
        headers=admin_headers,
    )
    images = variant(res.json()["data"], "SNK-RED")["images"]
    assert [i["url"].rsplit("/", 1)[1] for i in images] == ["red-3.png"]
    assert len(res.json()["data"]["images"]) == 1


def test_upload_variant_image(client, admin_headers, product):
    tee_l = variant(product, "TEE-L")
    res = client.post(
        f"/products/{product['id']}/images",
        files={"image": ("back.jpg", b"jpeg bytes", "image/jpeg")},
        data={"variant_id": str(tee_l["id"])},
        headers=admin_headers,
    )
    assert res.status_code == 201, res.text
    assert res.json()["data"]["type"] == "VARIANT"

    data = client.get(f"/products/{product['id']}").json()["data"]
    assert data["images"] == []
    assert [i["id"] for i in variant(data, "TEE-L")["images"]] == [res.json()["data"]["id"]]
    assert variant(data, "TEE-M")["images"] == []

    res = client.post(
        f"/products/{product['id']}/images",
        files={"image": ("back.jpg", b"jpeg bytes", "image/jpeg")},
        data={"variant_id": "9999"},
        headers=admin_headers,
    )
    assert res.status_code == 404


# ----------------- 경합 -----------------
def test_duplicate_slug_from_a_race_is_a_conflict(client, admin_headers, category, monkeypatch):
    # 사전 검사를 통과한 뒤 다른 요청이 먼저 커밋한 상황
    monkeypatch.setattr(catalog, "_slug_taken", lambda db, model, slug: False)

    res = client.post("/categories", json={"name": "Fashion 2", "slug": "fashion"}, headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Category with this slug already exists"

    create(client, admin_headers, "/products", {"name": "A", "slug": "dup", "category_id": category["id"]})
    res = client.post(
        "/products", json={"name": "B", "slug": "dup", "category_id": category["id"]}, headers=admin_headers
    )
    assert res.status_code == 409
    assert [p["name"] for p in client.get("/products").json()["data"]] == ["A"]


def test_stock_edit_keeps_orders_committed_after_read(client, db, alice, product):
    stale = catalog.get_product(db, product["id"])
    assert {v.sku: v.stock for v in stale.variants} == {"TEE-M": 50, "TEE-L": 5}

    res = client.post(
        "/orders", json={"items": [{"variant_id": variant(product, "TEE-M")["id"], "quantity": 3}]}, headers=alice["headers"]
    )
    assert res.status_code == 201

    # 가격만 바꾸면 동시에 커밋된 차감이 유지된다
    updated = catalog.update_product(
        db,
        stale.id,
        schemas.ProductUpdate(
            variants=[schemas.VariantIn(sku="TEE-M", price=Decimal("31.00")), schemas.VariantIn(sku="TEE-L", price=Decimal("10.00"))]
        ),
    )
    stocks = {v.sku: v.stock for v in updated.variants}
    assert stocks == {"TEE-M": 47, "TEE-L": 5}

    db.expire_all()
    assert db.get(models.ProductVariant, variant(product, "TEE-M")["id"]).price == Decimal("31.00")

    # 재고를 명시하면 그 값이 된다
    updated = catalog.update_product(
        db,
        stale.id,
        schemas.ProductUpdate(variants=[schemas.VariantIn(sku="TEE-M", price=Decimal("31.00"), stock=100), schemas.VariantIn(sku="TEE-L", price=Decimal("10.00"))]),
    )
    assert {v.sku: v.stock for v in updated.variants} == {"TEE-M": 100, "TEE-L": 5}
