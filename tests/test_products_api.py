import json
import os

import pytest
from bson import ObjectId

FIELDS = {
    "name": "Desk lamp",
    "description": "Warm light for late reading",
    "price": "25",
    "category": "home",
}


@pytest.fixture
def create(client):
    def create(headers, images=(), **fields):
        files = [("images", (f"image{i}.png", data, "image/png")) for i, data in enumerate(images)]
        res = client.post("/api/products", data={**FIELDS, **fields}, files=files or None, headers=headers)
        assert res.status_code == 201, res.text
        return res.json()
    return create


def file_exists(image_store, url):
    return os.path.exists(image_store.path_for(url))


# Create

def test_user_create_is_forced_to_draft(client, create, user, user_headers, image_store, png_bytes):
    product = create(user_headers, images=[png_bytes, png_bytes], status="active", rating="5", tags='["desk", "lamp"]')
    assert product["status"] == "draft"
    assert product["rating"] == 0
    assert product["tags"] == ["desk", "lamp"]
    assert product["originalPrice"] == 0
    assert product["createdBy"]["id"] == str(user["_id"])
    assert [img["isPrimary"] for img in product["images"]] == [True, False]
    for img in product["images"]:
        assert img["url"].startswith("/uploads/products/")
        assert img["thumbnail"] == "/uploads/products/thumb_" + os.path.basename(img["url"])
        assert file_exists(image_store, img["url"])


def test_admin_create_keeps_status(create, admin_headers):
    product = create(admin_headers, status="active", rating="4.5", reviewCount="12")
    assert product["status"] == "active"
    assert product["rating"] == 4.5
    assert product["reviewCount"] == 12


def test_uploaded_images_are_served(client, create, user_headers, png_bytes):
    product = create(user_headers, images=[png_bytes])
    res = client.get(product["images"][0]["url"])
    assert res.status_code == 200
    assert res.content[:4] == b"RIFF"


def test_create_rejects_original_price_below_price(client, user_headers):
    res = client.post("/api/products", data={**FIELDS, "price": "10", "originalPrice": "5"}, headers=user_headers)
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "Validation failed"
    assert [d["field"] for d in body["details"]] == ["originalPrice"]


def test_create_rejects_too_many_images(client, user_headers, image_store, png_bytes):
    files = [("images", (f"{i}.png", png_bytes, "image/png")) for i in range(11)]
    res = client.post("/api/products", data=FIELDS, files=files, headers=user_headers)
    assert res.status_code == 400
    assert "Maximum 10 images allowed" in [d["message"] for d in res.json()["details"]]
    assert os.listdir(image_store.directory) == []


def test_create_rejects_non_image_uploads(client, user_headers):
    files = [("images", ("notes.txt", b"hello", "text/plain"))]
    res = client.post("/api/products", data=FIELDS, files=files, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["details"] == [{"field": "images", "message": "Only image files are allowed"}]


def test_undecodable_image_is_dropped(client, create, user_headers, png_bytes):
    files = [png_bytes, b"not really a png"]
    product = create(user_headers, images=files)
    assert len(product["images"]) == 1
    assert product["images"][0]["isPrimary"]


def test_duplicate_sku(client, create, user_headers, admin_headers):
    create(user_headers, sku="LAMP-1")
    res = client.post("/api/products", data={**FIELDS, "sku": "LAMP-1"}, headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["error"] == "SKU already exists"


def test_create_requires_token(client):
    res = client.post("/api/products", data=FIELDS)
    assert res.status_code == 401


# Read

def test_list_is_scoped_and_paginated(client, create, user_headers, admin_headers, png_bytes):
    for i in range(3):
        create(user_headers, name=f"User item {i}", images=[png_bytes] if i == 0 else ())
    create(admin_headers, name="Admin item")

    res = client.get("/api/products", params={"limit": 2}, headers=user_headers)
    body = res.json()
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert [p["name"] for p in body["products"]] == ["User item 2", "User item 1"]

    res = client.get("/api/products", params={"sortBy": "name", "sortOrder": "asc", "limit": 10}, headers=user_headers)
    first = res.json()["products"][0]
    assert first["name"] == "User item 0"
    assert first["image"].startswith("/uploads/products/thumb_")
    assert "images" not in first

    res = client.get("/api/products", headers=admin_headers)
    assert res.json()["pagination"]["total"] == 4


def test_admin_can_filter_by_creator_and_search(client, create, user, user_headers, admin_headers):
    create(user_headers, name="Blue kettle", tags='["kitchen"]')
    create(user_headers, name="Red mug")
    create(admin_headers, name="Blue scarf", category="clothing")

    res = client.get("/api/products", params={"createdBy": str(user["_id"]), "search": "blue"}, headers=admin_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Blue kettle"]

    res = client.get("/api/products", params={"search": "KITCHEN"}, headers=admin_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Blue kettle"]

    res = client.get("/api/products", params={"category": "clothing"}, headers=admin_headers)
    assert [p["name"] for p in res.json()["products"]] == ["Blue scarf"]


def test_list_query_validation(client, user_headers):
    assert client.get("/api/products", params={"limit": 101}, headers=user_headers).status_code == 400
    assert client.get("/api/products", params={"page": 0}, headers=user_headers).status_code == 400


def test_get_product(client, create, user_headers, admin_headers, other_user, headers_for):
    product = create(user_headers)
    assert client.get(f"/api/products/{product['id']}", headers=user_headers).json()["id"] == product["id"]
    assert client.get(f"/api/products/{product['id']}", headers=admin_headers).status_code == 200

    res = client.get(f"/api/products/{product['id']}", headers=headers_for(other_user))
    assert res.status_code == 403
    assert res.json()["error"] == "Access denied"

    res = client.get("/api/products/not-an-id", headers=user_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid product ID"

    res = client.get(f"/api/products/{ObjectId()}", headers=user_headers)
    assert res.status_code == 404


# Update

def test_user_updates_own_draft(client, create, user_headers):
    product = create(user_headers, sku="OLD")
    res = client.put(f"/api/products/{product['id']}", data={"name": "Renamed", "status": "active", "stock": "7"}, headers=user_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["name"] == "Renamed"
    assert body["stock"] == 7
    assert body["status"] == "draft"
    assert body["sku"] == "OLD"
    assert body["updatedAt"] >= product["updatedAt"]


def test_user_cannot_update_published_or_foreign_products(client, create, user_headers, admin_headers, other_user, headers_for):
    product = create(user_headers)
    url = f"/api/products/{product['id']}"

    res = client.put(url, data={"name": "Mine"}, headers=headers_for(other_user))
    assert res.status_code == 403
    assert res.json()["error"] == "Access denied - not your product"

    assert client.put(url, data={"status": "active"}, headers=admin_headers).json()["status"] == "active"
    res = client.put(url, data={"name": "Changed"}, headers=user_headers)
    assert res.status_code == 403
    assert res.json()["error"] == "Access denied - can only update draft products"


def test_update_checks_price_pair_against_stored_product(client, create, user_headers):
    product = create(user_headers, price="10", originalPrice="20")
    url = f"/api/products/{product['id']}"
    res = client.put(url, data={"price": "30"}, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["details"][0]["field"] == "originalPrice"
    assert client.put(url, data={"price": "15"}, headers=user_headers).status_code == 200


def test_update_sku_conflict(client, create, user_headers):
    create(user_headers, sku="TAKEN")
    product = create(user_headers, sku="MINE")
    res = client.put(f"/api/products/{product['id']}", data={"sku": "TAKEN"}, headers=user_headers)
    assert res.status_code == 409
    res = client.put(f"/api/products/{product['id']}", data={"sku": "MINE"}, headers=user_headers)
    assert res.status_code == 200


def test_existing_images_are_authoritative(client, create, user_headers, image_store, make_png):
    product = create(user_headers, images=[make_png(color=(1, 1, 1)), make_png(color=(2, 2, 2))])
    first, second = product["images"]

    res = client.put(
        f"/api/products/{product['id']}",
        data={"existingImages": json.dumps([second["url"]])},
        headers=user_headers,
    )
    assert res.status_code == 200
    images = res.json()["images"]
    assert [img["url"] for img in images] == [second["url"]]
    assert images[0]["isPrimary"]
    assert images[0]["size"] == second["size"]
    assert not file_exists(image_store, first["url"])
    assert file_exists(image_store, second["url"])


def test_existing_images_with_new_upload_and_foreign_urls(client, create, user_headers, image_store, make_png):
    product = create(user_headers, images=[make_png(color=(1, 1, 1))])
    kept = product["images"][0]
    res = client.put(
        f"/api/products/{product['id']}",
        data={"existingImages": json.dumps([{"url": "https://cdn.example.com/x.png"}, {"url": kept["url"]}])},
        files=[("images", ("new.png", make_png(color=(3, 3, 3)), "image/png"))],
        headers=user_headers,
    )
    images = res.json()["images"]
    assert len(images) == 2
    assert images[0]["url"] == kept["url"]
    assert [img["isPrimary"] for img in images] == [True, False]
    assert file_exists(image_store, images[1]["url"])


def test_new_uploads_append_when_existing_images_omitted(client, create, user_headers, make_png):
    product = create(user_headers, images=[make_png(color=(1, 1, 1))])
    res = client.put(
        f"/api/products/{product['id']}",
        files=[("images", ("more.png", make_png(color=(9, 9, 9)), "image/png"))],
        headers=user_headers,
    )
    images = res.json()["images"]
    assert len(images) == 2
    assert images[0]["url"] == product["images"][0]["url"]


def test_empty_existing_images_removes_all(client, create, user_headers, image_store, png_bytes):
    product = create(user_headers, images=[png_bytes])
    res = client.put(f"/api/products/{product['id']}", data={"existingImages": "[]"}, headers=user_headers)
    assert res.json()["images"] == []
    assert not file_exists(image_store, product["images"][0]["url"])


def test_cannot_attach_images_of_another_product(client, create, user_headers, other_user, headers_for, image_store, png_bytes):
    victim = create(headers_for(other_user), images=[png_bytes])
    victim_url = victim["images"][0]["url"]
    own = create(user_headers)

    res = client.put(
        f"/api/products/{own['id']}",
        data={"existingImages": json.dumps([victim_url])},
        headers=user_headers,
    )
    assert res.status_code == 200
    assert res.json()["images"] == []

    assert client.delete(f"/api/products/{own['id']}", headers=user_headers).status_code == 200
    assert file_exists(image_store, victim_url)
    assert os.path.exists(os.path.join(image_store.directory, "thumb_" + os.path.basename(victim_url)))


def test_user_admin_fields_are_ignored_not_rejected(client, create, user_headers):
    product = create(user_headers, status="bogus", rating="9")
    assert product["status"] == "draft"
    assert product["rating"] == 0

    res = client.put(f"/api/products/{product['id']}", data={"status": "approved", "reviewCount": "-3", "stock": "2"}, headers=user_headers)
    assert res.status_code == 200
    assert res.json()["stock"] == 2
    assert res.json()["reviewCount"] == 0


def test_malformed_existing_images(client, create, user_headers):
    product = create(user_headers)
    res = client.put(f"/api/products/{product['id']}", data={"existingImages": "{broken"}, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["details"][0]["field"] == "existingImages"


def test_update_image_count_includes_retained(client, create, user_headers, png_bytes):
    product = create(user_headers, images=[png_bytes] * 10)
    res = client.put(
        f"/api/products/{product['id']}",
        files=[("images", ("extra.png", png_bytes, "image/png"))],
        headers=user_headers,
    )
    assert res.status_code == 400
    assert "Maximum 10 images allowed" in [d["message"] for d in res.json()["details"]]


# Delete

def test_delete_removes_product_and_files(client, create, user_headers, image_store, png_bytes):
    product = create(user_headers, images=[png_bytes])
    res = client.delete(f"/api/products/{product['id']}", headers=user_headers)
    assert res.status_code == 200
    assert res.json() == {"message": "Product deleted successfully"}
    assert client.get(f"/api/products/{product['id']}", headers=user_headers).status_code == 404
    assert os.listdir(image_store.directory) == []


def test_user_cannot_delete_published_product(client, create, user_headers, admin_headers):
    product = create(user_headers)
    client.put(f"/api/products/{product['id']}", data={"status": "active"}, headers=admin_headers)
    res = client.delete(f"/api/products/{product['id']}", headers=user_headers)
    assert res.status_code == 403
    assert res.json()["error"] == "Access denied - can only delete draft products"


def test_bulk_delete_requires_a_selection(client, user_headers):
    res = client.post("/api/products/bulk-delete", json={}, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Either ids array or filters object is required"

    res = client.post("/api/products/bulk-delete", json={"ids": [str(ObjectId())], "filters": {}}, headers=user_headers)
    assert res.status_code == 400

    res = client.post("/api/products/bulk-delete", json={"ids": ["nope"]}, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Some product IDs are invalid"


def test_user_bulk_delete_only_touches_own_drafts(client, create, user_headers, admin_headers, image_store, png_bytes):
    draft = create(user_headers, images=[png_bytes])
    published = create(user_headers)
    client.put(f"/api/products/{published['id']}", data={"status": "active"}, headers=admin_headers)
    foreign = create(admin_headers)

    res = client.post(
        "/api/products/bulk-delete",
        json={"ids": [draft["id"], published["id"], foreign["id"]]},
        headers=user_headers,
    )
    assert res.json() == {"message": "1 products deleted successfully", "deletedCount": 1}
    assert not file_exists(image_store, draft["images"][0]["url"])
    assert client.get("/api/products", headers=admin_headers).json()["pagination"]["total"] == 2


def test_admin_bulk_delete_by_filters(client, create, user_headers, admin_headers):
    create(user_headers, category="books")
    create(user_headers, category="books")
    create(admin_headers, category="toys")

    res = client.post("/api/products/bulk-delete", json={"filters": {"category": "books"}}, headers=admin_headers)
    assert res.json()["deletedCount"] == 2
    remaining = client.get("/api/products", headers=admin_headers).json()["products"]
    assert [p["category"] for p in remaining] == ["toys"]


# Uploaders

def test_uploaders(client, create, user_headers, admin_headers):
    create(user_headers)
    create(admin_headers)
    res = client.get("/api/products/uploaders", headers=user_headers)
    assert res.status_code == 403
    assert res.json()["error"] == "Forbidden"

    body = client.get("/api/products/uploaders", headers=admin_headers).json()
    assert body["total"] == 2
    assert [u["name"] for u in body["uploaders"]] == ["Ada Admin", "Uma User"]


# Export

def test_download_pdf(client, create, user_headers, admin_headers, png_bytes):
    mine = create(user_headers, images=[png_bytes])
    foreign = create(admin_headers)

    res = client.post("/api/products/download-pdf", json={"productIds": [mine["id"]]}, headers=user_headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "application/pdf"
    assert res.headers["content-disposition"].startswith('attachment; filename="products-')
    assert res.content.startswith(b"%PDF")

    res = client.post("/api/products/download-pdf", json={"productIds": [foreign["id"]]}, headers=user_headers)
    assert res.status_code == 404
    assert res.json()["error"] == "No products found"


def test_download_pdf_input_errors(client, user_headers):
    res = client.post("/api/products/download-pdf", json={}, headers=user_headers)
    assert res.json()["error"] == "Product IDs are required"
    res = client.post("/api/products/download-pdf", json={"productIds": ["bad", 3]}, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "No valid product IDs provided"


def test_download_all_pdf(client, create, user_headers):
    res = client.post("/api/products/download-all-pdf", json={"filters": {}}, headers=user_headers)
    assert res.status_code == 404

    create(user_headers)
    res = client.post("/api/products/download-all-pdf", json={"filters": {"category": "home"}}, headers=user_headers)
    assert res.status_code == 200
    assert 'filename="all-products-' in res.headers["content-disposition"]


def test_export_csv(client, create, user_headers):
    create(user_headers, name="Lamp, large", sku="L-1", tags='["a", "b"]')
    res = client.post("/api/products/export-csv", json={}, headers=user_headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    lines = res.text.splitlines()
    assert lines[0].startswith("ID,Name,Description,Price")
    assert '"Lamp, large"' in lines[1]
    assert '"a, b"' in lines[1]


# Image cleanup

def test_image_cleanup_endpoints(client, app, user_headers, admin_headers, image_store, png_bytes):
    asset = image_store.save(png_bytes)
    app.state.image_cleanup.collection.insert_one({"url": asset.url, "attempts": 1})

    assert client.get("/api/products/image-cleanup", headers=user_headers).status_code == 403
    body = client.get("/api/products/image-cleanup", headers=admin_headers).json()
    assert body["total"] == 1
    assert body["pending"][0]["url"] == asset.url

    res = client.post("/api/products/image-cleanup/retry", headers=admin_headers)
    assert res.json() == {"cleared": 1, "remaining": 0}
    assert not file_exists(image_store, asset.url)


def test_health_endpoints(client):
    assert client.get("/").json() == {"message": "ABC Store API"}
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert body["database_name"] == "abc_store_test"
