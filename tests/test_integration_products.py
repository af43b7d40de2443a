from bson import ObjectId

from conftest import PNG_BYTES, bearer, create_product_via_api
from storefront.service.runtime import get_runtime


class TestCreateProduct:
    def test_admin_creates_product(self, client, admin_token):
        product = create_product_via_api(client, admin_token, name="Teapot", price=450)

        assert product["name"] == "Teapot"
        assert product["price"] == 450
        assert product["category"] == "classic"
        assert product["sell"] is True
        assert len(product["images"]) == 1
        assert product["images"][0] in get_runtime().uploads.uploader.stored

    def test_multiple_images_keep_order(self, client, admin_token):
        response = client.post(
            "/products",
            headers=bearer(admin_token),
            data={"name": "Set", "price": "99", "description": "stoneware", "category": "popular"},
            files=[
                ("images", ("front.png", PNG_BYTES, "image/png")),
                ("images", ("back.jpg", PNG_BYTES + b"x", "image/jpeg")),
            ],
        )

        assert response.status_code == 201
        images = response.json()["result"]["images"]
        assert images[0].endswith("/front.png")
        assert images[1].endswith("/back.jpg")

    def test_non_admin_forbidden(self, client, user_token):
        response = client.post(
            "/products",
            headers=bearer(user_token),
            data={"name": "Mug", "price": "10", "description": "stoneware", "category": "classic"},
            files=[("images", ("mug.png", PNG_BYTES, "image/png"))],
        )

        assert response.status_code == 403

    def test_missing_images(self, client, admin_token):
        response = client.post(
            "/products",
            headers=bearer(admin_token),
            data={"name": "Mug", "price": "10", "description": "stoneware", "category": "classic"},
        )

        assert response.status_code == 400

    def test_bad_image_type_rejects_whole_batch(self, client, admin_token):
        response = client.post(
            "/products",
            headers=bearer(admin_token),
            data={"name": "Mug", "price": "10", "description": "stoneware", "category": "classic"},
            files=[
                ("images", ("ok.png", PNG_BYTES, "image/png")),
                ("images", ("anim.gif", b"GIF89a", "image/gif")),
            ],
        )

        assert response.status_code == 400
        assert response.json()["message"] == "invalid file format"
        assert get_runtime().uploads.uploader.stored == {}

    def test_unknown_category(self, client, admin_token):
        response = client.post(
            "/products",
            headers=bearer(admin_token),
            data={"name": "Mug", "price": "10", "description": "stoneware", "category": "clearance"},
            files=[("images", ("mug.png", PNG_BYTES, "image/png"))],
        )

        assert response.status_code == 400

    def test_description_required(self, client, admin_token):
        response = client.post(
            "/products",
            headers=bearer(admin_token),
            data={"name": "Mug", "price": "10", "category": "classic"},
            files=[("images", ("mug.png", PNG_BYTES, "image/png"))],
        )

        assert response.status_code == 400
        assert response.json()["message"].startswith("description:")

    def test_negative_price(self, client, admin_token):
        response = client.post(
            "/products",
            headers=bearer(admin_token),
            data={"name": "Mug", "price": "-1", "description": "stoneware", "category": "classic"},
            files=[("images", ("mug.png", PNG_BYTES, "image/png"))],
        )

        assert response.status_code == 400


class TestListProducts:
    def test_public_listing_only_shows_items_for_sale(self, client, admin_token):
        create_product_via_api(client, admin_token, name="Visible")
        create_product_via_api(client, admin_token, name="Hidden", sell=False)

        response = client.get("/products")

        assert response.status_code == 200
        result = response.json()["result"]
        assert [p["name"] for p in result["data"]] == ["Visible"]
        assert result["total"] == 1

    def test_page_number_is_bounded(self, client):
        response = client.get(f"/products?page={10**20}")

        assert response.status_code == 400
        assert response.json()["message"].startswith("page:")

    def test_admin_listing_shows_everything(self, client, admin_token):
        create_product_via_api(client, admin_token, name="Visible")
        create_product_via_api(client, admin_token, name="Hidden", sell=False)

        response = client.get("/products/all", headers=bearer(admin_token))

        assert response.status_code == 200
        assert response.json()["result"]["total"] == 2

    def test_admin_listing_requires_admin(self, client, user_token):
        assert client.get("/products/all", headers=bearer(user_token)).status_code == 403

    def test_sort_search_and_all_pages(self, client, admin_token):
        for name, price in (("Red mug", 30), ("Blue mug", 10), ("Bowl", 20)):
            create_product_via_api(client, admin_token, name=name, price=price)

        response = client.get(
            "/products",
            params={"search": "MUG", "sortBy": "price", "sortOrder": 1, "itemsPerPage": -1},
        )

        names = [p["name"] for p in response.json()["result"]["data"]]
        assert names == ["Blue mug", "Red mug"]

    def test_bad_sort_order(self, client):
        response = client.get("/products", params={"sortOrder": 0})

        assert response.status_code == 400
        assert response.json()["message"] == "sortOrder must be 1 or -1"


class TestSingleProduct:
    def test_get_product(self, client, admin_token):
        created = create_product_via_api(client, admin_token)

        response = client.get(f"/products/{created['id']}")

        assert response.status_code == 200
        assert response.json()["result"]["id"] == created["id"]

    def test_get_unknown_product(self, client):
        response = client.get(f"/products/{ObjectId()}")

        assert response.status_code == 404
        assert response.json()["message"] == "product not found"

    def test_get_invalid_id(self, client):
        response = client.get("/products/123")

        assert response.status_code == 400
        assert response.json()["message"] == "invalid id"

    def test_update_fields_keeps_images(self, client, admin_token):
        created = create_product_via_api(client, admin_token)

        response = client.patch(
            f"/products/{created['id']}",
            headers=bearer(admin_token),
            data={"price": "75", "sell": "false"},
        )

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["price"] == 75
        assert result["sell"] is False
        assert result["name"] == created["name"]
        assert result["images"] == created["images"]

    def test_update_replaces_images(self, client, admin_token):
        created = create_product_via_api(client, admin_token)

        response = client.patch(
            f"/products/{created['id']}",
            headers=bearer(admin_token),
            files=[("images", ("new.png", PNG_BYTES + b"new", "image/png"))],
        )

        assert response.status_code == 200
        images = response.json()["result"]["images"]
        assert len(images) == 1
        assert images[0].endswith("/new.png")

    def test_update_unknown_product(self, client, admin_token):
        response = client.patch(
            f"/products/{ObjectId()}", headers=bearer(admin_token), data={"name": "Ghost"}
        )

        assert response.status_code == 404

    def test_delete_product(self, client, admin_token):
        created = create_product_via_api(client, admin_token)

        response = client.delete(f"/products/{created['id']}", headers=bearer(admin_token))

        assert response.status_code == 200
        assert response.json()["message"] == "product deleted"
        assert client.get(f"/products/{created['id']}").status_code == 404
        again = client.delete(f"/products/{created['id']}", headers=bearer(admin_token))
        assert again.status_code == 404
