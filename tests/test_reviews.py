import pytest


def post_review(client, user, product, rating=5, comment="Lovely texture, absorbs fast.", **extra):
    return client.post(
        "/api/reviews",
        json={"product_id": str(product["_id"]), "rating": rating, "comment": comment, **extra},
        headers=user.headers,
    )


def test_review_updates_product_rating(client, customer, make_user, product, mongo_db):
    assert post_review(client, customer, product, rating=5, title="Great").status_code == 201
    assert post_review(client, make_user(), product, rating=2).status_code == 201

    stored = mongo_db.products.find_one({"_id": product["_id"]})
    assert stored["average_rating"] == 3.5
    assert stored["review_count"] == 2


def test_one_review_per_product(client, customer, product):
    post_review(client, customer, product)
    assert post_review(client, customer, product).status_code == 409


@pytest.mark.parametrize(
    "rating,comment",
    [(0, "Perfectly fine comment"), (6, "Perfectly fine comment"), (4, "too short")],
)
def test_review_validation(client, customer, product, rating, comment):
    assert post_review(client, customer, product, rating=rating, comment=comment).status_code == 400


def test_verified_purchase_flag(client, customer, product, mongo_db):
    mongo_db.orders.insert_one(
        {
            "order_number": "ZS-PAID",
            "user_id": customer.id,
            "status": "PROCESSING",
            "items": [{"product_id": product["_id"], "quantity": 1}],
        }
    )
    review = post_review(client, customer, product).get_json()["review"]
    assert review["verified_purchase"] is True
    assert review["user_name"] == "Casey Customer"


class TestListing:
    def test_sort_filter_and_distribution(self, client, make_user, product):
        for rating in (5, 3, 5, 1):
            post_review(client, make_user(), product, rating=rating)

        response = client.get(f"/api/reviews?product_id={product['_id']}&sort=highest_rating")
        assert response.status_code == 200
        body = response.get_json()
        assert [review["rating"] for review in body["reviews"]] == [5, 5, 3, 1]
        assert body["summary"]["distribution"] == {"1": 1, "2": 0, "3": 1, "4": 0, "5": 2}
        assert body["summary"]["review_count"] == 4
        assert body["summary"]["average_rating"] == 3.5

        five_star = client.get(f"/api/reviews?product_id={product['_id']}&rating=5").get_json()
        assert five_star["pagination"]["total"] == 2

    def test_product_id_required(self, client):
        assert client.get("/api/reviews").status_code == 400

    def test_unknown_sort(self, client, product):
        response = client.get(f"/api/reviews?product_id={product['_id']}&sort=random")
        assert response.status_code == 400


def test_delete_review_permissions(client, customer, make_user, admin, product, mongo_db):
    review_id = post_review(client, customer, product).get_json()["review"]["id"]
    stranger = make_user()

    assert client.delete(f"/api/reviews/{review_id}", headers=stranger.headers).status_code == 403
    assert client.delete(f"/api/reviews/{review_id}", headers=admin.headers).status_code == 200
    assert mongo_db.products.find_one({"_id": product["_id"]})["review_count"] == 0


def test_helpful_votes(client, customer, make_user, product):
    review_id = post_review(client, customer, product).get_json()["review"]["id"]
    voter = make_user()

    own = client.post(f"/api/reviews/{review_id}/helpful", headers=customer.headers)
    assert own.status_code == 400

    first = client.post(f"/api/reviews/{review_id}/helpful", headers=voter.headers)
    assert first.status_code == 200
    assert first.get_json()["helpful_count"] == 1

    again = client.post(f"/api/reviews/{review_id}/helpful", headers=voter.headers)
    assert again.status_code == 409
