from datetime import datetime, timedelta, timezone

from bson import ObjectId


def test_create_menu_item_is_owned_by_token_seller(client, auth, seller, menu_item):
    assert menu_item["seller_email"] == seller["email"]
    assert menu_item["restaurant_id"] == seller["restaurant_id"]
    assert menu_item["average_rating"] == 0
    assert menu_item["review_count"] == 0

    res = client.post(
        "/menu",
        json={"name": "Borhani", "price": 60, "category": "Drinks", "seller_email": "other@x.com"},
        headers=auth(seller["email"]),
    )
    assert res.status_code == 403


def test_only_sellers_with_verified_restaurant_add_items(client, auth, make_user, db):
    make_user("plain@x.com")
    body = {"name": "Halim", "price": 120, "category": "Soup"}
    assert client.post("/menu", json=body, headers=auth("plain@x.com")).status_code == 403

    make_user("lapsed@x.com", role="seller")
    db["restaurant"].insert_one({"owner_email": "lapsed@x.com", "restaurant_name": "Closed", "location": "X", "status": "pending"})
    res = client.post("/menu", json=body, headers=auth("lapsed@x.com"))
    assert res.status_code == 403
    assert res.json()["message"] == "Seller has no verified restaurant"


def test_seller_cannot_delete_another_sellers_item(client, auth, make_seller, menu_item):
    other = make_seller("rival@x.com", restaurant_name="Rival Kitchen")
    res = client.delete(f"/menu/{menu_item['id']}", headers=auth(other["email"]))
    assert res.status_code == 403
    assert client.get(f"/menu/{menu_item['id']}").status_code == 200


def test_owner_deletes_item(client, auth, seller, menu_item):
    assert client.delete(f"/menu/{menu_item['id']}", headers=auth(seller["email"])).json() == {"deleted": True}
    assert client.get(f"/menu/{menu_item['id']}").status_code == 404
    assert client.delete(f"/menu/{menu_item['id']}", headers=auth(seller["email"])).status_code == 404


def test_patch_cannot_touch_rating_fields(client, auth, seller, make_seller, menu_item):
    res = client.patch(
        f"/menu/{menu_item['id']}",
        json={"price": 380, "average_rating": 5, "review_count": 100},
        headers=auth(seller["email"]),
    )
    assert res.status_code == 200
    body = res.json()
    assert body["price"] == 380
    assert body["average_rating"] == 0
    assert body["review_count"] == 0

    other = make_seller("rival@x.com")
    assert client.patch(f"/menu/{menu_item['id']}", json={"price": 1}, headers=auth(other["email"])).status_code == 403
    assert client.patch(f"/menu/{menu_item['id']}", json={}, headers=auth(seller["email"])).status_code == 400


def test_seller_menu_trusts_token_email(client, auth, seller, make_seller, menu_item):
    other = make_seller("rival@x.com")
    res = client.get("/seller-menu", params={"email": seller["email"]}, headers=auth(seller["email"]))
    assert [i["id"] for i in res.json()] == [menu_item["id"]]

    res = client.get("/seller-menu", params={"email": seller["email"]}, headers=auth(other["email"]))
    assert res.status_code == 403


def seed_foods(db, restaurant_id):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    foods = [
        ("Beef Tehari", 220, "Rice", 4.5),
        ("Chicken Roast", 260, "Meat", 4.0),
        ("Morog Polao", 300, "Rice", 3.5),
        ("Shorshe Ilish", 450, "Fish", 5.0),
        ("Plain Rice", 40, "Rice", 2.0),
        ("Mishti Doi", 90, "Dessert", 4.8),
    ]
    for i, (name, price, category, rating) in enumerate(foods):
        db["menuitem"].insert_one({
            "name": name,
            "price": price,
            "category": category,
            "seller_email": "chef@tastio.com",
            "restaurant_id": restaurant_id,
            "average_rating": rating,
            "review_count": 1,
            "created_at": base + timedelta(days=i),
        })


def test_all_foods_filters_and_sorts(client, db, seller):
    seed_foods(db, seller["restaurant_id"])

    res = client.get("/all-foods", params={"category": "Rice", "sort": "price-asc"}).json()
    assert res["total"] == 3
    assert [f["name"] for f in res["foods"]] == ["Plain Rice", "Beef Tehari", "Morog Polao"]

    res = client.get("/all-foods", params={"minPrice": 100, "maxPrice": 300, "sort": "price-desc"}).json()
    assert [f["price"] for f in res["foods"]] == [300, 260, 220]

    res = client.get("/all-foods", params={"search": "ROAST"}).json()
    assert [f["name"] for f in res["foods"]] == ["Chicken Roast"]

    res = client.get("/all-foods", params={"sort": "rating-desc", "limit": 2}).json()
    assert [f["name"] for f in res["foods"]] == ["Shorshe Ilish", "Mishti Doi"]
    assert res["total"] == 6

    res = client.get("/all-foods").json()
    assert res["foods"][0]["name"] == "Mishti Doi"


def test_all_foods_pages_cover_everything_once(client, db, seller):
    seed_foods(db, seller["restaurant_id"])
    seen = []
    page = 1
    while True:
        res = client.get("/all-foods", params={"page": page, "limit": 4}).json()
        if not res["foods"]:
            break
        seen += [f["id"] for f in res["foods"]]
        page += 1
    assert len(seen) == len(set(seen)) == res["total"] == 6


def test_all_foods_rejects_bad_params(client):
    res = client.get("/all-foods", params={"sort": "cheapest"})
    assert res.status_code == 422
    assert res.json()["message"] == "invalid request"
    assert client.get("/all-foods", params={"page": 0}).status_code == 422


def test_get_menu_item_malformed_id(client):
    assert client.get("/menu/xyz").status_code == 404
    assert client.get(f"/menu/{ObjectId()}").status_code == 404
