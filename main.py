import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from aggregates import (
    REVIEW_SORTS,
    apply_rating,
    attach_restaurants,
    category_counts_pipeline,
    category_histogram_pipeline,
    contains,
    leaderboard_pipeline,
    remove_rating,
    replace_rating,
    review_search_query,
)
from auth import TokenVerifier, ensure_same_email, get_token_email, is_admin, require_role, same_email
from config import Settings
from database import connect, ensure_indexes, get_db, get_or_404, now, sanitize, sanitize_all, to_obj_id
from schemas import (
    Category as CategorySchema,
    Email,
    Favourite as FavouriteSchema,
    MenuItem as MenuItemSchema,
    Post as PostSchema,
    Restaurant as RestaurantSchema,
    Review as ReviewSchema,
    Role,
    User as UserSchema,
    UserStatus,
    normalize_email,
)

logger = logging.getLogger("tastio")

router = APIRouter()

# Request models
class UserIn(BaseModel):
    email: Email
    name: Optional[str] = None
    photo: Optional[str] = None

class UserUpdate(BaseModel):
    role: Optional[Role] = None
    status: Optional[UserStatus] = None

class RestaurantIn(BaseModel):
    owner_email: Email
    restaurant_name: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    description: Optional[str] = None
    photo: Optional[str] = None

class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)

class MenuIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    category: str = Field(..., min_length=1)
    seller_email: Optional[Email] = None

class MenuUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)

class ReviewIn(BaseModel):
    reviewer_email: Email
    reviewer_name: Optional[str] = None
    reviewer_photo: Optional[str] = None
    food_name: Optional[str] = None
    food_image: Optional[str] = None
    menu_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    review_text: str = ""

class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    review_text: Optional[str] = None

class FavouriteIn(BaseModel):
    email: Email
    review_id: str

class PostIn(BaseModel):
    caption: str = Field(..., min_length=1)
    image: Optional[str] = None
    user_name: Optional[str] = None
    user_photo: Optional[str] = None

class PostUpdate(BaseModel):
    caption: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None

class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    image: Optional[str] = None

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None


FOOD_SORTS = {
    "newest": [("created_at", DESCENDING), ("_id", DESCENDING)],
    "price-asc": [("price", ASCENDING), ("_id", ASCENDING)],
    "price-desc": [("price", DESCENDING), ("_id", DESCENDING)],
    "rating-desc": [("average_rating", DESCENDING), ("_id", DESCENDING)],
}

# Routes
@router.get("/")
def root():
    return {"message": "Tastio server is running"}

@router.get("/test")
def database_status(db: Database = Depends(get_db)):
    try:
        db.command("ping")
        collections = db.list_collection_names()
    except PyMongoError:
        logger.exception("database ping failed")
        return {"backend": "ok", "database": "unreachable"}
    return {"backend": "ok", "database": "ok", "collections": sorted(collections)}

# Users
@router.post("/users")
def create_user(payload: UserIn, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        return {"message": "user already exists"}
    user_doc = UserSchema(email=payload.email, name=payload.name, photo=payload.photo, created_at=now()).model_dump()
    try:
        res = db["user"].insert_one(user_doc)
    except DuplicateKeyError:
        return {"message": "user already exists"}
    user_doc["_id"] = res.inserted_id
    return sanitize(user_doc)

@router.get("/users/{email}/role")
def get_user_role(email: str, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": normalize_email(email)}, {"role": 1, "status": 1})
    if not user:
        raise HTTPException(404, "User not found")
    return {"role": user.get("role", "user"), "status": user.get("status", "active")}

@router.get("/users")
def list_users(admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return sanitize_all(db["user"].find({}).sort("created_at", DESCENDING))

@router.patch("/users/{email}")
def admin_update_user(email: str, payload: UserUpdate, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    email = normalize_email(email)
    set_fields = payload.model_dump(exclude_none=True)
    if not set_fields:
        raise HTTPException(400, "No valid fields")
    res = db["user"].update_one({"email": email}, {"$set": set_fields})
    if res.matched_count == 0:
        raise HTTPException(404, "User not found")
    logger.info("%s updated user %s: %s", admin["email"], email, set_fields)
    return sanitize(db["user"].find_one({"email": email}))

# Restaurants
@router.get("/restaurants")
def list_restaurants(status: Optional[str] = None, search: Optional[str] = None, db: Database = Depends(get_db)):
    q: Dict = {}
    if status:
        q["status"] = status
    if search:
        q["$or"] = [{"restaurant_name": contains(search)}, {"location": contains(search)}]
    return sanitize_all(db["restaurant"].find(q).sort("created_at", DESCENDING))

@router.get("/my-restaurant")
def my_restaurant(email: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    ensure_same_email(token_email, email)
    restaurant = db["restaurant"].find_one({"owner_email": token_email})
    if not restaurant:
        raise HTTPException(404, "Restaurant not found")
    return sanitize(restaurant)

@router.get("/restaurants/{restaurant_id}")
def get_restaurant(restaurant_id: str, db: Database = Depends(get_db)):
    return sanitize(get_or_404(db["restaurant"], restaurant_id, "Restaurant"))

@router.post("/restaurants")
def apply_restaurant(payload: RestaurantIn, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    ensure_same_email(token_email, payload.owner_email)
    existing = db["restaurant"].find_one({"owner_email": payload.owner_email})
    if existing is None:
        doc = RestaurantSchema(**payload.model_dump(), created_at=now(), updated_at=now()).model_dump(exclude_none=True)
        try:
            res = db["restaurant"].insert_one(doc)
        except DuplicateKeyError:
            raise HTTPException(409, "application already exists")
        doc["_id"] = res.inserted_id
        logger.info("restaurant application from %s received", payload.owner_email)
        return sanitize(doc)

    if existing.get("status") != "rejected":
        raise HTTPException(409, "application already exists")
    # a rejected application is resubmitted in place
    res = db["restaurant"].update_one(
        {"_id": existing["_id"], "status": "rejected"},
        {"$set": {**payload.model_dump(), "status": "pending", "updated_at": now()}, "$unset": {"rejection_reason": ""}},
    )
    if res.matched_count == 0:
        raise HTTPException(409, "application already exists")
    logger.info("restaurant application from %s resubmitted", payload.owner_email)
    return sanitize(db["restaurant"].find_one({"_id": existing["_id"]}))

@router.patch("/restaurants/verify/{restaurant_id}")
def verify_restaurant(restaurant_id: str, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    restaurant = get_or_404(db["restaurant"], restaurant_id, "Restaurant")
    res = db["restaurant"].update_one(
        {"_id": restaurant["_id"], "status": {"$in": ["pending", "verified"]}},
        {"$set": {"status": "verified", "updated_at": now()}},
    )
    if res.matched_count == 0:
        raise HTTPException(409, "Only pending applications can be verified")
    # Not transactional: if the promotion fails the restaurant stays verified and
    # calling verify again completes it.
    try:
        db["user"].update_one(
            {"email": restaurant["owner_email"], "role": {"$ne": "admin"}},
            {"$set": {"role": "seller"}},
        )
    except PyMongoError:
        logger.exception("restaurant %s verified but promoting %s to seller failed", restaurant_id, restaurant["owner_email"])
        raise
    logger.info("%s verified restaurant %s owned by %s", admin["email"], restaurant_id, restaurant["owner_email"])
    return sanitize(db["restaurant"].find_one({"_id": restaurant["_id"]}))

@router.patch("/restaurants/reject/{restaurant_id}")
def reject_restaurant(restaurant_id: str, payload: RejectRequest, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    restaurant = get_or_404(db["restaurant"], restaurant_id, "Restaurant")
    res = db["restaurant"].update_one(
        {"_id": restaurant["_id"], "status": "pending"},
        {"$set": {"status": "rejected", "rejection_reason": payload.reason, "updated_at": now()}},
    )
    if res.matched_count == 0:
        raise HTTPException(409, "Only pending applications can be rejected")
    logger.info("%s rejected restaurant %s: %s", admin["email"], restaurant_id, payload.reason)
    return sanitize(db["restaurant"].find_one({"_id": restaurant["_id"]}))

# Menu
@router.get("/all-foods")
def all_foods(
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    sort: Literal["newest", "price-asc", "price-desc", "rating-desc"] = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    q: Dict = {}
    if search:
        q["$or"] = [{"name": contains(search)}, {"description": contains(search)}]
    if category:
        q["category"] = category
    price: Dict = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        q["price"] = price
    total = db["menuitem"].count_documents(q)
    foods = db["menuitem"].find(q).sort(FOOD_SORTS[sort]).skip((page - 1) * limit).limit(limit)
    return {"foods": sanitize_all(foods), "total": total, "page": page, "limit": limit}

@router.get("/menu/{menu_id}")
def get_menu_item(menu_id: str, db: Database = Depends(get_db)):
    return sanitize(get_or_404(db["menuitem"], menu_id, "Menu item"))

@router.get("/seller-menu")
def seller_menu(email: str, seller=Depends(require_role("seller")), db: Database = Depends(get_db)):
    ensure_same_email(seller["email"], email)
    return sanitize_all(db["menuitem"].find({"seller_email": seller["email"]}).sort("created_at", DESCENDING))

@router.post("/menu")
def create_menu_item(payload: MenuIn, seller=Depends(require_role("seller")), db: Database = Depends(get_db)):
    if payload.seller_email is not None:
        ensure_same_email(seller["email"], payload.seller_email)
    restaurant = db["restaurant"].find_one({"owner_email": seller["email"], "status": "verified"})
    if not restaurant:
        raise HTTPException(403, "Seller has no verified restaurant")
    doc = MenuItemSchema(
        **payload.model_dump(exclude={"seller_email"}),
        seller_email=seller["email"],
        restaurant_id=str(restaurant["_id"]),
        created_at=now(),
    ).model_dump()
    res = db["menuitem"].insert_one(doc)
    doc["_id"] = res.inserted_id
    return sanitize(doc)

@router.patch("/menu/{menu_id}")
def update_menu_item(menu_id: str, payload: MenuUpdate, seller=Depends(require_role("seller")), db: Database = Depends(get_db)):
    item = get_or_404(db["menuitem"], menu_id, "Menu item")
    if not same_email(item.get("seller_email"), seller["email"]):
        raise HTTPException(403, "forbidden access")
    set_fields = payload.model_dump(exclude_none=True)
    if not set_fields:
        raise HTTPException(400, "No valid fields")
    db["menuitem"].update_one({"_id": item["_id"]}, {"$set": set_fields})
    return sanitize(db["menuitem"].find_one({"_id": item["_id"]}))

@router.delete("/menu/{menu_id}")
def delete_menu_item(menu_id: str, seller=Depends(require_role("seller")), db: Database = Depends(get_db)):
    item = get_or_404(db["menuitem"], menu_id, "Menu item")
    if not same_email(item.get("seller_email"), seller["email"]):
        raise HTTPException(403, "forbidden access")
    db["menuitem"].delete_one({"_id": item["_id"]})
    return {"deleted": True}

# Reviews
@router.get("/latest-reviews")
def latest_reviews(limit: int = Query(6, ge=1, le=50), db: Database = Depends(get_db)):
    reviews = list(db["review"].find({}).sort(REVIEW_SORTS["newest"]).limit(limit))
    return attach_restaurants(db, reviews)

@router.get("/all-reviews")
def all_reviews(
    search: Optional[str] = None,
    min_rating: Optional[int] = Query(None, alias="minRating", ge=1, le=5),
    sort: Literal["newest", "oldest", "rating-asc", "rating-desc"] = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Database = Depends(get_db),
):
    q = review_search_query(search, min_rating)
    total = db["review"].count_documents(q)
    reviews = list(db["review"].find(q).sort(REVIEW_SORTS[sort]).skip((page - 1) * limit).limit(limit))
    return {"reviews": attach_restaurants(db, reviews), "total": total, "page": page, "limit": limit}

@router.get("/reviews/menu/{menu_id}")
def menu_reviews(menu_id: str, db: Database = Depends(get_db)):
    reviews = list(db["review"].find({"menu_id": menu_id}).sort(REVIEW_SORTS["newest"]))
    return attach_restaurants(db, reviews)

@router.get("/my-reviews")
def my_reviews(email: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    ensure_same_email(token_email, email)
    reviews = list(db["review"].find({"reviewer_email": token_email}).sort(REVIEW_SORTS["newest"]))
    return attach_restaurants(db, reviews)

@router.get("/reviews/{review_id}")
def get_review(review_id: str, db: Database = Depends(get_db)):
    review = get_or_404(db["review"], review_id, "Review")
    return attach_restaurants(db, [review])[0]

@router.post("/reviews")
def create_review(payload: ReviewIn, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    ensure_same_email(token_email, payload.reviewer_email)
    data = payload.model_dump()
    menu_oid = None
    if payload.menu_id:
        item = get_or_404(db["menuitem"], payload.menu_id, "Menu item")
        menu_oid = item["_id"]
        data["restaurant_id"] = item.get("restaurant_id") or data["restaurant_id"]
        data["food_name"] = data["food_name"] or item.get("name")
        data["food_image"] = data["food_image"] or item.get("image")
    if not data["food_name"]:
        raise HTTPException(422, "food_name or menu_id is required")
    review = ReviewSchema(**data, posted_at=now()).model_dump()
    res = db["review"].insert_one(review)
    review["_id"] = res.inserted_id
    if menu_oid is not None:
        apply_rating(db["menuitem"], menu_oid, payload.rating)
    return sanitize(review)

@router.patch("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    review = get_or_404(db["review"], review_id, "Review")
    ensure_same_email(token_email, review.get("reviewer_email"))
    set_fields = payload.model_dump(exclude_none=True)
    if not set_fields:
        raise HTTPException(400, "No valid fields")
    before = db["review"].find_one_and_update(
        {"_id": review["_id"]}, {"$set": set_fields}, return_document=ReturnDocument.BEFORE
    )
    if before is None:
        raise HTTPException(404, "Review not found")
    menu_oid = to_obj_id(before.get("menu_id"))
    if "rating" in set_fields and menu_oid is not None:
        replace_rating(db["menuitem"], menu_oid, before["rating"], set_fields["rating"])
    return attach_restaurants(db, [db["review"].find_one({"_id": review["_id"]})])[0]

@router.delete("/reviews/{review_id}")
def delete_review(review_id: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    review = get_or_404(db["review"], review_id, "Review")
    if not same_email(review.get("reviewer_email"), token_email) and not is_admin(db, token_email):
        raise HTTPException(403, "forbidden access")
    deleted = db["review"].find_one_and_delete({"_id": review["_id"]})
    if deleted is None:
        raise HTTPException(404, "Review not found")
    menu_oid = to_obj_id(deleted.get("menu_id"))
    if menu_oid is not None:
        remove_rating(db["menuitem"], menu_oid, deleted["rating"])
    db["favourite"].delete_many({"review_id": review_id})
    return {"deleted": True}

# Leaderboard
@router.get("/leaderboard")
def leaderboard(limit: Optional[int] = Query(None, ge=1, le=100), db: Database = Depends(get_db)):
    return list(db["review"].aggregate(leaderboard_pipeline(limit)))

# Favourites
@router.post("/favourites")
def add_favourite(payload: FavouriteIn, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    ensure_same_email(token_email, payload.email)
    get_or_404(db["review"], payload.review_id, "Review")
    if db["favourite"].find_one({"email": payload.email, "review_id": payload.review_id}):
        raise HTTPException(409, "Already in favourites")
    doc = FavouriteSchema(email=payload.email, review_id=payload.review_id, created_at=now()).model_dump()
    try:
        res = db["favourite"].insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(409, "Already in favourites")
    doc["_id"] = res.inserted_id
    return sanitize(doc)

@router.get("/favourites")
def list_favourites(email: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    ensure_same_email(token_email, email)
    favourites = sanitize_all(db["favourite"].find({"email": token_email}).sort("created_at", DESCENDING))
    review_ids = [oid for oid in (to_obj_id(f["review_id"]) for f in favourites) if oid]
    reviews = list(db["review"].find({"_id": {"$in": review_ids}})) if review_ids else []
    review_map = {r["id"]: r for r in attach_restaurants(db, reviews)}
    for f in favourites:
        f["review"] = review_map.get(f["review_id"])
    return favourites

@router.delete("/favourites/{favourite_id}")
def delete_favourite(favourite_id: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    favourite = get_or_404(db["favourite"], favourite_id, "Favourite")
    ensure_same_email(token_email, favourite.get("email"))
    db["favourite"].delete_one({"_id": favourite["_id"]})
    return {"deleted": True}

# Community posts
def serialize_post(doc) -> dict:
    post = sanitize(doc)
    post["like_count"] = len(post.get("likes") or [])
    return post

@router.get("/posts")
def list_posts(db: Database = Depends(get_db)):
    posts = db["post"].find({}).sort([("date", DESCENDING), ("_id", DESCENDING)])
    return [serialize_post(p) for p in posts]

@router.post("/posts")
def create_post(payload: PostIn, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": token_email}) or {}
    doc = PostSchema(
        user_email=token_email,
        user_name=payload.user_name or user.get("name"),
        user_photo=payload.user_photo or user.get("photo"),
        caption=payload.caption,
        image=payload.image,
        date=now(),
    ).model_dump()
    res = db["post"].insert_one(doc)
    doc["_id"] = res.inserted_id
    return serialize_post(doc)

@router.patch("/posts/{post_id}/like")
def toggle_like(post_id: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    post = get_or_404(db["post"], post_id, "Post")
    res = db["post"].update_one({"_id": post["_id"], "likes": {"$ne": token_email}}, {"$addToSet": {"likes": token_email}})
    liked = res.modified_count == 1
    if not liked:
        db["post"].update_one({"_id": post["_id"], "likes": token_email}, {"$pull": {"likes": token_email}})
    post = db["post"].find_one({"_id": post["_id"]}, {"likes": 1})
    return {"liked": liked, "like_count": len(post.get("likes") or [])}

@router.patch("/posts/{post_id}")
def update_post(post_id: str, payload: PostUpdate, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    post = get_or_404(db["post"], post_id, "Post")
    ensure_same_email(token_email, post.get("user_email"))
    set_fields = payload.model_dump(exclude_none=True)
    if not set_fields:
        raise HTTPException(400, "No valid fields")
    db["post"].update_one({"_id": post["_id"]}, {"$set": set_fields})
    return serialize_post(db["post"].find_one({"_id": post["_id"]}))

@router.delete("/posts/{post_id}")
def delete_post(post_id: str, token_email: str = Depends(get_token_email), db: Database = Depends(get_db)):
    post = get_or_404(db["post"], post_id, "Post")
    if not same_email(post.get("user_email"), token_email) and not is_admin(db, token_email):
        raise HTTPException(403, "forbidden access")
    db["post"].delete_one({"_id": post["_id"]})
    return {"deleted": True}

# Categories
@router.get("/categories")
def list_categories(db: Database = Depends(get_db)):
    return sanitize_all(db["category"].aggregate(category_counts_pipeline()))

@router.post("/categories")
def create_category(payload: CategoryIn, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    if db["category"].find_one({"name": payload.name}):
        raise HTTPException(409, "Category already exists")
    doc = CategorySchema(**payload.model_dump()).model_dump()
    try:
        res = db["category"].insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(409, "Category already exists")
    doc["_id"] = res.inserted_id
    return sanitize(doc)

@router.patch("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    category = get_or_404(db["category"], category_id, "Category")
    set_fields = payload.model_dump(exclude_none=True)
    if not set_fields:
        raise HTTPException(400, "No valid fields")
    new_name = set_fields.get("name")
    if new_name and new_name != category["name"]:
        if db["category"].find_one({"name": new_name}):
            raise HTTPException(409, "Category already exists")
        # menu items reference categories by name
        db["menuitem"].update_many({"category": category["name"]}, {"$set": {"category": new_name}})
    db["category"].update_one({"_id": category["_id"]}, {"$set": set_fields})
    return sanitize(db["category"].find_one({"_id": category["_id"]}))

@router.delete("/categories/{category_id}")
def delete_category(category_id: str, admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    category = get_or_404(db["category"], category_id, "Category")
    db["category"].delete_one({"_id": category["_id"]})
    return {"deleted": True}

# Admin
@router.get("/admin-stats")
def admin_stats(admin=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return {
        "total_users": db["user"].count_documents({}),
        "total_sellers": db["user"].count_documents({"role": "seller"}),
        "total_restaurants": db["restaurant"].count_documents({}),
        "pending_restaurants": db["restaurant"].count_documents({"status": "pending"}),
        "verified_restaurants": db["restaurant"].count_documents({"status": "verified"}),
        "total_menu_items": db["menuitem"].count_documents({}),
        "total_reviews": db["review"].count_documents({}),
        "total_posts": db["post"].count_documents({}),
        "category_stats": list(db["menuitem"].aggregate(category_histogram_pipeline())),
    }


# App setup
def create_app(settings: Optional[Settings] = None, mongo_client=None) -> FastAPI:
    """
    Build the application.

    The Mongo client and the token verifier are created in the lifespan and
    kept on ``app.state``. Passing ``mongo_client`` reuses an existing client
    (which is then left open on shutdown).
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = mongo_client if mongo_client is not None else connect(settings)
        app.state.db = client[settings.database_name]
        app.state.verifier = TokenVerifier(settings)
        ensure_indexes(app.state.db)
        logger.info("Tastio API started (database=%s, auth=%s)", settings.database_name, app.state.verifier.mode)
        try:
            yield
        finally:
            if mongo_client is None:
                client.close()
            logger.info("Tastio API stopped")

    app = FastAPI(title="Tastio API", lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content={"message": "invalid request", "errors": jsonable_encoder(exc.errors())})

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "internal server error"})

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", app.state.settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
