"""
Rating statistics and read-time aggregation queries.

Menu item statistics (``average_rating`` / ``review_count``) are maintained
incrementally. Every change is expressed as an update pipeline that MongoDB
evaluates against the stored values of the document, so concurrent reviews of
the same item cannot lose an update: there is no read-then-write from here.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from database import sanitize, to_obj_id

_AVG = {"$ifNull": ["$average_rating", 0]}
_COUNT = {"$ifNull": ["$review_count", 0]}


def running_mean(average: float, count: int, rating: float) -> Tuple[float, int]:
    """Mean of ``count`` ratings averaging ``average`` plus one more ``rating``."""
    return (average * count + rating) / (count + 1), count + 1


def add_rating_update(rating: int) -> List[Dict]:
    """``running_mean`` as an update pipeline over the stored average and count."""
    return [{
        "$set": {
            "average_rating": {
                "$divide": [{"$add": [{"$multiply": [_AVG, _COUNT]}, rating]}, {"$add": [_COUNT, 1]}]
            },
            "review_count": {"$add": [_COUNT, 1]},
        }
    }]


def replace_rating_update(old_rating: int, new_rating: int) -> List[Dict]:
    # only valid on documents with review_count >= 1, see replace_rating()
    return [{
        "$set": {
            "average_rating": {"$add": [_AVG, {"$divide": [new_rating - old_rating, _COUNT]}]},
        }
    }]


def remove_rating_update(rating: int) -> List[Dict]:
    last = {"$lte": [_COUNT, 1]}
    return [{
        "$set": {
            "average_rating": {
                "$cond": [
                    last,
                    0,
                    {"$divide": [{"$subtract": [{"$multiply": [_AVG, _COUNT]}, rating]}, {"$subtract": [_COUNT, 1]}]},
                ]
            },
            "review_count": {"$cond": [last, 0, {"$subtract": [_COUNT, 1]}]},
        }
    }]


def apply_rating(menu: Collection, menu_id: ObjectId, rating: int) -> bool:
    res = menu.update_one({"_id": menu_id}, add_rating_update(rating))
    return res.matched_count == 1


def replace_rating(menu: Collection, menu_id: ObjectId, old_rating: int, new_rating: int) -> bool:
    if old_rating == new_rating:
        return False
    res = menu.update_one(
        {"_id": menu_id, "review_count": {"$gte": 1}},
        replace_rating_update(old_rating, new_rating),
    )
    return res.matched_count == 1


def remove_rating(menu: Collection, menu_id: ObjectId, rating: int) -> bool:
    res = menu.update_one({"_id": menu_id, "review_count": {"$gte": 1}}, remove_rating_update(rating))
    return res.matched_count == 1


# ---------- Review reads ----------

REVIEW_SORTS = {
    "newest": [("posted_at", DESCENDING), ("_id", DESCENDING)],
    "oldest": [("posted_at", ASCENDING), ("_id", ASCENDING)],
    "rating-asc": [("rating", ASCENDING), ("_id", ASCENDING)],
    "rating-desc": [("rating", DESCENDING), ("_id", DESCENDING)],
}


def contains(text: str) -> Dict[str, str]:
    """Case-insensitive substring match on user-supplied text."""
    return {"$regex": re.escape(text), "$options": "i"}


def review_search_query(search: Optional[str] = None, min_rating: Optional[int] = None) -> Dict[str, Any]:
    q: Dict[str, Any] = {}
    if search:
        q["$or"] = [{"food_name": contains(search)}, {"review_text": contains(search)}]
    if min_rating is not None:
        q["rating"] = {"$gte": min_rating}
    return q


def attach_restaurants(db: Database, reviews: List[Dict]) -> List[Dict]:
    """
    Left-join each review to its restaurant.

    ``restaurant_id`` is stored as text on the review; it is coerced to an
    ObjectId and all referenced restaurants are loaded with one ``$in`` query.
    Reviews whose restaurant is missing (or whose id is malformed) are
    returned without ``restaurant_name`` / ``location``.
    """
    ids = {to_obj_id(r.get("restaurant_id")) for r in reviews if r.get("restaurant_id")}
    ids.discard(None)
    restaurant_map = {}
    if ids:
        cursor = db["restaurant"].find({"_id": {"$in": list(ids)}}, {"restaurant_name": 1, "location": 1})
        restaurant_map = {r["_id"]: r for r in cursor}
    out = []
    for review in reviews:
        r = sanitize(review)
        restaurant = restaurant_map.get(to_obj_id(review.get("restaurant_id")))
        if restaurant:
            r["restaurant_name"] = restaurant.get("restaurant_name")
            r["location"] = restaurant.get("location")
        out.append(r)
    return out


# ---------- Aggregation pipelines ----------

def leaderboard_pipeline(limit: Optional[int] = None) -> List[Dict]:
    # ties in total_reviews keep whatever order $group produced
    pipeline: List[Dict] = [
        {"$group": {"_id": "$reviewer_email", "total_reviews": {"$sum": 1}}},
        {"$sort": {"total_reviews": DESCENDING}},
    ]
    if limit:
        pipeline.append({"$limit": limit})
    pipeline += [
        {"$lookup": {"from": "user", "localField": "_id", "foreignField": "email", "as": "user"}},
        {"$unwind": {"path": "$user", "preserveNullAndEmptyArrays": True}},
        {"$project": {
            "_id": 0,
            "reviewer_email": "$_id",
            "total_reviews": 1,
            "name": "$user.name",
            "photo": "$user.photo",
        }},
    ]
    return pipeline


def category_counts_pipeline() -> List[Dict]:
    return [
        {"$lookup": {"from": "menuitem", "localField": "name", "foreignField": "category", "as": "items"}},
        {"$project": {"name": 1, "image": 1, "count": {"$size": "$items"}}},
        {"$sort": {"name": ASCENDING}},
    ]


def category_histogram_pipeline() -> List[Dict]:
    return [
        {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        {"$sort": {"count": DESCENDING, "_id": ASCENDING}},
        {"$project": {"_id": 0, "category": "$_id", "count": 1}},
    ]
