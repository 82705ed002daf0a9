"""
Query construction for the product catalog and category naming.

Nothing here talks to the database; every function returns a Mongo filter
(or a plain value) that the routes in main.py hand to pymongo.
"""

import re
from typing import Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from slugify import slugify

from database import to_object_id

PAGE_SIZE = 6
LATEST_PRODUCTS_LIMIT = 12
RELATED_PRODUCTS_LIMIT = 3
MAX_PHOTO_BYTES = 1_000_000

# Never send the binary photo back in a JSON payload.
WITHOUT_PHOTO = {"photo": 0}


class InvalidQuery(ValueError):
    pass


def make_slug(name: str) -> str:
    """URL-safe, lowercase, hyphenated form of a name."""
    return slugify(name.strip(), lowercase=True)


def _exact_ci(value: str) -> dict:
    return {"$regex": f"^{re.escape(value)}$", "$options": "i"}


def category_lookup_query(name: str, exclude_id: Optional[ObjectId] = None) -> dict:
    """Match a category that clashes with `name` by slug or by case-insensitive name.

    "Home Decor", "home decor" and "home-decor" all clash with each other.
    `exclude_id` leaves the category being renamed out of the match.
    """
    name = name.strip()
    query = {"$or": [{"slug": make_slug(name)}, {"name": _exact_ci(name)}]}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return query


def parse_price_range(radio: Sequence) -> Tuple[Optional[float], Optional[float]]:
    """[] -> no bound, [min] -> open ended, [min, max] -> inclusive range."""
    if len(radio) > 2:
        raise InvalidQuery("Price range takes at most two values")
    try:
        bounds = [float(value) for value in radio]
    except (TypeError, ValueError):
        raise InvalidQuery("Price range must be numeric")
    if not bounds:
        return None, None
    if len(bounds) == 1:
        return bounds[0], None
    return bounds[0], bounds[1]


def parse_category_ids(checked: Iterable) -> List[ObjectId]:
    ids = []
    for value in checked:
        oid = to_object_id(value)
        if oid is None:
            raise InvalidQuery(f"Invalid category id: {value}")
        ids.append(oid)
    return ids


def build_filter_query(checked: Iterable = (), radio: Sequence = ()) -> dict:
    """Combine a category selection and a price range; both constraints are ANDed."""
    query = {}
    category_ids = parse_category_ids(checked)
    if category_ids:
        query["category"] = {"$in": category_ids}

    low, high = parse_price_range(radio)
    if low is not None:
        query["price"] = {"$gte": low}
        if high is not None:
            query["price"]["$lte"] = high
    return query


def build_search_query(keyword: str) -> dict:
    """Case-insensitive substring match on name or description."""
    pattern = {"$regex": re.escape(keyword), "$options": "i"}
    return {"$or": [{"name": pattern}, {"description": pattern}]}


def page_window(page: int, per_page: int = PAGE_SIZE) -> Tuple[int, int]:
    """(skip, limit) for a 1-indexed page."""
    if page < 1:
        raise InvalidQuery("Page must be 1 or greater")
    return (page - 1) * per_page, per_page


def order_total(prices: Iterable[float]) -> str:
    """Cart total formatted the way the payment gateway expects amounts."""
    return f"{sum(float(p) for p in prices):.2f}"
