import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import current_app
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

FILTER_FIELDS = (
    "q",
    "category",
    "brand",
    "price_min",
    "price_max",
    "condition",
    "is_available",
)

SORT_OPTIONS: Dict[str, List[Tuple[str, int]]] = {
    "newest": [("created_at", DESCENDING)],
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
}


@dataclass(frozen=True)
class FilterCriteria:
    q: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    condition: Optional[str] = None
    is_available: Optional[bool] = None
    sort: Optional[str] = None
    invalid_fields: Tuple[str, ...] = field(default_factory=tuple)

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in FILTER_FIELDS)


def clean_text(value) -> Optional[str]:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def parse_price(value) -> Tuple[Optional[float], bool]:
    """Return ``(number, valid)`` for a raw price bound.

    Blank input is ``(None, True)``; anything that is not a finite number is
    ``(None, False)``.
    """
    text = clean_text(value)
    if text is None:
        return None, True
    try:
        number = float(text)
    except ValueError:
        return None, False
    if not math.isfinite(number):
        return None, False
    return number, True


def parse_availability(value) -> Optional[bool]:
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def parse_filter_criteria(args) -> FilterCriteria:
    invalid_fields = []

    price_min, valid = parse_price(args.get("price_min"))
    if not valid:
        invalid_fields.append("price_min")
    price_max, valid = parse_price(args.get("price_max"))
    if not valid:
        invalid_fields.append("price_max")

    sort = clean_text(args.get("sort"))
    if sort not in SORT_OPTIONS:
        sort = None

    return FilterCriteria(
        q=clean_text(args.get("q")),
        category=clean_text(args.get("category")),
        brand=clean_text(args.get("brand")),
        price_min=price_min,
        price_max=price_max,
        condition=clean_text(args.get("condition")),
        is_available=parse_availability(args.get("is_available")),
        sort=sort,
        invalid_fields=tuple(invalid_fields),
    )


def contains_pattern(value: str) -> Dict[str, str]:
    return {"$regex": re.escape(value), "$options": "i"}


def build_product_query(criteria: FilterCriteria) -> Dict:
    query: Dict = {}

    if criteria.q is not None:
        query["$or"] = [
            {"title": contains_pattern(criteria.q)},
            {"description": contains_pattern(criteria.q)},
        ]

    if criteria.category is not None:
        query["category"] = criteria.category

    if criteria.brand is not None:
        query["brand"] = contains_pattern(criteria.brand)

    price_range = {}
    if criteria.price_min is not None:
        price_range["$gte"] = criteria.price_min
    if criteria.price_max is not None:
        price_range["$lte"] = criteria.price_max
    if price_range:
        query["price"] = price_range

    if criteria.condition is not None:
        query["condition"] = criteria.condition

    if criteria.is_available is not None:
        query["is_available"] = criteria.is_available

    return query


def search_products(collection, criteria: FilterCriteria) -> List[Dict]:
    query = build_product_query(criteria)
    try:
        cursor = collection.find(query)
        if criteria.sort:
            cursor = cursor.sort(SORT_OPTIONS[criteria.sort])
        return list(cursor)
    except PyMongoError as exc:
        current_app.logger.warning(
            "Catalogue query failed, rendering an empty listing: %s (query=%r)",
            exc,
            query,
        )
        return []


def list_recent_products(collection, limit: int = 12) -> List[Dict]:
    try:
        return list(
            collection.find().sort("created_at", DESCENDING).limit(limit)
        )
    except PyMongoError as exc:
        current_app.logger.warning("Unable to load recent products: %s", exc)
        return []


def parse_secondary_images(value) -> List[Dict[str, str]]:
    if not isinstance(value, list):
        return []
    images = []
    for item in value:
        if isinstance(item, dict) and item.get("url"):
            images.append({"url": str(item["url"])})
        elif isinstance(item, str) and item:
            images.append({"url": item})
    return images


def serialize_product(product_document) -> Dict:
    def isoformat(value):
        return value.isoformat() if isinstance(value, datetime) else None

    try:
        price_value = float(product_document.get("price", 0) or 0)
    except (TypeError, ValueError):
        price_value = 0.0

    return {
        "id": str(product_document.get("_id")),
        "title": product_document.get("title", "") or "",
        "brand": product_document.get("brand", "") or "",
        "price": f"{price_value:.2f}",
        "quantity": product_document.get("quantity", 0) or 0,
        "category": product_document.get("category", "") or "",
        "condition": product_document.get("condition", "") or "",
        "description": product_document.get("description", "") or "",
        "features": product_document.get("features", "") or "",
        "location": product_document.get("location", "") or "",
        "delivery": product_document.get("delivery", "") or "",
        "is_available": bool(product_document.get("is_available", True)),
        "main_image_url": product_document.get("main_image_url", "") or "",
        "secondary_image_urls": parse_secondary_images(
            product_document.get("secondary_image_urls")
        ),
        "user_id": product_document.get("user_id"),
        "created_at": isoformat(product_document.get("created_at")),
        "updated_at": isoformat(product_document.get("updated_at")),
    }
