"""
Product queries: role-scoped filters, sorting, offset pagination and the
response projections used by the API.
"""
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ASCENDING, DESCENDING

from cache import QueryCache
from validation import ADMIN

SORT_FIELDS = ("createdAt", "updatedAt", "name", "price", "stock", "rating", "category", "status")
DEFAULT_SORT = "createdAt"


class ProductFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    search: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    created_by: Optional[str] = Field(None, alias="createdBy")


def to_object_id(value: Any, label: str = "product") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label} ID")


def build_filter(filters: ProductFilters, role: Optional[str], user_id: str) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    # Regular users only ever see their own products, whatever the query says
    if role != ADMIN:
        query["createdBy"] = to_object_id(user_id, "user")
    elif filters.created_by:
        query["createdBy"] = to_object_id(filters.created_by, "user")
    if filters.search:
        pattern = {"$regex": re.escape(filters.search), "$options": "i"}
        query["$or"] = [
            {"name": pattern},
            {"description": pattern},
            {"sku": pattern},
            {"tags": pattern},
        ]
    if filters.category:
        query["category"] = filters.category
    if filters.status:
        query["status"] = filters.status
    return query


def sort_spec(sort_by: Optional[str], sort_order: Optional[str]) -> List[Tuple[str, int]]:
    field = sort_by if sort_by in SORT_FIELDS else DEFAULT_SORT
    direction = ASCENDING if sort_order == "asc" else DESCENDING
    # _id keeps pages stable when the sort field has ties
    return [(field, direction), ("_id", direction)]


class ProductRepository:
    def __init__(self, db, cache: Optional[QueryCache] = None):
        self.collection = db["product"]
        self.users = db["user"]
        self.cache = cache

    def attach_creators(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = list({doc["createdBy"] for doc in docs if doc.get("createdBy")})
        creators = {}
        if ids:
            creators = {u["_id"]: u for u in self.users.find({"_id": {"$in": ids}}, {"name": 1, "email": 1})}
        for doc in docs:
            doc["creator"] = creators.get(doc.get("createdBy"))
        return docs

    def list_products(
        self,
        filters: ProductFilters,
        role: Optional[str],
        user_id: str,
        page: int = 1,
        limit: int = 10,
        sort_by: str = DEFAULT_SORT,
        sort_order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = build_filter(filters, role, user_id)
        sort = sort_spec(sort_by, sort_order)
        skip = (page - 1) * limit

        def run():
            items = list(self.collection.find(query).sort(sort).skip(skip).limit(limit))
            # Counted separately, so total and items are not a strict snapshot
            total = self.collection.count_documents(query)
            return self.attach_creators(items), total

        if self.cache is None:
            return run()
        key = QueryCache.make_key(filter=query, page=page, limit=limit, sort=sort)
        return self.cache.get_or_compute(key, run)

    def get(self, product_id: ObjectId) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": product_id})

    def get_populated(self, product_id: ObjectId) -> Optional[Dict[str, Any]]:
        doc = self.get(product_id)
        if doc is None:
            return None
        return self.attach_creators([doc])[0]

    def find(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.attach_creators(list(self.collection.find(query).sort([("createdAt", DESCENDING), ("_id", DESCENDING)])))

    def insert(self, doc: Dict[str, Any]) -> ObjectId:
        return self.collection.insert_one(doc).inserted_id

    def update(self, product_id: ObjectId, fields: Dict[str, Any], unset: Iterable[str] = ()) -> None:
        update: Dict[str, Any] = {"$set": fields}
        unset = list(unset)
        if unset:
            update["$unset"] = {key: "" for key in unset}
        self.collection.update_one({"_id": product_id}, update)

    def delete(self, product_id: ObjectId) -> int:
        return self.collection.delete_one({"_id": product_id}).deleted_count

    def delete_many(self, query: Dict[str, Any]) -> int:
        return self.collection.delete_many(query).deleted_count

    def sku_taken(self, sku: str, exclude_id: Optional[ObjectId] = None) -> bool:
        query: Dict[str, Any] = {"sku": sku}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return self.collection.find_one(query, {"_id": 1}) is not None

    def uploaders(self) -> List[Dict[str, Any]]:
        ids = [uid for uid in self.collection.distinct("createdBy") if uid]
        if not ids:
            return []
        return list(self.users.find({"_id": {"$in": ids}}, {"name": 1, "email": 1}).sort("name", ASCENDING))


# Response shaping

def serialize_creator(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    creator = doc.get("creator")
    if not creator:
        return None
    return {"id": str(creator["_id"]), "name": creator.get("name"), "email": creator.get("email")}


def primary_image(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    images = doc.get("images") or []
    return next((img for img in images if img.get("isPrimary")), images[0] if images else None)


def _serialize_common(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "description": doc.get("description"),
        "price": doc.get("price"),
        "originalPrice": doc.get("originalPrice", 0),
        "rating": doc.get("rating", 0),
        "reviewCount": doc.get("reviewCount", 0),
        "category": doc.get("category"),
        "status": doc.get("status"),
        "stock": doc.get("stock", 0),
        "sku": doc.get("sku"),
        "tags": doc.get("tags") or [],
        "createdAt": doc.get("createdAt"),
        "updatedAt": doc.get("updatedAt"),
        "createdBy": serialize_creator(doc),
    }


def serialize_product(doc: Dict[str, Any]) -> Dict[str, Any]:
    product = _serialize_common(doc)
    product["images"] = [dict(img) for img in doc.get("images") or []]
    return product


def serialize_list_item(doc: Dict[str, Any]) -> Dict[str, Any]:
    # List payloads carry one thumbnail instead of the whole image array
    item = _serialize_common(doc)
    image = primary_image(doc)
    item["image"] = (image.get("thumbnail") or image.get("url")) if image else None
    return item
