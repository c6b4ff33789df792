import json
import logging
import math
import time
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from pymongo.errors import DuplicateKeyError

from auth import Identity, get_identity, require_admin
from cleanup import ImageCleanup
from database import get_db
from errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from export import generate_products_csv, generate_products_pdf
from images import ExistingUrl, ImageStore, resolve_image_value, resolve_upload
from repository import (
    ProductFilters,
    ProductRepository,
    build_filter,
    serialize_list_item,
    serialize_product,
    to_object_id,
)
from schemas import ImageAsset, Product, utcnow
from validation import (
    DRAFT,
    check_permission,
    check_price_pair,
    drop_admin_fields,
    normalize_primary,
    parse_form_fields,
    sanitize_by_role,
    validate_create,
    validate_update,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


# Dependencies

def get_repository(request: Request, db=Depends(get_db)) -> ProductRepository:
    return ProductRepository(db, request.app.state.query_cache)


def get_image_store(request: Request) -> ImageStore:
    return request.app.state.image_store


def get_cleanup(request: Request) -> ImageCleanup:
    return request.app.state.image_cleanup


def get_max_upload_size(request: Request) -> int:
    return request.app.state.max_upload_size


def product_form(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    sku: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    original_price: Optional[str] = Form(None, alias="originalPrice"),
    stock: Optional[str] = Form(None),
    rating: Optional[str] = Form(None),
    review_count: Optional[str] = Form(None, alias="reviewCount"),
    category: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
) -> Dict[str, str]:
    fields = {
        "name": name,
        "description": description,
        "sku": sku,
        "price": price,
        "originalPrice": original_price,
        "stock": stock,
        "rating": rating,
        "reviewCount": review_count,
        "category": category,
        "status": status,
        "tags": tags,
    }
    return {k: v for k, v in fields.items() if v is not None}


# Request bodies

class BulkDeleteInput(BaseModel):
    ids: Optional[List[str]] = None
    filters: Optional[ProductFilters] = None


class ProductIdsInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_ids: Optional[List[Any]] = Field(None, alias="productIds")


class FiltersInput(BaseModel):
    filters: ProductFilters = Field(default_factory=ProductFilters)


class ExportInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_ids: Optional[List[str]] = Field(None, alias="productIds")
    filters: Optional[ProductFilters] = None


# Helpers

def _uploads(images: Optional[List[UploadFile]], max_size: int):
    return [resolve_upload(upload, max_size) for upload in images or [] if upload.filename]


def _parse_existing_images(raw: Optional[str]):
    if raw is None:
        return None
    try:
        values = json.loads(raw) if raw.strip() else []
    except ValueError:
        values = None
    if not isinstance(values, list):
        raise ValidationFailed.for_field("existingImages", "existingImages must be a JSON array of image URLs")
    return [item for item in (resolve_image_value(value) for value in values) if item is not None]


def _ids_query(ids: List[Any], identity: Identity) -> Dict[str, Any]:
    if not all(isinstance(i, str) and ObjectId.is_valid(i) for i in ids):
        raise HTTPException(status_code=400, detail="Some product IDs are invalid")
    query: Dict[str, Any] = {"_id": {"$in": [ObjectId(i) for i in ids]}}
    if not identity.is_admin:
        query["createdBy"] = to_object_id(identity.id, "user")
    return query


def _attachment(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _timestamp() -> int:
    return int(time.time() * 1000)


# Routes

@router.get("")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    created_by: Optional[str] = Query(None, alias="createdBy"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
):
    filters = ProductFilters(search=search, category=category, status=status, created_by=created_by)
    items, total = repo.list_products(filters, identity.role, identity.id, page, limit, sort_by, sort_order)
    return {
        "products": [serialize_list_item(doc) for doc in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.post("", status_code=201)
def create_product(
    fields: Dict[str, str] = Depends(product_form),
    images: Optional[List[UploadFile]] = File(None),
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
    max_size: int = Depends(get_max_upload_size),
):
    inputs = _uploads(images, max_size)
    product = validate_create(drop_admin_fields(parse_form_fields(fields), identity.role), inputs, max_size)
    data = sanitize_by_role(product.model_dump(), identity.role).to_document()

    sku = data.pop("sku", None) or None
    if sku and repo.sku_taken(sku):
        raise Conflict("SKU already exists")

    assets = normalize_primary(store.ingest(inputs, known={}))
    record = Product.model_validate({**data, "sku": sku, "images": assets, "createdBy": identity.id})
    doc = record.to_document()
    doc["createdBy"] = to_object_id(identity.id, "user")
    if doc["sku"] is None:
        del doc["sku"]

    try:
        product_id = repo.insert(doc)
    except DuplicateKeyError:
        store.reconcile_images(assets, [])
        raise Conflict("SKU already exists")
    logger.info("Product %s created by %s with %d images", product_id, identity.id, len(assets))
    return serialize_product(repo.get_populated(product_id))


@router.get("/uploaders")
def list_uploaders(
    identity: Identity = Depends(require_admin),
    repo: ProductRepository = Depends(get_repository),
):
    uploaders = [
        {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}
        for user in repo.uploaders()
    ]
    return {"uploaders": uploaders, "total": len(uploaders)}


@router.get("/image-cleanup")
def image_cleanup_status(
    identity: Identity = Depends(require_admin),
    cleanup: ImageCleanup = Depends(get_cleanup),
):
    pending = cleanup.pending()
    return {"pending": pending, "total": len(pending)}


@router.post("/image-cleanup/retry")
def retry_image_cleanup(
    identity: Identity = Depends(require_admin),
    cleanup: ImageCleanup = Depends(get_cleanup),
):
    cleared = cleanup.retry_pending()
    return {"cleared": cleared, "remaining": len(cleanup.pending())}


@router.post("/bulk-delete")
def bulk_delete(
    payload: BulkDeleteInput,
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
    cleanup: ImageCleanup = Depends(get_cleanup),
):
    has_ids = bool(payload.ids)
    has_filters = payload.filters is not None
    if not has_ids and not has_filters:
        raise HTTPException(status_code=400, detail="Either ids array or filters object is required")
    if has_ids and has_filters:
        raise HTTPException(status_code=400, detail="Provide either ids or filters, not both")

    query = _ids_query(payload.ids, identity) if has_ids else build_filter(payload.filters, identity.role, identity.id)
    # Users can only delete their own drafts, whichever selection they sent
    if not identity.is_admin:
        query["createdBy"] = to_object_id(identity.id, "user")
        query["status"] = DRAFT

    products = repo.find(query)
    failed = cleanup.reconcile_many([product.get("images") or [] for product in products])
    deleted = repo.delete_many({**query, "_id": {"$in": [product["_id"] for product in products]}})
    logger.info("Bulk delete by %s removed %d products (%d image cleanups pending)", identity.id, deleted, failed)
    return {"message": f"{deleted} products deleted successfully", "deletedCount": deleted}


@router.post("/download-pdf")
def download_pdf(
    payload: ProductIdsInput,
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
):
    if not payload.product_ids:
        raise HTTPException(status_code=400, detail="Product IDs are required")
    valid_ids = [i for i in payload.product_ids if isinstance(i, str) and ObjectId.is_valid(i)]
    if not valid_ids:
        raise HTTPException(status_code=400, detail="No valid product IDs provided")

    products = repo.find(_ids_query(valid_ids, identity))
    if not products:
        raise NotFound("No products found")
    pdf = generate_products_pdf([serialize_product(p) for p in products], store)
    return _attachment(pdf, "application/pdf", f"products-{_timestamp()}.pdf")


@router.post("/download-all-pdf")
def download_all_pdf(
    payload: FiltersInput,
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
):
    products = repo.find(build_filter(payload.filters, identity.role, identity.id))
    if not products:
        raise NotFound("No products found")
    pdf = generate_products_pdf([serialize_product(p) for p in products], store)
    return _attachment(pdf, "application/pdf", f"all-products-{_timestamp()}.pdf")


@router.post("/export-csv")
def export_csv(
    payload: ExportInput,
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
):
    if payload.product_ids:
        query = _ids_query(payload.product_ids, identity)
    else:
        query = build_filter(payload.filters or ProductFilters(), identity.role, identity.id)
    products = repo.find(query)
    if not products:
        raise NotFound("No products to export")
    content = generate_products_csv([serialize_product(p) for p in products])
    return _attachment(content.encode("utf-8"), "text/csv; charset=utf-8", f"products-{utcnow():%Y-%m-%d}.csv")


@router.get("/{product_id}")
def get_product(
    product_id: str,
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
):
    product = repo.get_populated(to_object_id(product_id))
    if not product:
        raise NotFound("Product not found")
    if not identity.is_admin and str(product.get("createdBy")) != identity.id:
        raise PermissionDenied("Access denied")
    return serialize_product(product)


@router.put("/{product_id}")
def update_product(
    product_id: str,
    fields: Dict[str, str] = Depends(product_form),
    existing_images: Optional[str] = Form(None, alias="existingImages"),
    images: Optional[List[UploadFile]] = File(None),
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
    cleanup: ImageCleanup = Depends(get_cleanup),
    max_size: int = Depends(get_max_upload_size),
):
    oid = to_object_id(product_id)
    existing = repo.get(oid)
    if not existing:
        raise NotFound("Product not found")
    check_permission(existing, identity.id, identity.role, "update")

    current = existing.get("images") or []
    new_files = _uploads(images, max_size)
    retained = _parse_existing_images(existing_images)
    if retained is not None:
        image_inputs = retained + new_files
    elif new_files:
        # Without existingImages every current image is kept and new files are appended
        image_inputs = [ExistingUrl(url=img["url"]) for img in current if img.get("url")] + new_files
    else:
        image_inputs = None

    changes = validate_update(drop_admin_fields(parse_form_fields(fields), identity.role), image_inputs or [], max_size)
    data = sanitize_by_role(changes.model_dump(exclude_unset=True), identity.role).to_document()
    if "price" in data or "originalPrice" in data:
        check_price_pair(data.get("price", existing.get("price")), data.get("originalPrice", existing.get("originalPrice", 0)))

    unset = []
    if "sku" in data:
        if not data["sku"]:
            del data["sku"]
            unset.append("sku")
        elif repo.sku_taken(data["sku"], exclude_id=oid):
            raise Conflict("SKU already exists")

    if image_inputs is not None:
        known = {img["url"]: ImageAsset.model_validate(img) for img in current if img.get("url")}
        data["images"] = [asset.to_document() for asset in normalize_primary(store.ingest(image_inputs, known))]
    data["updatedAt"] = utcnow()

    try:
        repo.update(oid, data, unset)
    except DuplicateKeyError:
        if "images" in data:
            store.reconcile_images(data["images"], current)
        raise Conflict("SKU already exists")

    if "images" in data:
        cleanup.reconcile(current, data["images"])
    logger.info("Product %s updated by %s", oid, identity.id)
    return serialize_product(repo.get_populated(oid))


@router.delete("/{product_id}")
def delete_product(
    product_id: str,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    repo: ProductRepository = Depends(get_repository),
    cleanup: ImageCleanup = Depends(get_cleanup),
):
    oid = to_object_id(product_id)
    existing = repo.get(oid)
    if not existing:
        raise NotFound("Product not found")
    check_permission(existing, identity.id, identity.role, "delete")

    repo.delete(oid)
    # Files are removed only once the document is gone
    cleanup.schedule(background_tasks, existing.get("images") or [])
    logger.info("Product %s deleted by %s", oid, identity.id)
    return {"message": "Product deleted successfully"}
