"""
Product validation, role-aware sanitization and permission rules.

Create and update payloads are validated with pydantic models. Role
sanitization maps a validated payload onto one of two patch types:
``UserProductPatch`` cannot carry status, rating or review count at all and
always persists as a draft, ``AdminProductPatch`` may set every field.
"""
import json
import math
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ConfigDict, ValidationError

from config import MAX_UPLOAD_SIZE
from errors import PermissionDenied, ValidationFailed
from images import DataUri, RawFile
from schemas import (
    MAX_IMAGES,
    CamelModel,
    ImageAsset,
    OriginalPrice,
    Price,
    ProductCategory,
    ProductDescription,
    ProductName,
    ProductStatus,
    Rating,
    ReviewCount,
    Sku,
    Stock,
    Tags,
)

ADMIN = "admin"
DRAFT = "draft"
PERMISSION_ACTIONS = ("update", "delete")
ADMIN_ONLY_FIELDS = ("status", "rating", "reviewCount")

ALLOWED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/webp",
}

PRICE_PAIR_MESSAGE = "Original price must be greater than or equal to current price"


class ProductCreate(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: ProductName
    description: ProductDescription
    price: Price
    original_price: OriginalPrice = 0
    stock: Stock = 0
    sku: Optional[Sku] = None
    category: ProductCategory
    status: ProductStatus = DRAFT
    tags: Tags = []
    rating: Rating = 0
    review_count: ReviewCount = 0


class ProductUpdate(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[ProductName] = None
    description: Optional[ProductDescription] = None
    price: Optional[Price] = None
    original_price: Optional[OriginalPrice] = None
    stock: Optional[Stock] = None
    sku: Optional[Sku] = None
    category: Optional[ProductCategory] = None
    status: Optional[ProductStatus] = None
    tags: Optional[Tags] = None
    rating: Optional[Rating] = None
    review_count: Optional[ReviewCount] = None


class UserProductPatch(CamelModel):
    """Fields a regular user may write. Always persisted as a draft."""

    name: Optional[ProductName] = None
    description: Optional[ProductDescription] = None
    price: Optional[Price] = None
    original_price: Optional[OriginalPrice] = None
    stock: Optional[Stock] = None
    sku: Optional[Sku] = None
    category: Optional[ProductCategory] = None
    tags: Optional[Tags] = None

    def to_document(self) -> dict:
        doc = self.model_dump(by_alias=True, exclude_unset=True)
        doc["status"] = DRAFT
        return doc


class AdminProductPatch(UserProductPatch):
    status: Optional[ProductStatus] = None
    rating: Optional[Rating] = None
    review_count: Optional[ReviewCount] = None

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_unset=True)


USER_PATCH_FIELDS = frozenset(UserProductPatch.model_fields)


def _error_details(exc: ValidationError) -> List[Dict[str, str]]:
    details = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "body"
        details.append({"field": field, "message": err["msg"]})
    return details


def _to_number(value: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return 0 if math.isnan(number) else number


def parse_form_fields(fields: Dict[str, str]) -> Dict[str, Any]:
    """Convert multipart string fields into validator input.

    Numbers are left as strings for pydantic to coerce, except ``originalPrice``
    where anything non-numeric means "no discount".
    """
    data: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "tags":
            try:
                data["tags"] = json.loads(value) if value else []
            except ValueError:
                raise ValidationFailed.for_field("tags", "Tags must be a JSON array of strings")
        elif key == "originalPrice":
            data[key] = _to_number(value)
        elif key == "sku":
            # An empty SKU clears it
            data[key] = value.strip()
        elif value.strip() != "":
            data[key] = value
    return data


def drop_admin_fields(data: Dict[str, Any], role: Optional[str]) -> Dict[str, Any]:
    """Remove fields only an admin may write."""
    if role == ADMIN:
        return data
    return {k: v for k, v in data.items() if k not in ADMIN_ONLY_FIELDS}


def image_errors(images: Sequence[Any], max_size: int = MAX_UPLOAD_SIZE) -> List[Dict[str, str]]:
    """Size checks apply to uploads and data URIs, type checks to uploads only."""
    details = []
    if len(images) > MAX_IMAGES:
        details.append({"field": "images", "message": f"Maximum {MAX_IMAGES} images allowed"})
    files = [image for image in images if isinstance(image, RawFile)]
    if any(image.size > max_size for image in images if isinstance(image, (RawFile, DataUri))):
        details.append({"field": "images", "message": f"Each image size must be less than {max_size / (1024 * 1024):g}MB"})
    if any(f.content_type.lower() not in ALLOWED_IMAGE_TYPES for f in files):
        details.append({"field": "images", "message": "Only image files are allowed"})
    return details


def validate_images(images: Sequence[Any], max_size: int = MAX_UPLOAD_SIZE) -> None:
    details = image_errors(images, max_size)
    if details:
        raise ValidationFailed(details=details)


def check_price_pair(price: Optional[float], original_price: Optional[float]) -> None:
    # 0 (or absent) means no discount, so there is nothing to compare
    if price is None or not original_price:
        return
    if original_price < price:
        raise ValidationFailed.for_field("originalPrice", PRICE_PAIR_MESSAGE)


def _validate(model, data: Dict[str, Any], images: Sequence[Any], max_size: int):
    details = image_errors(images, max_size)
    try:
        product = model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(details=details + _error_details(exc)) from None
    if details:
        raise ValidationFailed(details=details)
    check_price_pair(product.price, product.original_price)
    return product


def validate_create(data: Dict[str, Any], images: Sequence[Any] = (), max_size: int = MAX_UPLOAD_SIZE) -> ProductCreate:
    return _validate(ProductCreate, data, images, max_size)


def validate_update(data: Dict[str, Any], images: Sequence[Any] = (), max_size: int = MAX_UPLOAD_SIZE) -> ProductUpdate:
    return _validate(ProductUpdate, data, images, max_size)


def sanitize_by_role(data: Dict[str, Any], role: Optional[str]) -> Union[AdminProductPatch, UserProductPatch]:
    """Map validated fields (snake_case keys) onto the patch type the role may write."""
    try:
        if role == ADMIN:
            patch = AdminProductPatch(**data)
        else:
            patch = UserProductPatch(**{k: v for k, v in data.items() if k in USER_PATCH_FIELDS})
    except ValidationError as exc:
        raise ValidationFailed(details=_error_details(exc)) from None
    check_price_pair(patch.price, patch.original_price)
    return patch


def check_permission(product: Dict[str, Any], user_id: str, role: Optional[str], action: str) -> bool:
    if action not in PERMISSION_ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    if role == ADMIN:
        return True
    if str(product.get("createdBy")) != str(user_id):
        raise PermissionDenied("Access denied - not your product")
    if product.get("status") != DRAFT:
        raise PermissionDenied(f"Access denied - can only {action} draft products")
    return True


def normalize_primary(assets: Sequence[ImageAsset]) -> List[ImageAsset]:
    """Keep exactly one primary image: the first flagged one, else the first image."""
    if not assets:
        return []
    primary = next((i for i, asset in enumerate(assets) if asset.is_primary), 0)
    return [asset.model_copy(update={"is_primary": i == primary}) for i, asset in enumerate(assets)]
