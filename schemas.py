"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Model name lowercased is the collection name.

Documents are stored with camelCase keys, the same names the API speaks.
Attributes stay snake_case through an alias generator.
"""

from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["admin", "user"]
ProductCategory = Literal["electronics", "clothing", "books", "home", "sports", "beauty", "toys", "automotive"]
ProductStatus = Literal["active", "inactive", "draft"]

MAX_PRICE = 999999.99
MAX_STOCK = 999999
MAX_IMAGES = 10
MAX_TAGS = 10

ProductName = Annotated[str, Field(min_length=1, max_length=200)]
ProductDescription = Annotated[str, Field(min_length=1, max_length=2000)]
Price = Annotated[float, Field(gt=0, le=MAX_PRICE)]
OriginalPrice = Annotated[float, Field(ge=0, le=MAX_PRICE)]
Stock = Annotated[int, Field(ge=0, le=MAX_STOCK)]
Sku = Annotated[str, Field(max_length=50)]
Tags = Annotated[List[str], Field(max_length=MAX_TAGS)]
Rating = Annotated[float, Field(ge=0, le=5)]
ReviewCount = Annotated[int, Field(ge=0)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class User(CamelModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    email: EmailStr = Field(..., description="Email address, stored lower-cased")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field("user", description="Role: admin | user")
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ImageAsset(CamelModel):
    url: str = Field(..., description="Main image URL")
    thumbnail: Optional[str] = Field(None, description="Thumbnail URL")
    alt: str = ""
    size: int = Field(0, ge=0, description="Bytes of the stored main image")
    is_primary: bool = False


class Product(CamelModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: ProductName
    description: ProductDescription
    price: Price
    original_price: OriginalPrice = Field(0, description="0 means no discount")
    stock: Stock = 0
    sku: Optional[Sku] = None
    category: ProductCategory
    status: ProductStatus = "draft"
    tags: Tags = Field(default_factory=list)
    rating: Rating = 0
    review_count: ReviewCount = 0
    images: List[ImageAsset] = Field(default_factory=list, max_length=MAX_IMAGES)
    created_by: str = Field(..., description="Referenced user _id as string")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
