"""Data models for the product inspection API.

Table models: Product, ComponentTest, ProductPhoto and History. The
remaining classes are request payloads validated by FastAPI.

Copyright (c) Bryn Gwalad 2025
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlmodel import Field, SQLModel


class ComponentStatus(str, Enum):
    UNTESTED = "untested"
    WORKING = "working"
    NOT_WORKING = "not-working"


class Product(SQLModel, table=True):
    """A product under inspection.

    Attributes:
        id: primary key
        inventory_id: user-assigned inventory identifier (lookup key, not unique)
        name: display name
        description: optional free-text description
        price: non-negative price
        updated_at: refreshed whenever the product or its components/photos change
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    inventory_id: str = Field(index=True)
    name: str
    description: str = ""
    price: float = 0.0
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class ComponentTest(SQLModel, table=True):
    """A testable component of a product.

    Deleting the product does not delete its components: ``product_id`` is
    cleared and the row is kept (detached).
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: Optional[int] = Field(default=None, foreign_key="product.id", index=True)
    name: str
    status: str = ComponentStatus.UNTESTED.value
    notes: str = ""
    tested_at: Optional[datetime] = None


class ProductPhoto(SQLModel, table=True):
    """A product photo.

    ``url`` holds a data URI, a local upload path (``/uploads/<file>``) or a
    remote URL such as a Google Drive view link.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    url: str


class History(SQLModel, table=True):
    """Audit/history table to log modifications to products, components and photos.

    The ``id`` field is a composed string used to make simple text searches
    convenient while the record keeps structured fields for queries.
    """

    id: str = Field(primary_key=True)
    table_operation: str
    table_modified: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    user_id: str
    modified_id: Optional[int] = None


class ProductCreate(SQLModel):
    """Product draft: the product fields plus its initial components and photos."""

    inventory_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    price: float = Field(default=0.0, ge=0)
    components: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)


class ComponentCreate(SQLModel):
    name: str = Field(min_length=1)


class ComponentUpdate(SQLModel):
    status: Optional[ComponentStatus] = None
    notes: Optional[str] = None


class PhotoCreate(SQLModel):
    url: str = Field(min_length=1)


class ReportRequest(SQLModel):
    """Body of an export request; ``screenshot`` is an optional image data URI."""

    screenshot: Optional[str] = None


class EmailReportRequest(ReportRequest):
    email: str = Field(min_length=3)
