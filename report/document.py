"""In-memory model of a product test report.

``assemble_document`` turns product, component and photo records into an
immutable ``ReportDocument``. Records are read through attributes only
(SQLModel rows, dataclasses or simple namespaces all work) and are never
modified.

Copyright (c) Bryn Gwalad 2025
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence, Tuple

from .errors import ImageUnavailable, InvalidInput
from .images import EmbeddedImage, ImageLoader, ImageSource, load_image

logger = logging.getLogger(__name__)

STATUS_WORKING = "working"
STATUS_NOT_WORKING = "not-working"
STATUS_UNTESTED = "untested"

# status -> (glyph, label)
STATUS_MARKERS = {
    STATUS_WORKING: ("✓", "Working"),
    STATUS_NOT_WORKING: ("✗", "Not Working"),
    STATUS_UNTESTED: ("○", "Untested"),
}

NO_DESCRIPTION = "No description provided"
IMAGE_UNAVAILABLE = "Image unavailable"


def normalize_status(status: Any) -> str:
    """Map a raw status onto one of the three known values.

    Unknown values (including None) are treated as untested.
    """
    value = getattr(status, "value", status)
    if isinstance(value, str) and value in STATUS_MARKERS:
        return value
    return STATUS_UNTESTED


@dataclass(frozen=True)
class ComponentEntry:
    name: str
    status: str
    notes: str
    tested_at: Optional[datetime] = None

    @property
    def glyph(self) -> str:
        return STATUS_MARKERS[self.status][0]

    @property
    def label(self) -> str:
        return STATUS_MARKERS[self.status][1]

    @property
    def marker(self) -> str:
        return f"{self.glyph} {self.label}"


@dataclass(frozen=True)
class ImageEntry:
    """One picture slot in the report.

    Either ``image`` is set or ``error`` explains why it is missing; the slot
    itself is always present so the photo count never changes.
    """

    caption: str
    image: Optional[EmbeddedImage] = None
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.image is not None


@dataclass(frozen=True)
class StatusSummary:
    working: int = 0
    not_working: int = 0
    untested: int = 0

    @property
    def total(self) -> int:
        return self.working + self.not_working + self.untested


@dataclass(frozen=True)
class ReportDocument:
    name: str
    inventory_id: str
    description: str
    price: float
    generated_at: datetime
    components: Tuple[ComponentEntry, ...] = field(default_factory=tuple)
    photos: Tuple[ImageEntry, ...] = field(default_factory=tuple)
    screenshot: Optional[ImageEntry] = None

    @property
    def title(self) -> str:
        return f"Product Testing Report: {self.name}"

    @property
    def formatted_price(self) -> str:
        return f"${self.price:,.2f}"

    @property
    def summary(self) -> StatusSummary:
        statuses = [c.status for c in self.components]
        return StatusSummary(
            working=statuses.count(STATUS_WORKING),
            not_working=statuses.count(STATUS_NOT_WORKING),
            untested=statuses.count(STATUS_UNTESTED),
        )

    @property
    def has_components(self) -> bool:
        return bool(self.components)

    @property
    def has_photos(self) -> bool:
        return bool(self.photos)

    @property
    def has_screenshot(self) -> bool:
        return self.screenshot is not None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _price(value: Any) -> float:
    try:
        price = float(value or 0)
    except (TypeError, ValueError):
        raise InvalidInput(f"price must be numeric, got {value!r}")
    if price < 0:
        raise InvalidInput("price must not be negative")
    return price


def _photo_source(photo: Any) -> ImageSource:
    if photo is None or isinstance(photo, (str, bytes, bytearray)):
        return photo
    return getattr(photo, "url", None)


def _image_entry(caption: str, source: ImageSource, loader: Optional[ImageLoader]) -> ImageEntry:
    try:
        return ImageEntry(caption=caption, image=load_image(source, loader))
    except ImageUnavailable as exc:
        logger.warning("%s could not be embedded: %s", caption, exc)
        return ImageEntry(caption=caption, error=str(exc))


def assemble_document(
    product: Any,
    components: Sequence[Any] = (),
    photos: Sequence[Any] = (),
    screenshot: ImageSource = None,
    *,
    loader: Optional[ImageLoader] = None,
    generated_at: Optional[datetime] = None,
) -> ReportDocument:
    """Build the report model for ``product``.

    Components and photos keep the order they are given in. A photo (or the
    screenshot) that cannot be decoded becomes an entry with ``error`` set.

    Raises:
        InvalidInput: if the product has no name or inventory id.
    """
    if product is None:
        raise InvalidInput("product is required")
    name = _text(getattr(product, "name", None))
    inventory_id = _text(getattr(product, "inventory_id", None))
    if not name:
        raise InvalidInput("product name is required")
    if not inventory_id:
        raise InvalidInput("product inventory id is required")

    entries = tuple(
        ComponentEntry(
            name=_text(getattr(c, "name", None)),
            status=normalize_status(getattr(c, "status", None)),
            notes=_text(getattr(c, "notes", None)),
            tested_at=getattr(c, "tested_at", None),
        )
        for c in components
    )

    pictures = tuple(
        _image_entry(f"Photo {index}", _photo_source(photo), loader)
        for index, photo in enumerate(photos, start=1)
    )

    shot = None
    if screenshot is not None:
        shot = _image_entry("Test panel screenshot", screenshot, loader)

    return ReportDocument(
        name=name,
        inventory_id=inventory_id,
        description=_text(getattr(product, "description", None)) or NO_DESCRIPTION,
        price=_price(getattr(product, "price", 0)),
        generated_at=generated_at or datetime.now(),
        components=entries,
        photos=pictures,
        screenshot=shot,
    )
