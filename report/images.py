"""Image decoding helpers for report generation.

Photos and screenshots reach the builder as data URIs, raw bytes or opaque
source strings (local upload paths, Drive URLs). Data URIs are decoded here;
anything else is handed to a loader callable supplied by the caller so the
builder itself never touches the network or the filesystem.

Every failure is raised as ``ImageUnavailable`` so the builder can degrade a
single entry without aborting the document.

Copyright (c) Bryn Gwalad 2025
"""

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Optional, Union
from urllib.parse import unquote_to_bytes

from docx.image.exceptions import InvalidImageStreamError, UnexpectedEndOfFileError, UnrecognizedImageError
from docx.image.image import Image as DocxImage
from PIL import Image, UnidentifiedImageError

from .errors import ImageUnavailable

ImageLoader = Callable[[str], bytes]
ImageSource = Union[str, bytes, None]

# Formats python-docx can embed as-is; everything else is re-encoded to PNG.
DOCX_FORMATS = {"PNG", "JPEG", "GIF", "BMP", "TIFF"}

# Pixel density used to turn image pixels into inches when no DPI is stored.
DEFAULT_DPI = 96

# Printable area of a Letter page with 1" margins, minus room for a caption.
MAX_WIDTH_IN = 6.0
MAX_HEIGHT_IN = 7.5


@dataclass(frozen=True)
class EmbeddedImage:
    """A validated image ready to be placed in the document."""

    data: bytes
    format: str
    width_in: float
    height_in: float


def is_data_uri(source: str) -> bool:
    return source[:5].lower() == "data:"


def decode_data_uri(uri: str) -> bytes:
    """Decode ``data:[<mediatype>][;base64],<data>`` into raw bytes."""
    header, sep, payload = uri.partition(",")
    if not sep:
        raise ImageUnavailable("malformed data URI (missing ',')")
    if header.lower().endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ImageUnavailable(f"invalid base64 payload: {exc}") from exc
    return unquote_to_bytes(payload)


def read_image_source(source: ImageSource, loader: Optional[ImageLoader] = None) -> bytes:
    """Return the raw bytes behind ``source``.

    Bytes pass through, data URIs are decoded locally and any other string is
    resolved with ``loader``. Without a loader a non-data source is reported
    as unavailable.
    """
    if source is None:
        raise ImageUnavailable("no image source")
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    elif isinstance(source, str):
        source = source.strip()
        if not source:
            raise ImageUnavailable("empty image source")
        if is_data_uri(source):
            data = decode_data_uri(source)
        elif loader is None:
            raise ImageUnavailable("no loader configured for non-data image source")
        else:
            try:
                data = loader(source)
            except ImageUnavailable:
                raise
            except Exception as exc:
                raise ImageUnavailable(f"loader failed: {exc}") from exc
    else:
        raise ImageUnavailable(f"unsupported image source type {type(source).__name__}")

    if not data:
        raise ImageUnavailable("image source is empty")
    return data


def _fit(width_px: int, height_px: int, dpi: float) -> tuple:
    width_in = width_px / dpi
    height_in = height_px / dpi
    scale = min(1.0, MAX_WIDTH_IN / width_in, MAX_HEIGHT_IN / height_in)
    return round(width_in * scale, 3), round(height_in * scale, 3)


def _docx_readable(data: bytes) -> bool:
    """True when python-docx can parse the image header of ``data``."""
    try:
        DocxImage.from_blob(data)
    except (InvalidImageStreamError, UnexpectedEndOfFileError, UnrecognizedImageError, ValueError):
        return False
    return True


def _to_png(im) -> bytes:
    out = BytesIO()
    if im.mode in ("RGB", "RGBA", "L", "LA", "P"):
        converted = im
    else:
        converted = im.convert("RGBA" if "A" in im.getbands() else "RGB")
    converted.save(out, format="PNG")
    return out.getvalue()


def prepare_image(data: bytes) -> EmbeddedImage:
    """Validate ``data`` with Pillow and size it to fit the page.

    Formats python-docx cannot embed (WEBP, ICO, ...) and images whose headers
    it cannot parse (e.g. JPEGs with corrupt EXIF) are re-encoded to PNG.
    """
    try:
        with Image.open(BytesIO(data)) as im:
            im.load()
            fmt = (im.format or "").upper()
            width_px, height_px = im.size
            if width_px <= 0 or height_px <= 0:
                raise ImageUnavailable("image has no pixels")
            dpi = im.info.get("dpi", (DEFAULT_DPI, DEFAULT_DPI))[0] or DEFAULT_DPI
            if fmt not in DOCX_FORMATS or not _docx_readable(data):
                data = _to_png(im)
                fmt = "PNG"
    except ImageUnavailable:
        raise
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageUnavailable(f"cannot decode image: {exc}") from exc

    if not _docx_readable(data):
        raise ImageUnavailable("image cannot be embedded in the document")

    width_in, height_in = _fit(width_px, height_px, float(dpi))
    return EmbeddedImage(data=data, format=fmt, width_in=width_in, height_in=height_in)


def load_image(source: ImageSource, loader: Optional[ImageLoader] = None) -> EmbeddedImage:
    return prepare_image(read_image_source(source, loader))
