"""Report builder: product test data in, .docx artifact out.

``build_report`` is a pure function of its inputs apart from logging: it does
no network or storage I/O of its own and does not modify the records it is
given. Non-data-URI images are resolved through the optional ``loader``
callable supplied by the caller.

Copyright (c) Bryn Gwalad 2025
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from .document import ReportDocument, assemble_document
from .docx_writer import render_docx
from .errors import SerializationFailure
from .filenames import PURPOSE_DOWNLOAD, report_filename, timestamp_token
from .images import ImageLoader, ImageSource

logger = logging.getLogger(__name__)

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass(frozen=True)
class ReportArtifact:
    """Serialized report plus the model it was rendered from."""

    content: bytes
    filename: str
    document: ReportDocument
    media_type: str = DOCX_MEDIA_TYPE


def build_report(
    product: Any,
    components: Sequence[Any] = (),
    photos: Sequence[Any] = (),
    screenshot: ImageSource = None,
    *,
    purpose: str = PURPOSE_DOWNLOAD,
    timestamp: Optional[int] = None,
    loader: Optional[ImageLoader] = None,
    generated_at: Optional[datetime] = None,
) -> ReportArtifact:
    """Build the test report for ``product``.

    Raises:
        InvalidInput: missing product name/inventory id or unknown purpose.
        SerializationFailure: python-docx could not pack the document.
    """
    if timestamp is None:
        timestamp = timestamp_token()
    filename = report_filename(getattr(product, "name", "") or "", purpose, timestamp)

    document = assemble_document(
        product,
        list(components),
        list(photos),
        screenshot,
        loader=loader,
        generated_at=generated_at,
    )

    try:
        content = render_docx(document)
    except Exception as exc:
        logger.exception("Failed to serialize report for inventory_id=%s", document.inventory_id)
        raise SerializationFailure("Export failed, please retry") from exc

    logger.info(
        "Built report %s: %d components, %d photos, screenshot=%s",
        filename,
        len(document.components),
        len(document.photos),
        document.has_screenshot,
    )
    return ReportArtifact(content=content, filename=filename, document=document)


async def build_report_async(*args, **kwargs) -> ReportArtifact:
    """Run ``build_report`` in a worker thread so the event loop stays free."""
    return await asyncio.to_thread(build_report, *args, **kwargs)
