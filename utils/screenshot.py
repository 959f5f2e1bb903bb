"""Screenshot intake for report exports.

The client renders the on-screen test panel itself and sends the result as
an image data URI. ``capture_screenshot`` validates that payload once per
export action; a bad or missing screenshot is logged and treated as "no
screenshot" so the export carries on without it.

Copyright (c) Bryn Gwalad 2025
"""

import logging
from typing import Optional

from report.errors import CaptureFailure, ImageUnavailable
from report.images import decode_data_uri, is_data_uri, prepare_image

logger = logging.getLogger("inventory_api")


def _validate(source: str) -> str:
    source = source.strip()
    if not is_data_uri(source):
        raise CaptureFailure("screenshot must be an image data URI")
    try:
        prepare_image(decode_data_uri(source))
    except ImageUnavailable as exc:
        raise CaptureFailure(str(exc)) from exc
    return source


def capture_screenshot(source: Optional[str]) -> Optional[str]:
    """Return the screenshot data URI, or None when absent or unusable. Never raises."""
    if not source:
        return None
    try:
        return _validate(source)
    except CaptureFailure as exc:
        logger.warning("Screenshot capture failed, exporting without it: %s", exc)
        return None
