"""Filename derivation for exported reports.

Copyright (c) Bryn Gwalad 2025
"""

import re
import time
from typing import Optional

from .errors import InvalidInput

PURPOSE_DOWNLOAD = "download"
PURPOSE_EMAIL = "email"
PURPOSES = (PURPOSE_DOWNLOAD, PURPOSE_EMAIL)

REPORT_EXTENSION = ".docx"

_WHITESPACE = re.compile(r"\s+")
_PATH_SEPARATORS = re.compile(r"[\\/]")


def timestamp_token(now: Optional[float] = None) -> int:
    """Milliseconds since the epoch, used as the uniqueness token."""
    if now is None:
        now = time.time()
    return int(now * 1000)


def safe_stem(name: str) -> str:
    stem = _PATH_SEPARATORS.sub("_", name.strip())
    return _WHITESPACE.sub("_", stem)


def report_filename(name: str, purpose: str = PURPOSE_DOWNLOAD, timestamp: Optional[int] = None) -> str:
    """Return the suggested filename for a product report.

    ``download`` filenames carry ``timestamp`` so repeated exports of the same
    product never overwrite each other. ``email`` filenames are stable; the
    email delivery path stores each export in its own timestamped directory
    instead.
    """
    if purpose not in PURPOSES:
        raise InvalidInput(f"unknown report purpose {purpose!r}")
    stem = safe_stem(name or "")
    if not stem:
        raise InvalidInput("product name is required to name the report")
    if purpose == PURPOSE_EMAIL:
        return f"{stem}_test_report{REPORT_EXTENSION}"
    if timestamp is None:
        timestamp = timestamp_token()
    return f"{stem}_test_report_{int(timestamp)}{REPORT_EXTENSION}"
