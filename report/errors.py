"""Exceptions raised by the report builder.

``InvalidInput`` and ``SerializationFailure`` propagate to the caller.
``ImageUnavailable`` and ``CaptureFailure`` are recovered where they occur
and only ever show up in the logs (and as markers in the document).

Copyright (c) Bryn Gwalad 2025
"""


class ReportError(Exception):
    """Base class for report generation errors."""


class InvalidInput(ReportError):
    """Required product fields are missing or an argument is out of range."""


class ImageUnavailable(ReportError):
    """A single photo or screenshot could not be decoded or embedded."""


class SerializationFailure(ReportError):
    """Packing the document into bytes failed; no artifact is produced."""


class CaptureFailure(ReportError):
    """The supplied screenshot could not be used."""
