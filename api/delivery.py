"""Delivery of built reports: direct download and email handoff.

Both paths take a freshly built ``ReportArtifact``; nothing here builds or
caches reports.

Email clients reached through a ``mailto:`` link cannot receive attachments,
so the email handoff saves the document where the user can fetch it and the
message body tells them to attach it by hand.

Copyright (c) Bryn Gwalad 2025
"""

import tempfile
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from fastapi import Response

from report.builder import ReportArtifact


@dataclass(frozen=True)
class EmailHandoff:
    recipient: str
    subject: str
    body: str
    filename: str
    path: Path
    download_url: str

    @property
    def mailto(self) -> str:
        return f"mailto:{quote(self.recipient, safe='@')}?subject={quote(self.subject)}&body={quote(self.body)}"


def download_response(artifact: ReportArtifact) -> Response:
    """Return the artifact as a file download."""
    fallback = artifact.filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    disposition = f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(artifact.filename)}"
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": disposition},
    )


def email_subject(product: Any) -> str:
    return f"Product Testing Report: {product.name} (ID: {product.inventory_id})"


def email_body(product: Any, test_date: Optional[date] = None) -> str:
    test_date = test_date or date.today()
    return (
        f"Please find attached the testing report for {product.name}.\n\n"
        f"Inventory ID: {product.inventory_id}\n"
        f"Test Date: {test_date.isoformat()}\n\n"
        "Note: The Word document has been downloaded to your computer. "
        "Please attach it to this email."
    )


def prepare_email_handoff(
    artifact: ReportArtifact,
    product: Any,
    recipient: str,
    export_dir: Path,
    token: int,
    url_prefix: str = "/exports",
) -> EmailHandoff:
    """Save the artifact under ``export_dir/<token>-<random>/`` and build the email handoff.

    Email filenames carry no timestamp, so each export gets its own freshly
    created directory; two exports sharing a ``token`` still land apart.
    """
    Path(export_dir).mkdir(parents=True, exist_ok=True)
    target_dir = Path(tempfile.mkdtemp(dir=export_dir, prefix=f"{token}-"))
    path = target_dir / artifact.filename
    # write to a temp name first so a failed write never leaves a partial report
    tmp_path = path.with_suffix(path.suffix + ".part")
    tmp_path.write_bytes(artifact.content)
    tmp_path.replace(path)

    return EmailHandoff(
        recipient=recipient,
        subject=email_subject(product),
        body=email_body(product),
        filename=artifact.filename,
        path=path,
        download_url=f"{url_prefix}/{target_dir.name}/{quote(artifact.filename)}",
    )
