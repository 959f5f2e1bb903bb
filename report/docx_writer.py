"""Serialize a ``ReportDocument`` to a Word (.docx) file with python-docx.

Layout:
  - title block: report heading, product name, details table
  - components: status summary and one table row per component
  - photos: new page, one picture (or unavailable marker) per photo
  - screenshot: new page, only when the document has one

Copyright (c) Bryn Gwalad 2025
"""

from io import BytesIO

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Inches, Pt, RGBColor

from .document import (
    IMAGE_UNAVAILABLE,
    STATUS_NOT_WORKING,
    STATUS_WORKING,
    ImageEntry,
    ReportDocument,
)

REPORT_HEADING = "Product Testing Report"
COMPONENTS_HEADING = "Component Tests"
PHOTOS_HEADING = "Product Photos"
SCREENSHOT_HEADING = "Test Panel Screenshot"

COMPONENT_COLUMNS = ("Component", "Status", "Notes", "Last Tested")

STATUS_COLORS = {
    STATUS_WORKING: RGBColor(0x16, 0xA3, 0x4A),
    STATUS_NOT_WORKING: RGBColor(0xDC, 0x26, 0x26),
}
UNTESTED_COLOR = RGBColor(0x6B, 0x72, 0x80)

DATE_FORMAT = "%Y-%m-%d %H:%M"


def _details_table(doc, report: ReportDocument) -> None:
    rows = [
        ("Inventory ID", report.inventory_id),
        ("Description", report.description),
        ("Price", report.formatted_price),
        ("Generated", report.generated_at.strftime(DATE_FORMAT)),
    ]
    table = doc.add_table(rows=0, cols=2)
    table.style = "Table Grid"
    for label, value in rows:
        cells = table.add_row().cells
        cells[0].paragraphs[0].add_run(label).bold = True
        cells[1].text = value


def _components_section(doc, report: ReportDocument) -> None:
    doc.add_heading(COMPONENTS_HEADING, level=2)
    summary = report.summary
    doc.add_paragraph(
        f"{summary.working} working, {summary.not_working} not working, "
        f"{summary.untested} untested ({summary.total} total)"
    )

    table = doc.add_table(rows=1, cols=len(COMPONENT_COLUMNS))
    table.style = "Table Grid"
    for cell, title in zip(table.rows[0].cells, COMPONENT_COLUMNS):
        cell.paragraphs[0].add_run(title).bold = True

    for entry in report.components:
        cells = table.add_row().cells
        cells[0].text = entry.name
        run = cells[1].paragraphs[0].add_run(entry.marker)
        run.bold = True
        run.font.color.rgb = STATUS_COLORS.get(entry.status, UNTESTED_COLOR)
        cells[2].text = entry.notes or "-"
        cells[3].text = entry.tested_at.strftime(DATE_FORMAT) if entry.tested_at else "-"


def _image(doc, entry: ImageEntry) -> None:
    if entry.available:
        doc.add_picture(
            BytesIO(entry.image.data),
            width=Inches(entry.image.width_in),
            height=Inches(entry.image.height_in),
        )
        doc.paragraphs[-1].alignment = WD_ALIGN_PARAGRAPH.CENTER
    else:
        marker = doc.add_paragraph()
        run = marker.add_run(f"[{IMAGE_UNAVAILABLE}: {entry.caption}]")
        run.italic = True
        run.font.color.rgb = STATUS_COLORS[STATUS_NOT_WORKING]

    caption = doc.add_paragraph()
    caption.alignment = WD_ALIGN_PARAGRAPH.CENTER
    run = caption.add_run(entry.caption)
    run.font.size = Pt(9)
    run.italic = True


def render_docx(report: ReportDocument) -> bytes:
    """Return the .docx bytes for ``report``.

    Errors from python-docx propagate; the builder wraps them.
    """
    doc = Document()
    props = doc.core_properties
    props.title = report.title
    props.subject = f"Inventory ID {report.inventory_id}"
    props.created = report.generated_at

    doc.add_heading(REPORT_HEADING, level=0)
    doc.add_heading(report.name, level=1)
    _details_table(doc, report)

    if report.has_components:
        _components_section(doc, report)

    if report.has_photos:
        doc.add_page_break()
        doc.add_heading(PHOTOS_HEADING, level=2)
        for entry in report.photos:
            _image(doc, entry)

    if report.has_screenshot:
        doc.add_page_break()
        doc.add_heading(SCREENSHOT_HEADING, level=2)
        _image(doc, report.screenshot)

    out = BytesIO()
    doc.save(out)
    return out.getvalue()
