"""PDF and CSV exports of product lists."""
import csv
import io
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from xml.sax.saxutils import escape

from PIL import Image as PILImage
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import Flowable, Image, Paragraph, SimpleDocTemplate, Spacer

from images import ImageStore

logger = logging.getLogger(__name__)

MARGIN = 10 * mm
MAX_IMAGE_HEIGHT = 100 * mm
PX_TO_MM = 0.264583  # at 96 DPI

CSV_HEADERS = [
    "ID",
    "Name",
    "Description",
    "Price",
    "Original Price",
    "Category",
    "Status",
    "Stock",
    "SKU",
    "Tags",
    "Created At",
    "Updated At",
]


class NumberedCanvas(canvas.Canvas):
    """Canvas that stamps "Page i of N" once the page count is known."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self._draw_page_number(total)
            super().showPage()
        super().save()

    def _draw_page_number(self, total: int) -> None:
        width, _ = self._pagesize
        self.setFont("Helvetica", 8)
        self.setFillColor(colors.grey)
        self.drawRightString(width - MARGIN, MARGIN / 2, f"Page {self._pageNumber} of {total}")


def _image_flowable(store: ImageStore, url: Optional[str], max_width: float, max_height: float) -> Optional[Flowable]:
    path = store.path_for(url)
    if path is None:
        logger.warning("Skipping image outside the upload directory: %s", url)
        return None
    try:
        with PILImage.open(path) as source:
            image = source.convert("RGB")
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=95)
    except OSError as exc:
        logger.warning("Skipping unreadable image %s: %s", url, exc)
        return None
    buffer.seek(0)
    width = image.width * PX_TO_MM * mm
    height = image.height * PX_TO_MM * mm
    scale = min(1.0, max_width / width, max_height / height)
    flowable = Image(buffer, width=width * scale, height=height * scale)
    flowable.hAlign = "CENTER"
    return flowable


def generate_products_pdf(products: Sequence[Dict[str, Any]], store: ImageStore) -> bytes:
    """Render every image of every product, one heading per product."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=MARGIN,
        bottomMargin=MARGIN,
        title="Product Images",
    )
    styles = getSampleStyleSheet()
    muted = ParagraphStyle("Muted", parent=styles["Italic"], textColor=colors.grey)

    story: List[Flowable] = [Paragraph("Product Images", styles["Title"]), Spacer(1, 5 * mm)]
    for product in products:
        story.append(Paragraph(escape(product.get("name") or ""), styles["Heading2"]))
        images = product.get("images") or []
        if not images:
            story.append(Paragraph("No images available", muted))
        for image in images:
            flowable = _image_flowable(store, image.get("url"), doc.width, MAX_IMAGE_HEIGHT)
            if flowable is not None:
                story.extend([flowable, Spacer(1, 10 * mm)])
        story.append(Spacer(1, 5 * mm))

    doc.build(story, canvasmaker=NumberedCanvas)
    return buffer.getvalue()


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return value or ""


def generate_products_csv(products: Sequence[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    for product in products:
        writer.writerow([
            product.get("id"),
            product.get("name") or "",
            product.get("description") or "",
            product.get("price"),
            product.get("originalPrice") or "",
            product.get("category") or "",
            product.get("status") or "",
            product.get("stock", ""),
            product.get("sku") or "",
            ", ".join(product.get("tags") or []),
            _format_date(product.get("createdAt")),
            _format_date(product.get("updatedAt")),
        ])
    return buffer.getvalue()
