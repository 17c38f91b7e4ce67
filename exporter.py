import logging
import re
from dataclasses import replace

import cv2
import fitz  # PyMuPDF

from batch import fail_item
from errors import EncodingFailure
from schemas import Marketplace

logger = logging.getLogger(__name__)


def encode_png(canvas):
    """Lossless PNG bytes of a normalized canvas."""
    try:
        bgr = cv2.cvtColor(canvas.buffer.pixels, cv2.COLOR_RGBA2BGR)
        is_success, buffer = cv2.imencode(".png", bgr)
    except cv2.error as e:
        raise EncodingFailure(f"PNG encoding failed: {e}") from e
    if not is_success:
        raise EncodingFailure("PNG encoding failed")
    return buffer.tobytes()


def _write_pdf(pages):
    """`pages` is a list of (png bytes, TargetSpec); one full-bleed page each."""
    doc = fitz.open()
    try:
        for png, page_target in pages:
            width_pt, height_pt = page_target.page_size_pt
            page = doc.new_page(width=width_pt, height=height_pt)
            page.draw_rect(page.rect, color=None, fill=(1, 1, 1))
            page.insert_image(page.rect, stream=png, keep_proportion=False)
        data = doc.tobytes(deflate=True)
    except (RuntimeError, ValueError) as e:
        raise EncodingFailure(f"PDF export failed: {e}") from e
    finally:
        doc.close()
    logger.info("Exported %d page(s), %d bytes", len(pages), len(data))
    return data


def export_pdf(canvases, target=None):
    """One full-bleed page per canvas at the exact physical label size.

    A single canvas gives a one-page PDF; several are merged in order.
    """
    canvases = list(canvases)
    if not canvases:
        raise EncodingFailure("no processed labels to export")
    return _write_pdf([(encode_png(c), target or c.target) for c in canvases])


def export_items(items, target=None):
    """Merge the finished batch items into one PDF.

    Each page is encoded on its own; an item whose page cannot be encoded
    comes back failed and is left out of the document. Returns
    (pdf bytes or None when no page survived, items).
    """
    pages, out = [], []
    for item in items:
        if item.ok:
            try:
                pages.append((encode_png(item.canvas), target or item.canvas.target))
            except EncodingFailure as e:
                item = fail_item(replace(item, canvas=None), EncodingFailure(str(e), item.source_id))
        out.append(item)
    if not pages:
        return None, out
    return _write_pdf(pages), out


def export_filename(marketplace, source_ids):
    market = Marketplace(marketplace).value
    source_ids = list(source_ids)
    if len(source_ids) == 1:
        stem = re.sub(r"\.pdf$", "", source_ids[0], flags=re.IGNORECASE)
        return f"{market}-{stem}-label.pdf"
    return f"{market}-labels-merged.pdf"
