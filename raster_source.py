import io
import logging
from dataclasses import dataclass

import fitz  # PyMuPDF
import numpy as np
from PIL import Image, ImageSequence, UnidentifiedImageError

from errors import RasterizationFailure, UnsupportedInput

logger = logging.getLogger(__name__)

RENDER_SCALE = 3.0
PDF_SIGNATURE = b"%PDF"


@dataclass(frozen=True)
class RasterBuffer:
    """One rendered page as a read-only height x width x 4 RGBA array."""

    pixels: np.ndarray

    def __post_init__(self):
        px = self.pixels
        if px.ndim != 3 or px.shape[2] != 4 or px.dtype != np.uint8:
            raise ValueError(f"expected HxWx4 uint8 RGBA pixels, got {px.shape} {px.dtype}")
        if px.shape[0] == 0 or px.shape[1] == 0:
            raise ValueError("raster must have positive width and height")
        if px.flags.writeable:
            px = px.copy()
            px.setflags(write=False)
            object.__setattr__(self, "pixels", px)

    @property
    def width(self):
        return self.pixels.shape[1]

    @property
    def height(self):
        return self.pixels.shape[0]

    @classmethod
    def from_bytes(cls, width, height, data):
        if width <= 0 or height <= 0:
            raise ValueError("raster must have positive width and height")
        if len(data) != width * height * 4:
            raise ValueError(
                f"RGBA buffer length {len(data)} does not match {width}x{height}x4")
        arr = np.frombuffer(bytes(data), dtype=np.uint8).reshape(height, width, 4)
        return cls(arr)

    @classmethod
    def from_rgb(cls, rgb):
        """Wrap an HxWx3 RGB array as an opaque RGBA raster."""
        alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return cls(np.concatenate([rgb.astype(np.uint8), alpha], axis=2))


def sniff_format(data):
    """Return 'pdf', 'image' or None for the given file bytes."""
    if not data:
        return None
    if data.lstrip()[:4] == PDF_SIGNATURE:
        return "pdf"
    try:
        with Image.open(io.BytesIO(data)):
            pass
    except Image.DecompressionBombError as e:
        logger.warning("Image too large to open: %s", e)
        return None
    except (UnidentifiedImageError, OSError):
        return None
    return "image"


def pdf_to_raster(pdf_bytes, scale=RENDER_SCALE, source_id=None):
    """Render only the first page of a PDF at `scale` onto white."""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        raise RasterizationFailure(f"cannot open PDF: {e}", source_id) from e
    try:
        if doc.page_count == 0:
            raise UnsupportedInput("PDF has no pages", source_id)
        if doc.page_count > 1:
            logger.debug("%s: %d pages, rendering page 1 only", source_id, doc.page_count)
        page = doc[0]
        mat = fitz.Matrix(scale, scale)
        pix = page.get_pixmap(matrix=mat, alpha=False)
        img = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
    except (RuntimeError, ValueError) as e:
        raise RasterizationFailure(f"cannot render PDF page 1: {e}", source_id) from e
    finally:
        doc.close()
    if pix.n == 1:
        img = np.repeat(img, 3, axis=2)
    return RasterBuffer.from_rgb(img[:, :, :3])


def image_to_raster(image_bytes, source_id=None):
    """Decode the first frame of a raster image, flattening alpha onto white."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            frame = next(ImageSequence.Iterator(img)).convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise RasterizationFailure(f"cannot decode image: {e}", source_id) from e
    background = Image.new("RGBA", frame.size, (255, 255, 255, 255))
    flat = Image.alpha_composite(background, frame)
    return RasterBuffer(np.asarray(flat, dtype=np.uint8))


def load_first_page(data, source_id=None, scale=RENDER_SCALE):
    """Rasterize page 1 of a PDF or frame 1 of an image as RGBA.

    Raises UnsupportedInput for anything that is neither, and
    RasterizationFailure when a recognized file cannot be decoded.
    """
    kind = sniff_format(data)
    if kind == "pdf":
        return pdf_to_raster(data, scale=scale, source_id=source_id)
    if kind == "image":
        return image_to_raster(data, source_id=source_id)
    raise UnsupportedInput("not a readable PDF or image file", source_id)
