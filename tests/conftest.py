"""
Shared fixtures: synthetic page rasters built with numpy.

Usage:
    def test_something(blank_page, paint):
        px = blank_page(400, 600)
        paint(px, 10, 10, 50, 50)
"""

import io

import fitz
import numpy as np
import pytest
from PIL import Image

from raster_source import RasterBuffer


@pytest.fixture
def blank_page():
    """Factory for a writable, opaque white HxWx4 RGBA array."""
    def _make(width, height, value=255):
        px = np.full((height, width, 4), value, dtype=np.uint8)
        px[:, :, 3] = 255
        return px
    return _make


@pytest.fixture
def paint():
    """Fill a rectangle (x, y, w, h) of an RGBA array with a gray level."""
    def _paint(px, x, y, w, h, value=0):
        px[y:y + h, x:x + w, :3] = value
        return px
    return _paint


@pytest.fixture
def stripes():
    """Alternating black/white rows inside columns [x0, x1]."""
    def _stripes(px, x0, x1):
        px[0::2, x0:x1 + 1, :3] = 0
        px[1::2, x0:x1 + 1, :3] = 255
        return px
    return _stripes


@pytest.fixture
def as_raster():
    return RasterBuffer


@pytest.fixture
def pdf_bytes():
    """Factory for an in-memory PDF; each page is (width_pt, height_pt, black rects)."""
    def _make(pages):
        doc = fitz.open()
        for width, height, rects in pages:
            page = doc.new_page(width=width, height=height)
            for rect in rects:
                page.draw_rect(fitz.Rect(*rect), color=(0, 0, 0), fill=(0, 0, 0))
        data = doc.tobytes()
        doc.close()
        return data
    return _make


@pytest.fixture
def png_bytes():
    def _make(array):
        buf = io.BytesIO()
        Image.fromarray(array).save(buf, format="PNG")
        return buf.getvalue()
    return _make
