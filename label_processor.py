import logging
import math
from dataclasses import dataclass

import cv2
import numpy as np

from errors import DetectionFailure
from raster_source import RasterBuffer
from schemas import (
    DEFAULT_SETTINGS,
    EXPORT_DPI,
    MARKETPLACE_PROFILES,
    BoundingBox,
    CropInfo,
    LocatorHints,
    Marketplace,
    TargetSpec,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DensityProfile:
    rows: np.ndarray
    cols: np.ndarray


@dataclass(frozen=True)
class CanvasPlacement:
    """Where the scaled crop sits on the canvas. One scale for both axes."""

    x: int
    y: int
    width: int
    height: int
    scale: float


@dataclass(frozen=True)
class NormalizedCanvas:
    buffer: RasterBuffer
    target: TargetSpec
    placement: CanvasPlacement
    crop: CropInfo

    @property
    def width(self):
        return self.buffer.width

    @property
    def height(self):
        return self.buffer.height


def luminance(buffer):
    """Perceptual luminance per pixel (alpha ignored) as float64."""
    px = buffer.pixels
    return px[:, :, 0] * 0.299 + px[:, :, 1] * 0.587 + px[:, :, 2] * 0.114


def _window_sums(ii, size):
    return ii[size:, size:] - ii[:-size, size:] - ii[size:, :-size] + ii[:-size, :-size]


# Density profiler

def _profile_from_luminance(lum, settings=DEFAULT_SETTINGS):
    weight = (255.0 - lum) / 255.0
    weight = np.where(lum < settings.dark_luminance, weight * 2, weight)
    return DensityProfile(rows=weight.mean(axis=1), cols=weight.mean(axis=0))


def profile_density(buffer, settings=DEFAULT_SETTINGS):
    """Per-row and per-column ink density.

    Pixels darker than the dark split weigh double so that ink dominates
    the faint anti-aliasing noise of a white background.
    """
    return _profile_from_luminance(luminance(buffer), settings)


# Barcode / QR locator

def _locate_left_barcode(lum, settings):
    h, w = lum.shape
    scan = int(math.ceil(min(w * settings.barcode_scan_fraction, settings.barcode_scan_max_px)))
    if scan == 0 or h < 2:
        return None, None
    strip = lum[:, :scan]
    transitions = (np.abs(np.diff(strip, axis=0)) > settings.transition_delta).sum(axis=0)
    cols = np.flatnonzero(transitions > h * settings.transition_fraction)
    if cols.size == 0:
        return None, None
    return int(cols[0]), int(cols[-1])


def _locate_qr(lum, settings):
    """Slide a square window over the upper right of the page and keep the
    most checkerboard-like one. Returns (center, score); center is None
    when the best score does not clear `qr_min_score`.
    """
    h, w = lum.shape
    win = settings.qr_window
    lo, hi = settings.qr_x_range
    x0 = int(math.ceil(w * lo))
    x_stop = min(int(math.ceil(w * hi)), w - win)
    y_stop = min(int(math.ceil(min(h * settings.qr_y_fraction, settings.qr_y_max_px))), h - win)
    if x_stop <= x0 or y_stop <= 0:
        return None, 0.0

    region = lum[:y_stop - 1 + win, x0:x_stop - 1 + win]
    n = float(win * win)
    sums, sq_sums = cv2.integral2(np.ascontiguousarray(region), sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)
    mean = _window_sums(sums, win) / n
    variance = np.maximum(_window_sums(sq_sums, win) / n - mean * mean, 0.0)
    dark_mask = (region < settings.dark_luminance).astype(np.uint8)
    dark = _window_sums(cv2.integral(dark_mask).astype(np.float64), win)
    light = n - dark

    floor = n * settings.qr_mixed_fraction
    score = np.where((dark > floor) & (light > floor), variance, 0.0)
    # Integral-image round-off must not reorder equal windows; first in
    # row-major order wins.
    score = np.round(score, 3)
    by, bx = np.unravel_index(int(np.argmax(score)), score.shape)
    best = float(score[by, bx])
    if best <= settings.qr_min_score:
        return None, best
    return (float(x0 + bx + win / 2), float(by + win / 2)), best


def _locate_from_luminance(lum, settings=DEFAULT_SETTINGS):
    left, right = _locate_left_barcode(lum, settings)
    qr_center, qr_score = _locate_qr(lum, settings)
    hints = LocatorHints(left_edge=left, right_edge=right, qr_center=qr_center, qr_score=qr_score)
    logger.debug("Locator hints: left=%s right=%s qr=%s score=%.1f",
                 left, right, qr_center, qr_score)
    return hints


def locate_barcodes(buffer, settings=DEFAULT_SETTINGS):
    """Find a vertical barcode run on the left margin and a QR-like block.

    Only visual presence is detected; nothing is decoded. Every field of
    the returned hints is optional evidence.
    """
    return _locate_from_luminance(luminance(buffer), settings)


# Bounds detector

def _adaptive_threshold(values, settings):
    ordered = np.sort(values)
    return float(ordered[int(len(ordered) * settings.density_percentile)]) * settings.threshold_factor


def _padding(marketplace, content_w, content_h):
    profile = MARKETPLACE_PROFILES[Marketplace(marketplace)]
    pad_x = max(profile.min_padding_px, content_w * profile.padding_fraction)
    pad_y = max(profile.min_padding_px, content_h * profile.padding_fraction)
    return pad_x, pad_y


def _detect_bounds(lum, profile, hints, marketplace, settings):
    h, w = lum.shape
    if profile.rows.shape != (h,) or profile.cols.shape != (w,):
        raise DetectionFailure(
            f"density profile {profile.rows.shape}/{profile.cols.shape} does not match {w}x{h} raster")
    if hints.left_edge is not None and not 0 <= hints.left_edge < w:
        raise DetectionFailure(f"left barcode edge {hints.left_edge} outside raster")

    qr = hints.qr_center
    start, end = 0, h
    if qr is not None:
        qy = qr[1]
        start = max(0, int(math.floor(qy - settings.window_above_qr)))
        end = min(h, int(math.floor(qy + settings.window_below_qr)))
        if end <= start:
            raise DetectionFailure(f"QR center {qr} outside raster")

    row_thr = _adaptive_threshold(profile.rows, settings)
    col_thr = _adaptive_threshold(profile.cols, settings)
    margin = settings.edge_margin

    # The QR anchor alone decides the vertical extent. Without density
    # evidence an axis spans the search window.
    y_found = x_found = True
    if qr is not None:
        min_y = max(0, int(math.floor(qr[1] - settings.anchor_above_qr)))
        max_y = min(h, int(math.floor(qr[1] + settings.anchor_below_qr)))
    else:
        dense = start + np.flatnonzero(profile.rows[start:end] > row_thr)
        if dense.size:
            min_y = max(0, int(dense[0]) - margin)
            max_y = min(h - 1, int(dense[-1]) + margin)
        else:
            min_y, max_y = start, end - 1
            y_found = False

    dense = np.flatnonzero(profile.cols > col_thr)
    if dense.size:
        min_x = max(0, int(dense[0]) - margin)
        max_x = min(w - 1, int(dense[-1]) + margin)
    else:
        min_x, max_x = 0, w - 1
        x_found = False
    # The left barcode alone decides the left edge.
    if hints.left_edge is not None:
        min_x = max(0, hints.left_edge - settings.left_barcode_margin)
        max_x = max(max_x, min_x)
        x_found = True

    rm = settings.refine_margin
    y0, y1 = max(0, min_y - rm), min(h, max_y + rm)
    x0, x1 = max(0, min_x - rm), min(w, max_x + rm)
    ink = lum[y0:y1, x0:x1] < settings.ink_luminance
    ink_rows = np.flatnonzero(ink.any(axis=1))
    if ink_rows.size:
        ink_cols = np.flatnonzero(ink.any(axis=0))
        min_y = min(min_y, y0 + int(ink_rows[0]))
        max_y = max(max_y, y0 + int(ink_rows[-1]))
        min_x = min(min_x, x0 + int(ink_cols[0]))
        max_x = max(max_x, x0 + int(ink_cols[-1]))
    else:
        # No ink anywhere near the box: shrink unsupported axes to a point.
        if not y_found:
            min_y = max_y = (start + end - 1) // 2
        if not x_found:
            min_x = max_x = (w - 1) // 2

    if qr is not None and max_y - min_y > settings.max_label_height:
        max_y = min_y + settings.max_label_height

    pad_x, pad_y = _padding(marketplace, max_x - min_x, max_y - min_y)
    x = max(0, int(math.floor(min_x - pad_x)))
    y = max(0, int(math.floor(min_y - pad_y)))
    right = min(w, int(math.ceil(max_x + pad_x)))
    bottom = min(h, int(math.ceil(max_y + pad_y)))
    box = BoundingBox(x=x, y=y, width=right - x, height=bottom - y)
    logger.debug("Detected bounds %s (row_thr=%.4f col_thr=%.4f qr=%s)",
                 box.as_tuple(), row_thr, col_thr, qr is not None)
    return box


def detect_bounds(buffer, profile, hints, marketplace, settings=DEFAULT_SETTINGS):
    """Combine density and locator hints into the label bounding box.

    A page without ink still yields a (tiny) box; None means detection
    itself broke down and the caller should not crop.
    """
    try:
        return _detect_bounds(luminance(buffer), profile, hints, marketplace, settings)
    except (DetectionFailure, ValueError, IndexError) as e:
        logger.warning("Bounds detection failed, keeping full page: %s", e)
        return None


def find_label_bounds(buffer, marketplace, settings=DEFAULT_SETTINGS):
    """Profile, locate and detect in one pass over a shared luminance plane."""
    try:
        lum = luminance(buffer)
        profile = _profile_from_luminance(lum, settings)
        hints = _locate_from_luminance(lum, settings)
        return _detect_bounds(lum, profile, hints, marketplace, settings)
    except (DetectionFailure, ValueError, IndexError) as e:
        logger.warning("Bounds detection failed, keeping full page: %s", e)
        return None


# Canvas normalizer

def crop_to_bounds(buffer, box, settings=DEFAULT_SETTINGS):
    """Return (pixels, CropInfo). Falls back to the full source when the box
    is missing, outside the raster, or below the area floor.
    """
    W, H = buffer.width, buffer.height
    if box is None:
        return buffer.pixels, CropInfo(x=0, y=0, width=W, height=H,
                                       area_fraction=1.0, used_crop=False)
    frac = box.area / float(W * H)
    if frac < settings.min_area_fraction or not box.fits_within(W, H):
        logger.warning("Detected box %s covers %.3f%% of the page, using full page",
                       box.as_tuple(), frac * 100)
        return buffer.pixels, CropInfo(x=0, y=0, width=W, height=H,
                                       area_fraction=frac, used_crop=False)
    x, y, w, h = box.as_tuple()
    return buffer.pixels[y:y + h, x:x + w], CropInfo(x=x, y=y, width=w, height=h,
                                                     area_fraction=frac, used_crop=True)


def _flatten_on_white(pixels):
    rgb = pixels[:, :, :3]
    alpha = pixels[:, :, 3]
    if np.all(alpha == 255):
        return np.ascontiguousarray(rgb)
    a = alpha[:, :, None].astype(np.float64) / 255.0
    return np.rint(rgb * a + 255.0 * (1.0 - a)).astype(np.uint8)


def fit_placement(crop_w, crop_h, target):
    tw, th = target.pixel_size
    scale = min(tw / crop_w, th / crop_h)
    sw = min(tw, max(1, int(round(crop_w * scale))))
    sh = min(th, max(1, int(round(crop_h * scale))))
    return CanvasPlacement(x=(tw - sw) // 2, y=(th - sh) // 2, width=sw, height=sh, scale=scale)


def fit_to_canvas(pixels, target):
    """Scale `pixels` uniformly to fit `target` and center on opaque white.

    Returns (canvas RGBA array, CanvasPlacement).
    """
    ch, cw = pixels.shape[:2]
    place = fit_placement(cw, ch, target)
    rgb = _flatten_on_white(pixels)
    if (place.width, place.height) != (cw, ch):
        interp = cv2.INTER_AREA if place.scale < 1 else cv2.INTER_LINEAR
        rgb = cv2.resize(rgb, (place.width, place.height), interpolation=interp)
    tw, th = target.pixel_size
    canvas = np.full((th, tw, 4), 255, dtype=np.uint8)
    canvas[place.y:place.y + place.height, place.x:place.x + place.width, :3] = rgb
    return canvas, place


def normalize(buffer, box, target, settings=DEFAULT_SETTINGS):
    """Crop to `box` and render onto the exact physical target canvas.

    Preview and export both go through here so they stay pixel-identical.
    """
    pixels, crop = crop_to_bounds(buffer, box, settings)
    canvas, place = fit_to_canvas(pixels, target)
    canvas.setflags(write=False)
    return NormalizedCanvas(buffer=RasterBuffer(canvas), target=target, placement=place, crop=crop)


def draw_detection_preview(buffer, box):
    """RGB copy of the page with the detected box outlined and labeled."""
    preview = buffer.pixels[:, :, :3].copy()
    if box is None:
        return preview
    x, y, w, h = box.as_tuple()
    cv2.rectangle(preview, (x, y), (x + w, y + h), (0, 255, 0), max(3, int(min(w, h) * 0.005)))

    text = f"Detected: {w}x{h}px"
    font = cv2.FONT_HERSHEY_SIMPLEX
    font_scale = max(0.5, min(w, h) / 1000)
    thickness = max(1, int(font_scale * 2))
    text_size = cv2.getTextSize(text, font, font_scale, thickness)[0]
    text_x = x + (w - text_size[0]) // 2
    text_y = max(y - 10, text_size[1] + 10)
    cv2.rectangle(preview, (text_x - 5, text_y - text_size[1] - 5),
                  (text_x + text_size[0] + 5, text_y + 5), (0, 255, 0), -1)
    cv2.putText(preview, text, (text_x, text_y), font, font_scale, (0, 0, 0), thickness)
    return preview


class LabelProcessor:
    """Detect and normalize labels for one marketplace.

    Holds only call configuration; every call is independent.
    """

    def __init__(self, marketplace=Marketplace.FLIPKART, settings=DEFAULT_SETTINGS, dpi=EXPORT_DPI,
                 target=None):
        self.marketplace = Marketplace(marketplace)
        self.settings = settings
        self.target = target or TargetSpec.for_marketplace(self.marketplace, dpi=dpi)

    def find_label_bounds(self, buffer):
        return find_label_bounds(buffer, self.marketplace, self.settings)

    def process(self, buffer):
        """Return (NormalizedCanvas, detected box or None)."""
        box = self.find_label_bounds(buffer)
        return normalize(buffer, box, self.target, self.settings), box
