import logging

import numpy as np
import pytest

from label_processor import (
    DensityProfile,
    LabelProcessor,
    detect_bounds,
    draw_detection_preview,
    find_label_bounds,
    fit_placement,
    locate_barcodes,
    normalize,
    profile_density,
)
from raster_source import RasterBuffer
from schemas import BoundingBox, DetectionSettings, LocatorHints, Marketplace, TargetSpec

FLIPKART = TargetSpec.for_marketplace(Marketplace.FLIPKART)


@pytest.fixture
def label_page(blank_page, paint):
    """800x1200 page with solid content spanning x 100..500, y 200..700."""
    return RasterBuffer(paint(blank_page(800, 1200), 100, 200, 401, 501))


@pytest.fixture
def qr_page(blank_page, paint, stripes):
    """1000x1500 page: 60x60 block at (500, 100), bars in columns 0..40."""
    px = paint(blank_page(1000, 1500), 500, 100, 60, 60)
    return RasterBuffer(stripes(px, 0, 40))


class TestDensityProfile:
    """Row/column ink density"""

    def test_lengths_match_raster(self, label_page):
        profile = profile_density(label_page)
        assert profile.rows.shape == (1200,)
        assert profile.cols.shape == (800,)
        assert (profile.rows >= 0).all() and (profile.cols >= 0).all()

    def test_dark_pixels_count_double(self, blank_page, paint):
        buf = RasterBuffer(paint(blank_page(10, 4), 0, 1, 10, 1))
        profile = profile_density(buf)
        assert profile.rows.tolist() == pytest.approx([0.0, 2.0, 0.0, 0.0])
        assert profile.cols == pytest.approx(np.full(10, 0.5))

    def test_light_gray_counts_single(self, blank_page, paint):
        buf = RasterBuffer(paint(blank_page(10, 2), 0, 0, 10, 1, value=200))
        assert profile_density(buf).rows[0] == pytest.approx(55 / 255)

    def test_alpha_is_ignored(self, blank_page):
        px = blank_page(5, 5)
        px[:, :, 3] = 0
        assert profile_density(RasterBuffer(px)).rows.max() == 0


class TestLocator:
    """Barcode and QR-like block hints"""

    def test_left_barcode_run(self, blank_page, stripes):
        hints = locate_barcodes(RasterBuffer(stripes(blank_page(400, 300), 0, 40)))
        assert hints.left_edge == 0
        assert hints.right_edge == 40

    def test_barcode_scan_stays_in_left_quarter(self, blank_page, stripes):
        hints = locate_barcodes(RasterBuffer(stripes(blank_page(400, 300), 150, 180)))
        assert hints.left_edge is None
        assert hints.right_edge is None

    def test_blank_page_has_no_hints(self, blank_page):
        hints = locate_barcodes(RasterBuffer(blank_page(400, 400)))
        assert hints == LocatorHints()

    def test_qr_block(self, qr_page):
        hints = locate_barcodes(qr_page)
        assert hints.left_edge == 0
        cx, cy = hints.qr_center
        assert abs(cx - 530) <= 30
        assert abs(cy - 130) <= 30
        assert hints.qr_score > 1000

    def test_qr_search_ignores_left_side(self, blank_page, paint):
        hints = locate_barcodes(RasterBuffer(paint(blank_page(1000, 800), 100, 100, 60, 60)))
        assert hints.qr_center is None

    def test_qr_threshold_is_configurable(self, qr_page):
        strict = DetectionSettings(qr_min_score=20000)
        assert locate_barcodes(qr_page, strict).qr_center is None


class TestDetectBounds:
    """Combining density and hints"""

    def test_density_only(self, label_page):
        box = detect_bounds(label_page, profile_density(label_page), LocatorHints(), "meesho")
        assert box == BoundingBox(x=82, y=181, width=436, height=538)

    def test_flipkart_pads_more(self, label_page):
        box = detect_bounds(label_page, profile_density(label_page), LocatorHints(), "flipkart")
        assert box == BoundingBox(x=77, y=176, width=446, height=548)

    def test_left_barcode_overrides_left_edge(self, label_page):
        hints = LocatorHints(left_edge=300, right_edge=320)
        box = detect_bounds(label_page, profile_density(label_page), hints, "meesho")
        assert box.x == 265
        assert box.x + box.width == 518

    def test_qr_anchor_decides_vertical_extent(self, blank_page, paint):
        buf = RasterBuffer(paint(blank_page(800, 1500), 100, 100, 401, 1301))
        hints = LocatorHints(qr_center=(400.0, 600.0))
        box = detect_bounds(buf, profile_density(buf), hints, "meesho")
        assert box.y == 455
        assert box.height == 519

    def test_height_cap_with_qr_anchor(self, blank_page, paint):
        buf = RasterBuffer(paint(blank_page(800, 1500), 100, 100, 401, 1301))
        hints = LocatorHints(qr_center=(400.0, 600.0))
        settings = DetectionSettings(max_label_height=300)
        box = detect_bounds(buf, profile_density(buf), hints, "meesho", settings)
        assert box.y == 455
        assert box.height == 320

    def test_qr_scenario(self, qr_page):
        box = find_label_bounds(qr_page, Marketplace.MEESHO)
        assert box.y == 0
        assert box.x == 0
        assert box.fits_within(1000, 1500)

    def test_blank_page_gives_negligible_box(self, blank_page):
        buf = RasterBuffer(blank_page(2000, 3000))
        box = find_label_bounds(buf, Marketplace.AMAZON)
        assert box is not None
        assert box.area / (2000 * 3000) < 0.005

        canvas = normalize(buf, box, FLIPKART)
        assert canvas.crop.used_crop is False
        assert (canvas.width, canvas.height) == (1181, 1748)

    def test_even_columns_keep_full_width(self, blank_page, paint):
        buf = RasterBuffer(paint(blank_page(1000, 1000), 0, 300, 1000, 401))
        box = find_label_bounds(buf, Marketplace.MEESHO)
        assert box.x == 0
        assert box.width == 1000
        assert box.y <= 300 and box.height >= 300

        canvas = normalize(buf, box, FLIPKART)
        assert canvas.crop.used_crop
        assert canvas.crop.width == 1000

    def test_even_rows_keep_search_window(self, blank_page, paint):
        buf = RasterBuffer(paint(blank_page(600, 400), 200, 0, 201, 400))
        box = detect_bounds(buf, profile_density(buf), LocatorHints(), "meesho")
        assert (box.y, box.height) == (0, 400)
        assert box.x < 200 and box.x + box.width > 400

    def test_profile_mismatch_falls_back(self, label_page, caplog):
        bad = DensityProfile(rows=np.zeros(10), cols=np.zeros(10))
        with caplog.at_level(logging.WARNING):
            assert detect_bounds(label_page, bad, LocatorHints(), "meesho") is None
        assert "Bounds detection failed" in caplog.text

    @pytest.mark.parametrize("seed", range(8))
    def test_box_stays_inside_raster(self, blank_page, paint, stripes, seed):
        rng = np.random.default_rng(seed)
        w, h = int(rng.integers(120, 500)), int(rng.integers(120, 500))
        px = blank_page(w, h)
        for _ in range(int(rng.integers(0, 6))):
            x, y = int(rng.integers(0, w)), int(rng.integers(0, h))
            paint(px, x, y, int(rng.integers(1, w)), int(rng.integers(1, h)),
                  value=int(rng.integers(0, 250)))
        if seed % 2:
            stripes(px, 0, int(rng.integers(0, 20)))
        buf = RasterBuffer(px)
        for marketplace in Marketplace:
            box = find_label_bounds(buf, marketplace)
            assert box is not None
            assert box.fits_within(w, h)


class TestNormalize:
    """Canvas normalization"""

    def test_profile_a_canvas_is_centered(self, blank_page):
        crop = RasterBuffer(blank_page(400, 600, value=0))
        canvas = normalize(crop, None, FLIPKART)
        px = canvas.buffer.pixels
        assert px.shape == (1748, 1181, 4)

        place = canvas.placement
        assert (place.width, place.height) == (1165, 1748)
        left, right = place.x, 1181 - place.x - place.width
        top, bottom = place.y, 1748 - place.y - place.height
        assert left == right == 8
        assert abs(top - bottom) <= 1

        assert (px[:, :8, :3] == 255).all()
        assert (px[:, 1173:, :3] == 255).all()
        assert (px[:, 8:1173, :3] == 0).all()
        assert (px[:, :, 3] == 255).all()

    def test_crop_to_detected_box(self, label_page):
        box = BoundingBox(x=82, y=181, width=436, height=538)
        canvas = normalize(label_page, box, FLIPKART)
        assert canvas.crop.used_crop
        assert (canvas.crop.width, canvas.crop.height) == (436, 538)

    def test_idempotent(self, label_page):
        box = BoundingBox(x=82, y=181, width=436, height=538)
        first = normalize(label_page, box, FLIPKART).buffer.pixels.tobytes()
        second = normalize(label_page, box, FLIPKART).buffer.pixels.tobytes()
        assert first == second

    @pytest.mark.parametrize("size", [(400, 600), (1000, 200), (50, 50), (3000, 4000), (1, 900)])
    def test_single_scale_for_both_axes(self, size):
        cw, ch = size
        place = fit_placement(cw, ch, FLIPKART)
        assert abs(place.width - cw * place.scale) <= 0.5
        assert abs(place.height - ch * place.scale) <= 0.5
        assert place.width == 1181 or place.height == 1748

    def test_tiny_box_uses_full_page(self, label_page):
        canvas = normalize(label_page, BoundingBox(x=0, y=0, width=10, height=10), FLIPKART)
        assert canvas.crop.used_crop is False
        assert (canvas.crop.width, canvas.crop.height) == (800, 1200)

    def test_box_outside_raster_uses_full_page(self, label_page):
        canvas = normalize(label_page, BoundingBox(x=700, y=0, width=400, height=600), FLIPKART)
        assert canvas.crop.used_crop is False

    def test_transparent_pixels_render_white(self, blank_page):
        px = blank_page(40, 60, value=0)
        px[:, :, 3] = 0
        canvas = normalize(RasterBuffer(px), None, FLIPKART)
        assert (canvas.buffer.pixels == 255).all()


class TestPreviewAndProcessor:

    def test_detection_preview_marks_box(self, label_page):
        box = BoundingBox(x=82, y=181, width=436, height=538)
        preview = draw_detection_preview(label_page, box)
        assert preview.shape == (1200, 800, 3)
        green = (preview[:, :, 0] == 0) & (preview[:, :, 1] == 255) & (preview[:, :, 2] == 0)
        assert green.any()
        assert label_page.pixels[181, 82, 1] == 255

    def test_preview_without_box_is_a_copy(self, label_page):
        preview = draw_detection_preview(label_page, None)
        assert (preview == label_page.pixels[:, :, :3]).all()

    def test_processor_output_matches_target(self, label_page):
        processor = LabelProcessor("snapdeal")
        canvas, box = processor.process(label_page)
        assert (canvas.width, canvas.height) == (1240, 1748)
        assert box is not None and box.fits_within(800, 1200)
