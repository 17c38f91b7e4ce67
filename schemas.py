from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

MM_PER_INCH = 25.4
PT_PER_MM = 2.83465
EXPORT_DPI = 300


class Marketplace(str, Enum):
    FLIPKART = "flipkart"
    MEESHO = "meesho"
    AMAZON = "amazon"
    MYNTRA = "myntra"
    SNAPDEAL = "snapdeal"


class MarketplaceProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    width_mm: float
    height_mm: float
    title: str
    note: str
    min_padding_px: int = 10
    padding_fraction: float = 0.02


MARKETPLACE_PROFILES = {
    Marketplace.FLIPKART: MarketplaceProfile(
        width_mm=100, height_mm=148, title="Flipkart Label Crop",
        note="Optimized 100×148 mm layout with generous padding for barcodes.",
        min_padding_px=15, padding_fraction=0.03,
    ),
    Marketplace.MEESHO: MarketplaceProfile(
        width_mm=100, height_mm=150, title="Meesho Label Crop",
        note="Tuned for 100×150 mm tickets.",
    ),
    Marketplace.AMAZON: MarketplaceProfile(
        width_mm=102, height_mm=152, title="Amazon Label Crop",
        note="Sized at 102×152 mm with extra bleed for FNSKU clarity.",
    ),
    Marketplace.MYNTRA: MarketplaceProfile(
        width_mm=100, height_mm=152, title="Myntra Label Crop",
        note="Standard 100×152 mm format for thermal printing.",
    ),
    Marketplace.SNAPDEAL: MarketplaceProfile(
        width_mm=105, height_mm=148, title="Snapdeal Label Crop",
        note="A6 sized 105×148 mm layout for standard shipping labels.",
    ),
}


class TargetSpec(BaseModel):
    """Physical label size the normalized canvas is rendered for."""

    model_config = ConfigDict(frozen=True)

    physical_width_mm: float = Field(gt=0)
    physical_height_mm: float = Field(gt=0)
    dpi: int = Field(default=EXPORT_DPI, gt=0)

    @classmethod
    def for_marketplace(cls, marketplace, dpi=EXPORT_DPI):
        profile = MARKETPLACE_PROFILES[Marketplace(marketplace)]
        return cls(physical_width_mm=profile.width_mm,
                   physical_height_mm=profile.height_mm, dpi=dpi)

    @property
    def pixel_size(self) -> Tuple[int, int]:
        """(width, height) in pixels, rounded from mm at `dpi`."""
        w = int(round(self.physical_width_mm / MM_PER_INCH * self.dpi))
        h = int(round(self.physical_height_mm / MM_PER_INCH * self.dpi))
        return w, h

    @property
    def page_size_pt(self) -> Tuple[float, float]:
        return self.physical_width_mm * PT_PER_MM, self.physical_height_mm * PT_PER_MM


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)

    @property
    def area(self) -> int:
        return self.width * self.height

    def fits_within(self, width: int, height: int) -> bool:
        return self.x + self.width <= width and self.y + self.height <= height

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height


class LocatorHints(BaseModel):
    """Barcode/QR evidence; a missing field means nothing was found."""

    model_config = ConfigDict(frozen=True)

    left_edge: Optional[int] = None
    right_edge: Optional[int] = None
    qr_center: Optional[Tuple[float, float]] = None
    qr_score: float = 0.0

    @property
    def top(self) -> Optional[float]:
        if self.qr_center is None:
            return None
        return max(0.0, self.qr_center[1] - 10)


class DetectionSettings(BaseModel):
    """Empirical detection constants.

    The defaults reproduce the tuned behavior of the label cropper.
    `qr_min_score` and `min_area_fraction` were found by trial and are
    tunable, not known to be optimal.
    """

    model_config = ConfigDict(frozen=True)

    dark_luminance: float = 128
    ink_luminance: float = 240

    barcode_scan_fraction: float = 0.25
    barcode_scan_max_px: int = 200
    transition_delta: float = 50
    transition_fraction: float = 0.25

    qr_window: int = 60
    qr_x_range: Tuple[float, float] = (0.30, 0.95)
    qr_y_fraction: float = 0.5
    qr_y_max_px: int = 300
    qr_mixed_fraction: float = 0.2
    qr_min_score: float = 1000

    window_above_qr: int = 150
    window_below_qr: int = 400
    anchor_above_qr: int = 120
    anchor_below_qr: int = 350

    density_percentile: float = 0.05
    threshold_factor: float = 2.0
    edge_margin: int = 8
    left_barcode_margin: int = 10
    refine_margin: int = 15
    max_label_height: int = 500

    min_area_fraction: float = 0.005

    @model_validator(mode="after")
    def _check_ranges(self):
        lo, hi = self.qr_x_range
        if not 0 <= lo < hi <= 1:
            raise ValueError("qr_x_range must satisfy 0 <= lo < hi <= 1")
        return self


DEFAULT_SETTINGS = DetectionSettings()


class CropInfo(BaseModel):
    x: int
    y: int
    width: int
    height: int
    area_fraction: float
    used_crop: bool
