"""Sequential batch driver: one document at a time, in input order.

Every input yields exactly one terminal BatchItem. A failing document is
recorded as failed and the run moves on; nothing crosses item boundaries
as an exception.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from errors import UnsupportedInput
from label_processor import LabelProcessor, NormalizedCanvas
from raster_source import load_first_page, sniff_format
from schemas import DEFAULT_SETTINGS, BoundingBox, DetectionSettings, Marketplace, TargetSpec

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchSource:
    source_id: str
    data: bytes


@dataclass(frozen=True)
class BatchItem:
    source_id: str
    status: BatchStatus = BatchStatus.PENDING
    canvas: Optional[NormalizedCanvas] = None
    bounds: Optional[BoundingBox] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is BatchStatus.DONE


@dataclass(frozen=True)
class BatchUpdate:
    index: int  # 1-based position of `item`
    total: int
    item: BatchItem


@dataclass
class BatchReport:
    items: List[BatchItem] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BatchItem]:
        return [i for i in self.items if i.status is BatchStatus.DONE]

    @property
    def failed(self) -> List[BatchItem]:
        return [i for i in self.items if i.status is BatchStatus.FAILED]


def screen_sources(sources: Sequence[BatchSource]) -> Tuple[List[BatchSource], List[str]]:
    """Split sources into renderable ones and diagnostics for the rest."""
    accepted, rejected = [], []
    for src in sources:
        if sniff_format(src.data) is None:
            message = str(UnsupportedInput("not a readable PDF or image file", src.source_id))
            logger.warning("Rejected input %s", message)
            rejected.append(message)
        else:
            accepted.append(src)
    return accepted, rejected


def fail_item(item: BatchItem, exc: Exception) -> BatchItem:
    kind = getattr(exc, "kind", type(exc).__name__)
    logger.warning("Item %s failed (%s): %s", item.source_id, kind, exc)
    return replace(item, status=BatchStatus.FAILED, error=str(exc), error_kind=kind)


def process_source(
    item: BatchItem,
    data: bytes,
    processor: LabelProcessor,
    rasterize: Callable = load_first_page,
) -> BatchItem:
    """Run one document through rasterize -> detect -> normalize."""
    item = replace(item, status=BatchStatus.PROCESSING)
    try:
        raster = rasterize(data, item.source_id)
        canvas, box = processor.process(raster)
    except Exception as e:
        return fail_item(item, e)
    del raster
    return replace(item, status=BatchStatus.DONE, canvas=canvas, bounds=box)


def run_batch(
    sources: Sequence[BatchSource],
    marketplace,
    target: Optional[TargetSpec] = None,
    rasterize: Callable = load_first_page,
    settings: DetectionSettings = DEFAULT_SETTINGS,
) -> Iterator[BatchUpdate]:
    """Lazily process `sources`, yielding one update per finished item.

    Stop iterating (or close the generator) to cancel between items.
    """
    processor = LabelProcessor(marketplace, settings=settings, target=target)
    items = [BatchItem(source_id=s.source_id) for s in sources]
    total = len(items)
    logger.info("Starting batch of %d for %s", total, Marketplace(marketplace).value)
    for index, (src, item) in enumerate(zip(sources, items), start=1):
        done = process_source(item, src.data, processor, rasterize)
        logger.info("Processed %d/%d %s: %s", index, total, src.source_id, done.status.value)
        yield BatchUpdate(index=index, total=total, item=done)


def collect_batch(sources, marketplace, **kwargs) -> BatchReport:
    report = BatchReport()
    for update in run_batch(sources, marketplace, **kwargs):
        report.items.append(update.item)
    return report
