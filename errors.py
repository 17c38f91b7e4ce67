class LabelCropError(Exception):
    """Base class for per-document failures."""

    kind = "error"

    def __init__(self, message, source_id=None):
        super().__init__(message)
        self.source_id = source_id

    def __str__(self):
        message = super().__str__()
        if self.source_id:
            return f"{self.source_id}: {message}"
        return message


class UnsupportedInput(LabelCropError):
    """Input is not a renderable document or image."""

    kind = "unsupported_input"


class RasterizationFailure(LabelCropError):
    kind = "rasterization_failure"


class DetectionFailure(LabelCropError):
    """Profiling or locating broke down; callers fall back to the full page."""

    kind = "detection_failure"


class EncodingFailure(LabelCropError):
    kind = "encoding_failure"
