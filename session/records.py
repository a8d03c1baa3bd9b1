from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from config import settings
from schemas import CompressionResult, ImageRecordResponse, ResultSummary
from utils.format_detect import ImageFormat, OutputFormat


class RecordStatus(str, Enum):
    PENDING = "pending"
    COMPRESSING = "compressing"
    COMPLETED = "completed"
    ERROR = "error"


# States from which a new attempt may start
STARTABLE = (RecordStatus.PENDING, RecordStatus.COMPLETED, RecordStatus.ERROR)


class ImageAsset(BaseModel):
    """Uploaded source bytes plus what is known about them."""

    model_config = {"frozen": True}

    name: str
    data: bytes
    original_width: int  # 0 when the header could not be read
    original_height: int
    original_byte_size: int
    source_format: ImageFormat


class ImageRecord(BaseModel):
    """Per-image session state. Mutated only by ImageStore."""

    id: str
    asset: Optional[ImageAsset]
    target_size_kb: int
    quality_hint: float = 0.8
    preferred_format: Optional[OutputFormat] = None
    status: RecordStatus = RecordStatus.PENDING
    progress: float = 0.0
    result: Optional[CompressionResult] = None
    error: Optional[str] = None
    attempt: int = Field(default=0, description="Incremented on every start()")

    @property
    def target_byte_size(self) -> int:
        return self.target_size_kb * 1024

    def release(self) -> None:
        """Drop source and result buffers."""
        self.asset = None
        self.result = None

    def snapshot(self) -> ImageRecordResponse:
        asset = self.asset
        summary = None
        if self.result is not None:
            summary = ResultSummary(
                achieved_byte_size=self.result.achieved_byte_size,
                final_width=self.result.final_width,
                final_height=self.result.final_height,
                final_quality=round(self.result.final_quality, 3),
                final_format=self.result.final_format.value,
                target_met=self.result.target_met,
                within_tolerance=self.result.within_tolerance(settings.tolerance_ratio),
            )
        return ImageRecordResponse(
            id=self.id,
            name=asset.name if asset else "",
            status=self.status.value,
            progress=int(self.progress),
            original_byte_size=asset.original_byte_size if asset else 0,
            original_width=asset.original_width if asset else 0,
            original_height=asset.original_height if asset else 0,
            source_format=asset.source_format.value if asset else "",
            target_size_kb=self.target_size_kb,
            target_byte_size=self.target_byte_size,
            achieved_byte_size=summary.achieved_byte_size if summary else None,
            result=summary,
            error=self.error,
        )


class RecordEvent(BaseModel):
    """Change notification delivered to store subscribers."""

    kind: str  # added | updated | started | progress | completed | error | removed
    record: ImageRecordResponse


def default_target_kb(original_byte_size: int) -> int:
    """30% of the original size, floored at 10 KB, within the user bounds."""
    original_kb = original_byte_size / 1024
    target = max(settings.default_target_floor_kb, round(original_kb * settings.default_target_ratio))
    return clamp_target_kb(target, original_byte_size)


def clamp_target_kb(target_kb: int, original_byte_size: int) -> int:
    """Bound a user target to [min_target_kb, original size in KB]."""
    upper = max(settings.min_target_kb, round(original_byte_size / 1024))
    return min(max(target_kb, settings.min_target_kb), upper)
