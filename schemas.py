from typing import Optional

from pydantic import BaseModel, Field

from utils.format_detect import OutputFormat


class CompressionRequest(BaseModel):
    """Parameters for one compression attempt (immutable once built)."""

    model_config = {"frozen": True}

    target_byte_size: int = Field(..., gt=0)
    quality_hint: float = Field(default=0.8, ge=0.0, le=1.0)
    preferred_format: Optional[OutputFormat] = Field(
        default=None,
        description="Force an output format. None lets the format selector decide.",
    )


class CandidateAttempt(BaseModel):
    """One point in the (dimensions, quality, format) search space."""

    model_config = {"frozen": True}

    width: int
    height: int
    quality: float
    format: OutputFormat


class EncodeOutcome(BaseModel):
    """Result of a single encoder invocation."""

    model_config = {"frozen": True}

    attempt: CandidateAttempt
    data: bytes
    byte_size: int


class Strategy(BaseModel):
    """One rung of the progressive downscale ladder."""

    model_config = {"frozen": True}

    width_factor: float = Field(..., gt=0.0, le=1.0)
    height_factor: float = Field(..., gt=0.0, le=1.0)
    min_quality: float = Field(..., ge=0.0, le=1.0)


class CompressionResult(BaseModel):
    """Final output of the size-targeting pipeline."""

    model_config = {"frozen": True}

    data: bytes
    achieved_byte_size: int
    target_byte_size: int
    final_width: int
    final_height: int
    final_quality: float
    final_format: OutputFormat
    target_met: bool
    encoder_calls: int = 0

    def within_tolerance(self, ratio: float) -> bool:
        """True when the achieved size is within `ratio` of the target."""
        return (
            abs(self.achieved_byte_size - self.target_byte_size)
            / self.target_byte_size
            < ratio
        )


class TargetUpdateRequest(BaseModel):
    """PATCH /images/{id} body."""

    target_size_kb: int = Field(..., gt=0)


class ResultSummary(BaseModel):
    """Compressed output metadata exposed per record."""

    achieved_byte_size: int
    final_width: int
    final_height: int
    final_quality: float
    final_format: str
    target_met: bool
    within_tolerance: bool


class ImageRecordResponse(BaseModel):
    """Snapshot of one image record for the presentation layer."""

    id: str
    name: str
    status: str
    progress: int
    original_byte_size: int
    original_width: int
    original_height: int
    source_format: str
    target_size_kb: int
    target_byte_size: int
    achieved_byte_size: Optional[int] = None
    result: Optional[ResultSummary] = None
    error: Optional[str] = None


class StatsResponse(BaseModel):
    """Aggregate numbers across all records."""

    total_images: int
    completed_images: int
    total_original_size: int
    total_compressed_size: int
    saved_bytes: int
    saved_percent: float


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: str
    message: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str = "ok"
    codecs: dict
    version: str
