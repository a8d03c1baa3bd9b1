from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import Response

from compression.pipeline import compress_image
from config import settings
from exceptions import BadRequestError
from schemas import CompressionRequest, CompressionResult
from security.file_validation import validate_file
from session.records import clamp_target_kb
from utils.concurrency import compression_gate
from utils.format_detect import MIME_TYPES, parse_output_format

router = APIRouter()


@router.post("/compress")
async def compress(
    request: Request,
    file: UploadFile | None = File(None),
    target_size_kb: int | None = Form(None),
    format: str | None = Form(None),
):
    """One-shot compression without creating a session record.

    Returns the compressed bytes with X-* headers describing the result.
    A target that cannot be reached still returns 200 with
    X-Target-Met: false.
    """
    if file is None:
        raise BadRequestError("Missing 'file' field")
    if target_size_kb is None:
        raise BadRequestError("Missing 'target_size_kb' field")
    if target_size_kb <= 0:
        raise BadRequestError("'target_size_kb' must be positive")

    data = await file.read()
    validate_file(data)

    target_kb = clamp_target_kb(target_size_kb, len(data))
    compression_request = CompressionRequest(
        target_byte_size=target_kb * 1024,
        quality_hint=settings.default_quality_hint,
        preferred_format=parse_output_format(format),
    )

    # Acquire compression slot (503 if queue full)
    async with compression_gate.slot():
        result = await compress_image(data, compression_request)

    return _build_binary_response(result, len(data), request)


def _build_binary_response(
    result: CompressionResult,
    original_size: int,
    request: Request,
) -> Response:
    """Build raw bytes response with X-* headers."""
    request_id = getattr(request.state, "request_id", "")

    return Response(
        content=result.data,
        media_type=MIME_TYPES[result.final_format],
        headers={
            "Content-Length": str(result.achieved_byte_size),
            "X-Original-Size": str(original_size),
            "X-Compressed-Size": str(result.achieved_byte_size),
            "X-Target-Size": str(result.target_byte_size),
            "X-Target-Met": str(result.target_met).lower(),
            "X-Final-Width": str(result.final_width),
            "X-Final-Height": str(result.final_height),
            "X-Final-Quality": f"{result.final_quality:.2f}",
            "X-Final-Format": result.final_format.value,
            "X-Request-ID": request_id,
        },
    )
