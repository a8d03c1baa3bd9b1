import asyncio

from fastapi import APIRouter, File, Form, Query, UploadFile
from fastapi.responses import Response

from exceptions import BadRequestError, ImageNotFoundError
from schemas import ImageRecordResponse, StatsResponse, TargetUpdateRequest
from security.file_validation import validate_file
from session.store import image_store
from utils.format_detect import MIME_TYPES, parse_output_format

router = APIRouter()


@router.post("/images", status_code=201, response_model=ImageRecordResponse)
async def upload_image(
    file: UploadFile | None = File(None),
    target_size_kb: int | None = Form(None),
    format: str | None = Form(None),
):
    """Register an image. The record starts pending with a default target."""
    if file is None:
        raise BadRequestError("Missing 'file' field")
    data = await file.read()
    validate_file(data)

    record = image_store.add(
        data,
        file.filename or "image",
        preferred_format=parse_output_format(format),
    )
    if target_size_kb is not None:
        record = image_store.update_target(record.id, target_size_kb)
    return record.snapshot()


@router.get("/images", response_model=list[ImageRecordResponse])
async def list_images():
    return [record.snapshot() for record in image_store.records()]


@router.get("/images/{image_id}", response_model=ImageRecordResponse)
async def get_image(image_id: str):
    return image_store.get(image_id).snapshot()


@router.patch("/images/{image_id}", response_model=ImageRecordResponse)
async def update_image(image_id: str, body: TargetUpdateRequest):
    """Adjust the target size. Rejected with 409 while compressing."""
    return image_store.update_target(image_id, body.target_size_kb).snapshot()


@router.post(
    "/images/{image_id}/compress",
    status_code=202,
    response_model=ImageRecordResponse,
)
async def compress(image_id: str, wait: bool = Query(False)):
    """Start (or retry) compression.

    Returns immediately with status=compressing unless wait=true, in which
    case the response carries the settled record.
    """
    task = image_store.start(image_id)
    if wait:
        await asyncio.wait({task})
    return image_store.get(image_id).snapshot()


@router.get("/images/{image_id}/download")
async def download(image_id: str):
    record = image_store.get(image_id)
    if record.result is None:
        raise ImageNotFoundError(
            f"Image {image_id} has no compressed output", id=image_id
        )

    result = record.result
    return Response(
        content=result.data,
        media_type=MIME_TYPES[result.final_format],
        headers={
            "Content-Disposition": f'attachment; filename="{_download_name(record)}"',
            "X-Original-Size": str(record.asset.original_byte_size),
            "X-Compressed-Size": str(result.achieved_byte_size),
            "X-Target-Size": str(result.target_byte_size),
            "X-Target-Met": str(result.target_met).lower(),
        },
    )


@router.delete("/images/{image_id}", status_code=204)
async def delete_image(image_id: str):
    image_store.remove(image_id)
    return Response(status_code=204)


@router.get("/stats", response_model=StatsResponse)
async def stats():
    return image_store.stats()


def _download_name(record) -> str:
    stem = record.asset.name.rsplit(".", 1)[0] or "image"
    ext = record.result.final_format.value
    if ext == "jpeg":
        ext = "jpg"
    return f"compressed-{stem}.{ext}"
