import asyncio
import threading

from compression.decoder import decode_image
from compression.driver import compress_to_target
from compression.format_selector import select_format
from schemas import CompressionRequest, CompressionResult
from utils.concurrency import raise_if_cancelled


def run_pipeline(
    data: bytes,
    request: CompressionRequest,
    cancel: threading.Event | None = None,
) -> CompressionResult:
    """Decode, choose a format and compress to the requested size.

    Raises:
        DecodeError: Source bytes cannot be rasterized.
        EncodeError: Every compression candidate failed.
        CompressionCancelledError: cancel was set before the pipeline finished.
    """
    pixels, _ = decode_image(data)
    raise_if_cancelled(cancel)
    width, height = pixels.size

    fmt = request.preferred_format
    if fmt is None:
        fmt = select_format(pixels, width, height, cancel=cancel)

    return compress_to_target(
        pixels, width, height, request.target_byte_size, fmt, cancel=cancel
    )


async def compress_image(data: bytes, request: CompressionRequest) -> CompressionResult:
    """Run the CPU-bound pipeline off the event loop.

    Cancelling the caller stops the worker thread at its next encoder call
    and waits for it, so callers holding a gate slot keep it until the
    thread has really let go of the buffers.
    """
    cancel = threading.Event()
    worker = asyncio.ensure_future(asyncio.to_thread(run_pipeline, data, request, cancel))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        cancel.set()
        await asyncio.wait({worker})
        if not worker.cancelled():
            # Outcome is discarded; retrieve it so asyncio does not log it
            worker.exception()
        raise
