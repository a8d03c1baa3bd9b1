"""Per-image compression sessions.

Each record moves pending -> compressing -> completed | error, and may be
restarted from completed or error. At most one attempt per record runs at a
time; attempts for different records run concurrently and share nothing.
"""

import asyncio
import random
import uuid
from typing import Awaitable, Callable, Optional

from compression.decoder import read_dimensions
from compression.pipeline import compress_image
from config import settings
from exceptions import (
    CompressionInProgressError,
    DecodeError,
    ImageNotFoundError,
    SizefitError,
)
from schemas import CompressionRequest, CompressionResult, StatsResponse
from session.records import (
    STARTABLE,
    ImageAsset,
    ImageRecord,
    RecordEvent,
    RecordStatus,
    clamp_target_kb,
    default_target_kb,
)
from utils.concurrency import CompressionGate, compression_gate
from utils.format_detect import OutputFormat, detect_format
from utils.logging import get_logger
from utils.progress import progress_heartbeat

logger = get_logger("session.store")

Compressor = Callable[[bytes, CompressionRequest], Awaitable[CompressionResult]]
Listener = Callable[[RecordEvent], None]


class ImageStore:
    """Keyed mapping of image id -> ImageRecord plus attempt orchestration."""

    def __init__(
        self,
        gate: Optional[CompressionGate] = None,
        compressor: Compressor = compress_image,
    ):
        self._records: dict[str, ImageRecord] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[Listener] = []
        self._gate = gate or compression_gate
        self._compressor = compressor

    # --- Subscriptions ---

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, record: ImageRecord) -> None:
        event = RecordEvent(kind=kind, record=record.snapshot())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Record listener failed",
                    extra={"image_id": record.id, "context": {"event": kind}},
                )

    # --- Records ---

    def add(
        self,
        data: bytes,
        name: str,
        preferred_format: Optional[OutputFormat] = None,
    ) -> ImageRecord:
        """Register uploaded bytes as a pending record.

        Raises:
            UnsupportedFormatError: If the bytes are not a known raster format.
        """
        source_format = detect_format(data)
        try:
            width, height = read_dimensions(data)
        except DecodeError as e:
            # Surfaced as a record error when compression is attempted
            logger.warning(
                f"Unreadable image header: {e.message}",
                extra={"context": {"name": name}},
            )
            width, height = 0, 0

        asset = ImageAsset(
            name=name,
            data=data,
            original_width=width,
            original_height=height,
            original_byte_size=len(data),
            source_format=source_format,
        )
        record = ImageRecord(
            id=uuid.uuid4().hex,
            asset=asset,
            target_size_kb=default_target_kb(len(data)),
            quality_hint=settings.default_quality_hint,
            preferred_format=preferred_format,
        )
        self._records[record.id] = record
        self._emit("added", record)
        return record

    def get(self, record_id: str) -> ImageRecord:
        record = self._records.get(record_id)
        if record is None:
            raise ImageNotFoundError(f"Image {record_id} not found", id=record_id)
        return record

    def records(self) -> list[ImageRecord]:
        return list(self._records.values())

    def update_target(self, record_id: str, target_size_kb: int) -> ImageRecord:
        """Change the target size; clamped to [min_target_kb, original KB]."""
        record = self.get(record_id)
        if record.status == RecordStatus.COMPRESSING:
            raise CompressionInProgressError(
                "Cannot change target while compressing", id=record_id
            )
        record.target_size_kb = clamp_target_kb(
            target_size_kb, record.asset.original_byte_size
        )
        self._emit("updated", record)
        return record

    def remove(self, record_id: str) -> None:
        """Delete a record, cancel its attempt and release its buffers."""
        record = self._records.pop(record_id, None)
        if record is None:
            raise ImageNotFoundError(f"Image {record_id} not found", id=record_id)
        task = self._tasks.pop(record_id, None)
        if task is not None and not task.done():
            task.cancel()
        record.release()
        self._emit("removed", record)

    def clear(self) -> None:
        for record_id in list(self._records):
            self.remove(record_id)

    async def shutdown(self) -> None:
        """Remove every record and wait for cancelled attempts to unwind."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        self.clear()
        if tasks:
            await asyncio.wait(tasks)

    def stats(self) -> StatsResponse:
        records = self.records()
        total_original = sum(r.asset.original_byte_size for r in records)
        total_compressed = sum(
            r.result.achieved_byte_size for r in records if r.result is not None
        )
        completed = sum(1 for r in records if r.status == RecordStatus.COMPLETED)
        # Only records with a result count toward savings
        compared_original = sum(
            r.asset.original_byte_size for r in records if r.result is not None
        )
        saved = compared_original - total_compressed
        saved_percent = (
            round(saved / compared_original * 100, 1) if compared_original else 0.0
        )
        return StatsResponse(
            total_images=len(records),
            completed_images=completed,
            total_original_size=total_original,
            total_compressed_size=total_compressed,
            saved_bytes=saved,
            saved_percent=saved_percent,
        )

    # --- Attempts ---

    def start(self, record_id: str) -> asyncio.Task:
        """Begin a fresh attempt. Must be called from a running event loop.

        Raises:
            ImageNotFoundError: Unknown id.
            CompressionInProgressError: An attempt is already running.
        """
        record = self.get(record_id)
        if record.status not in STARTABLE:
            raise CompressionInProgressError(
                "Compression already in progress", id=record_id
            )

        record.attempt += 1
        record.status = RecordStatus.COMPRESSING
        record.progress = 0.0
        record.error = None

        request = CompressionRequest(
            target_byte_size=record.target_byte_size,
            quality_hint=record.quality_hint,
            preferred_format=record.preferred_format,
        )
        task = asyncio.create_task(
            self._run(record, record.attempt, request),
            name=f"compress-{record_id}-{record.attempt}",
        )
        self._tasks[record_id] = task
        self._emit("started", record)
        return task

    async def _run(
        self,
        record: ImageRecord,
        attempt: int,
        request: CompressionRequest,
    ) -> None:
        data = record.asset.data
        try:
            async with self._gate.slot():
                async with progress_heartbeat(
                    lambda: self._advance(record, attempt),
                    settings.progress_interval_ms / 1000,
                ):
                    result = await self._compressor(data, request)
        except SizefitError as e:
            self._fail(record, attempt, e.message, e)
        except Exception as e:
            logger.exception(
                "Unexpected compression failure",
                extra={"image_id": record.id},
            )
            self._fail(record, attempt, str(e) or type(e).__name__, e)
        else:
            self._complete(record, attempt, result)
        finally:
            if self._tasks.get(record.id) is asyncio.current_task():
                del self._tasks[record.id]

    def _is_current(self, record: ImageRecord, attempt: int) -> bool:
        """False for removed records and superseded attempts."""
        return (
            self._records.get(record.id) is record
            and record.attempt == attempt
            and record.status == RecordStatus.COMPRESSING
        )

    def _advance(self, record: ImageRecord, attempt: int) -> None:
        if not self._is_current(record, attempt):
            return
        step = random.uniform(5, 15)
        progress = min(settings.progress_cap, record.progress + step)
        if progress > record.progress:
            record.progress = progress
            self._emit("progress", record)

    def _complete(
        self,
        record: ImageRecord,
        attempt: int,
        result: CompressionResult,
    ) -> None:
        if not self._is_current(record, attempt):
            return
        record.result = result
        record.status = RecordStatus.COMPLETED
        record.progress = 100.0
        logger.info(
            "Compression completed",
            extra={
                "image_id": record.id,
                "context": {
                    "original": record.asset.original_byte_size,
                    "achieved": result.achieved_byte_size,
                    "target": result.target_byte_size,
                    "target_met": result.target_met,
                    "encoder_calls": result.encoder_calls,
                },
            },
        )
        self._emit("completed", record)

    def _fail(
        self,
        record: ImageRecord,
        attempt: int,
        message: str,
        error: Exception,
    ) -> None:
        if not self._is_current(record, attempt):
            return
        # Prior result, if any, stays available
        record.status = RecordStatus.ERROR
        record.progress = 0.0
        record.error = message
        logger.error(
            f"Compression failed: {message}",
            extra={
                "image_id": record.id,
                "context": {"error_type": type(error).__name__},
            },
        )
        self._emit("error", record)


# Module-level singleton
image_store = ImageStore()
