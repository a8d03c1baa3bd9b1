"""Tests for the per-image session store and its state machine."""

import asyncio
import threading
from unittest.mock import patch

import pytest

from config import settings
from exceptions import (
    CompressionInProgressError,
    DecodeError,
    EncodeError,
    ImageNotFoundError,
    UnsupportedFormatError,
)
from schemas import CompressionRequest, CompressionResult
from session.records import RecordStatus, clamp_target_kb, default_target_kb
from session.store import ImageStore
from utils.concurrency import CompressionGate, raise_if_cancelled
from utils.format_detect import OutputFormat


def _result(request, size=None):
    size = size if size is not None else request.target_byte_size // 2
    return CompressionResult(
        data=b"\xff" * size,
        achieved_byte_size=size,
        target_byte_size=request.target_byte_size,
        final_width=100,
        final_height=100,
        final_quality=0.7,
        final_format=OutputFormat.JPEG,
        target_met=size <= request.target_byte_size,
        encoder_calls=5,
    )


async def _ok_compressor(data, request):
    return _result(request)


def _store(compressor=_ok_compressor, size=4):
    return ImageStore(gate=CompressionGate(size=size, max_queue=16), compressor=compressor)


# --- targets ---


def test_default_target_is_thirty_percent():
    assert default_target_kb(1000 * 1024) == 300


def test_default_target_floor():
    assert default_target_kb(20 * 1024) == 10


def test_default_target_never_above_original():
    assert default_target_kb(8 * 1024) == 8


def test_clamp_target_bounds():
    assert clamp_target_kb(1, 500 * 1024) == 5
    assert clamp_target_kb(900, 500 * 1024) == 500
    assert clamp_target_kb(200, 500 * 1024) == 200


# --- records ---


def test_add_creates_pending_record(photo_jpeg):
    store = _store()
    record = store.add(photo_jpeg, "photo.jpg")
    assert record.status == RecordStatus.PENDING
    assert record.progress == 0
    assert record.asset.original_byte_size == len(photo_jpeg)
    assert (record.asset.original_width, record.asset.original_height) == (1200, 900)
    assert store.get(record.id) is record


def test_add_rejects_non_image():
    with pytest.raises(UnsupportedFormatError):
        _store().add(b"hello world, not an image", "notes.txt")


def test_add_unreadable_header_still_registers():
    store = _store()
    record = store.add(b"\x89PNG\r\n\x1a\n" + b"\0" * 64, "broken.png")
    assert record.asset.original_width == 0
    assert record.status == RecordStatus.PENDING


def test_ids_unique(small_png):
    store = _store()
    ids = {store.add(small_png, f"{i}.png").id for i in range(20)}
    assert len(ids) == 20


def test_get_unknown():
    with pytest.raises(ImageNotFoundError):
        _store().get("missing")


def test_update_target_clamped(photo_jpeg):
    store = _store()
    record = store.add(photo_jpeg, "photo.jpg")
    original_kb = round(len(photo_jpeg) / 1024)
    assert store.update_target(record.id, 10**6).target_size_kb == original_kb
    assert store.update_target(record.id, 1).target_size_kb == 5


# --- attempts ---


@pytest.mark.asyncio
async def test_start_completes(small_png):
    store = _store()
    record = store.add(small_png, "small.png")
    task = store.start(record.id)
    assert record.status == RecordStatus.COMPRESSING
    await task
    assert record.status == RecordStatus.COMPLETED
    assert record.progress == 100
    assert record.result.target_met
    assert record.snapshot().achieved_byte_size == record.result.achieved_byte_size


@pytest.mark.asyncio
async def test_request_built_from_record(small_png):
    seen = []

    async def capture(data, request):
        seen.append((data, request))
        return _result(request)

    store = _store(capture)
    record = store.add(small_png, "small.png", preferred_format=OutputFormat.WEBP)
    store.update_target(record.id, 7)
    await store.start(record.id)

    data, request = seen[0]
    assert data == small_png
    assert request.target_byte_size == 7 * 1024
    assert request.preferred_format == OutputFormat.WEBP


@pytest.mark.asyncio
async def test_single_attempt_per_record(small_png):
    release = asyncio.Event()

    async def blocked(data, request):
        await release.wait()
        return _result(request)

    store = _store(blocked)
    record = store.add(small_png, "small.png")
    task = store.start(record.id)

    with pytest.raises(CompressionInProgressError):
        store.start(record.id)
    with pytest.raises(CompressionInProgressError):
        store.update_target(record.id, 50)

    release.set()
    await task
    assert record.status == RecordStatus.COMPLETED
    assert record.attempt == 1


@pytest.mark.asyncio
async def test_failure_then_retry(small_png):
    attempts = []

    async def flaky(data, request):
        attempts.append(data)
        if len(attempts) == 1:
            raise EncodeError("All compression candidates failed")
        return _result(request)

    store = _store(flaky)
    record = store.add(small_png, "small.png")

    await store.start(record.id)
    assert record.status == RecordStatus.ERROR
    assert record.progress == 0
    assert record.error == "All compression candidates failed"

    await store.start(record.id)
    assert record.status == RecordStatus.COMPLETED
    assert record.error is None
    # Same stored bytes on both attempts, no re-upload
    assert attempts == [small_png, small_png]


@pytest.mark.asyncio
async def test_failure_keeps_prior_result(small_png):
    calls = []

    async def second_fails(data, request):
        calls.append(request)
        if len(calls) == 2:
            raise DecodeError("Cannot decode png image")
        return _result(request)

    store = _store(second_fails)
    record = store.add(small_png, "small.png")
    await store.start(record.id)
    first_result = record.result

    await store.start(record.id)
    assert record.status == RecordStatus.ERROR
    assert record.result is first_result


@pytest.mark.asyncio
async def test_unexpected_error_surfaces_as_error(small_png):
    async def boom(data, request):
        raise RuntimeError("worker died")

    store = _store(boom)
    record = store.add(small_png, "small.png")
    await store.start(record.id)
    assert record.status == RecordStatus.ERROR
    assert record.error == "worker died"


@pytest.mark.asyncio
async def test_real_pipeline_decode_failure_is_record_error():
    store = ImageStore(gate=CompressionGate(size=1, max_queue=4))
    record = store.add(b"\x89PNG\r\n\x1a\n" + b"\0" * 64, "broken.png")
    await store.start(record.id)
    assert record.status == RecordStatus.ERROR


@pytest.mark.asyncio
async def test_remove_mid_compression_releases_buffers(small_png):
    started = asyncio.Event()

    async def slow(data, request):
        started.set()
        await asyncio.sleep(10)
        return _result(request)

    store = _store(slow)
    record = store.add(small_png, "small.png")
    task = store.start(record.id)
    await started.wait()

    store.remove(record.id)
    await asyncio.wait({task})

    assert task.cancelled()
    assert record.asset is None
    assert record.result is None
    assert store.records() == []
    with pytest.raises(ImageNotFoundError):
        store.get(record.id)


@pytest.mark.asyncio
async def test_late_result_of_superseded_attempt_ignored(small_png):
    store = _store()
    record = store.add(small_png, "small.png")
    await store.start(record.id)
    current = record.result

    stale = _result(CompressionRequest(target_byte_size=record.target_byte_size), size=1)
    store._complete(record, record.attempt - 1, stale)
    assert record.result is current


@pytest.mark.asyncio
async def test_progress_heartbeat_monotonic_and_capped(small_png, monkeypatch):
    monkeypatch.setattr(settings, "progress_interval_ms", 5)
    observed = []

    async def slow(data, request):
        await asyncio.sleep(0.3)
        return _result(request)

    store = _store(slow)
    store.subscribe(
        lambda event: observed.append((event.kind, event.record.progress))
    )
    record = store.add(small_png, "small.png")
    await store.start(record.id)

    ticks = [progress for kind, progress in observed if kind == "progress"]
    assert ticks, "heartbeat never fired"
    assert ticks == sorted(ticks)
    assert max(ticks) <= settings.progress_cap
    assert observed[-1] == ("completed", 100)


@pytest.mark.asyncio
async def test_no_progress_after_settle(small_png, monkeypatch):
    monkeypatch.setattr(settings, "progress_interval_ms", 5)
    store = _store()
    record = store.add(small_png, "small.png")
    await store.start(record.id)
    await asyncio.sleep(0.05)
    assert record.progress == 100


@pytest.mark.asyncio
async def test_events_in_order(small_png):
    kinds = []
    store = _store()
    store.subscribe(lambda event: kinds.append(event.kind))
    record = store.add(small_png, "small.png")
    await store.start(record.id)
    store.remove(record.id)
    assert kinds[0] == "added"
    assert kinds[1] == "started"
    assert kinds[-2:] == ["completed", "removed"]


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_store(small_png):
    store = _store()

    def bad_listener(event):
        raise ValueError("listener bug")

    store.subscribe(bad_listener)
    record = store.add(small_png, "small.png")
    await store.start(record.id)
    assert record.status == RecordStatus.COMPLETED

    store.unsubscribe(bad_listener)


@pytest.mark.asyncio
async def test_records_compress_concurrently(small_png):
    running = 0
    peak = 0

    async def tracked(data, request):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1
        return _result(request)

    store = _store(tracked, size=3)
    records = [store.add(small_png, f"{i}.png") for i in range(3)]
    await asyncio.gather(*(store.start(r.id) for r in records))

    assert peak == 3
    assert all(r.status == RecordStatus.COMPLETED for r in records)


@pytest.mark.asyncio
async def test_gate_backpressure_marks_error(small_png):
    release = asyncio.Event()

    async def blocked(data, request):
        await release.wait()
        return _result(request)

    store = ImageStore(gate=CompressionGate(size=1, max_queue=1), compressor=blocked)
    first = store.add(small_png, "a.png")
    second = store.add(small_png, "b.png")

    first_task = store.start(first.id)
    await asyncio.sleep(0)
    await store.start(second.id)
    assert second.status == RecordStatus.ERROR

    release.set()
    await first_task
    assert first.status == RecordStatus.COMPLETED


# --- stats ---


@pytest.mark.asyncio
async def test_stats(small_png, photo_jpeg):
    store = _store()
    done = store.add(photo_jpeg, "photo.jpg")
    store.add(small_png, "pending.png")
    await store.start(done.id)

    stats = store.stats()
    assert stats.total_images == 2
    assert stats.completed_images == 1
    assert stats.total_original_size == len(photo_jpeg) + len(small_png)
    assert stats.total_compressed_size == done.result.achieved_byte_size
    assert stats.saved_bytes == len(photo_jpeg) - done.result.achieved_byte_size
    assert 0 < stats.saved_percent < 100


def test_stats_empty():
    stats = _store().stats()
    assert stats.total_images == 0
    assert stats.saved_percent == 0.0


def test_within_tolerance():
    request = CompressionRequest(target_byte_size=10_000)
    assert _result(request, size=9_000).within_tolerance(0.15)
    assert _result(request, size=11_000).within_tolerance(0.15)
    assert not _result(request, size=5_000).within_tolerance(0.15)
    assert not _result(request, size=12_000).within_tolerance(0.15)


@pytest.mark.asyncio
async def test_remove_stops_worker_thread_before_freeing_slot(small_png):
    entered = threading.Event()
    finished = threading.Event()
    gate = CompressionGate(size=1, max_queue=4)
    seen = []

    def blocking_driver(pixels, width, height, target, fmt, cancel=None):
        entered.set()
        try:
            cancel.wait(5)
            seen.append((cancel.is_set(), gate.active_jobs))
            raise_if_cancelled(cancel)
        finally:
            finished.set()

    store = ImageStore(gate=gate)
    record = store.add(small_png, "small.png")
    with patch("compression.pipeline.compress_to_target", blocking_driver):
        task = store.start(record.id)
        assert await asyncio.to_thread(entered.wait, 5)
        store.remove(record.id)
        await asyncio.wait({task})

    assert task.cancelled()
    assert finished.is_set()
    # Cancel reached the thread while the slot was still held
    assert seen == [(True, 1)]
    assert gate.active_jobs == 0
    assert record.asset is None


@pytest.mark.asyncio
async def test_shutdown_waits_for_workers(small_png):
    entered = threading.Event()
    finished = threading.Event()

    def blocking_driver(pixels, width, height, target, fmt, cancel=None):
        entered.set()
        try:
            cancel.wait(5)
            raise_if_cancelled(cancel)
        finally:
            finished.set()

    store = ImageStore(gate=CompressionGate(size=1, max_queue=4))
    record = store.add(small_png, "small.png")
    with patch("compression.pipeline.compress_to_target", blocking_driver):
        store.start(record.id)
        assert await asyncio.to_thread(entered.wait, 5)
        await store.shutdown()

    assert finished.is_set()
    assert store.records() == []


@pytest.mark.asyncio
async def test_tenfold_reduction_through_session(photo_png):
    store = ImageStore(gate=CompressionGate(size=1, max_queue=4))
    record = store.add(photo_png, "photo.png")
    target_kb = round(len(photo_png) / 1024) // 10
    store.update_target(record.id, target_kb)

    await store.start(record.id)

    assert record.status == RecordStatus.COMPLETED
    assert record.result.target_met
    assert record.result.achieved_byte_size <= target_kb * 1024
    assert record.result.final_format in (OutputFormat.JPEG, OutputFormat.WEBP)
