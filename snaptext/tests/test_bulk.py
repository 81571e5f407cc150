"""Tests for the bulk processor."""

import asyncio
import random

import pytest

from snaptext.daemon.bulk import BulkProcessor, CommitPolicy, ItemStatus, export_results
from snaptext.daemon.capture import ScreenCaptureSource
from snaptext.daemon.config import BulkConfig
from snaptext.daemon.errors import NoTextFound, UnreadableImage
from snaptext.daemon.models import InsertStatus


def text_from_name(raw):
    """Echo the file name so results can be matched to inputs."""
    return raw.origin_hint.rsplit("/", 1)[-1].rsplit("\\", 1)[-1]


@pytest.fixture
def processor(dispatcher, gateway):
    return BulkProcessor(ScreenCaptureSource(), dispatcher, gateway, BulkConfig())


@pytest.mark.asyncio
@pytest.mark.parametrize("count,concurrency", [(1, 2), (7, 3), (20, 8)])
async def test_output_order_matches_input(processor, stub_backend, image_files, count, concurrency):
    files = image_files(count)
    rng = random.Random(count)
    stub_backend.text = text_from_name
    stub_backend.delay = lambda raw: rng.uniform(0, 0.03)

    report = await processor.run(files, concurrency=concurrency)

    assert [item.index for item in report.items] == list(range(count))
    assert [item.outcome.text for item in report.items] == [f.name for f in files]
    assert stub_backend.max_in_flight <= concurrency


@pytest.mark.asyncio
async def test_one_unreadable_file_does_not_abort(processor, stub_backend, image_files):
    files = image_files(5)
    files[2].write_bytes(b"garbage")
    stub_backend.text = text_from_name
    progress = []

    report = await processor.run(files, concurrency=2, progress=progress.append)

    assert len(report.succeeded) == 4
    assert [i.index for i in report.failed] == [2]
    assert isinstance(report.items[2].error, UnreadableImage)
    assert progress[-1].completed == 5 and progress[-1].total == 5
    assert [p.completed for p in progress] == sorted(p.completed for p in progress)
    assert report.summary() == "4 of 5 processed successfully"
    assert report.has_failures


@pytest.mark.asyncio
async def test_concurrency_is_bounded(processor, stub_backend, image_files):
    stub_backend.delay = 0.02

    await processor.run(image_files(10), concurrency=3)

    assert stub_backend.max_in_flight == 3


@pytest.mark.asyncio
async def test_default_concurrency_depends_on_backend(processor):
    assert processor.default_concurrency() == 4
    assert processor.default_concurrency("local") == 4


@pytest.mark.asyncio
async def test_zero_concurrency_rejected(processor, image_files):
    with pytest.raises(ValueError):
        await processor.run(image_files(2), concurrency=0)


@pytest.mark.asyncio
async def test_end_of_batch_commit(processor, stub_backend, gateway, history_store, image_files):
    stub_backend.text = text_from_name

    report = await processor.run(image_files(3), concurrency=2)

    assert report.committed == 3
    assert all(item.insert_result.status is InsertStatus.INSERTED for item in report.items)
    records = await gateway.recent(0)
    assert {r.source_tag for r in records} == {"bulk"}
    assert len(history_store) == 3


@pytest.mark.asyncio
async def test_no_commit_leaves_history_untouched(processor, history_store, image_files):
    report = await processor.run(image_files(3), commit=CommitPolicy.NONE)

    assert len(report.succeeded) == 3
    assert report.committed == 0
    assert len(history_store) == 0


@pytest.mark.asyncio
async def test_per_item_commit_dedups_identical_text(processor, history_store, image_files):
    report = await processor.run(image_files(4), concurrency=2, commit=CommitPolicy.PER_ITEM)

    statuses = sorted(item.insert_result.status.value for item in report.items)
    assert statuses == ["inserted", "rejected_duplicate", "rejected_duplicate", "rejected_duplicate"]
    assert report.committed == 1
    assert len(history_store) == 1


@pytest.mark.asyncio
async def test_cancel_stops_new_work_and_skips_commit(processor, stub_backend, history_store, image_files):
    files = image_files(10)
    cancel = asyncio.Event()
    progress = []

    def on_progress(update):
        progress.append(update)
        if update.completed == 3:
            cancel.set()

    stub_backend.text = text_from_name
    stub_backend.delay = 0.01
    report = await processor.run(files, concurrency=1, progress=on_progress, cancel=cancel)

    assert report.cancelled
    assert [i.status for i in report.items[:3]] == [ItemStatus.SUCCEEDED] * 3
    assert all(i.status is ItemStatus.CANCELLED for i in report.items[3:])
    assert stub_backend.calls == 3
    assert len(history_store) == 0
    assert progress[-1].completed == 3
    assert "(cancelled)" in report.summary()


@pytest.mark.asyncio
async def test_no_text_items_are_failures(processor, stub_backend, image_files):
    stub_backend.error = NoTextFound(backend="local")

    report = await processor.run(image_files(2))

    assert all(isinstance(item.error, NoTextFound) for item in report.items)
    assert report.summary() == "0 of 2 processed successfully"


@pytest.mark.asyncio
async def test_empty_batch_reports_completion(processor):
    progress = []

    report = await processor.run([], progress=progress.append)

    assert report.items == []
    assert progress[-1].done
    assert report.summary() == "0 of 0 processed successfully"


@pytest.mark.asyncio
async def test_export_results(processor, stub_backend, image_files, tmp_path):
    files = image_files(3)
    files[1].write_bytes(b"garbage")
    stub_backend.text = text_from_name
    report = await processor.run(files, commit=CommitPolicy.NONE)

    out = tmp_path / "out" / "results.txt"
    await export_results(report, out)

    content = out.read_text()
    assert "=== Image 1: shot0.png ===\nshot0.png" in content
    assert "=== Image 2: shot1.png ===\n[error] Could not read image" in content
    assert "=== Image 3: shot2.png ===" in content
