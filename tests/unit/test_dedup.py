"""Deduplication tracker and engine data tests."""

import pytest

from dataloom import ClearScope, DeduplicationTracker, EngineDataStore, InMemoryRepository


@pytest.mark.asyncio
async def test_mark_processed_is_idempotent():
    tracker = DeduplicationTracker(InMemoryRepository())

    assert await tracker.has_processed("s1_1", "guid-1") is False
    assert await tracker.mark_processed("s1_1", "rss", "guid-1", job_id=1) is True
    assert await tracker.mark_processed("s1_1", "rss", "guid-1", job_id=2) is False
    assert await tracker.has_processed("s1_1", "guid-1") is True
    assert await tracker.has_processed("s2_1", "guid-1") is False


@pytest.mark.asyncio
async def test_clear_flow_only_touches_that_flow():
    repo = InMemoryRepository()
    tracker = DeduplicationTracker(repo)
    await tracker.mark_processed("s1_1", "rss", "a", 1)
    await tracker.mark_processed("s2_1", "rss", "b", 1)
    await tracker.mark_processed("s1_11", "rss", "a", 2)

    cleared = await tracker.clear(ClearScope.FLOW, 1)

    assert cleared == 2
    assert await tracker.has_processed("s1_11", "a") is True
    assert await tracker.has_processed("s1_1", "a") is False


@pytest.mark.asyncio
async def test_clear_pipeline_clears_every_flow():
    repo = InMemoryRepository()
    tracker = DeduplicationTracker(repo)
    pipeline = await repo.create_pipeline("p")
    other = await repo.create_pipeline("other")
    first = await repo.create_flow(pipeline.pipeline_id, "one")
    second = await repo.create_flow(pipeline.pipeline_id, "two")
    third = await repo.create_flow(other.pipeline_id, "three")
    for flow in (first, second, third):
        await tracker.mark_processed(f"s1_{flow.flow_id}", "rss", "x", None)

    cleared = await tracker.clear("pipeline", pipeline.pipeline_id)

    assert cleared == 2
    assert await tracker.has_processed(f"s1_{third.flow_id}", "x") is True


@pytest.mark.asyncio
async def test_delete_single_record_and_release_job():
    repo = InMemoryRepository()
    tracker = DeduplicationTracker(repo)
    await tracker.mark_processed("s1_1", "rss", "a", 5)
    await tracker.mark_processed("s1_1", "rss", "b", 5)
    await tracker.mark_processed("s1_1", "rss", "c", 6)
    record = (await repo.list_processed_items(job_id=6))[0]

    assert await tracker.delete(record.record_id) is True
    assert await tracker.delete(record.record_id) is False
    assert await tracker.identifiers_for_job("s1_1", 5) == {"a", "b"}
    assert await tracker.release_job(5) == 2
    assert await repo.list_processed_items() == []


@pytest.mark.asyncio
async def test_engine_data_is_job_scoped_and_copied():
    store = EngineDataStore(InMemoryRepository())

    await store.store(1, {"source_url": "https://a.test", "image_url": None})
    await store.store(2, {"source_url": "https://b.test"})
    snapshot = await store.snapshot(1)
    snapshot["source_url"] = "changed"

    assert await store.snapshot(1) == {"source_url": "https://a.test"}
    assert await store.snapshot(2) == {"source_url": "https://b.test"}

    await store.discard(1)
    assert await store.snapshot(1) == {}
    assert await store.snapshot(2) == {"source_url": "https://b.test"}
