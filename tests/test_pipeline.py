import asyncio
import uuid

import pytest

from facematch.errors import DimensionMismatchError
from facematch.models import PhotoDB, PhotoStatus
from facematch.pipeline import IngestionPipeline, display_key_for
from facematch.repository import EmbeddingStore, PhotoRepository

from conftest import make_face, make_jpeg, unit

MAX_RETRIES = 3


@pytest.fixture
def make_pipeline(face_service, storage, session_maker):
    created = []

    def _make(**overrides):
        options = dict(max_retries=MAX_RETRIES, concurrency=2, poll_interval=0.05)
        options.update(overrides)
        instance = IngestionPipeline(face_service, storage, session_maker, **options)
        created.append(instance)
        return instance

    yield _make
    for instance in created:
        instance.close()


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


async def upload(pipeline, storage, image_bytes, event_id=None):
    storage.objects["raw/photo.jpg"] = image_bytes
    async with pipeline.session_maker() as session:
        photo = await PhotoRepository.create(
            session, uploader_id="photographer", storage_path_raw="mem://raw/photo.jpg", event_id=event_id
        )
    return photo.id


async def load(pipeline, photo_id):
    async with pipeline.session_maker() as session:
        photo = await PhotoRepository.get_by_id(session, photo_id)
        count = await EmbeddingStore.count_photo_embeddings(session, photo_id)
    return photo, count


async def test_photo_with_four_faces_becomes_ready(pipeline, backend, storage):
    backend.faces_by_size[(640, 480)] = [make_face(unit(i)) for i in range(4)]
    photo_id = await upload(pipeline, storage, make_jpeg(640, 480))

    outcome = await pipeline.ingest(photo_id)
    photo, count = await load(pipeline, photo_id)

    assert outcome.status == "ready"
    assert outcome.faces_count == 4
    assert photo.status == PhotoStatus.READY
    assert photo.faces_count == count == 4
    assert (photo.width, photo.height) == (640, 480)
    assert photo.processing_error is None
    assert photo.storage_path_display == f"mem://{display_key_for(photo)}"
    assert display_key_for(photo) in storage.objects


async def test_photo_without_faces_is_ready_not_failed(pipeline, storage):
    photo_id = await upload(pipeline, storage, make_jpeg(300, 200))

    outcome = await pipeline.ingest(photo_id)
    photo, count = await load(pipeline, photo_id)

    assert outcome.status == "ready"
    assert photo.status == PhotoStatus.READY
    assert photo.faces_count == count == 0
    assert photo.retry_count == 0


async def test_corrupt_image_fails_after_all_retries(pipeline, storage):
    photo_id = await upload(pipeline, storage, b"this is not a jpeg")

    outcome = await pipeline.ingest(photo_id)
    photo, count = await load(pipeline, photo_id)

    assert outcome.status == "failed"
    assert photo.status == PhotoStatus.FAILED
    assert photo.retry_count == MAX_RETRIES
    assert "UnreadableImageError" in photo.processing_error
    assert count == 0
    assert await pipeline.process_photo(photo_id) is None


async def test_transient_failure_recovers_on_retry(pipeline, backend, storage):
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))
    backend.faces_by_size[(320, 240)] = [make_face(unit(0))]
    backend.error = RuntimeError("backend hiccup")

    first = await pipeline.process_photo(photo_id)
    backend.error = None
    second = await pipeline.process_photo(photo_id)
    photo, count = await load(pipeline, photo_id)

    assert first.status == "failed"
    assert first.retry_count == 1
    assert second.status == "ready"
    assert photo.faces_count == count == 1
    assert photo.retry_count == 1
    assert photo.processing_error is None


async def test_permanent_error_is_not_retried(pipeline, backend, storage):
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))
    backend.error = DimensionMismatchError(8, 16)

    outcome = await pipeline.ingest(photo_id)
    photo, _ = await load(pipeline, photo_id)

    assert outcome.status == "failed"
    assert photo.retry_count == MAX_RETRIES
    assert "DimensionMismatchError" in photo.processing_error


async def test_storage_failure_marks_attempt_failed(pipeline, backend, storage):
    backend.faces_by_size[(320, 240)] = [make_face(unit(0))]
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))
    storage.fail_puts = True

    outcome = await pipeline.process_photo(photo_id)
    photo, count = await load(pipeline, photo_id)

    assert outcome.status == "failed"
    assert "StorageError" in outcome.error
    assert photo.status == PhotoStatus.FAILED
    assert count == 0


async def test_missing_raw_object_fails(pipeline, session_maker):
    async with session_maker() as session:
        photo = await PhotoRepository.create(session, uploader_id="u", storage_path_raw="mem://raw/missing.jpg")

    outcome = await pipeline.process_photo(photo.id)

    assert outcome.status == "failed"
    assert "StorageError" in outcome.error


async def test_ready_photo_is_not_reprocessed(pipeline, storage):
    photo_id = await upload(pipeline, storage, make_jpeg(100, 100))
    await pipeline.ingest(photo_id)

    assert await pipeline.process_photo(photo_id) is None


async def test_batch_processes_each_photo_once(pipeline, backend, storage):
    backend.faces_by_size[(200, 100)] = [make_face(unit(2))]
    storage.objects["raw/a.jpg"] = make_jpeg(200, 100)
    ids = []
    async with pipeline.session_maker() as session:
        for _ in range(4):
            photo = await PhotoRepository.create(session, uploader_id="u", storage_path_raw="mem://raw/a.jpg")
            ids.append(photo.id)

    outcomes = await pipeline.process_batch(ids + ids)

    processed = [o for o in outcomes if o is not None]
    assert len(processed) == 4
    assert {o.photo_id for o in processed} == set(ids)
    assert all(o.status == "ready" for o in processed)


async def test_worker_drains_queue_until_stopped(pipeline, storage):
    storage.objects["raw/b.jpg"] = make_jpeg(120, 90)
    ids = []
    async with pipeline.session_maker() as session:
        for _ in range(3):
            photo = await PhotoRepository.create(session, uploader_id="u", storage_path_raw="mem://raw/b.jpg")
            ids.append(photo.id)

    stop_event = asyncio.Event()
    worker = asyncio.create_task(pipeline.run_worker(stop_event))
    for _ in range(100):
        async with pipeline.session_maker() as session:
            if not await PhotoRepository.list_claimable_ids(session, max_retries=MAX_RETRIES):
                break
        await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(worker, timeout=5)

    for photo_id in ids:
        photo, _ = await load(pipeline, photo_id)
        assert photo.status == PhotoStatus.READY


def test_display_key_is_scoped_by_event():
    event_id, photo_id = uuid.uuid4(), uuid.uuid4()
    assert display_key_for(PhotoDB(id=photo_id, event_id=event_id)) == f"display/{event_id}/{photo_id}.jpg"
    assert display_key_for(PhotoDB(id=photo_id)) == f"display/unassigned/{photo_id}.jpg"


async def claim(pipeline, photo_id):
    async with pipeline.session_maker() as session:
        assert await PhotoRepository.claim_for_processing(session, photo_id, max_retries=pipeline.max_retries)


async def run_worker_until_settled(pipeline, photo_id, timeout=5.0):
    stop_event = asyncio.Event()
    worker = asyncio.create_task(pipeline.run_worker(stop_event))
    try:
        for _ in range(int(timeout / 0.05)):
            photo, _ = await load(pipeline, photo_id)
            if photo.status in (PhotoStatus.READY, PhotoStatus.FAILED):
                break
            await asyncio.sleep(0.05)
    finally:
        stop_event.set()
        await asyncio.wait_for(worker, timeout=5)
    return photo


async def test_abandoned_claim_is_retried_after_lease(make_pipeline, backend, storage):
    pipeline = make_pipeline(processing_lease=0.1)
    backend.faces_by_size[(320, 240)] = [make_face(unit(0))]
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))
    await claim(pipeline, photo_id)
    await asyncio.sleep(0.3)

    outcome = await pipeline.ingest(photo_id)

    assert outcome.status == "ready"
    assert outcome.retry_count == 1
    assert outcome.faces_count == 1


async def test_abandoned_claim_without_retries_left_ends_failed(make_pipeline, storage):
    pipeline = make_pipeline(processing_lease=0.1, max_retries=1)
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))
    await claim(pipeline, photo_id)
    await asyncio.sleep(0.3)

    outcome = await pipeline.ingest(photo_id)
    photo, _ = await load(pipeline, photo_id)

    assert outcome.status == "failed"
    assert photo.status == PhotoStatus.FAILED
    assert photo.retry_count == 1
    assert "lease" in photo.processing_error


async def test_claim_within_lease_is_left_alone(pipeline, storage):
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))
    await claim(pipeline, photo_id)

    outcome = await pipeline.ingest(photo_id)

    assert outcome.status == "processing"
    assert outcome.retry_count == 0
    assert await pipeline.expire_stale_claims() == 0


async def test_worker_recovers_abandoned_claim(make_pipeline, storage):
    pipeline = make_pipeline(processing_lease=0.1)
    photo_id = await upload(pipeline, storage, make_jpeg(200, 150))
    await claim(pipeline, photo_id)

    photo = await run_worker_until_settled(pipeline, photo_id)

    assert photo.status == PhotoStatus.READY
    assert photo.retry_count == 1


async def test_batch_survives_unhandled_error(pipeline, storage, session_maker, monkeypatch):
    good = await upload(pipeline, storage, make_jpeg(160, 120))
    async with session_maker() as session:
        broken = await PhotoRepository.create(session, uploader_id="u", storage_path_raw="mem://raw/missing.jpg")

    async def failing_record(photo_id, error):
        raise RuntimeError("database went away")

    monkeypatch.setattr(pipeline, "_record_failure", failing_record)

    outcomes = await pipeline.process_batch([broken.id, good])
    stuck, _ = await load(pipeline, broken.id)

    assert outcomes[0] is None
    assert outcomes[1].status == "ready"
    assert stuck.status == PhotoStatus.PROCESSING


async def test_worker_keeps_polling_after_database_error(pipeline, storage, monkeypatch):
    photo_id = await upload(pipeline, storage, make_jpeg(160, 120))
    original = PhotoRepository.list_claimable_ids
    calls = []

    async def flaky(session, max_retries=MAX_RETRIES, limit=10):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("connection reset")
        return await original(session, max_retries=max_retries, limit=limit)

    monkeypatch.setattr(PhotoRepository, "list_claimable_ids", flaky)

    photo = await run_worker_until_settled(pipeline, photo_id)

    assert len(calls) >= 2
    assert photo.status == PhotoStatus.READY


async def test_photo_hidden_mid_run_keeps_its_state(pipeline, backend, storage, session_maker):
    backend.faces_by_size[(320, 240)] = [make_face(unit(0)), make_face(unit(1))]
    photo_id = await upload(pipeline, storage, make_jpeg(320, 240))

    async def hide_on_display_upload(key):
        if key.startswith("display/"):
            async with session_maker() as session:
                await PhotoRepository.remove_from_matching(session, photo_id, PhotoStatus.HIDDEN)

    storage.on_put = hide_on_display_upload

    outcome = await pipeline.process_photo(photo_id)
    photo, count = await load(pipeline, photo_id)

    assert outcome.status == "hidden"
    assert photo.status == PhotoStatus.HIDDEN
    assert count == 0
    assert not any(key.startswith("display/") for key in storage.objects)
