"""Tests for the ingestion pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from caption_review.clients.ingestion import AssetIngestionClient
from caption_review.exceptions import (
    AuthenticationError,
    StageError,
    TransportError,
    ValidationError,
)
from caption_review.models import (
    GeneratedCaption,
    IngestionStage,
    JobStatus,
    UploadFile,
    UploadTarget,
)
from caption_review.pipeline import IngestionPipeline
from caption_review.utils.auth import StaticSessionProvider

STAGE_METHODS = [
    "generate_presigned_url",
    "upload_bytes",
    "register_image",
    "generate_captions",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("CAPTION_REVIEW_IDENTITY_ID", raising=False)
    monkeypatch.delenv("CAPTION_REVIEW_ACCESS_TOKEN", raising=False)


@pytest.fixture
def client():
    client = AsyncMock(spec=AssetIngestionClient)
    client.generate_presigned_url.return_value = UploadTarget(
        upload_url="https://storage.example.com/put?sig=abc",
        public_url="https://cdn.example.com/cat.png",
    )
    client.upload_bytes.return_value = None
    client.register_image.return_value = "image-1"
    client.generate_captions.return_value = [
        GeneratedCaption(content="when the cat knows", caption_id="c1"),
        GeneratedCaption(content="monday mood", caption_id="c2"),
    ]
    return client


@pytest.fixture
def session():
    return StaticSessionProvider({"identity_id": "user-1", "access_token": "secret"})


@pytest.fixture
def pipeline(client, session):
    return IngestionPipeline(client, session)


@pytest.fixture
def png_upload():
    return UploadFile(name="cat.png", content_type="image/png", data=b"\x89PNG\r\n\x1a\nfake")


class TestValidation:
    """Local checks that precede any network call."""

    @pytest.mark.asyncio
    async def test_bmp_rejected_without_network(self, pipeline, client):
        upload = UploadFile(name="cat.bmp", content_type="image/bmp", data=b"BMfake")

        with pytest.raises(ValidationError):
            await pipeline.ingest(upload)

        assert client.mock_calls == []

    @pytest.mark.asyncio
    async def test_empty_file_rejected(self, pipeline, client):
        with pytest.raises(ValidationError):
            await pipeline.ingest(UploadFile(name="cat.png", content_type="image/png", data=b""))
        assert client.mock_calls == []

    @pytest.mark.parametrize(
        "content_type", ["image/jpeg", "image/jpg", "image/png", "image/webp", "image/gif", "image/heic", "PNG"]
    )
    def test_accepted_types(self, pipeline, content_type):
        job = pipeline.create_job(UploadFile(name="x", content_type=content_type, data=b"data"))
        assert job.status is JobStatus.PENDING
        assert job.file.content_type.startswith("image/")

    @pytest.mark.asyncio
    async def test_missing_credential_aborts_before_stage_one(self, client, png_upload):
        pipeline = IngestionPipeline(client, StaticSessionProvider({}))

        with pytest.raises(AuthenticationError):
            await pipeline.ingest(png_upload)

        assert client.mock_calls == []

    @pytest.mark.asyncio
    async def test_hand_built_job_fails_stage_one(self, pipeline, client, png_upload):
        job = pipeline.create_job(png_upload)
        object.__setattr__(job.file, "content_type", "image/bmp")

        await pipeline.run(job)

        assert job.status is JobStatus.FAILED
        assert job.failure.stage is IngestionStage.ACQUIRE_UPLOAD_TARGET
        assert isinstance(job.failure.error, ValidationError)
        assert client.mock_calls == []


class TestStages:
    """Stage ordering and failure reporting."""

    @pytest.mark.asyncio
    async def test_successful_job(self, pipeline, client, png_upload):
        job = await pipeline.ingest(png_upload)

        assert job.status is JobStatus.COMPLETED
        assert job.current_stage is IngestionStage.GENERATE_CAPTIONS
        assert job.asset_id == "image-1"
        assert [c.content for c in job.generated_captions] == ["when the cat knows", "monday mood"]
        assert job.failure is None
        assert job.finished_at is not None

        client.generate_presigned_url.assert_awaited_once_with("secret", "image/png")
        client.upload_bytes.assert_awaited_once_with(
            "https://storage.example.com/put?sig=abc", png_upload.data, "image/png"
        )
        client.register_image.assert_awaited_once_with(
            "secret", "https://cdn.example.com/cat.png", False
        )
        client.generate_captions.assert_awaited_once_with("secret", "image-1")

    @pytest.mark.asyncio
    async def test_common_use_flag(self, client, session, png_upload):
        pipeline = IngestionPipeline(client, session, {"is_common_use": True})
        await pipeline.ingest(png_upload)
        assert client.register_image.await_args.args[2] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", range(4))
    async def test_later_stages_skipped_after_failure(self, pipeline, client, png_upload, failing):
        method = STAGE_METHODS[failing]
        getattr(client, method).side_effect = TransportError(method, "nope", 500)

        job = await pipeline.ingest(png_upload)

        assert job.status is JobStatus.FAILED
        assert job.failure.stage.value == failing + 1
        assert "nope" in job.failure.reason
        for earlier in STAGE_METHODS[:failing]:
            getattr(client, earlier).assert_awaited_once()
        for later in STAGE_METHODS[failing + 1 :]:
            getattr(client, later).assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transfer_failure(self, pipeline, client, png_upload):
        client.upload_bytes.side_effect = TransportError("upload_bytes", "Forbidden", 403)

        job = await pipeline.ingest(png_upload)

        assert job.status is JobStatus.FAILED
        assert job.failure.stage is IngestionStage.TRANSFER_BYTES
        assert job.failure.error.status == 403
        assert job.orphaned_url is None
        client.register_image.assert_not_awaited()
        client.generate_captions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_is_tagged_with_stage(self, pipeline, client, png_upload):
        client.upload_bytes.side_effect = AttributeError("'NoneType' object has no attribute 'startswith'")
        job = pipeline.create_job(png_upload)
        collected = []

        async def consume():
            async for snapshot in pipeline.snapshots(job):
                collected.append(snapshot)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await pipeline.run(job)
        await asyncio.wait_for(task, timeout=1)

        assert job.status is JobStatus.FAILED
        assert job.failure.stage is IngestionStage.TRANSFER_BYTES
        assert isinstance(job.failure.error, AttributeError)
        assert collected[-1].status is JobStatus.FAILED
        client.register_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register_failure_reports_orphan(self, pipeline, client, png_upload):
        client.register_image.side_effect = TransportError("register_image", "bad url", 422)

        job = await pipeline.ingest(png_upload)

        assert job.failure.stage is IngestionStage.REGISTER_ASSET
        assert job.orphaned_url == "https://cdn.example.com/cat.png"

    @pytest.mark.asyncio
    async def test_raise_on_failure(self, pipeline, client, png_upload):
        client.generate_captions.side_effect = TransportError("generate_captions", "timeout")

        with pytest.raises(StageError) as exc_info:
            await pipeline.ingest(png_upload, raise_on_failure=True)

        assert exc_info.value.stage is IngestionStage.GENERATE_CAPTIONS
        assert isinstance(exc_info.value.cause, TransportError)

    @pytest.mark.asyncio
    async def test_new_job_starts_clean(self, pipeline, client, png_upload):
        client.upload_bytes.side_effect = TransportError("upload_bytes", "boom", 500)
        failed = await pipeline.ingest(png_upload)

        client.upload_bytes.side_effect = None
        retried = await pipeline.ingest(png_upload)

        assert failed.job_id != retried.job_id
        assert failed.status is JobStatus.FAILED
        assert retried.status is JobStatus.COMPLETED
        assert retried.failure is None
        assert client.generate_presigned_url.await_count == 2


class TestBackgroundJobs:
    """start(), cancellation and the snapshot stream."""

    @pytest.mark.asyncio
    async def test_start_cancels_previous_job(self, pipeline, client, png_upload):
        gate = asyncio.Event()
        target = client.generate_presigned_url.return_value

        async def slow_presign(token, content_type):
            await gate.wait()
            return target

        client.generate_presigned_url.side_effect = slow_presign
        first = pipeline.start(png_upload)
        first_job = pipeline.current_job
        await asyncio.sleep(0)

        client.generate_presigned_url.side_effect = None
        second = pipeline.start(png_upload)
        second_job = await second

        with pytest.raises(asyncio.CancelledError):
            await first
        assert first_job.status is JobStatus.CANCELLED
        assert second_job.status is JobStatus.COMPLETED
        assert pipeline.current_job is second_job
        client.upload_bytes.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_replaced_before_first_step_is_cancelled(self, pipeline, client, png_upload):
        first = pipeline.start(png_upload)
        first_job = pipeline.current_job
        stream = pipeline.snapshots(first_job)
        initial = await stream.__anext__()

        second = pipeline.start(png_upload)

        assert first_job.status is JobStatus.CANCELLED
        assert first_job.finished_at is not None
        assert first_job.job_id not in pipeline._notifiers
        final = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert initial.status is JobStatus.PENDING
        assert final.status is JobStatus.CANCELLED
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(stream.__anext__(), timeout=1)

        await second
        with pytest.raises(asyncio.CancelledError):
            await first
        assert client.generate_presigned_url.await_count == 1

    @pytest.mark.asyncio
    async def test_start_validates_synchronously(self, pipeline, client):
        with pytest.raises(ValidationError):
            pipeline.start(UploadFile(name="a.tiff", content_type="image/tiff", data=b"II*"))
        assert pipeline.current_job is None

    @pytest.mark.asyncio
    async def test_snapshot_stream(self, pipeline, png_upload):
        job = pipeline.create_job(png_upload)
        collected = []

        async def consume():
            async for snapshot in pipeline.snapshots(job):
                collected.append(snapshot)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await pipeline.run(job)
        await asyncio.wait_for(task, timeout=1)

        stages = [s.stage for s in collected if s.stage is not None]
        assert list(dict.fromkeys(stages)) == list(IngestionStage)
        assert collected[0].status is JobStatus.PENDING
        assert collected[-1].status is JobStatus.COMPLETED
        assert len(collected[-1].captions) == 2

    @pytest.mark.asyncio
    async def test_stream_of_finished_job_yields_once(self, pipeline, png_upload):
        job = await pipeline.ingest(png_upload)
        collected = [snapshot async for snapshot in pipeline.snapshots(job)]
        assert len(collected) == 1
        assert collected[0].status is JobStatus.COMPLETED
