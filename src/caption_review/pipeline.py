"""Ingestion pipeline: upload an image and generate captions for it.

Stages run strictly in order, each consuming the previous stage's output:

1. Acquire upload target (presigned URL + public URL)
2. Transfer bytes to the presigned URL
3. Register the public URL as an image asset
4. Generate captions for the asset

The first failure ends the job; nothing is retried or resumed.
"""

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from .clients.ingestion import AssetIngestionClient
from .exceptions import AuthenticationError, StageError, TransportError, ValidationError
from .models import (
    IngestionJob,
    IngestionStage,
    JobSnapshot,
    JobStatus,
    StageFailure,
    UploadFile,
    utc_now,
)
from .utils.auth import SessionProvider
from .utils.image_processor import ImageProcessor
from .utils.notifier import SnapshotNotifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_MESSAGES = {
    IngestionStage.ACQUIRE_UPLOAD_TARGET: "Generating presigned URL",
    IngestionStage.TRANSFER_BYTES: "Uploading image",
    IngestionStage.REGISTER_ASSET: "Registering image",
    IngestionStage.GENERATE_CAPTIONS: "Generating captions",
}


class IngestionPipeline:
    """Runs ingestion jobs against the asset ingestion API."""

    def __init__(
        self,
        client: AssetIngestionClient,
        session: Optional[SessionProvider],
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.client = client
        self.session = session
        self.is_common_use = config.get("is_common_use", False)

        self.current_job: Optional[IngestionJob] = None
        self._current_task: Optional[asyncio.Task] = None
        self._notifiers: Dict[str, SnapshotNotifier[JobSnapshot]] = {}

    def create_job(self, upload: UploadFile) -> IngestionJob:
        """Validate a file selection and wrap it in a fresh job.

        Raises:
            ValidationError: empty file or content type outside the allow-list
        """
        upload = ImageProcessor.validate(upload)
        return IngestionJob(file=upload, job_id=uuid.uuid4().hex)

    def _token(self) -> str:
        if self.session is None:
            raise AuthenticationError("Not authenticated")
        return self.session.access_token()

    async def run(self, job: IngestionJob) -> IngestionJob:
        """
        Execute all stages of a job.

        Stage failures end the job with ``status=FAILED`` and a ``failure``
        naming the stage; they are not raised.

        Raises:
            AuthenticationError: no credential; no stage is attempted
        """
        token = self._token()

        job.status = JobStatus.RUNNING
        self._publish(job)
        logger.info(f"Ingesting {job.file.name} ({job.file.size} bytes, {job.file.content_type})")

        try:
            target = await self._run_stage(
                job,
                IngestionStage.ACQUIRE_UPLOAD_TARGET,
                lambda: self._acquire_upload_target(job, token),
            )
            job.upload_url = target.upload_url
            job.public_url = target.public_url
            logger.info(f"Presigned URL generated: {job.public_url}")

            await self._run_stage(
                job,
                IngestionStage.TRANSFER_BYTES,
                lambda: self.client.upload_bytes(
                    job.upload_url, job.file.data, job.file.content_type
                ),
            )
            logger.info("Image uploaded successfully")

            job.asset_id = await self._run_stage(
                job,
                IngestionStage.REGISTER_ASSET,
                lambda: self.client.register_image(token, job.public_url, self.is_common_use),
            )
            logger.info(f"Image registered with ID: {job.asset_id}")

            job.generated_captions = await self._run_stage(
                job,
                IngestionStage.GENERATE_CAPTIONS,
                lambda: self.client.generate_captions(token, job.asset_id),
            )
            logger.info(f"Generated {len(job.generated_captions)} captions")

        except StageError as e:
            self._fail(job, e)
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            job.finished_at = utc_now()
            logger.info(f"Job {job.job_id} cancelled")
            self._finish(job)
            raise
        else:
            job.status = JobStatus.COMPLETED
            job.finished_at = utc_now()

        self._finish(job)
        return job

    async def ingest(self, upload: UploadFile, raise_on_failure: bool = False) -> IngestionJob:
        """Create and run a job for one file selection."""
        job = self.create_job(upload)
        await self.run(job)
        if raise_on_failure and job.failure is not None:
            raise StageError(job.failure.stage, job.failure.error)
        return job

    def start(self, upload: UploadFile) -> asyncio.Task:
        """Run a new job in the background, cancelling any job still in flight.

        Validation and credential checks happen before the task is created.
        """
        job = self.create_job(upload)
        self._token()
        self.cancel()
        self.current_job = job
        self._current_task = asyncio.create_task(self.run(job))
        return self._current_task

    def cancel(self):
        if self._current_task is not None and not self._current_task.done():
            logger.debug("Cancelling in-flight ingestion job")
            self._current_task.cancel()

            # A task cancelled before its first step never reaches run()
            job = self.current_job
            if job is not None and job.status is JobStatus.PENDING:
                job.status = JobStatus.CANCELLED
                job.finished_at = utc_now()
                logger.info(f"Job {job.job_id} cancelled before starting")
                self._finish(job)

    async def close(self):
        task = self._current_task
        self.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self._current_task = None

    def snapshots(self, job: IngestionJob) -> AsyncIterator[JobSnapshot]:
        """Stream of snapshots for one job, ending when it completes, fails or is cancelled."""
        if job.is_finished:
            notifier: SnapshotNotifier[JobSnapshot] = SnapshotNotifier(lambda s: s.is_terminal)
        else:
            notifier = self._notifiers.setdefault(
                job.job_id, SnapshotNotifier(lambda s: s.is_terminal)
            )
        return notifier.stream(job.snapshot)

    async def _acquire_upload_target(self, job: IngestionJob, token: str):
        # Local allow-list check precedes the first network call
        ImageProcessor.validate(job.file)
        return await self.client.generate_presigned_url(token, job.file.content_type)

    async def _run_stage(
        self, job: IngestionJob, stage: IngestionStage, call: Callable[[], Awaitable[T]]
    ) -> T:
        job.current_stage = stage
        self._publish(job)
        logger.info(f"Step {stage.value}: {STAGE_MESSAGES[stage]}...")
        try:
            return await call()
        except (TransportError, ValidationError) as e:
            raise StageError(stage, e) from e
        except Exception as e:
            logger.exception(f"Unexpected error in stage {stage.value}")
            raise StageError(stage, e) from e

    def _fail(self, job: IngestionJob, error: StageError):
        job.status = JobStatus.FAILED
        job.finished_at = utc_now()
        job.failure = StageFailure(stage=error.stage, reason=str(error.cause), error=error.cause)
        logger.error(f"Ingestion failed at stage {error.stage.value} ({error.stage.label}): {error.cause}")

        if error.stage in (IngestionStage.REGISTER_ASSET, IngestionStage.GENERATE_CAPTIONS):
            job.orphaned_url = job.public_url
            logger.warning(f"Uploaded object left in storage: {job.public_url}")

    def _publish(self, job: IngestionJob):
        notifier = self._notifiers.get(job.job_id)
        if notifier is not None:
            notifier.publish(job.snapshot())

    def _finish(self, job: IngestionJob):
        self._publish(job)
        self._notifiers.pop(job.job_id, None)
