#!/usr/bin/env python3
"""
Media processing worker.

Polls the job queue, and for each claimed job downloads the original,
transcodes videos to an HLS ladder, transcribes the audio, uploads the
outputs and reports the result. Many workers may run side by side; the
queue's conditional updates decide which one holds a job.

Run with: python -m worker.coordinator

Environment variables (see config.py for the full list):
    WORKER_ID: Worker identity recorded on claimed jobs (default: worker-<unix ms>)
    POLL_INTERVAL: Idle poll interval in milliseconds (default: 10000)
    TEMP_DIR: Working directory for downloads and outputs (default: /tmp/allvideo)
    GROQ_API_KEY: Credential for the groq transcription backend
"""

import asyncio
import logging
import shutil
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
from databases import Database

from api import assets as asset_store
from api.database import create_database
from api.enums import AssetStatus, MediaKind, TranscriptionStatus, WebhookEvent
from api.errors import NotOwnerError, sanitize_error_message
from api.job_queue import JobQueue
from api.models import MediaAsset, TranscodeJob, segments_to_json
from api.storage import ObjectStore, hls_prefix
from api.webhook_service import WebhookDispatcher
from config import Settings, configure_logging, load_settings
from worker.transcoder import THUMBNAIL_NAME, generate_thumbnail, probe, transcode_to_hls
from worker.transcription import TranscriptionEngine

logger = logging.getLogger(__name__)

# Progress checkpoints after the ladder is encoded
PROGRESS_TRANSCRIBED = 93
PROGRESS_UPLOADED = 98


class JobState:
    """Per-job state shared between the job and its heartbeat task."""

    def __init__(self, job: TranscodeJob) -> None:
        self.job = job
        self.progress = 0
        self.claim_lost = False

    async def set_progress(self, progress: int) -> None:
        if self.claim_lost:
            raise NotOwnerError(self.job.id, self.job.worker_id or "")
        self.progress = max(self.progress, min(100, progress))


class WorkerCoordinator:
    """Claim, execute, report. One job at a time."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        queue: Optional[JobQueue] = None,
        store: Optional[ObjectStore] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        engine: Optional[TranscriptionEngine] = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.worker_id = settings.worker_id
        self.queue = queue or JobQueue(
            database,
            max_attempts=settings.max_attempts,
            stale_threshold_seconds=settings.stale_threshold_seconds,
        )
        self.store = store or ObjectStore(settings)
        self.dispatcher = dispatcher or WebhookDispatcher(database, settings)
        self.engine = engine or TranscriptionEngine(settings)
        self.shutdown_requested = False
        self.jobs_processed = 0
        self.jobs_failed = 0

    def request_shutdown(self) -> None:
        self.shutdown_requested = True

    def signal_handler(self, sig, frame) -> None:
        """Handle shutdown signals gracefully."""
        sig_name = signal.strsignal(sig) if hasattr(signal, "strsignal") else str(sig)
        logger.info(f"{sig_name} received, finishing current job and shutting down gracefully...")
        self.request_shutdown()

    def has_free_disk(self) -> bool:
        """True if temp_dir has at least min_free_disk_mb available."""
        temp_dir = self.settings.temp_dir
        temp_dir.mkdir(parents=True, exist_ok=True)
        free_mb = psutil.disk_usage(str(temp_dir)).free / (1024 * 1024)
        if free_mb < self.settings.min_free_disk_mb:
            logger.warning(
                f"Only {free_mb:.0f}MB free in {temp_dir} (minimum {self.settings.min_free_disk_mb}MB), "
                "not claiming new work"
            )
            return False
        return True

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run_once(self) -> bool:
        """Claim and process at most one job. Returns True if a job was claimed."""
        if not self.has_free_disk():
            return False

        job = await self.queue.claim(self.worker_id)
        if job is None:
            return False

        if await self.process_job(job):
            self.jobs_processed += 1
        else:
            self.jobs_failed += 1
        return True

    async def run(self) -> None:
        signal.signal(signal.SIGTERM, self.signal_handler)
        signal.signal(signal.SIGINT, self.signal_handler)

        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Worker {self.worker_id} starting")
        logger.info(f"  Temp dir: {self.settings.temp_dir}")
        logger.info(f"  Poll interval: {self.settings.poll_interval}s")
        logger.info(f"  Heartbeat interval: {self.settings.heartbeat_interval}s")
        logger.info(f"  Transcription backend: {self.settings.transcription_backend}")

        try:
            while not self.shutdown_requested:
                try:
                    claimed = await self.run_once()
                except Exception as e:
                    logger.error(f"Error in worker loop: {e}")
                    claimed = False
                if not claimed and not self.shutdown_requested:
                    await asyncio.sleep(self.settings.poll_interval)
        finally:
            await self.store.close()
            await self.dispatcher.close()
            logger.info(f"Worker stopped. Jobs processed: {self.jobs_processed}, failed: {self.jobs_failed}")

    # =========================================================================
    # Per-job execution
    # =========================================================================

    async def _heartbeat_loop(self, state: JobState) -> None:
        """Refresh the claim until cancelled; flag the state if it was lost."""
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                await self.queue.heartbeat(state.job.id, self.worker_id, state.progress)
            except NotOwnerError:
                logger.warning(f"Lost claim on job {state.job.id}, abandoning")
                state.claim_lost = True
                return
            except Exception as e:
                logger.warning(f"Heartbeat failed for job {state.job.id}: {e}")

    async def process_job(self, job: TranscodeJob) -> bool:
        """
        Execute one claimed job and report its outcome.

        Returns True if the asset ended up ready. Losing the claim at any
        point abandons the job without touching the asset.
        """
        state = JobState(job)
        work_dir = self.settings.temp_dir / job.media_asset_id
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(state))

        try:
            asset = await asset_store.get_asset(self.database, job.media_asset_id)
            logger.info(f"Processing asset {asset.id} ({asset.media_kind}, job={job.id}, attempt {job.attempt_count})")

            work_dir.mkdir(parents=True, exist_ok=True)
            if asset.media_kind == MediaKind.VIDEO.value:
                values = await self._process_video(asset, work_dir, state)
            else:
                values = {}

            # Confirms the claim is still ours right before reporting
            await self.queue.heartbeat(job.id, self.worker_id, PROGRESS_UPLOADED)
            await self._report_ready(job, asset, values)
            return True

        except NotOwnerError:
            logger.info(f"Job {job.id} is no longer held by {self.worker_id}, abandoned")
            return False
        except Exception as e:
            logger.exception(f"Job {job.id} failed: {e}")
            await self._report_failed(job, str(e))
            return False
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
            shutil.rmtree(work_dir, ignore_errors=True)

    async def _process_video(self, asset: MediaAsset, work_dir: Path, state: JobState) -> Dict[str, Any]:
        """Download, transcode, transcribe and upload. Returns the asset columns to set."""
        ext = Path(asset.original_filename).suffix.lower() or ".mp4"
        input_path = work_dir / f"input{ext}"
        output_dir = work_dir / "output"
        output_dir.mkdir(parents=True, exist_ok=True)

        await self.store.download(asset.original_key, input_path)

        source = await probe(input_path)
        await generate_thumbnail(input_path, output_dir / THUMBNAIL_NAME)

        hls = await transcode_to_hls(
            input_path,
            output_dir,
            timeout=self.settings.ffmpeg_timeout,
            progress_callback=state.set_progress,
            source=source,
        )

        values: Dict[str, Any] = {
            "duration_seconds": int(round(hls.duration)),
            "width": hls.width,
            "height": hls.height,
        }
        values.update(await self._transcribe(asset, input_path, source.has_audio, state))
        await state.set_progress(PROGRESS_TRANSCRIBED)

        prefix = hls_prefix(asset.owner_id, asset.id)
        await self.store.upload_directory(output_dir, prefix)
        values["hls_key"] = f"{prefix}/{hls.master_playlist}"
        values["thumbnail_key"] = f"{prefix}/{THUMBNAIL_NAME}"
        return values

    async def _transcribe(
        self, asset: MediaAsset, input_path: Path, has_audio: bool, state: JobState
    ) -> Dict[str, Any]:
        """Transcription columns for the asset. Never raises for engine problems."""
        if not has_audio:
            logger.info(f"Asset {asset.id} has no audio stream, skipping transcription")
            return {"transcription_status": TranscriptionStatus.SKIPPED.value}

        # Only the claim holder may touch the asset; NotOwnerError abandons the job
        await self.queue.heartbeat(state.job.id, self.worker_id, state.progress)
        await asset_store.update_asset_fields(
            self.database,
            asset.id,
            {"transcription_status": TranscriptionStatus.PROCESSING.value},
            expected_status=AssetStatus.PROCESSING.value,
        )
        status, result = await self.engine.run(input_path)
        if result is None:
            return {"transcription_status": status}

        return {
            "transcription_status": status,
            "transcript_text": result.text,
            "transcript_vtt": result.vtt,
            "transcript_segments": segments_to_json(result.segments),
            "transcript_language": result.language,
        }

    # =========================================================================
    # Reporting
    # =========================================================================

    async def _report_ready(self, job: TranscodeJob, asset: MediaAsset, values: Dict[str, Any]) -> None:
        values = dict(values, processed_at=datetime.now(timezone.utc), error_message=None)
        updated = await asset_store.transition_asset(self.database, asset.id, AssetStatus.READY.value, values)

        # Only the transition that actually moved the asset emits the event
        if updated is not None:
            await self.dispatcher.dispatch(
                updated.owner_id,
                WebhookEvent.MEDIA_READY.value,
                {
                    "id": updated.id,
                    "type": updated.media_kind,
                    "title": updated.title,
                    "status": updated.status,
                    "hlsUrl": self.store.public_object_url(updated.hls_key),
                    "thumbnailUrl": self.store.public_object_url(updated.thumbnail_key),
                    "duration": updated.duration_seconds,
                    "width": updated.width,
                    "height": updated.height,
                    "transcriptionStatus": updated.transcription_status,
                    "metadata": updated.custom_metadata,
                },
            )
        else:
            logger.info(f"Asset {asset.id} was already finalized, not emitting media.ready")

        await self.queue.complete(job.id, self.worker_id)
        logger.info(f"Asset {asset.id} ready (job {job.id})")

    async def _report_failed(self, job: TranscodeJob, reason: str) -> None:
        try:
            await self.queue.fail(job.id, self.worker_id, reason)
        except NotOwnerError:
            logger.info(f"Job {job.id} is no longer held by {self.worker_id}, not recording failure")
            return

        asset = await asset_store.fail_asset(self.database, job.media_asset_id, reason)
        if asset is not None:
            await self.dispatcher.dispatch(
                asset.owner_id,
                WebhookEvent.MEDIA_FAILED.value,
                {
                    "id": asset.id,
                    "type": asset.media_kind,
                    "title": asset.title,
                    "status": asset.status,
                    "error": asset.error_message or sanitize_error_message(reason, log_original=False),
                    "metadata": asset.custom_metadata,
                },
            )


async def worker_main(settings: Settings) -> None:
    database = create_database(settings.database_url)
    await database.connect()
    try:
        await WorkerCoordinator(settings, database).run()
    finally:
        await database.disconnect()


def main():
    """Entry point for the media worker."""
    settings = load_settings()
    configure_logging(settings)
    asyncio.run(worker_main(settings))


if __name__ == "__main__":
    main()
