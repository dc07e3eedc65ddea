"""High-level orchestration of the audiobook video pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable

from ..core.config import Settings, get_settings
from ..core.errors import (
    PIPELINE_CANCELLED_MESSAGE,
    InputValidationError,
    PipelineAlreadyRunningError,
    PipelineCancelledError,
    PipelineError,
)
from ..schemas.pipeline import (
    AudioFile,
    OutputVideo,
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    PipelineStepName,
    StepStatus,
    ThumbnailImage,
    UploadResult,
)
from .douyin_service import DOWNLOAD_FILENAME, DouyinService
from .editing_service import EditingService
from .run_state import RunStateManager
from .thumbnail_service import ThumbnailService
from .voiceover_service import VoiceoverService
from .youtube_service import YouTubeService, build_video_metadata

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_DURATION = 60.0
VOICEOVER_FILENAME = "voiceover.mp3"

ProgressCallback = Callable[[PipelineStep], None]
StepReporter = Callable[[str, int], None]


class StepFailedError(PipelineError):
    """Raised internally once a step has been recorded as failed."""

    def __init__(self, step: PipelineStep, message: str) -> None:
        super().__init__(message)
        self.step = step


class StepTracker:
    """Owns the attempted steps of one run and emits a snapshot on every change.

    A step is frozen once it is completed or failed; later updates are
    ignored so that no callback for it fires after its terminal one.
    """

    def __init__(self, on_progress: ProgressCallback | None = None) -> None:
        self._on_progress = on_progress
        self._steps: list[PipelineStep] = []

    def start(self, name: PipelineStepName, message: str) -> PipelineStep:
        if self._steps and not self._steps[-1].is_terminal:
            raise RuntimeError(f"Cannot start {name.value!r} before {self._steps[-1].name.value!r} has finished")
        step = PipelineStep(name=name, status=StepStatus.in_progress, progress=10, message=message)
        self._steps.append(step)
        self._emit(step)
        return step

    def advance(self, step: PipelineStep, progress: int, message: str) -> None:
        if step.is_terminal:
            return
        step.progress = max(step.progress, min(int(progress), 99))
        step.message = message
        self._emit(step)

    def complete(self, step: PipelineStep, message: str) -> None:
        if step.is_terminal:
            return
        step.status = StepStatus.completed
        step.progress = 100
        step.message = message
        self._emit(step)

    def fail(self, step: PipelineStep, error: str) -> None:
        if step.is_terminal:
            return
        step.status = StepStatus.failed
        step.progress = 100
        step.message = f"{step.name.value} failed: {error}"
        step.error = error
        self._emit(step)

    def threadsafe_reporter(self, step: PipelineStep, loop: asyncio.AbstractEventLoop) -> StepReporter:
        """Build a progress reporter that adapters may call from worker threads."""

        def report(message: str, progress: int) -> None:
            loop.call_soon_threadsafe(self.advance, step, progress, message)

        return report

    def snapshots(self) -> list[PipelineStep]:
        return [step.model_copy() for step in self._steps]

    def _emit(self, step: PipelineStep) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(step.model_copy())
        except Exception:  # pragma: no cover
            logger.exception("Progress listener raised", extra={"step": step.name.value})


class PipelineRunner:
    """Coordinates the sequential steps of the audiobook pipeline."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        voiceover_service: VoiceoverService | None = None,
        editing_service: EditingService | None = None,
        thumbnail_service: ThumbnailService | None = None,
        youtube_service: YouTubeService | None = None,
        douyin_service: DouyinService | None = None,
        state_manager: RunStateManager | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.voiceover_service = voiceover_service or VoiceoverService(self.settings)
        self.editing_service = editing_service or EditingService(self.settings)
        self.thumbnail_service = thumbnail_service or ThumbnailService(self.settings)
        self.youtube_service = youtube_service or YouTubeService(self.settings)
        self.douyin_service = douyin_service or DouyinService(self.settings)
        self.state_manager = state_manager or RunStateManager.instance()
        self._running = False

    async def execute_with_tracking(self, run_id: str, config: PipelineConfig) -> None:
        """Run the pipeline and relay every state change to the run state channel."""

        await self.state_manager.mark_run_started(run_id)
        try:
            result = await self.execute_pipeline(
                config,
                on_progress=lambda step: self.state_manager.publish_progress(run_id, step),
                cancel_event=self.state_manager.cancel_event(run_id),
            )
        except Exception as exc:  # pragma: no cover - runtime failure path
            logger.exception("Pipeline run crashed", extra={"run_id": run_id})
            result = PipelineResult(success=False, error=str(exc) or type(exc).__name__)
        finally:
            self.close()
        await self.state_manager.mark_run_finished(run_id, result)

    def close(self) -> None:
        """Release the HTTP clients held by the adapters."""

        for service in (self.voiceover_service, self.youtube_service, self.douyin_service):
            close = getattr(service, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception:
                logger.exception("Failed to close %s", type(service).__name__)

    async def execute_pipeline(
        self,
        config: PipelineConfig,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """Execute every step in order and return the aggregated result.

        Step failures never raise: they are recorded on the step and surfaced
        through ``PipelineResult.error``. Cancellation is honoured between
        steps only.
        """

        if self._running:
            raise PipelineAlreadyRunningError("A pipeline run is already in progress")
        self._running = True
        try:
            return await self._execute(config, StepTracker(on_progress), cancel_event)
        finally:
            self._running = False

    async def _execute(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        cancel_event: asyncio.Event | None,
    ) -> PipelineResult:
        logger.info("Starting audiobook pipeline", extra={"story_title": config.story_title})
        started = time.monotonic()
        result = PipelineResult()

        try:
            await self._run_step(
                tracker,
                PipelineStepName.validate_input,
                start_message="Checking input files...",
                executor=lambda report: self._validate_config(config),
                detail_builder=lambda _: "Input validation successful",
            )

            secondary_video_path = config.cooking_video_path
            if config.download_enabled:
                self._check_cancelled(cancel_event)
                secondary_video_path = await self._download_video(config, tracker)

            self._check_cancelled(cancel_event)
            audio = await self._generate_voiceover(config, tracker)
            result.voiceover_path = audio.path

            self._check_cancelled(cancel_event)
            video = await self._compose_video(config, tracker, audio, secondary_video_path)
            result.video_path = video.path

            self._check_cancelled(cancel_event)
            thumbnail = await self._generate_thumbnail(config, tracker)
            result.thumbnail_path = thumbnail.path

            if config.upload_enabled:
                self._check_cancelled(cancel_event)
                result.youtube_result = await self._upload(config, tracker, video.path, thumbnail.path)
            elif config.upload_to_youtube:
                logger.info("YouTube upload requested without an access token; upload disabled")
            else:
                logger.info("YouTube upload skipped (not requested)")

            result.success = True
            logger.info("Pipeline completed successfully in %.0fs", time.monotonic() - started)
        except StepFailedError as exc:
            result.error = exc.message
            logger.error("Pipeline failed at %s: %s", exc.step.name.value, exc.message)
        except PipelineCancelledError as exc:
            result.error = exc.message
            logger.warning("Pipeline cancelled", extra={"story_title": config.story_title})

        result.steps = tracker.snapshots()
        return result

    async def _download_video(self, config: PipelineConfig, tracker: StepTracker) -> str:
        """Fetch the Douyin video; any failure falls back to the configured cooking video."""

        output_dir = Path(config.output_video_path).parent
        existing = output_dir / DOWNLOAD_FILENAME
        if config.resume_on_exist and existing.exists():
            return await self._run_step(
                tracker,
                PipelineStepName.download_video,
                start_message="Checking existing Douyin video...",
                executor=lambda report: str(existing),
                detail_builder=lambda path: f"Douyin download skipped, already exists: {existing.name}",
            )

        def executor(report: StepReporter) -> str | None:
            try:
                return self.douyin_service.download(config.douyin_url or "", str(output_dir)).local_path
            except Exception as exc:
                logger.warning("Douyin download failed, using default video: %s", exc)
                return None

        downloaded = await self._run_step(
            tracker,
            PipelineStepName.download_video,
            start_message="Downloading video from Douyin...",
            executor=executor,
            detail_builder=lambda path: (
                f"Douyin video downloaded: {Path(path).name}" if path else "Douyin download skipped, using default video"
            ),
        )
        return downloaded or config.cooking_video_path

    async def _generate_voiceover(self, config: PipelineConfig, tracker: StepTracker) -> AudioFile:
        voiceover_path = Path(config.output_video_path).parent / VOICEOVER_FILENAME
        if config.resume_on_exist and voiceover_path.exists():
            return await self._run_step(
                tracker,
                PipelineStepName.generate_voiceover,
                start_message="Checking existing voiceover...",
                executor=lambda report: self.voiceover_service.describe(str(voiceover_path)),
                detail_builder=lambda audio: f"Voiceover skipped, already exists: {voiceover_path.name}",
            )

        return await self._run_step(
            tracker,
            PipelineStepName.generate_voiceover,
            start_message="Converting story text to audiobook voice...",
            executor=lambda report: self._synthesize(config, str(voiceover_path)),
            detail_builder=lambda audio: (
                f"Audiobook voiceover generated: {Path(audio.path).name} ({audio.duration:.0f}s)"
            ),
        )

    async def _compose_video(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        audio: AudioFile,
        secondary_video_path: str,
    ) -> OutputVideo:
        duration = audio.duration or config.video_duration or DEFAULT_VIDEO_DURATION
        output_path = Path(config.output_video_path)

        if config.resume_on_exist and output_path.exists():
            return await self._run_step(
                tracker,
                PipelineStepName.compose_video,
                start_message="Checking existing video...",
                executor=lambda report: OutputVideo(
                    path=str(output_path),
                    width=1920,
                    height=1080,
                    duration=duration,
                    file_size=output_path.stat().st_size,
                    bitrate="0k",
                    codec="unknown",
                ),
                detail_builder=lambda video: f"Video composition skipped, already exists: {output_path.name}",
            )

        logger.info("Composing video with duration %.1fs (based on audio duration)", duration)
        return await self._run_step(
            tracker,
            PipelineStepName.compose_video,
            start_message="Composing banner + cooking video + narration...",
            executor=lambda report: self.editing_service.compose(
                config.banner_image_path,
                secondary_video_path,
                audio.path,
                str(output_path),
                duration,
                music_path=config.background_music_path,
                on_progress=report,
            ),
            detail_builder=lambda video: (
                f"Video composition completed: {Path(video.path).name} ({video.duration:.0f}s)"
            ),
        )

    async def _generate_thumbnail(self, config: PipelineConfig, tracker: StepTracker) -> ThumbnailImage:
        thumbnail_path = Path(config.output_thumbnail_path)
        if config.reuse_existing_thumbnail and thumbnail_path.exists():
            return await self._run_step(
                tracker,
                PipelineStepName.generate_thumbnail,
                start_message="Checking existing thumbnail...",
                executor=lambda report: ThumbnailImage(
                    path=str(thumbnail_path),
                    width=1920,
                    height=1080,
                    format="png" if thumbnail_path.suffix.lower() == ".png" else "jpg",
                    file_size=thumbnail_path.stat().st_size,
                ),
                detail_builder=lambda image: f"Thumbnail skipped, already exists: {thumbnail_path.name}",
            )

        return await self._run_step(
            tracker,
            PipelineStepName.generate_thumbnail,
            start_message="Generating Modern Oriental thumbnail...",
            executor=lambda report: self.thumbnail_service.generate_thumbnail(
                config.avatar_image_path, config.story_title, str(thumbnail_path)
            ),
            detail_builder=self._thumbnail_detail,
        )

    async def _upload(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        video_path: str,
        thumbnail_path: str,
    ) -> UploadResult:
        def executor(report: StepReporter) -> UploadResult:
            token = self._fresh_access_token(config)
            report("Uploading video to YouTube...", 20)
            metadata = build_video_metadata(
                config.story_title,
                config.story_text,
                config.video_visibility,
                category_id=self.settings.youtube_category_id,
                language=self.settings.youtube_default_language,
            )
            return self.youtube_service.upload(video_path, thumbnail_path, metadata, token)

        return await self._run_step(
            tracker,
            PipelineStepName.upload,
            start_message="Preparing YouTube upload...",
            executor=executor,
            detail_builder=lambda upload: f"Video uploaded: {upload.url}",
        )

    async def _run_step(
        self,
        tracker: StepTracker,
        name: PipelineStepName,
        *,
        start_message: str,
        executor: Callable[[StepReporter], Any],
        detail_builder: Callable[[Any], str],
    ) -> Any:
        logger.info("Step started", extra={"step": name.value})
        step = tracker.start(name, start_message)
        reporter = tracker.threadsafe_reporter(step, asyncio.get_running_loop())
        try:
            payload = await asyncio.to_thread(executor, reporter)
        except Exception as exc:
            message = str(exc) or f"{type(exc).__name__} in {name.value}"
            logger.exception("Step failed", extra={"step": name.value})
            tracker.fail(step, message)
            raise StepFailedError(step, message) from exc

        tracker.complete(step, detail_builder(payload))
        logger.info("Step finished", extra={"step": name.value})
        return payload

    def _validate_config(self, config: PipelineConfig) -> None:
        required_text = {
            "Story text": config.story_text,
            "Story title": config.story_title,
            "Output video path": config.output_video_path,
            "Output thumbnail path": config.output_thumbnail_path,
        }
        for label, value in required_text.items():
            if not value or not value.strip():
                raise InputValidationError(f"{label} is required")

        required_files = {
            "Banner image": config.banner_image_path,
            "Cooking video": config.cooking_video_path,
            "Avatar image": config.avatar_image_path,
        }
        if config.background_music_path:
            required_files["Background music"] = config.background_music_path
        for label, value in required_files.items():
            if not value or not value.strip():
                raise InputValidationError(f"{label} path is required")
            if not Path(value).is_file():
                raise InputValidationError(f"{label} not found: {value}")

        for output in (config.output_video_path, config.output_thumbnail_path):
            directory = Path(output).parent
            if not directory.exists():
                logger.info("Creating output directory: %s", directory)
                directory.mkdir(parents=True, exist_ok=True)
        logger.debug("Configuration validation passed")

    def _synthesize(self, config: PipelineConfig, output_path: str) -> AudioFile:
        if config.story_chunks:
            return self.voiceover_service.synthesize_chunks(config.story_chunks, config.voice_id, output_path)
        return self.voiceover_service.synthesize(config.story_text, config.voice_id, output_path)

    def _fresh_access_token(self, config: PipelineConfig) -> str | None:
        token = config.youtube_access_token
        expires_at = config.youtube_token_expires_at
        if expires_at is None or not config.youtube_refresh_token:
            return token
        if expires_at - time.time() > self.settings.youtube_token_refresh_margin:
            return token
        if not self.settings.youtube_oauth_client_id or not self.settings.youtube_oauth_client_secret:
            logger.warning("YouTube token is near expiry but OAuth client credentials are not configured")
            return token
        logger.info("Refreshing YouTube access token before upload")
        refreshed, _ = self.youtube_service.refresh_access_token(config.youtube_refresh_token)
        return refreshed

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelledError(PIPELINE_CANCELLED_MESSAGE)

    @staticmethod
    def _thumbnail_detail(image: ThumbnailImage) -> str:
        if image.placeholder:
            return f"Placeholder thumbnail created: {Path(image.path).name} (image generation unavailable)"
        return f"Thumbnail generated: {Path(image.path).name}"
