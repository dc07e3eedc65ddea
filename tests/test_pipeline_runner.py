"""Tests for step orchestration in PipelineRunner."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from audiobook_uploader.core.errors import (
    AdapterFailureError,
    AdapterTimeoutError,
    PipelineAlreadyRunningError,
)
from audiobook_uploader.schemas.pipeline import (
    AudioFile,
    DownloadedVideo,
    OutputVideo,
    PipelineStepName,
    StepStatus,
    ThumbnailImage,
    UploadResult,
)
from audiobook_uploader.services.pipeline_runner import PipelineRunner, StepTracker
from audiobook_uploader.services.run_state import RunStateManager

from conftest import make_settings

FOUR_STEPS = [
    PipelineStepName.validate_input,
    PipelineStepName.generate_voiceover,
    PipelineStepName.compose_video,
    PipelineStepName.generate_thumbnail,
]


class StubVoiceover:
    def __init__(self, duration: float = 12.0, error: Exception | None = None):
        self.duration = duration
        self.error = error
        self.calls: list[tuple] = []
        self.chunk_calls: list[list[str]] = []
        self.closed = False

    def synthesize(self, text, voice_id, output_path):
        self.calls.append((text, voice_id, output_path))
        if self.error is not None:
            raise self.error
        Path(output_path).write_bytes(b"ID3" + b"\x00" * 64)
        return self.describe(output_path)

    def synthesize_chunks(self, chunks, voice_id, output_path):
        self.chunk_calls.append(list(chunks))
        return self.synthesize(" ".join(chunks), voice_id, output_path)

    def describe(self, output_path):
        return AudioFile(
            path=output_path, duration=self.duration, sample_rate=48000, channels=1, format="mp3", file_size=67
        )

    def close(self):
        self.closed = True


class StubEditing:
    def __init__(self):
        self.calls: list[dict] = []

    def compose(self, banner, secondary, audio, output, duration_seconds, *, music_path=None, on_progress=None):
        self.calls.append(
            {"secondary": secondary, "audio": audio, "duration": duration_seconds, "music_path": music_path}
        )
        if on_progress is not None:
            on_progress("Encoding video: 40%", 40)
            on_progress("Encoding video: 80%", 80)
        Path(output).write_bytes(b"\x00" * 1000)
        return OutputVideo(
            path=output, width=1920, height=1080, duration=duration_seconds, file_size=1000, bitrate="1k", codec="libx264"
        )


class StubThumbnail:
    def __init__(self, placeholder: bool = False):
        self.placeholder = placeholder
        self.calls = 0

    def generate_thumbnail(self, style_reference_image_path, title, output_path):
        self.calls += 1
        Path(output_path).write_bytes(b"\x89PNG" + b"\x00" * 32)
        return ThumbnailImage(
            path=output_path, width=1920, height=1080, format="png", file_size=36, placeholder=self.placeholder
        )


class StubYouTube:
    def __init__(self):
        self.tokens: list[str] = []
        self.refreshed: list[str] = []

    def upload(self, video_path, thumbnail_path, metadata, access_token):
        self.tokens.append(access_token)
        return UploadResult(video_id="abc123XYZ", url="https://www.youtube.com/watch?v=abc123XYZ", status="processing")

    def refresh_access_token(self, refresh_token):
        self.refreshed.append(refresh_token)
        return "fresh-token", time.time() + 3600


class StubDouyin:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.urls: list[str] = []
        self.closed = False

    def download(self, url, output_dir):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        target = Path(output_dir) / "douyin_video.mp4"
        target.write_bytes(b"\x00" * 2048)
        return DownloadedVideo(video_id="7301", title="Món ngon", url=url, local_path=str(target), file_size=2048)

    def close(self):
        self.closed = True


def _runner(settings=None, **adapters) -> PipelineRunner:
    return PipelineRunner(
        settings or make_settings(),
        voiceover_service=adapters.get("voiceover", StubVoiceover()),
        editing_service=adapters.get("editing", StubEditing()),
        thumbnail_service=adapters.get("thumbnail", StubThumbnail()),
        youtube_service=adapters.get("youtube", StubYouTube()),
        douyin_service=adapters.get("douyin", StubDouyin()),
        state_manager=RunStateManager(),
    )


class TestExecutePipeline:
    @pytest.mark.asyncio
    async def test_happy_path_without_upload(self, make_config):
        result = await _runner().execute_pipeline(make_config())

        assert result.success is True
        assert result.error is None
        assert [step.name for step in result.steps] == FOUR_STEPS
        assert all(step.status == StepStatus.completed and step.progress == 100 for step in result.steps)
        assert Path(result.video_path).exists()
        assert Path(result.thumbnail_path).exists()
        assert Path(result.voiceover_path).name == "voiceover.mp3"
        assert Path(result.voiceover_path).parent == Path(result.video_path).parent
        assert result.youtube_result is None

    @pytest.mark.asyncio
    async def test_upload_requested_without_token_is_skipped(self, make_config):
        youtube = StubYouTube()
        result = await _runner(youtube=youtube).execute_pipeline(make_config(upload_to_youtube=True))

        assert result.success is True
        assert [step.name for step in result.steps] == FOUR_STEPS
        assert youtube.tokens == []

    @pytest.mark.asyncio
    async def test_upload_with_token(self, make_config):
        youtube = StubYouTube()
        config = make_config(upload_to_youtube=True, youtube_access_token="token-1", video_visibility="private")

        result = await _runner(youtube=youtube).execute_pipeline(config)

        assert result.success is True
        assert [step.name for step in result.steps] == [*FOUR_STEPS, PipelineStepName.upload]
        assert result.youtube_result.url.endswith("abc123XYZ")
        assert youtube.tokens == ["token-1"]
        assert youtube.refreshed == []

    @pytest.mark.asyncio
    async def test_token_near_expiry_is_refreshed(self, make_config):
        youtube = StubYouTube()
        settings = make_settings(youtube_oauth_client_id="cid", youtube_oauth_client_secret="secret")
        config = make_config(
            upload_to_youtube=True,
            youtube_access_token="stale",
            youtube_refresh_token="refresh-1",
            youtube_token_expires_at=time.time() + 5,
        )

        result = await _runner(settings, youtube=youtube).execute_pipeline(config)

        assert result.success is True
        assert youtube.refreshed == ["refresh-1"]
        assert youtube.tokens == ["fresh-token"]

    @pytest.mark.asyncio
    async def test_missing_banner_fails_validation(self, make_config, tmp_path):
        voiceover = StubVoiceover()
        missing = str(tmp_path / "nope" / "banner.png")

        result = await _runner(voiceover=voiceover).execute_pipeline(make_config(banner_image_path=missing))

        assert result.success is False
        assert len(result.steps) == 1
        step = result.steps[0]
        assert step.name == PipelineStepName.validate_input
        assert step.status == StepStatus.failed
        assert "Banner image" in step.error and missing in step.error
        assert result.error == step.error
        assert voiceover.calls == []

    @pytest.mark.asyncio
    async def test_empty_story_text_fails_validation(self, make_config):
        result = await _runner().execute_pipeline(make_config(story_text="   "))
        assert result.success is False
        assert "Story text" in result.error

    @pytest.mark.asyncio
    async def test_missing_music_file_fails_validation(self, make_config, tmp_path):
        result = await _runner().execute_pipeline(make_config(background_music_path=str(tmp_path / "music.mp3")))
        assert result.success is False
        assert "Background music" in result.error

    @pytest.mark.asyncio
    async def test_output_directory_is_created(self, make_config, tmp_path):
        config = make_config(output_video_path=str(tmp_path / "deep" / "nested" / "final.mp4"))
        result = await _runner().execute_pipeline(config)
        assert result.success is True
        assert (tmp_path / "deep" / "nested").is_dir()

    @pytest.mark.asyncio
    async def test_voiceover_timeout_stops_run(self, make_config):
        editing = StubEditing()
        voiceover = StubVoiceover(error=AdapterTimeoutError("TTS conversion timeout for request req-9"))

        result = await _runner(voiceover=voiceover, editing=editing).execute_pipeline(make_config())

        assert result.success is False
        assert [step.status for step in result.steps] == [StepStatus.completed, StepStatus.failed]
        assert "req-9" in result.steps[-1].error
        assert result.error == "TTS conversion timeout for request req-9"
        assert result.video_path is None
        assert editing.calls == []

    @pytest.mark.asyncio
    async def test_compose_failure_keeps_partial_outputs(self, make_config):
        class FailingEditing(StubEditing):
            def compose(self, *args, **kwargs):
                raise AdapterFailureError("FFmpeg process exited with code 1")

        result = await _runner(editing=FailingEditing()).execute_pipeline(make_config())

        assert result.success is False
        assert result.voiceover_path is not None
        assert result.steps[-1].name == PipelineStepName.compose_video
        assert result.steps[-1].status == StepStatus.failed

    @pytest.mark.asyncio
    async def test_compose_uses_voiceover_duration_and_music(self, make_config, inputs, tmp_path):
        editing = StubEditing()
        music = tmp_path / "music.mp3"
        music.write_bytes(b"ID3")

        await _runner(voiceover=StubVoiceover(duration=33.0), editing=editing).execute_pipeline(
            make_config(background_music_path=str(music), video_duration=90)
        )

        assert editing.calls[0]["duration"] == 33.0
        assert editing.calls[0]["music_path"] == str(music)

    @pytest.mark.asyncio
    async def test_compose_falls_back_to_configured_duration(self, make_config):
        editing = StubEditing()
        await _runner(voiceover=StubVoiceover(duration=0), editing=editing).execute_pipeline(
            make_config(video_duration=45)
        )
        assert editing.calls[0]["duration"] == 45

    @pytest.mark.asyncio
    async def test_compose_default_duration(self, make_config):
        editing = StubEditing()
        await _runner(voiceover=StubVoiceover(duration=0), editing=editing).execute_pipeline(make_config())
        assert editing.calls[0]["duration"] == 60

    @pytest.mark.asyncio
    async def test_placeholder_thumbnail_still_succeeds(self, make_config):
        result = await _runner(thumbnail=StubThumbnail(placeholder=True)).execute_pipeline(make_config())

        assert result.success is True
        thumbnail_step = result.steps[-1]
        assert thumbnail_step.status == StepStatus.completed
        assert "Placeholder" in thumbnail_step.message

    @pytest.mark.asyncio
    async def test_resume_skips_existing_outputs(self, make_config):
        config = make_config(resume_on_exist=True, reuse_existing_thumbnail=True)
        voiceover, editing, thumbnail = StubVoiceover(), StubEditing(), StubThumbnail()
        first = await _runner(voiceover=voiceover, editing=editing, thumbnail=thumbnail).execute_pipeline(config)
        assert first.success is True

        second = await _runner(voiceover=voiceover, editing=editing, thumbnail=thumbnail).execute_pipeline(config)

        assert second.success is True
        assert len(voiceover.calls) == 1
        assert len(editing.calls) == 1
        assert thumbnail.calls == 1
        skipped = [step.message for step in second.steps[1:]]
        assert all("skipped, already exists" in message for message in skipped)
        assert second.video_path == first.video_path
        assert second.thumbnail_path == first.thumbnail_path

    @pytest.mark.asyncio
    async def test_progress_callbacks_are_ordered_and_monotonic(self, make_config):
        events = []
        await _runner().execute_pipeline(make_config(), on_progress=events.append)

        order = []
        for event in events:
            if event.name not in order:
                order.append(event.name)
        assert order == FOUR_STEPS

        for name in FOUR_STEPS:
            updates = [event for event in events if event.name == name]
            progresses = [event.progress for event in updates]
            assert progresses == sorted(progresses)
            assert updates[-1].status == StepStatus.completed
            assert sum(1 for event in updates if event.status == StepStatus.completed) == 1

        compose = [event.progress for event in events if event.name == PipelineStepName.compose_video]
        assert 40 in compose and 80 in compose

    @pytest.mark.asyncio
    async def test_progress_callback_receives_snapshots(self, make_config):
        events = []
        await _runner().execute_pipeline(make_config(), on_progress=events.append)
        assert events[0].status == StepStatus.in_progress
        assert events[0].progress < 100

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self, make_config):
        cancel_event = asyncio.Event()
        voiceover = StubVoiceover()

        def on_progress(step):
            if step.name == PipelineStepName.validate_input and step.status == StepStatus.completed:
                cancel_event.set()

        result = await _runner(voiceover=voiceover).execute_pipeline(
            make_config(), on_progress=on_progress, cancel_event=cancel_event
        )

        assert result.success is False
        assert result.error == "Pipeline cancelled"
        assert len(result.steps) == 1
        assert voiceover.calls == []

    @pytest.mark.asyncio
    async def test_douyin_video_replaces_cooking_video(self, make_config):
        douyin, editing = StubDouyin(), StubEditing()
        config = make_config(douyin_url="https://v.douyin.com/iRNBho6u/")

        result = await _runner(douyin=douyin, editing=editing).execute_pipeline(config)

        assert result.success is True
        assert [step.name for step in result.steps] == [
            PipelineStepName.validate_input,
            PipelineStepName.download_video,
            *FOUR_STEPS[1:],
        ]
        assert douyin.urls == ["https://v.douyin.com/iRNBho6u/"]
        assert editing.calls[0]["secondary"] == str(Path(result.video_path).parent / "douyin_video.mp4")
        assert "douyin_video.mp4" in result.steps[1].message

    @pytest.mark.asyncio
    async def test_douyin_failure_falls_back_to_cooking_video(self, make_config, inputs):
        editing = StubEditing()
        douyin = StubDouyin(error=AdapterFailureError("Douyin API error: not found"))

        result = await _runner(douyin=douyin, editing=editing).execute_pipeline(
            make_config(douyin_url="https://v.douyin.com/missing/")
        )

        assert result.success is True
        download = result.steps[1]
        assert download.name == PipelineStepName.download_video
        assert download.status == StepStatus.completed
        assert download.message == "Douyin download skipped, using default video"
        assert editing.calls[0]["secondary"] == inputs["cooking_video_path"]

    @pytest.mark.asyncio
    async def test_no_douyin_url_means_no_download_step(self, make_config):
        douyin = StubDouyin()
        result = await _runner(douyin=douyin).execute_pipeline(make_config(douyin_url="  "))
        assert [step.name for step in result.steps] == FOUR_STEPS
        assert douyin.urls == []

    @pytest.mark.asyncio
    async def test_prechunked_story_is_synthesized_as_given(self, make_config):
        voiceover = StubVoiceover()
        result = await _runner(voiceover=voiceover).execute_pipeline(
            make_config(story_chunks=["Phần một.", "Phần hai."])
        )
        assert result.success is True
        assert voiceover.chunk_calls == [["Phần một.", "Phần hai."]]

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, make_config):
        runner = _runner()
        first, second = await asyncio.gather(
            runner.execute_pipeline(make_config()),
            runner.execute_pipeline(make_config()),
            return_exceptions=True,
        )
        assert first.success is True
        assert isinstance(second, PipelineAlreadyRunningError)

        again = await runner.execute_pipeline(make_config())
        assert again.success is True


class TestStepTracker:
    def test_terminal_steps_are_frozen(self):
        events = []
        tracker = StepTracker(events.append)
        step = tracker.start(PipelineStepName.validate_input, "start")
        tracker.complete(step, "done")
        tracker.advance(step, 50, "late")
        tracker.fail(step, "late failure")

        assert [event.status for event in events] == [StepStatus.in_progress, StepStatus.completed]
        assert tracker.snapshots()[0].message == "done"

    def test_progress_never_regresses(self):
        tracker = StepTracker()
        step = tracker.start(PipelineStepName.compose_video, "start")
        tracker.advance(step, 60, "a")
        tracker.advance(step, 30, "b")
        assert step.progress == 60
        tracker.advance(step, 150, "c")
        assert step.progress == 99

    def test_cannot_start_while_another_step_is_running(self):
        tracker = StepTracker()
        tracker.start(PipelineStepName.validate_input, "start")
        with pytest.raises(RuntimeError):
            tracker.start(PipelineStepName.generate_voiceover, "start")


class TestExecuteWithTracking:
    @pytest.mark.asyncio
    async def test_state_manager_receives_result(self, make_config):
        manager = RunStateManager()
        runner = PipelineRunner(
            make_settings(),
            voiceover_service=StubVoiceover(),
            editing_service=StubEditing(),
            thumbnail_service=StubThumbnail(),
            youtube_service=StubYouTube(),
            state_manager=manager,
        )
        config = make_config()
        state = await manager.create_run(config)

        await runner.execute_with_tracking(state.run_id, config)

        status = await manager.get_status(state.run_id)
        assert status.status.value == "completed"
        assert [step.name for step in status.steps] == FOUR_STEPS
        assert status.result.success is True

    @pytest.mark.asyncio
    async def test_adapters_are_closed_after_run(self, make_config):
        manager = RunStateManager()
        voiceover, douyin = StubVoiceover(), StubDouyin()
        runner = PipelineRunner(
            make_settings(),
            voiceover_service=voiceover,
            editing_service=StubEditing(),
            thumbnail_service=StubThumbnail(),
            youtube_service=StubYouTube(),
            douyin_service=douyin,
            state_manager=manager,
        )
        config = make_config()
        state = await manager.create_run(config)

        await runner.execute_with_tracking(state.run_id, config)

        assert voiceover.closed is True
        assert douyin.closed is True

    @pytest.mark.asyncio
    async def test_cancelled_run_is_reported_as_cancelled(self, make_config):
        manager = RunStateManager()
        runner = _runner()
        runner.state_manager = manager
        config = make_config()
        state = await manager.create_run(config)
        await manager.request_cancel(state.run_id)

        await runner.execute_with_tracking(state.run_id, config)

        status = await manager.get_status(state.run_id)
        assert status.status.value == "cancelled"
        assert status.result.error == "Pipeline cancelled"
