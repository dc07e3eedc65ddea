"""Pydantic models describing pipeline configuration, steps and results."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


Visibility = Literal["public", "private", "unlisted"]


class StepStatus(str, Enum):
    """Lifecycle of a single pipeline step. Transitions never regress."""

    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class PipelineStepName(str, Enum):
    """Stable step identifiers, declared in execution order."""

    validate_input = "Validate Input"
    download_video = "Download Douyin Video"
    generate_voiceover = "Generate Voiceover"
    compose_video = "Compose Video"
    generate_thumbnail = "Generate Thumbnail"
    upload = "Upload"


PIPELINE_STEP_ORDER: tuple[PipelineStepName, ...] = tuple(PipelineStepName)


class PipelineConfig(BaseModel):
    """Input for one pipeline run."""

    model_config = ConfigDict(frozen=True)

    story_text: str
    story_title: str

    banner_image_path: str = Field(description="Background image shown behind the secondary video")
    cooking_video_path: str = Field(description="Secondary video looped in the centre of the frame")
    douyin_url: str | None = Field(default=None, description="Optional Douyin video that replaces the cooking video")
    background_music_path: str | None = Field(default=None, description="Optional music mixed under the narration")
    avatar_image_path: str = Field(description="Style reference image for thumbnail generation")

    output_video_path: str
    output_thumbnail_path: str

    story_chunks: list[str] | None = Field(
        default=None, description="Narration already split by the user; replaces automatic chunking"
    )
    voice_id: str | None = Field(default=None, description="TTS voice code; provider default when omitted")
    video_duration: float | None = Field(default=None, gt=0, description="Fallback duration in seconds")

    upload_to_youtube: bool = False
    youtube_access_token: str | None = None
    youtube_refresh_token: str | None = None
    youtube_token_expires_at: float | None = Field(default=None, description="Epoch seconds")
    video_visibility: Visibility = "public"

    resume_on_exist: bool = False
    reuse_existing_thumbnail: bool = False

    @property
    def upload_enabled(self) -> bool:
        """Upload runs only when requested and a token is present; otherwise it is disabled, not failed."""

        return self.upload_to_youtube and bool(self.youtube_access_token)

    @property
    def download_enabled(self) -> bool:
        return bool(self.douyin_url and self.douyin_url.strip())

    def planned_steps(self) -> list[PipelineStepName]:
        optional = {
            PipelineStepName.download_video: self.download_enabled,
            PipelineStepName.upload: self.upload_enabled,
        }
        return [name for name in PIPELINE_STEP_ORDER if optional.get(name, True)]


class PipelineRunRequest(PipelineConfig):
    """Run request accepted over HTTP; output paths default to a folder under ``outputs_dir``."""

    output_video_path: str | None = None
    output_thumbnail_path: str | None = None


class PipelineStep(BaseModel):
    """Status snapshot for one attempted step."""

    name: PipelineStepName
    status: StepStatus = StepStatus.pending
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.completed, StepStatus.failed)


class AudioFile(BaseModel):
    path: str
    duration: float
    sample_rate: int
    channels: int
    format: Literal["mp3", "wav", "aac"]
    file_size: int


class OutputVideo(BaseModel):
    path: str
    width: int
    height: int
    duration: float
    file_size: int
    bitrate: str
    codec: str


class ThumbnailImage(BaseModel):
    path: str
    width: int
    height: int
    format: Literal["jpg", "png"]
    file_size: int
    placeholder: bool = False


class VideoMetadata(BaseModel):
    title: str
    description: str
    tags: list[str] = Field(default_factory=list)
    visibility: Visibility = "public"
    category_id: int = 24
    language: str = "vi"


class UploadResult(BaseModel):
    video_id: str
    url: str
    status: Literal["processing", "succeeded", "failed"]


class PipelineResult(BaseModel):
    """Final outcome of a run, including the audit trail of attempted steps."""

    success: bool = False
    video_path: str | None = None
    thumbnail_path: str | None = None
    voiceover_path: str | None = None
    youtube_result: UploadResult | None = None
    error: str | None = None
    steps: list[PipelineStep] = Field(default_factory=list)


class PipelineProgressEvent(BaseModel):
    """Message published to the UI after every step state change."""

    run_id: str
    step: PipelineStep
    overall_progress: int = Field(ge=0, le=100)


class PipelineRunTriggerResponse(BaseModel):
    """Response returned once a pipeline run has been enqueued."""

    run_id: str
    output_url: str | None = None


class PipelineRunStatus(str, Enum):
    """Overall pipeline run lifecycle state."""

    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class PipelineRunStatusResponse(BaseModel):
    """Snapshot describing the current state of a pipeline run."""

    run_id: str
    story_title: str
    status: PipelineRunStatus
    steps: list[PipelineStep] = Field(default_factory=list)
    result: PipelineResult | None = None


class PipelineCancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class DownloadedVideo(BaseModel):
    video_id: str
    title: str
    url: str
    local_path: str
    file_size: int


class VoiceOption(BaseModel):
    code: str
    name: str
    language: str


class ProviderValidationResponse(BaseModel):
    """Connectivity check results for each external provider."""

    vbee: bool
    gemini: bool
    image_generation: bool


class EpubChapter(BaseModel):
    id: str
    number: int
    title: str
    content: str
    word_count: int
    estimated_duration: str


class EpubBook(BaseModel):
    title: str
    author: str | None = None
    chapters: list[EpubChapter] = Field(default_factory=list)


class EpubParseRequest(BaseModel):
    path: str
