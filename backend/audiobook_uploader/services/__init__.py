"""Service modules wrapping the external providers and the pipeline runner."""

from .douyin_service import DouyinService
from .editing_service import EditingService
from .epub_service import parse_epub
from .pipeline_runner import PipelineRunner
from .run_state import RunStateManager
from .thumbnail_service import ThumbnailService
from .voiceover_service import VoiceoverService
from .youtube_service import YouTubeService

__all__ = [
	"DouyinService",
	"EditingService",
	"PipelineRunner",
	"RunStateManager",
	"ThumbnailService",
	"VoiceoverService",
	"YouTubeService",
	"parse_epub",
]
