"""Shared test fixtures for audiobook-uploader."""

from __future__ import annotations

from pathlib import Path

import pytest

from audiobook_uploader.core.config import Settings
from audiobook_uploader.schemas.pipeline import PipelineConfig
from audiobook_uploader.services.run_state import RunStateManager


def make_settings(**overrides) -> Settings:
    """Build settings that never read the developer's .env file."""
    values = {
        "vbee_api_key": "vbee-test-key",
        "vbee_app_id": "vbee-test-app",
        "vbee_poll_interval": 0,
        "vbee_poll_attempts": 3,
        "ffmpeg_binary": "ffmpeg",
        "gemini_api_key": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture(autouse=True)
def _fresh_run_state():
    """Each test gets its own run state singleton."""
    RunStateManager._instance = None
    yield
    RunStateManager._instance = None


@pytest.fixture()
def inputs(tmp_path: Path) -> dict[str, str]:
    """Create placeholder input files; adapters are stubbed so contents are irrelevant."""
    directory = tmp_path / "inputs"
    directory.mkdir()
    files = {
        "banner_image_path": directory / "banner.png",
        "cooking_video_path": directory / "cooking.mp4",
        "avatar_image_path": directory / "avatar.png",
    }
    for path in files.values():
        path.write_bytes(b"\x00" * 128)
    return {name: str(path) for name, path in files.items()}


@pytest.fixture()
def make_config(inputs, tmp_path: Path):
    def _make(**overrides) -> PipelineConfig:
        values = {
            "story_text": "Xin chào",
            "story_title": "Truyện thử",
            "output_video_path": str(tmp_path / "output" / "final.mp4"),
            "output_thumbnail_path": str(tmp_path / "output" / "thumbnail.png"),
            **inputs,
        }
        values.update(overrides)
        return PipelineConfig(**values)

    return _make
