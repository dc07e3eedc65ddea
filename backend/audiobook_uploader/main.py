"""FastAPI application entry point."""

import shutil
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .api.router import api_router
from .core.config import get_settings
from .core.errors import InputValidationError, PipelineError
from .core.logging_config import configure_logging

configure_logging()
settings = get_settings()

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.backend_cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Path(settings.outputs_dir).mkdir(parents=True, exist_ok=True)
app.mount("/api/outputs", StaticFiles(directory=settings.outputs_dir), name="outputs")

app.include_router(api_router, prefix="/api")


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = 422 if isinstance(exc, InputValidationError) else 500
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.get("/health", tags=["health"])
def health_check() -> dict[str, object]:
    """Health check reporting which providers are configured."""

    return {
        "status": "ok",
        "providers": {
            "vbee": bool(settings.vbee_api_key and settings.vbee_app_id),
            "gemini": bool(settings.gemini_api_key),
            "youtube_refresh": bool(settings.youtube_oauth_client_id and settings.youtube_oauth_client_secret),
            "ffmpeg": bool(settings.ffmpeg_binary or shutil.which("ffmpeg")),
        },
    }
