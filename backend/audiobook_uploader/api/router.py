"""Top-level API router; versioned routers are mounted here."""

from fastapi import APIRouter

from .v1 import epub as epub_router
from .v1 import pipeline as pipeline_router
from .v1 import providers as providers_router

api_router = APIRouter()
api_router.include_router(
    pipeline_router.router,
    prefix="/v1/pipeline",
    tags=["pipeline"],
)
api_router.include_router(
    providers_router.router,
    prefix="/v1/providers",
    tags=["providers"],
)
api_router.include_router(
    epub_router.router,
    prefix="/v1/epub",
    tags=["epub"],
)
