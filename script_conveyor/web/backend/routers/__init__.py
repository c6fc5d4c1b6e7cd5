"""API routers for the web backend."""

from .channels import router as channels_router
from .generation import router as generation_router
from .jobs import router as jobs_router

__all__ = [
    "channels_router",
    "generation_router",
    "jobs_router",
]
