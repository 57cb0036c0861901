"""API router for the Sketch2Agent API."""
from fastapi import APIRouter

from .workflows.router import router as workflows_router

router = APIRouter(prefix="/api")
router.include_router(workflows_router)
