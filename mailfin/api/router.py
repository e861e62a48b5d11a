"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from mailfin.api.emails import router as emails_router
from mailfin.api.health import router as health_router
from mailfin.api.jobs import router as jobs_router
from mailfin.api.qa import router as qa_router
from mailfin.api.runs import router as runs_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(emails_router)
api_router.include_router(runs_router)
api_router.include_router(jobs_router)
api_router.include_router(qa_router)
