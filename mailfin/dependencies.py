"""
FastAPI dependency injection.
Provides DB sessions, the run orchestrator, the QA checker and API key validation.
"""

from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailfin.config import settings
from mailfin.models.database import async_session_factory, get_session
from mailfin.pipeline.invoker import QaChecker, get_invoker, get_qa_checker
from mailfin.pipeline.orchestrator import ExtractionOrchestrator


# ── Singleton instances ──────────────────────────────────────
_orchestrator: Optional[ExtractionOrchestrator] = None


def get_orchestrator() -> ExtractionOrchestrator:
    """Get or create the process-wide orchestrator (shares the JobRegistry)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ExtractionOrchestrator(get_invoker())
    return _orchestrator


def get_checker() -> QaChecker:
    return get_qa_checker()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for work that outlives the request (background QA runs)."""
    return async_session_factory


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
