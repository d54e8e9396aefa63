"""FastAPI dependencies."""

from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.session import get_db
from src.worker.scan_lock import ScanLockManager, scan_lock_manager


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_scan_lock_manager() -> ScanLockManager:
    """Dependency for the per-tenant scan lock."""
    return scan_lock_manager


async def get_reviewer_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> Optional[str]:
    """Reviewer identity for decisions and merges; anonymous when absent."""
    if x_user_id is None:
        return None
    return x_user_id.strip()[:64] or None


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Args:
        x_admin_api_key: Admin API key from X-Admin-API-Key header

    Raises:
        HTTPException: 503 if no key is configured, 403 if invalid
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
