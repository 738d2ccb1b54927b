"""FastAPI dependencies."""
import secrets
from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.container import AppContainer


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


async def get_db(
    container: AppContainer = Depends(get_container),
) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back on error."""
    async with container.database.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def require_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    container: AppContainer = Depends(get_container),
) -> None:
    """Shared-secret guard for cron and internal hook endpoints."""
    expected = container.settings.CRON_SECRET
    if not expected or not x_cron_secret or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )
