from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Query, Request

from crm.core.config import Settings, get_settings


@dataclass(slots=True)
class PageParams:
    page: int
    limit: int


def _settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if isinstance(settings, Settings) else get_settings()


def pagination(default_limit: int | None = None) -> Callable[..., PageParams]:
    """Dependency factory reading ``page``/``limit`` and clamping to the configured maximum."""

    async def dependency(
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int | None = Query(default=None, ge=1),
    ) -> PageParams:
        settings = _settings(request)
        resolved = limit or default_limit or settings.default_page_size
        return PageParams(page=page, limit=min(resolved, settings.max_page_size))

    return dependency
