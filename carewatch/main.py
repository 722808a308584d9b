"""carewatch FastAPI application."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from carewatch.api import alerts, feed, health, subjects
from carewatch.core.config import settings

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app.include_router(health.router)
app.include_router(subjects.router)
app.include_router(alerts.router)
app.include_router(feed.router)
