"""Routers package."""

from . import (
    health,
    oauth,
    cron,
    metrics,
)
