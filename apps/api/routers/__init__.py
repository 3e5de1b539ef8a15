"""Routers package."""

from . import (
    health,
    ingestion,
    categorization,
    notifications,
    metrics,
    posts,
    preferences,
    tenant_config,
)
