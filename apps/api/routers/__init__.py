"""Routers package."""

from . import (
    health,
    feedback,
)
