"""Routers package."""

from . import (
    health,
    auth,
    studio,
    billing,
    games,
)
