"""Routers package."""

from . import (
    health,
    credits,
    billing,
    trainer,
)
