"""Routers package."""

from . import (
    health,
    entitlement,
    billing,
    admin_credits,
)
