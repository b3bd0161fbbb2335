"""Routers package."""

from . import (
    health,
    users,
    billing,
    webhooks,
    spending,
    readings,
    admin,
)
