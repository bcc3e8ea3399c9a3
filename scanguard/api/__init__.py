"""API router registry used by the app factory.

Keeps route module imports and inclusion order in one place so
`scanguard.main` stays focused on startup wiring.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import codes, health, manufacturers, regulatory, verification

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    verification.router,
    codes.router,
    manufacturers.router,
    regulatory.router,
)

__all__ = ["API_PREFIX", "API_ROUTERS"]
