"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from backupagent.server.api import backup, devices, health

router = APIRouter()

router.include_router(health.router)
router.include_router(devices.router)
router.include_router(backup.router)
