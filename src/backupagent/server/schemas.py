"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from pydantic import BaseModel

from backupagent.server.models import Device

# === Device schemas ===


class RegisterRequest(BaseModel):
    """Request body for device registration."""

    hostname: str
    os: str


class RegisterResponse(BaseModel):
    """Response for device registration."""

    status: str = "ok"
    token: str


class DeviceResponse(BaseModel):
    """Device data in responses."""

    device_id: str
    hostname: str
    os: str
    created_at: str
    last_seen: str


def device_to_response(device: Device) -> DeviceResponse:
    """Convert Device model to response schema."""
    return DeviceResponse(
        device_id=device.device_id,
        hostname=device.hostname,
        os=device.os,
        created_at=device.created_at.isoformat(),
        last_seen=device.last_seen.isoformat(),
    )


# === Backup schemas ===


class BackupResponse(BaseModel):
    """Response for a backup batch."""

    status: str = "ok"
    stored: int
    deleted: int


# === Health schemas ===


class HealthResponse(BaseModel):
    """Response for health check."""

    status: str
