"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backupagent.server.database import Database, hash_token
from backupagent.server.models import Device
from backupagent.server.storage import BackupStorage
from backupagent.server.tokens import TokenSigner

# Security scheme
security = HTTPBearer(auto_error=False)


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_storage(request: Request) -> BackupStorage:
    """Get backup storage from app state."""
    storage: BackupStorage = request.app.state.storage
    return storage


def get_signer(request: Request) -> TokenSigner:
    """Get credential signer from app state."""
    signer: TokenSigner = request.app.state.signer
    return signer


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_device(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Device:
    """Validate the bearer credential and return the registered Device."""
    if credentials is None:
        raise _unauthorized("Missing authentication credentials")

    device_id = get_signer(request).verify(credentials.credentials)
    if device_id is None:
        raise _unauthorized("Invalid or expired token")

    db = get_db(request)
    device = db.get_device(device_id)
    if device is None or device.token_hash != hash_token(credentials.credentials):
        raise _unauthorized("Device is not registered")

    db.update_last_seen(device_id)
    return device
