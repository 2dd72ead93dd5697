"""Backup upload API route."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from backupagent.server.api.deps import get_current_device, get_db, get_storage
from backupagent.server.database import Database
from backupagent.server.models import Device
from backupagent.server.schemas import BackupResponse
from backupagent.server.storage import BackupStorage, UnsafePathError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["backup"])


@router.post("/backup", response_model=BackupResponse)
def upload_backup(
    files: list[UploadFile] | None = File(None),
    paths: list[str] | None = Form(None),
    deletions: list[str] | None = Form(None),
    device: Device = Depends(get_current_device),
    db: Database = Depends(get_db),
    storage: BackupStorage = Depends(get_storage),
) -> BackupResponse:
    """Store uploaded files and apply deletions for the calling device.

    `files[i]` is stored under `paths[i]`, relative to the device directory.
    """
    files = files or []
    paths = paths or []
    deletions = deletions or []

    if len(files) != len(paths):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Got {len(files)} files but {len(paths)} paths",
        )

    # Reject the whole batch before writing anything
    try:
        for name in [*paths, *deletions]:
            storage.resolve(device.device_id, name)
    except UnsafePathError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    stored = 0
    deleted = 0
    try:
        for upload, name in zip(files, paths):
            size, content_hash = storage.save(device.device_id, name, upload.file)
            db.record_file(device.device_id, name, size, content_hash)
            stored += 1

        for name in deletions:
            removed = storage.delete(device.device_id, name)
            if db.remove_file(device.device_id, name) or removed:
                deleted += 1
    except OSError as e:
        logger.exception("Failed to store backup for %s", device.device_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store backup",
        ) from e

    logger.info(
        "Device %s: stored %d files, deleted %d", device.device_id, stored, deleted
    )
    return BackupResponse(stored=stored, deleted=deleted)
