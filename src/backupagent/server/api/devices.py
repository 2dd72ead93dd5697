"""Device registration API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from backupagent.core.identity import generate_device_id
from backupagent.server.api.deps import get_db, get_signer
from backupagent.server.database import Database, DeviceExistsError, hash_token
from backupagent.server.schemas import RegisterRequest, RegisterResponse
from backupagent.server.tokens import TokenSigner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["devices"])


@router.post("/register", response_model=RegisterResponse)
def register_device(
    request: RegisterRequest,
    db: Database = Depends(get_db),
    signer: TokenSigner = Depends(get_signer),
) -> RegisterResponse:
    """Register a device and issue its credential.

    The device id is derived from hostname and OS, so the same machine
    cannot register twice.
    """
    hostname = request.hostname.strip()
    os_name = request.os.strip()
    if not hostname or not os_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="hostname and os must not be empty",
        )

    device_id = generate_device_id(hostname, os_name)
    if db.get_device(device_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Device is already registered",
        )

    token = signer.issue(device_id)
    try:
        db.create_device(device_id, hostname, os_name, hash_token(token))
    except DeviceExistsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Device is already registered",
        ) from e
    except SQLAlchemyError as e:
        logger.exception("Failed to store device %s", device_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store device",
        ) from e

    logger.info("Registered device %s (%s/%s)", device_id, hostname, os_name)
    return RegisterResponse(token=token)
