"""FastAPI application for the backup server.

This module creates and configures the FastAPI application with:
- POST /register: device registration
- POST /backup: authenticated batch upload
- GET /ping: health check

Usage:
    uvicorn backupagent.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI

from backupagent.core.errors import ConfigError
from backupagent.server.api.router import router as api_router
from backupagent.server.database import Database
from backupagent.server.storage import BackupStorage
from backupagent.server.tokens import TokenSigner

logger = logging.getLogger(__name__)

# Environment variables and their defaults
DB_PATH_ENV = "BACKUPAGENT_DB_PATH"
STORAGE_PATH_ENV = "BACKUPAGENT_STORAGE_PATH"
LOG_PATH_ENV = "BACKUPAGENT_LOG_PATH"
JWT_SECRET_ENV = "BACKUPAGENT_JWT_SECRET"
TOKEN_TTL_ENV = "BACKUPAGENT_TOKEN_TTL_DAYS"

DEFAULT_DB_PATH = "backupagent.db"
DEFAULT_STORAGE_PATH = "storage"
DEFAULT_LOG_PATH = "backupagent-server.log"


@dataclass
class ServerSettings:
    """Server configuration read from the environment."""

    db_path: Path
    storage_path: Path
    log_path: Path
    jwt_secret: str
    token_ttl_days: int | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerSettings:
        """Build settings from environment variables.

        Raises:
            ConfigError: If the JWT secret is missing or the TTL is invalid.
        """
        env = os.environ if environ is None else environ

        secret = env.get(JWT_SECRET_ENV, "")
        if not secret:
            raise ConfigError(f"{JWT_SECRET_ENV} must be set to sign device credentials")

        ttl_days = None
        raw_ttl = env.get(TOKEN_TTL_ENV)
        if raw_ttl:
            try:
                ttl_days = int(raw_ttl)
            except ValueError as e:
                raise ConfigError(f"{TOKEN_TTL_ENV} must be an integer") from e
            if ttl_days <= 0:
                raise ConfigError(f"{TOKEN_TTL_ENV} must be positive")

        return cls(
            db_path=Path(env.get(DB_PATH_ENV, DEFAULT_DB_PATH)),
            storage_path=Path(env.get(STORAGE_PATH_ENV, DEFAULT_STORAGE_PATH)),
            log_path=Path(env.get(LOG_PATH_ENV, DEFAULT_LOG_PATH)),
            jwt_secret=secret,
            token_ttl_days=ttl_days,
        )


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    root_logger = logging.getLogger("backupagent")
    root_logger.setLevel(logging.INFO)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(uvicorn_name).addHandler(file_handler)


def create_app(db: Database, storage: BackupStorage, signer: TokenSigner) -> FastAPI:
    """Create FastAPI application with explicit dependencies.

    Tests use this directly with isolated databases and storage.

    Args:
        db: Database instance.
        storage: BackupStorage instance.
        signer: Credential signer.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        logger.info("=" * 60)
        logger.info("Backup Server Starting")
        logger.info("=" * 60)
        logger.info("  Database: %s", db.path)
        logger.info("  Storage:  %s", storage.location)
        logger.info("=" * 60)

        yield

        logger.info("Backup Server shutting down")
        db.close()

    application = FastAPI(
        title="Backup Agent Server",
        description="Receives file backups from registered devices",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.storage = storage
    application.state.signer = signer

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    settings = ServerSettings.from_env()
    setup_logging(settings.log_path)
    return create_app(
        db=Database(settings.db_path),
        storage=BackupStorage(settings.storage_path),
        signer=TokenSigner(settings.jwt_secret, settings.token_ttl_days),
    )
