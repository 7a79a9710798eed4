import os
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Depends

import crud
from client import DataClient
from db import app_root_dir
from dependencies import get_client
from models import AuditLog

router = APIRouter()


def resolve_backup_dir() -> Path:
    custom = os.getenv("APP_BACKUP_DIR")
    if not custom:
        return app_root_dir() / "data" / "backups"
    path = Path(custom).expanduser()
    return path if path.is_absolute() else (app_root_dir() / path).resolve()


@router.get("/audit-logs", response_model=list[AuditLog])
def list_audit_logs_api(limit: int = 100, client: DataClient = Depends(get_client)):
    if limit < 1:
        limit = 1
    if limit > 1000:
        limit = 1000
    return crud.list_audit_logs(client, take=limit)


@router.post("/backup")
def backup_api(client: DataClient = Depends(get_client)):
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    path = crud.backup_database(client, resolve_backup_dir() / f"assets-backup-{stamp}.db")
    return {"path": path.as_posix()}
