from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from .. import ledger
from ..backup_manager import BackupRunner
from ..database import get_session
from ..dependencies import get_runner, get_storage
from ..models import DatabaseBackup, STATUS_COMPLETED, STATUS_FAILED
from ..schemas import BackupDetail, BackupList, BackupStats, ExecutionInfo, ManualBackupCreate
from ..storage import StorageProvider

router = APIRouter()


@router.post("", response_model=ExecutionInfo)
def create_manual_backup(request: ManualBackupCreate, runner: BackupRunner = Depends(get_runner)):
    result = runner.run_manual_backup(encrypt=request.encrypt)
    if not result.success:
        raise HTTPException(status_code=500, detail=f"Backup failed: {result.error}")
    return ExecutionInfo(success=True, backup_id=result.backup_id)


@router.get("", response_model=List[BackupList])
def list_backups(limit: int = 100, session: Session = Depends(get_session)):
    return ledger.list_backups(session, limit=limit)


@router.get("/failed", response_model=List[BackupList])
def list_failed_backups(session: Session = Depends(get_session)):
    """
    Get a list of all backups that have a 'failed' status.
    """
    return ledger.list_backups(session, status=STATUS_FAILED)


@router.get("/stats", response_model=BackupStats)
def get_backup_stats(session: Session = Depends(get_session)):
    return ledger.get_backup_stats(session)


@router.get("/{backup_id}", response_model=BackupDetail)
def get_backup_details(backup_id: int, session: Session = Depends(get_session)):
    backup = session.get(DatabaseBackup, backup_id)
    if not backup:
        raise HTTPException(status_code=404, detail="Backup not found")
    return backup


@router.delete("/{backup_id}", status_code=204)
def delete_backup(backup_id: int, session: Session = Depends(get_session), runner: BackupRunner = Depends(get_runner)):
    if not session.get(DatabaseBackup, backup_id):
        raise HTTPException(status_code=404, detail="Backup not found")
    if not runner.delete_backup(backup_id):
        raise HTTPException(status_code=502, detail="Failed to delete backup")
    return


@router.get("/{backup_id}/download")
def download_backup(backup_id: int, session: Session = Depends(get_session),
                    storage: StorageProvider = Depends(get_storage)):
    backup = session.get(DatabaseBackup, backup_id)
    if not backup:
        raise HTTPException(status_code=404, detail="Backup not found")

    if backup.status != STATUS_COMPLETED or not backup.storage_key:
        raise HTTPException(status_code=400, detail="Backup is not completed or has no file associated")

    return storage.get_download_response(backup.storage_key)
