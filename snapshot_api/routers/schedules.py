from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from .. import schedules as registry
from ..backup_manager import BackupRunner
from ..cron import upcoming_runs
from ..database import get_session
from ..dependencies import get_runner, get_settings
from ..logger import get_logger
from ..schemas import ExecutionInfo, ScheduleCreate, ScheduleDetail, SchedulePreview, ScheduleUpdate

logger = get_logger(__name__)

router = APIRouter()


@router.get("", response_model=List[ScheduleDetail])
def list_schedules(session: Session = Depends(get_session)):
    return registry.list_schedules(session)


@router.post("", response_model=ScheduleDetail, status_code=status.HTTP_201_CREATED)
def create_schedule(schedule: ScheduleCreate, session: Session = Depends(get_session)):
    logger.info(f"Creating backup schedule '{schedule.name}'.")
    try:
        return registry.create_schedule(session, schedule)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/preview", response_model=SchedulePreview)
def preview_schedule(cron: str, timezone: str = "America/New_York", count: int = 5):
    """Upcoming run times for an expression, without storing anything."""
    try:
        runs = upcoming_runs(cron, timezone, count=max(1, min(count, 20)))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SchedulePreview(cron_expression=cron, timezone=timezone, next_runs=runs)


@router.post("/default", response_model=ScheduleDetail)
def initialize_default_schedule(session: Session = Depends(get_session), settings: dict = Depends(get_settings)):
    return registry.ensure_default_schedule(session, settings.get("default_schedule"))


@router.get("/{schedule_id}", response_model=ScheduleDetail)
def get_schedule(schedule_id: int, session: Session = Depends(get_session)):
    schedule = registry.get_schedule(session, schedule_id)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return schedule


@router.patch("/{schedule_id}", response_model=ScheduleDetail)
def update_schedule(schedule_id: int, updates: ScheduleUpdate, session: Session = Depends(get_session)):
    logger.info(f"Updating backup schedule {schedule_id}.")
    try:
        schedule = registry.update_schedule(session, schedule_id, updates)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return schedule


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule(schedule_id: int, session: Session = Depends(get_session)):
    if not registry.delete_schedule(session, schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")


@router.post("/{schedule_id}/run", response_model=ExecutionInfo)
def run_schedule_now(schedule_id: int, runner: BackupRunner = Depends(get_runner)):
    result = runner.execute_scheduled_backup(schedule_id)
    if not result.success:
        code = 404 if result.error == "Schedule not found" else 500
        raise HTTPException(status_code=code, detail=result.error or "Scheduled backup failed")
    return ExecutionInfo(success=True, backup_id=result.backup_id)
